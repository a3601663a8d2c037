"""Error taxonomy shared by the transport, the sync engine and callers.

Every error carries a machine-readable ``kind`` so a UI can pick a precise
message (``user_message``) instead of a generic "try again".
"""

from __future__ import annotations

from typing import Optional


class BoardError(Exception):
    kind = "error"

    def __init__(self, message: str = "", status: Optional[int] = None, server_error: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.status = status
        self.server_error = server_error


class CryptoFailure(BoardError):
    kind = "crypto"


class ValidationFailure(BoardError):
    kind = "validation"


class CapacityFailure(BoardError):
    kind = "capacity"


class NoteLimitExceeded(CapacityFailure):
    kind = "note_limit"


class StorageLimitExceeded(CapacityFailure):
    kind = "storage_limit"


class NoteNotFound(BoardError):
    kind = "not_found"


class NetworkFailure(BoardError):
    kind = "network"


class RequestTimeout(NetworkFailure):
    kind = "timeout"


class ServerFailure(BoardError):
    kind = "server"


class NoteNotCached(BoardError, KeyError):
    kind = "not_cached"

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Note not found locally"


class SessionClosed(BoardError):
    kind = "session"


_USER_MESSAGES = {
    "crypto": "This note could not be decrypted.",
    "validation": "That note is too large or malformed to save.",
    "note_limit": "This board is full. Delete some notes first.",
    "storage_limit": "The server is out of space for new notes.",
    "not_found": "That note no longer exists.",
    "timeout": "The server took too long to answer. Please try again.",
    "network": "Could not reach the server. Please try again.",
    "server": "Something went wrong on the server. Please try again.",
    "not_cached": "That note is not on this board anymore.",
    "session": "The board is not open.",
}


def user_message(error: BaseException) -> str:
    kind = getattr(error, "kind", None)
    return _USER_MESSAGES.get(kind, "Something went wrong. Please try again.")
