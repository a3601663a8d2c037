"""Client-side encrypted sticky-note boards with a zero-knowledge relay."""

from .crypto import (
    EncryptionKey,
    decrypt_payload,
    derive_board_id,
    derive_board_keys,
    derive_encryption_key,
    encrypt_payload,
)
from .errors import BoardError, user_message
from .notes import Note, NotePayload, NoteType
from .sync import SyncEngine, SyncState, open_board
from .transport import HttpTransport, NotesPage, RemoteNote, Transport

__version__ = "0.1.0"
