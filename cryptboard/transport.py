"""Transport contract between the sync engine and the relay, plus the aiohttp client."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import (
    BoardError,
    NetworkFailure,
    NoteLimitExceeded,
    NoteNotFound,
    RequestTimeout,
    ServerFailure,
    StorageLimitExceeded,
    ValidationFailure,
)

log = logging.getLogger("cryptboard.transport")


@dataclass
class RemoteNote:
    id: str
    payload: str
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "RemoteNote":
        return cls(
            id=str(data.get("id", "")),
            payload=data.get("payload", ""),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class NotesPage:
    notes: List[RemoteNote] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    server_time: Optional[int] = None

    @classmethod
    def from_json(cls, data: Any) -> "NotesPage":
        if not isinstance(data, dict):
            return cls()
        notes = data.get("notes")
        deleted = data.get("deleted")
        server_time = data.get("server_time")
        return cls(
            notes=[RemoteNote.from_json(n) for n in notes if isinstance(n, dict)] if isinstance(notes, list) else [],
            deleted=[str(d) for d in deleted] if isinstance(deleted, list) else [],
            server_time=server_time if isinstance(server_time, (int, float)) and not isinstance(server_time, bool) else None,
        )


class Transport(ABC):
    """What the sync engine needs from the relay. Payloads are opaque envelope strings."""

    @abstractmethod
    async def list_notes(
        self, board_id: str, limit: int, offset: int, updated_since: Optional[int] = None
    ) -> NotesPage:
        pass

    @abstractmethod
    async def create_note(self, board_id: str, payload: str) -> str:
        pass

    @abstractmethod
    async def update_note(
        self, board_id: str, note_id: str, payload: Optional[str] = None, deleted: Optional[bool] = None
    ) -> None:
        pass

    @abstractmethod
    async def delete_note(self, board_id: str, note_id: str) -> None:
        pass

    async def close(self) -> None:
        pass


_STATUS_ERRORS = {
    400: ValidationFailure,
    404: NoteNotFound,
    409: NoteLimitExceeded,
    413: ValidationFailure,
    507: StorageLimitExceeded,
}


def error_for_status(status: int, data: Any, fallback: str) -> BoardError:
    server_error = data.get("error") if isinstance(data, dict) else None
    cls = _STATUS_ERRORS.get(status, ServerFailure)
    return cls(server_error or fallback, status=status, server_error=server_error)


class HttpTransport(Transport):
    def __init__(self, base_url: str, timeout_s: float = 15.0, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def _post(self, path: str, body: Dict[str, Any], fallback: str) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.post(url, json=body, timeout=self.timeout) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                if resp.status >= 400:
                    raise error_for_status(resp.status, data, fallback)
                return data
        except asyncio.TimeoutError as e:
            log.warning("Request timed out", extra={"event": "request_timeout", "extra_data": {"path": path}})
            raise RequestTimeout(f"{fallback}: request timed out") from e
        except aiohttp.ClientError as e:
            raise NetworkFailure(f"{fallback}: {e}") from e

    async def list_notes(
        self, board_id: str, limit: int, offset: int, updated_since: Optional[int] = None
    ) -> NotesPage:
        body: Dict[str, Any] = {"board_id": board_id, "limit": limit, "offset": offset}
        if updated_since is not None:
            body["updated_since"] = updated_since
        data = await self._post("/api/notes/list", body, "Failed to load notes")
        return NotesPage.from_json(data)

    async def create_note(self, board_id: str, payload: str) -> str:
        data = await self._post("/api/notes/create", {"board_id": board_id, "payload": payload}, "Failed to create note")
        if not isinstance(data, dict) or not data.get("id"):
            raise ServerFailure("Failed to create note: response has no id")
        return str(data["id"])

    async def update_note(
        self, board_id: str, note_id: str, payload: Optional[str] = None, deleted: Optional[bool] = None
    ) -> None:
        body: Dict[str, Any] = {"board_id": board_id, "id": note_id}
        if payload is not None:
            body["payload"] = payload
        if deleted is not None:
            body["deleted"] = bool(deleted)
        await self._post("/api/notes/update", body, "Failed to update note")

    async def delete_note(self, board_id: str, note_id: str) -> None:
        await self._post("/api/notes/delete", {"board_id": board_id, "id": note_id}, "Failed to delete note")

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
