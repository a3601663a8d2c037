from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from cryptboard import crypto, server
from cryptboard.transport import NotesPage, Transport, error_for_status


class FlaskTransport(Transport):
    """Drives the relay app through Flask's test client."""

    def __init__(self, client):
        self.client = client
        self.calls: List[str] = []

    def _post(self, path: str, body: Dict[str, Any], fallback: str) -> Any:
        self.calls.append(path)
        resp = self.client.post(path, json=body)
        data = resp.get_json(silent=True)
        if resp.status_code >= 400:
            raise error_for_status(resp.status_code, data, fallback)
        return data

    async def list_notes(self, board_id, limit, offset, updated_since=None):
        body = {"board_id": board_id, "limit": limit, "offset": offset}
        if updated_since is not None:
            body["updated_since"] = updated_since
        return NotesPage.from_json(self._post("/api/notes/list", body, "Failed to load notes"))

    async def create_note(self, board_id, payload):
        return self._post("/api/notes/create", {"board_id": board_id, "payload": payload}, "Failed to create note")["id"]

    async def update_note(self, board_id, note_id, payload=None, deleted=None):
        body: Dict[str, Any] = {"board_id": board_id, "id": note_id}
        if payload is not None:
            body["payload"] = payload
        if deleted is not None:
            body["deleted"] = deleted
        self._post("/api/notes/update", body, "Failed to update note")

    async def delete_note(self, board_id, note_id):
        self._post("/api/notes/delete", {"board_id": board_id, "id": note_id}, "Failed to delete note")


class GatedTransport(Transport):
    """Wraps a transport and holds one method until ``release()``.

    A held ``list_notes`` has already read the server; a held ``delete_note``
    has not reached it yet.
    """

    def __init__(self, inner: Transport):
        self.inner = inner
        self.held: Optional[str] = None
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None

    def hold(self, method: str = "list_notes") -> None:
        self.held = method
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    def release(self) -> None:
        if self.gate is not None:
            self.gate.set()

    async def _wait(self, method: str) -> None:
        if self.gate is not None and self.held == method:
            self.entered.set()
            await self.gate.wait()

    async def list_notes(self, board_id, limit, offset, updated_since=None):
        page = await self.inner.list_notes(board_id, limit, offset, updated_since)
        await self._wait("list_notes")
        return page

    async def create_note(self, board_id, payload):
        return await self.inner.create_note(board_id, payload)

    async def update_note(self, board_id, note_id, payload=None, deleted=None):
        await self.inner.update_note(board_id, note_id, payload, deleted)

    async def delete_note(self, board_id, note_id):
        await self._wait("delete_note")
        await self.inner.delete_note(board_id, note_id)


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setitem(server.app.config, "DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setitem(server.app.config, "TESTING", True)
    monkeypatch.setattr(server, "_last_purge_at", 0)
    return server.app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def transport(client):
    return FlaskTransport(client)


@pytest.fixture(scope="session")
def fun_zone():
    return crypto.derive_board_id("the-fun-zone"), crypto.derive_encryption_key("the-fun-zone")


@pytest.fixture(scope="session")
def loadtest():
    return crypto.derive_board_id("loadtest"), crypto.derive_encryption_key("loadtest")


@pytest.fixture(scope="session")
def wrong_key():
    return crypto.derive_encryption_key("not-the-fun-zone")


def run(coro):
    return asyncio.run(coro)
