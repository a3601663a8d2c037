"""Per-board sync engine.

Owns the decrypted note cache for one open board and reconciles it with the
relay. The relay only ever sees envelopes; every mutation re-encrypts the
whole note.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from . import crypto
from .config import PAGE_LIMIT
from .crypto import EncryptionKey
from .errors import BoardError, CryptoFailure, NoteNotCached, NoteNotFound, SessionClosed
from .notes import Note, NotePayload, NoteType, create_payload, now_ms
from .stacking import StackOrder
from .transport import Transport

log = logging.getLogger("cryptboard.sync")


class SyncState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADED = "loaded"
    SYNCING = "syncing"
    IDLE = "idle"
    CLOSED = "closed"


@dataclass
class BoardSession:
    board_id: str
    key: EncryptionKey
    cache: Dict[str, Note] = field(default_factory=dict)
    stack: StackOrder = field(default_factory=StackOrder)
    last_server_time: Optional[int] = None


@dataclass
class LoadResult:
    notes: List[Note] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    server_time: Optional[int] = None


class SyncEngine:
    def __init__(
        self,
        transport: Transport,
        *,
        page_limit: int = PAGE_LIMIT,
        save_debounce_s: float = 0.5,
        on_save_error: Optional[Callable[[str, BaseException], None]] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.transport = transport
        self.page_limit = page_limit
        self.save_debounce_s = save_debounce_s
        self.on_save_error = on_save_error
        self.clock = clock

        self.session: Optional[BoardSession] = None
        self.state = SyncState.UNINITIALIZED

        self.is_refreshing = False
        self.last_local_change_at = 0
        self._local_generation = 0
        self._load_lock = asyncio.Lock()

        self._pending_updates: Dict[str, Dict[str, Any]] = {}
        self._save_timers: Dict[str, asyncio.TimerHandle] = {}
        self._flush_tasks: Dict[str, asyncio.Task] = {}
        self._saves_in_flight = 0

        self._interactions: set = set()
        self._modal_open = False
        self._modal_listeners: List[Callable[[bool], None]] = []

    # ---------- Session ----------
    def init(self, board_id: str, key: EncryptionKey) -> None:
        self._cancel_pending_saves()
        self.session = BoardSession(board_id=board_id, key=key)
        self.state = SyncState.LOADED
        self.is_refreshing = False
        self.last_local_change_at = 0
        self._local_generation = 0
        self._interactions.clear()
        self._modal_open = False

    def _require_session(self) -> BoardSession:
        if self.session is None or self.state in (SyncState.UNINITIALIZED, SyncState.CLOSED):
            raise SessionClosed("Board is not open")
        return self.session

    @property
    def board_id(self) -> Optional[str]:
        return self.session.board_id if self.session else None

    @property
    def watermark(self) -> Optional[int]:
        return self.session.last_server_time if self.session else None

    async def close(self, flush: bool = True) -> None:
        if self.state is SyncState.CLOSED:
            return
        if flush and self.session is not None:
            await self.flush_updates()
        self._cancel_pending_saves()
        self.session = None
        self.state = SyncState.CLOSED

    # ---------- Accessors ----------
    def get_note(self, note_id: str) -> Optional[Note]:
        if self.session is None:
            return None
        return self.session.cache.get(note_id)

    def notes(self) -> List[Note]:
        if self.session is None:
            return []
        return sorted(self.session.cache.values(), key=lambda n: (n.stack_index, n.id))

    def __iter__(self) -> Iterator[Note]:
        return iter(self.notes())

    def __len__(self) -> int:
        return len(self.session.cache) if self.session else 0

    def set_rotation(self, note_id: str, rot: float) -> None:
        note = self.get_note(note_id)
        if note is None:
            return
        self.mark_local_change()
        note.payload.rot = rot

    def touch(self, note_id: str) -> Optional[int]:
        session = self._require_session()
        note = session.cache.get(note_id)
        if note is None:
            return None
        self.mark_local_change()
        return session.stack.touch(note)

    # ---------- Local-change tracking ----------
    def mark_local_change(self) -> None:
        self.last_local_change_at = self.clock()
        self._local_generation += 1

    @property
    def saves_pending(self) -> bool:
        return (
            self._saves_in_flight > 0
            or bool(self._save_timers)
            or any(not t.done() for t in self._flush_tasks.values())
        )

    def begin_interaction(self, note_id: str) -> None:
        self._interactions.add(note_id)

    def end_interaction(self, note_id: str) -> None:
        self._interactions.discard(note_id)

    @property
    def interacting(self) -> bool:
        return bool(self._interactions)

    @property
    def modal_open(self) -> bool:
        return self._modal_open

    def add_modal_listener(self, listener: Callable[[bool], None]) -> None:
        self._modal_listeners.append(listener)

    def open_modal(self) -> None:
        self._set_modal(True)

    def close_modal(self) -> None:
        self._set_modal(False)

    def _set_modal(self, value: bool) -> None:
        if self._modal_open == value:
            return
        self._modal_open = value
        for listener in list(self._modal_listeners):
            listener(value)

    # ---------- Loading ----------
    async def _fetch(self, session: BoardSession, updated_since: Optional[int]) -> LoadResult:
        result = LoadResult()
        offset = 0
        while True:
            page = await self.transport.list_notes(session.board_id, self.page_limit, offset, updated_since)
            if page.server_time is not None:
                result.server_time = max(result.server_time or 0, page.server_time)
            result.deleted.extend(page.deleted)
            if not page.notes:
                break

            for remote in page.notes:
                note = await self._decode(session, remote.id, remote.payload, remote.created_at, remote.updated_at)
                if note is None:
                    continue
                if note.payload.done:
                    # finished notes leave the board like deletes do
                    result.deleted.append(note.id)
                    continue
                if note.payload.draft:
                    if note.payload.is_empty:
                        await self._discard_draft(session, note.id)
                        result.deleted.append(note.id)
                        continue
                    note.payload.draft = False
                result.notes.append(note)

            offset += len(page.notes)
            if len(page.notes) < self.page_limit:
                break
        return result

    async def _decode(
        self, session: BoardSession, note_id: str, envelope: str, created_at: Any, updated_at: Any
    ) -> Optional[Note]:
        try:
            raw = crypto.decrypt_payload(session.key, envelope)
        except CryptoFailure as e:
            log.warning("Failed to decrypt note", extra={"event": "note_decrypt_failed", "extra_data": {"note_id": note_id, "error": str(e)}})
            return None

        payload = NotePayload.from_dict(raw)
        return Note.build(note_id, payload, created_at, updated_at)

    async def _discard_draft(self, session: BoardSession, note_id: str) -> None:
        try:
            await self.transport.delete_note(session.board_id, note_id)
        except NoteNotFound:
            pass
        except BoardError as e:
            log.warning("Failed to delete draft note", extra={"event": "draft_cleanup_failed", "extra_data": {"note_id": note_id, "error": str(e)}})
            return
        log.info("Abandoned draft removed", extra={"event": "draft_abandoned", "extra_data": {"note_id": note_id}})

    def _apply(self, session: BoardSession, result: LoadResult, reset_cache: bool) -> List[Note]:
        if reset_cache:
            session.cache.clear()
            session.stack.reset()
        else:
            for note_id in result.deleted:
                session.cache.pop(note_id, None)
        for note in result.notes:
            session.cache[note.id] = note
        if result.server_time is not None:
            session.last_server_time = max(session.last_server_time or 0, result.server_time)
        return session.stack.apply(session.cache.values())

    async def load_notes(self, reset_cache: bool = True, updated_since: Optional[int] = None) -> List[Note]:
        """Full load (``reset_cache``) or delta merge since ``updated_since``; returns notes in stacking order."""
        session = self._require_session()
        if not reset_cache and updated_since is None:
            updated_since = session.last_server_time
        async with self._load_lock:
            self.state = SyncState.SYNCING
            try:
                result = await self._fetch(session, None if reset_cache else updated_since)
                if self.session is not session:
                    raise SessionClosed("Board changed during load")
                return self._apply(session, result, reset_cache)
            finally:
                if self.session is session:
                    self.state = SyncState.IDLE

    async def refresh(self, full: bool = False) -> Optional[List[Note]]:
        """Background poll. Returns ``None`` when skipped or when a local edit made the result stale."""
        session = self.session
        if session is None or self.state in (SyncState.UNINITIALIZED, SyncState.CLOSED):
            return None
        if self.is_refreshing or self.saves_pending or self.interacting or self._modal_open:
            return None

        started_generation = self._local_generation
        reset_cache = full or session.last_server_time is None
        self.is_refreshing = True
        try:
            async with self._load_lock:
                self.state = SyncState.SYNCING
                try:
                    result = await self._fetch(session, None if reset_cache else session.last_server_time)
                finally:
                    if self.session is session:
                        self.state = SyncState.IDLE
                if self.session is not session:
                    return None
                if self._local_generation != started_generation:
                    log.info("Refresh discarded after local change", extra={"event": "refresh_discarded", "extra_data": {"board_id": session.board_id}})
                    return None
                return self._apply(session, result, reset_cache)
        finally:
            self.is_refreshing = False

    # ---------- Mutations ----------
    async def create_note(
        self,
        note_type: NoteType = NoteType.TEXT,
        data: Optional[Dict[str, Any]] = None,
        color: Optional[str] = None,
        position: Optional[Tuple[float, float]] = None,
        draft: bool = False,
    ) -> Note:
        session = self._require_session()
        self.mark_local_change()
        payload = create_payload(note_type, data, color, position, draft=draft)
        envelope = crypto.encrypt_payload(session.key, payload.to_dict())

        self._saves_in_flight += 1
        try:
            note_id = await self.transport.create_note(session.board_id, envelope)
        finally:
            self._saves_in_flight = max(0, self._saves_in_flight - 1)

        note = Note.build(note_id, payload, payload.created_at, payload.created_at)
        note.stack_index = session.stack.next_index()
        session.cache[note_id] = note
        log.info("Note created", extra={"event": "note_created", "extra_data": {"note_id": note_id, "type": payload.type.value}})
        return note

    async def update_note(self, note_id: str, updates: Dict[str, Any]) -> Note:
        session = self._require_session()
        note = session.cache.get(note_id)
        if note is None:
            raise NoteNotCached(f"Note not found locally: {note_id}")

        self.mark_local_change()
        note.updated_at = self.clock()
        note.payload = note.payload.merged(updates)
        envelope = crypto.encrypt_payload(session.key, note.payload.to_dict())

        self._saves_in_flight += 1
        try:
            await self.transport.update_note(session.board_id, note_id, envelope)
        finally:
            self._saves_in_flight = max(0, self._saves_in_flight - 1)
        log.debug("Note updated", extra={"event": "note_updated", "extra_data": {"note_id": note_id, "fields": sorted(updates)}})
        return note

    async def delete_note(self, note_id: str, missing_ok: bool = False) -> None:
        session = self._require_session()
        self.mark_local_change()
        self._drop_pending(note_id)
        self._saves_in_flight += 1
        try:
            await self.transport.delete_note(session.board_id, note_id)
        except NoteNotFound:
            if not missing_ok:
                raise
        finally:
            self._saves_in_flight = max(0, self._saves_in_flight - 1)
            session.cache.pop(note_id, None)
        log.info("Note deleted", extra={"event": "note_deleted", "extra_data": {"note_id": note_id}})

    # ---------- Debounced saves ----------
    def queue_update(self, note_id: str, updates: Dict[str, Any]) -> None:
        """Coalesce rapid partial updates (drag ticks, rotation) into one write per quiet period."""
        self._require_session()
        self.mark_local_change()
        pending = self._pending_updates.setdefault(note_id, {})
        pending.update(updates)

        timer = self._save_timers.pop(note_id, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._save_timers[note_id] = loop.call_later(self.save_debounce_s, self._start_flush, note_id)

    def _start_flush(self, note_id: str) -> None:
        self._save_timers.pop(note_id, None)
        updates = self._pending_updates.pop(note_id, None)
        if not updates:
            return
        task = asyncio.ensure_future(self._flush_one(note_id, updates))
        self._flush_tasks[note_id] = task
        task.add_done_callback(lambda t, nid=note_id: self._flush_done(nid, t))

    def _flush_done(self, note_id: str, task: asyncio.Task) -> None:
        if self._flush_tasks.get(note_id) is task:
            del self._flush_tasks[note_id]

    async def _flush_one(self, note_id: str, updates: Dict[str, Any]) -> None:
        try:
            await self.update_note(note_id, updates)
        except BoardError as e:
            if self.on_save_error is not None:
                self.on_save_error(note_id, e)
            else:
                log.error("Failed to save note", extra={"event": "save_failed", "extra_data": {"note_id": note_id, "error": str(e)}})

    async def flush_updates(self) -> None:
        """Send every debounced update now and wait for in-flight flushes."""
        for note_id in list(self._save_timers):
            timer = self._save_timers.get(note_id)
            if timer is not None:
                timer.cancel()
            self._start_flush(note_id)
        tasks = list(self._flush_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for note_id, task in list(self._flush_tasks.items()):
            if task.done():
                del self._flush_tasks[note_id]

    def _drop_pending(self, note_id: str) -> None:
        timer = self._save_timers.pop(note_id, None)
        if timer is not None:
            timer.cancel()
        self._pending_updates.pop(note_id, None)

    def _cancel_pending_saves(self) -> None:
        for timer in self._save_timers.values():
            timer.cancel()
        self._save_timers.clear()
        self._pending_updates.clear()
        for task in self._flush_tasks.values():
            task.cancel()
        self._flush_tasks.clear()


async def open_board(passphrase: str, transport: Transport, **engine_options: Any) -> SyncEngine:
    """Derive the board keys from ``passphrase`` and run the first full load."""
    board_id, key = await crypto.derive_board_keys(passphrase)
    engine = SyncEngine(transport, **engine_options)
    engine.init(board_id, key)
    await engine.load_notes(reset_cache=True)
    return engine
