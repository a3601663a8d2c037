from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from .config import ClientSettings
from .errors import BoardError
from .notes import Note
from .sync import SyncEngine

log = logging.getLogger("cryptboard.poller")


class RefreshPoller:
    """Runs ``SyncEngine.refresh`` on an interval.

    Polling pauses while the engine reports an open edit modal and picks up
    again when it closes.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_s: float = 5.0,
        on_refresh: Optional[Callable[[List[Note]], None]] = None,
    ) -> None:
        self.engine = engine
        self.interval_s = interval_s
        self.on_refresh = on_refresh
        self._task: Optional[asyncio.Task] = None
        self._paused = False
        engine.add_modal_listener(self._on_modal)

    @classmethod
    def from_settings(
        cls,
        engine: SyncEngine,
        settings: ClientSettings,
        on_refresh: Optional[Callable[[List[Note]], None]] = None,
    ) -> "RefreshPoller":
        return cls(engine, interval_s=settings.poll_interval_s, on_refresh=on_refresh)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def paused(self) -> bool:
        return self._paused

    def start(self) -> None:
        self.stop()
        self._paused = False
        self._task = asyncio.ensure_future(self._loop())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def _on_modal(self, is_open: bool) -> None:
        if is_open:
            self.pause()
        else:
            self.resume()

    async def poll_once(self) -> Optional[List[Note]]:
        if self._paused:
            return None
        try:
            notes = await self.engine.refresh()
        except BoardError as e:
            log.error("Failed to refresh notes", extra={"event": "refresh_failed", "extra_data": {"board_id": self.engine.board_id, "error": str(e)}})
            return None
        if notes is not None and self.on_refresh is not None:
            self.on_refresh(notes)
        return notes

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            await self.poll_once()

    async def __aenter__(self) -> "RefreshPoller":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()
