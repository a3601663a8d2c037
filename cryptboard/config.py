from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict

# ---------- Client config ----------
DEFAULT_URL = "http://localhost:3000"
PAGE_LIMIT = 100


@dataclass
class ClientSettings:
    base_url: str = DEFAULT_URL
    timeout_s: float = 15.0
    poll_interval_s: float = 5.0
    save_debounce_s: float = 0.5
    page_limit: int = PAGE_LIMIT

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(
            base_url=os.environ.get("CRYPTBOARD_URL", DEFAULT_URL).rstrip("/"),
            timeout_s=float(os.environ.get("CRYPTBOARD_TIMEOUT", "15")),
            poll_interval_s=float(os.environ.get("CRYPTBOARD_POLL_INTERVAL", "5")),
            save_debounce_s=float(os.environ.get("CRYPTBOARD_SAVE_DEBOUNCE", "0.5")),
            page_limit=int(os.environ.get("CRYPTBOARD_PAGE_LIMIT", str(PAGE_LIMIT))),
        )

    def engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``SyncEngine`` / ``open_board``."""
        return {"page_limit": self.page_limit, "save_debounce_s": self.save_debounce_s}
