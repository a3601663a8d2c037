"""Plaintext note model: the payload variant, defaults and the load sanitizer."""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# ---------- Board geometry ----------
NOTE_SIZE = 180
BOARD_WIDTH = 2400
BOARD_HEIGHT = 1600

COLORS = ("yellow", "pink", "blue", "green", "orange", "lavender")
COLOR_VARIANTS = ("", "v1", "v2")


def now_ms() -> int:
    return int(time.time() * 1000)


class NoteType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOODLE = "doodle"

    @classmethod
    def parse(cls, value: Any) -> "NoteType":
        try:
            return cls(value)
        except ValueError:
            return cls.TEXT

    @property
    def content_field(self) -> str:
        return _CONTENT_FIELDS[self]


_CONTENT_FIELDS = {
    NoteType.TEXT: "text",
    NoteType.IMAGE: "img",
    NoteType.DOODLE: "doodle",
}

# Keys owned by NotePayload itself; anything else rides along in `extra`.
_KNOWN_KEYS = {"type", "x", "y", "rot", "color", "created_at", "draft", "done", "variant", "text", "img", "doodle"}


def clamp_position(x: float, y: float) -> Tuple[float, float]:
    return (
        max(0, min(BOARD_WIDTH - NOTE_SIZE, x)),
        max(0, min(BOARD_HEIGHT - NOTE_SIZE, y)),
    )


def board_center() -> Tuple[float, float]:
    return (BOARD_WIDTH / 2 - NOTE_SIZE / 2, BOARD_HEIGHT / 2 - NOTE_SIZE / 2)


def random_rotation() -> float:
    return (random.random() - 0.5) * 8


def random_color() -> str:
    return random.choice(COLORS)


def random_position() -> Tuple[float, float]:
    cx, cy = board_center()
    return (cx + (random.random() - 0.5) * 400, cy + (random.random() - 0.5) * 300)


def variant_from_id(note_id: Any) -> str:
    # 32-bit rolling hash, same spread as the browser client
    h = 0
    for ch in str(note_id or ""):
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return COLOR_VARIANTS[abs(h) % len(COLOR_VARIANTS)]


def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


@dataclass
class NotePayload:
    type: NoteType
    content: Any
    x: float
    y: float
    rot: float = 0.0
    color: str = COLORS[0]
    created_at: Optional[int] = None
    draft: bool = False
    done: bool = False
    variant: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        if self.type is NoteType.TEXT:
            return not str(self.content or "").strip()
        return not self.content

    @classmethod
    def from_dict(cls, data: Any) -> "NotePayload":
        """Build a payload from decrypted JSON, filling defaults for anything missing or broken."""
        if not isinstance(data, dict):
            data = {}
        note_type = NoteType.parse(data.get("type"))

        cx, cy = board_center()
        x = _finite(data.get("x"))
        y = _finite(data.get("y"))
        x, y = clamp_position(cx if x is None else x, cy if y is None else y)

        rot = _finite(data.get("rot"))
        color = data.get("color")
        if not isinstance(color, str) or not color:
            color = COLORS[0]

        created_at = _finite(data.get("created_at"))
        variant = data.get("variant")
        if variant not in COLOR_VARIANTS:
            variant = None

        if note_type is NoteType.TEXT:
            content = data.get("text")
            if content is None:
                content = ""
            elif not isinstance(content, str):
                content = str(content)
        else:
            content = data.get(note_type.content_field)

        return cls(
            type=note_type,
            content=content,
            x=x,
            y=y,
            rot=0.0 if rot is None else float(rot),
            color=color,
            created_at=None if created_at is None else int(created_at),
            draft=bool(data.get("draft", False)),
            done=bool(data.get("done", False)),
            variant=variant,
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        out.update({
            "type": self.type.value,
            "x": self.x,
            "y": self.y,
            "rot": self.rot,
            "color": self.color,
            "created_at": self.created_at,
            "draft": self.draft,
            self.type.content_field: self.content,
        })
        if self.done:
            out["done"] = True
        if self.variant is not None:
            out["variant"] = self.variant
        return out

    def merged(self, updates: Dict[str, Any]) -> "NotePayload":
        data = self.to_dict()
        data.update(updates)
        return NotePayload.from_dict(data)


def create_payload(
    note_type: NoteType,
    data: Optional[Dict[str, Any]] = None,
    color: Optional[str] = None,
    position: Optional[Tuple[float, float]] = None,
    draft: bool = False,
) -> NotePayload:
    note_type = NoteType(note_type)
    data = data or {}
    x, y = random_position()
    if position is not None:
        px, py = _finite(position[0]), _finite(position[1])
        if px is not None and py is not None:
            x, y = px, py
    x, y = clamp_position(x, y)

    if note_type is NoteType.TEXT:
        content = data.get("text") or ""
    else:
        content = data.get(note_type.content_field)

    return NotePayload(
        type=note_type,
        content=content,
        x=x,
        y=y,
        rot=random_rotation(),
        color=color or random_color(),
        created_at=now_ms(),
        draft=bool(draft),
    )


@dataclass
class Note:
    id: str
    payload: NotePayload
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    stack_index: int = 0
    variant: str = ""

    @classmethod
    def build(cls, note_id: str, payload: NotePayload, created_at: Any = None, updated_at: Any = None) -> "Note":
        created = _finite(created_at)
        if created is None:
            created = payload.created_at
        updated = _finite(updated_at)
        if updated is None:
            updated = created
        return cls(
            id=note_id,
            payload=payload,
            created_at=None if created is None else int(created),
            updated_at=None if updated is None else int(updated),
            variant=payload.variant if payload.variant is not None else variant_from_id(note_id),
        )
