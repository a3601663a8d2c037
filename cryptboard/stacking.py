from __future__ import annotations

from typing import Iterable, List, Tuple

from .notes import Note, now_ms


def stack_time(note: Note) -> int:
    for value in (note.updated_at, note.created_at, note.payload.created_at):
        if value is not None:
            return value
    return 0


def stack_key(note: Note) -> Tuple[int, str]:
    return (stack_time(note), note.id or "")


def compare(a: Note, b: Note) -> int:
    ka, kb = stack_key(a), stack_key(b)
    return (ka > kb) - (ka < kb)


class StackOrder:
    """Hands out z-order indices for one board session.

    ``apply`` re-derives the order from timestamps and ids only, so the
    result never depends on input order. ``touch`` lifts a single note above
    everything without re-sorting the rest.
    """

    def __init__(self) -> None:
        self.counter = 0

    def reset(self) -> None:
        self.counter = 0

    def apply(self, notes: Iterable[Note]) -> List[Note]:
        ordered = sorted(notes, key=stack_key)
        for position, note in enumerate(ordered):
            note.stack_index = position + 1
        self.counter = max(self.counter, len(ordered))
        return ordered

    def next_index(self) -> int:
        self.counter += 1
        return self.counter

    def touch(self, note: Note) -> int:
        note.updated_at = now_ms()
        note.stack_index = self.next_index()
        return note.stack_index
