"""Seed a board with lots of notes for manual and load testing.

Usage:
    cryptboard-seed --room "loadtest" --count 250
    cryptboard-seed --room "loadtest" --mode update   # rewrite every note, forces a large delta
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
from typing import List, Optional

from .config import ClientSettings
from .errors import BoardError, CapacityFailure
from .logs import setup_logging
from .notes import BOARD_HEIGHT, BOARD_WIDTH, COLORS, NOTE_SIZE, NoteType
from .sync import SyncEngine, open_board
from .transport import HttpTransport

log = logging.getLogger("cryptboard.seed")

WORDS = ["hello", "todo", "remember", "milk", "ideas", "call mom", "ship it", "bean", "fun zone", "later"]


def random_text(rng: random.Random) -> str:
    return " ".join(rng.choice(WORDS) for _ in range(rng.randint(1, 5)))


async def seed_create(engine: SyncEngine, count: int, concurrency: int, rng: random.Random) -> int:
    sem = asyncio.Semaphore(max(1, concurrency))
    created = 0

    async def one(i: int) -> None:
        nonlocal created
        position = (
            rng.uniform(0, BOARD_WIDTH - NOTE_SIZE),
            rng.uniform(0, BOARD_HEIGHT - NOTE_SIZE),
        )
        async with sem:
            await engine.create_note(NoteType.TEXT, {"text": f"#{i} {random_text(rng)}"}, rng.choice(COLORS), position)
        created += 1

    results = await asyncio.gather(*(one(i) for i in range(count)), return_exceptions=True)
    for err in results:
        if isinstance(err, CapacityFailure):
            log.warning("Board is full, stopping", extra={"event": "seed_capacity", "extra_data": {"created": created}})
            break
        if isinstance(err, BaseException):
            raise err
    return created


async def seed_update(engine: SyncEngine, concurrency: int, rng: random.Random) -> int:
    sem = asyncio.Semaphore(max(1, concurrency))

    async def one(note_id: str) -> None:
        async with sem:
            await engine.update_note(note_id, {
                "x": rng.uniform(0, BOARD_WIDTH - NOTE_SIZE),
                "y": rng.uniform(0, BOARD_HEIGHT - NOTE_SIZE),
            })

    ids = [note.id for note in engine.notes()]
    await asyncio.gather(*(one(note_id) for note_id in ids))
    return len(ids)


async def run(args: argparse.Namespace) -> int:
    settings = ClientSettings.from_env()
    rng = random.Random(args.seed)
    async with HttpTransport(args.url or settings.base_url, settings.timeout_s) as transport:
        engine = await open_board(args.room, transport, **settings.engine_options())
        log.info("Board opened", extra={"event": "seed_board_opened", "extra_data": {"board_id": engine.board_id, "notes": len(engine)}})
        if args.mode == "update":
            count = await seed_update(engine, args.concurrency, rng)
        else:
            count = await seed_create(engine, args.count, args.concurrency, rng)
        await engine.close()
    log.info("Seeding finished", extra={"event": "seed_done", "extra_data": {"mode": args.mode, "count": count}})
    return count


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cryptboard-seed", description="Fill a board with encrypted test notes.")
    p.add_argument("--room", required=True, help="Board passphrase")
    p.add_argument("--count", type=int, default=50, help="Notes to create (create mode)")
    p.add_argument("--mode", choices=["create", "update"], default="create")
    p.add_argument("--url", default=None, help="Relay base URL (default: $CRYPTBOARD_URL)")
    p.add_argument("--concurrency", type=int, default=4)
    p.add_argument("--seed", type=int, default=None, help="Random seed for reproducible boards")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging()
    args = build_parser().parse_args(argv)
    try:
        asyncio.run(run(args))
    except BoardError as e:
        log.error("Seeding failed", extra={"event": "seed_failed", "extra_data": {"kind": e.kind, "error": str(e)}})
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
