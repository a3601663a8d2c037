from __future__ import annotations

import fcntl
import json
import logging
import math
import os
import re
import secrets
import time
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from .logs import setup_logging

log = logging.getLogger("cryptboard.server")

app = Flask(__name__)

# ---------- Config ----------
app.config.update(
    DATA_DIR=os.environ.get("DATA_DIR", "/data"),
    MAX_NOTES_PER_BOARD=int(os.environ.get("MAX_NOTES_PER_BOARD", "300")),
    MAX_PAYLOAD_CHARS=int(os.environ.get("MAX_PAYLOAD_CHARS", "200000")),
    MAX_STORAGE_BYTES=int(os.environ.get("MAX_STORAGE_BYTES", str(500 * 1024 * 1024))),
    MAX_PAGE_LIMIT=int(os.environ.get("MAX_PAGE_LIMIT", "200")),
    DEFAULT_PAGE_LIMIT=100,
    DELETED_RETENTION_MS=int(os.environ.get("DELETED_RETENTION_MS", str(24 * 60 * 60 * 1000))),
    PURGE_INTERVAL_MS=60 * 1000,
    MAX_CONTENT_LENGTH=512 * 1024,
)

BOARD_ID_RE = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)
NOTE_ID_RE = re.compile(r"^[a-f0-9-]{8,64}$", re.IGNORECASE)

_last_purge_at = 0


def now_ms() -> int:
    return int(time.time() * 1000)


def data_dir() -> Path:
    return Path(app.config["DATA_DIR"])


def boards_dir() -> Path:
    return data_dir() / "boards"


def ensure_dirs() -> None:
    boards_dir().mkdir(parents=True, exist_ok=True)


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = None
    try:
        tmp = NamedTemporaryFile("w", encoding="utf-8", dir=str(path.parent), delete=False)
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp.close()
        os.replace(tmp.name, path)
    finally:
        if tmp is not None and os.path.exists(tmp.name):
            try:
                os.unlink(tmp.name)
            except OSError:
                pass


def load_json(p: Path) -> Dict[str, Any]:
    return json.loads(p.read_text(encoding="utf-8"))


def save_json(p: Path, obj: Dict[str, Any]) -> None:
    atomic_write_text(p, json.dumps(obj, ensure_ascii=False) + "\n")


def gen_id() -> str:
    return secrets.token_hex(16)  # 32 hex chars


class _store_lock:
    """Context manager for file-based locking around board storage."""
    def __enter__(self):
        ensure_dirs()
        self._f = open(data_dir() / ".store.lock", "w")
        fcntl.flock(self._f.fileno(), fcntl.LOCK_EX)
        return self

    def __exit__(self, *exc):
        fcntl.flock(self._f.fileno(), fcntl.LOCK_UN)
        self._f.close()
        return False


# ---------- Board storage ----------
def board_path(board_id: str) -> Path:
    return boards_dir() / board_id


def note_path(board_id: str, note_id: str) -> Path:
    return board_path(board_id) / "notes" / f"{note_id}.json"


def ensure_board(board_id: str) -> None:
    meta = board_path(board_id) / "board.json"
    if not meta.exists():
        save_json(meta, {"id": board_id, "created_at": now_ms()})
        (board_path(board_id) / "notes").mkdir(parents=True, exist_ok=True)
        log.info("Board created", extra={"event": "board_created", "extra_data": {"board_id": board_id}})


def load_board_notes(board_id: str) -> List[Dict[str, Any]]:
    notes_dir = board_path(board_id) / "notes"
    if not notes_dir.exists():
        return []
    records = []
    for p in notes_dir.glob("*.json"):
        try:
            records.append(load_json(p))
        except (OSError, ValueError):
            log.warning("Skipping unreadable note file", extra={"event": "note_file_corrupt", "extra_data": {"path": p.name}})
    records.sort(key=lambda r: (r.get("created_at", 0), r.get("id", "")))
    return records


def load_note(board_id: str, note_id: str) -> Optional[Dict[str, Any]]:
    p = note_path(board_id, note_id)
    if not p.exists():
        return None
    return load_json(p)


def count_live_notes(board_id: str) -> int:
    return sum(1 for r in load_board_notes(board_id) if not r.get("deleted"))


def storage_bytes() -> int:
    root = boards_dir()
    if not root.exists():
        return 0
    return sum(p.stat().st_size for p in root.rglob("*.json"))


def purge_deleted(cutoff_ms: int) -> int:
    """Drop soft-deleted notes whose tombstone is older than ``cutoff_ms``."""
    removed = 0
    root = boards_dir()
    if not root.exists():
        return 0
    for p in root.glob("*/notes/*.json"):
        try:
            record = load_json(p)
        except (OSError, ValueError):
            continue
        if record.get("deleted") and record.get("updated_at", 0) < cutoff_ms:
            p.unlink()
            removed += 1
    if removed:
        log.info("Purged deleted notes", extra={"event": "deleted_purged", "extra_data": {"count": removed}})
    return removed


def _maybe_purge() -> None:
    global _last_purge_at
    now = now_ms()
    if now - _last_purge_at < app.config["PURGE_INTERVAL_MS"]:
        return
    _last_purge_at = now
    purge_deleted(now - app.config["DELETED_RETENTION_MS"])


# ---------- Validation ----------
class RequestInvalid(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def _body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise RequestInvalid("Invalid JSON")
    return body


def valid_board_id(value: Any) -> str:
    if not isinstance(value, str) or not BOARD_ID_RE.match(value):
        raise RequestInvalid("Invalid board_id")
    return value.lower()


def valid_note_id(value: Any) -> str:
    if not isinstance(value, str) or not NOTE_ID_RE.match(value):
        raise RequestInvalid("Invalid note id")
    return value.lower()


def valid_payload(value: Any) -> str:
    if not isinstance(value, str) or len(value) > app.config["MAX_PAYLOAD_CHARS"]:
        raise RequestInvalid("Invalid payload")
    try:
        parsed = json.loads(value)
    except ValueError:
        raise RequestInvalid("Invalid payload")
    if not isinstance(parsed, dict):
        raise RequestInvalid("Invalid payload")
    iv, ct = parsed.get("iv"), parsed.get("ct")
    if not (isinstance(iv, str) and iv and isinstance(ct, str) and ct):
        raise RequestInvalid("Invalid payload")
    return value


def _parse_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def valid_paging(body: Dict[str, Any]) -> Tuple[int, int, Optional[float]]:
    limit = app.config["DEFAULT_PAGE_LIMIT"]
    if body.get("limit") is not None:
        limit = _parse_int(body["limit"])
        if limit is None or limit < 1 or limit > app.config["MAX_PAGE_LIMIT"]:
            raise RequestInvalid("Invalid limit")
    offset = 0
    if body.get("offset") is not None:
        offset = _parse_int(body["offset"])
        if offset is None or offset < 0:
            raise RequestInvalid("Invalid offset")
    since = None
    if body.get("updated_since") is not None:
        raw = body["updated_since"]
        try:
            since = float(raw) if not isinstance(raw, bool) else None
        except (TypeError, ValueError):
            since = None
        if since is None or not math.isfinite(since):
            raise RequestInvalid("Invalid updated_since")
    return limit, offset, since


@app.errorhandler(RequestInvalid)
def _request_invalid(e: RequestInvalid):
    return jsonify({"error": e.message}), e.status


@app.errorhandler(413)
def _too_large(e):
    return jsonify({"error": "Payload too large"}), 413


@app.errorhandler(Exception)
def _server_error(e: Exception):
    if isinstance(e, HTTPException):
        return jsonify({"error": e.description}), e.code
    log.error("Unhandled error", exc_info=e, extra={"event": "server_error", "extra_data": {"path": request.path}})
    return jsonify({"error": "Server error"}), 500


# ---------- Health ----------
@app.route("/health")
def health():
    ensure_dirs()
    return {"status": "ok"}


# ---------- API ----------
@app.route("/api/notes/list", methods=["POST"])
def api_list_notes():
    body = _body()
    board_id = valid_board_id(body.get("board_id"))
    limit, offset, since = valid_paging(body)

    with _store_lock():
        _maybe_purge()
        server_time = now_ms()
        records = load_board_notes(board_id)

    if since is None:
        live = [r for r in records if not r.get("deleted")]
        deleted: List[str] = []
    else:
        live = [r for r in records if not r.get("deleted") and r.get("updated_at", 0) >= since]
        deleted = [r["id"] for r in records if r.get("deleted") and r.get("updated_at", 0) >= since]

    page = live[offset:offset + limit]
    notes = [
        {"id": r["id"], "payload": r["payload"], "created_at": r["created_at"], "updated_at": r["updated_at"]}
        for r in page
    ]
    # Tombstones ride on the first page only.
    return jsonify({"notes": notes, "deleted": deleted if offset == 0 else [], "server_time": server_time})


@app.route("/api/notes/create", methods=["POST"])
def api_create_note():
    body = _body()
    board_id = valid_board_id(body.get("board_id"))
    payload = valid_payload(body.get("payload"))

    with _store_lock():
        ensure_board(board_id)
        if count_live_notes(board_id) >= app.config["MAX_NOTES_PER_BOARD"]:
            return jsonify({"error": "Note limit exceeded"}), 409
        if storage_bytes() + len(payload) > app.config["MAX_STORAGE_BYTES"]:
            log.warning("Storage cap reached", extra={"event": "storage_limit", "extra_data": {"board_id": board_id}})
            return jsonify({"error": "Storage limit exceeded"}), 507

        for _ in range(20):
            note_id = gen_id()
            if not note_path(board_id, note_id).exists():
                break
        else:
            return jsonify({"error": "Failed to allocate note id"}), 500

        now = now_ms()
        save_json(note_path(board_id, note_id), {
            "id": note_id,
            "board_id": board_id,
            "payload": payload,
            "created_at": now,
            "updated_at": now,
            "deleted": False,
        })
    log.info("Note created", extra={"event": "note_created", "extra_data": {"board_id": board_id, "note_id": note_id, "size": len(payload)}})
    return jsonify({"id": note_id})


@app.route("/api/notes/update", methods=["POST"])
def api_update_note():
    body = _body()
    board_id = valid_board_id(body.get("board_id"))
    note_id = valid_note_id(body.get("id"))
    payload = body.get("payload")
    if payload is not None:
        payload = valid_payload(payload)
    deleted = body.get("deleted")
    if deleted is not None and not isinstance(deleted, bool):
        raise RequestInvalid("Invalid deleted")

    with _store_lock():
        record = load_note(board_id, note_id)
        if record is None:
            return jsonify({"error": "Note not found"}), 404
        if payload is not None and len(payload) > len(record.get("payload", "")):
            if storage_bytes() + len(payload) - len(record.get("payload", "")) > app.config["MAX_STORAGE_BYTES"]:
                return jsonify({"error": "Storage limit exceeded"}), 507
        record["updated_at"] = now_ms()
        if deleted is not None:
            record["deleted"] = deleted
        if payload is not None:
            record["payload"] = payload
        save_json(note_path(board_id, note_id), record)
    log.info("Note updated", extra={"event": "note_updated", "extra_data": {"board_id": board_id, "note_id": note_id, "deleted": record["deleted"]}})
    return jsonify({"ok": True})


@app.route("/api/notes/delete", methods=["POST"])
def api_delete_note():
    body = _body()
    board_id = valid_board_id(body.get("board_id"))
    note_id = valid_note_id(body.get("id"))

    with _store_lock():
        record = load_note(board_id, note_id)
        if record is None:
            return jsonify({"error": "Note not found"}), 404
        if record.get("deleted"):
            return jsonify({"ok": True, "already_deleted": True})
        record["deleted"] = True
        record["updated_at"] = now_ms()
        save_json(note_path(board_id, note_id), record)
    log.info("Note deleted", extra={"event": "note_deleted", "extra_data": {"board_id": board_id, "note_id": note_id}})
    return jsonify({"ok": True})


def main() -> None:
    setup_logging()
    ensure_dirs()
    port = int(os.environ.get("PORT", "3000"))
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
