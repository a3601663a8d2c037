import asyncio
import json
import logging

import pytest

from cryptboard import crypto, server
from cryptboard.errors import (
    NoteLimitExceeded,
    NoteNotCached,
    NoteNotFound,
    SessionClosed,
    StorageLimitExceeded,
    ValidationFailure,
)
from cryptboard.notes import NoteType
from cryptboard.sync import SyncEngine, SyncState

from conftest import GatedTransport, run


def _engine(transport, board, **kwargs):
    board_id, key = board
    engine = SyncEngine(transport, **kwargs)
    engine.init(board_id, key)
    return engine


def _stored_envelope(client, board_id, note_id):
    listed = client.post("/api/notes/list", json={"board_id": board_id}).get_json()
    return next(n["payload"] for n in listed["notes"] if n["id"] == note_id)


def _snapshot(engine):
    return {n.id: (n.payload.to_dict(), n.created_at, n.updated_at, n.stack_index) for n in engine.notes()}


def test_operations_require_init(transport):
    engine = SyncEngine(transport)
    assert engine.state is SyncState.UNINITIALIZED
    with pytest.raises(SessionClosed):
        run(engine.load_notes())


def test_create_then_decrypt_stored_envelope(transport, client, fun_zone):
    board_id, key = fun_zone

    async def scenario():
        engine = _engine(transport, fun_zone)
        await engine.load_notes()
        return await engine.create_note(NoteType.TEXT, {"text": "hi"})

    note = run(scenario())
    stored = crypto.decrypt_payload(key, _stored_envelope(client, board_id, note.id))
    assert stored == {
        "type": "text",
        "text": "hi",
        "x": note.payload.x,
        "y": note.payload.y,
        "rot": note.payload.rot,
        "color": note.payload.color,
        "created_at": note.payload.created_at,
        "draft": False,
    }
    assert note.created_at == note.updated_at == note.payload.created_at


def test_server_never_sees_plaintext(transport, client, fun_zone):
    async def scenario():
        engine = _engine(transport, fun_zone)
        return await engine.create_note(NoteType.TEXT, {"text": "very secret words"})

    note = run(scenario())
    stored = _stored_envelope(client, fun_zone[0], note.id)
    assert "very secret words" not in stored
    assert set(json.loads(stored)) == {"iv", "ct"}


def test_full_load_round_trip_and_stack_order(transport, fun_zone):
    async def scenario():
        writer = _engine(transport, fun_zone)
        created = []
        for i in range(3):
            created.append(await writer.create_note(NoteType.TEXT, {"text": f"n{i}"}))
            await asyncio.sleep(0.002)
        reader = _engine(transport, fun_zone)
        loaded = await reader.load_notes()
        return created, loaded, reader

    created, loaded, reader = run(scenario())
    assert [n.payload.content for n in loaded] == ["n0", "n1", "n2"]
    assert [n.stack_index for n in loaded] == [1, 2, 3]
    assert reader.watermark is not None
    assert reader.get_note(created[1].id).payload.content == "n1"
    assert reader.touch(created[0].id) == 4


def test_full_load_pages_until_short_page(transport, fun_zone):
    async def scenario():
        writer = _engine(transport, fun_zone)
        for i in range(5):
            await writer.create_note(NoteType.TEXT, {"text": str(i)})
        reader = _engine(transport, fun_zone, page_limit=2)
        transport.calls.clear()
        return await reader.load_notes()

    loaded = run(scenario())
    assert len(loaded) == 5
    assert transport.calls.count("/api/notes/list") == 3


def test_undecryptable_notes_are_skipped(transport, fun_zone, wrong_key):
    board_id, _ = fun_zone

    async def scenario():
        good = _engine(transport, fun_zone)
        await good.create_note(NoteType.TEXT, {"text": "readable"})
        intruder = _engine(transport, (board_id, wrong_key))
        await intruder.create_note(NoteType.TEXT, {"text": "other key"})
        await transport.create_note(board_id, json.dumps({"iv": "AAAAAAAAAAAAAAAA", "ct": "garbage"}))
        return await good.load_notes(), await intruder.load_notes()

    seen_by_good, seen_by_intruder = run(scenario())
    assert [n.payload.content for n in seen_by_good] == ["readable"]
    assert [n.payload.content for n in seen_by_intruder] == ["other key"]


def test_empty_draft_is_deleted_and_hidden(transport, client, fun_zone):
    board_id, _ = fun_zone

    async def scenario():
        writer = _engine(transport, fun_zone)
        draft = await writer.create_note(NoteType.TEXT, {"text": ""}, draft=True)
        kept = await writer.create_note(NoteType.TEXT, {"text": "typed"}, draft=True)
        reader = _engine(transport, fun_zone)
        return draft, kept, await reader.load_notes()

    draft, kept, loaded = run(scenario())
    assert [n.id for n in loaded] == [kept.id]
    assert loaded[0].payload.draft is False
    listed = client.post("/api/notes/list", json={"board_id": board_id}).get_json()
    assert draft.id not in {n["id"] for n in listed["notes"]}


def test_second_cleanup_of_same_draft_is_a_no_op(transport, fun_zone, caplog):
    board_id, _ = fun_zone
    gated = GatedTransport(transport)

    async def scenario():
        writer = _engine(transport, fun_zone)
        draft = await writer.create_note(NoteType.TEXT, {"text": ""}, draft=True)

        slow = _engine(gated, fun_zone)
        gated.hold()
        load = asyncio.ensure_future(slow.load_notes())
        await gated.entered.wait()

        fast = _engine(transport, fun_zone)
        await fast.load_notes()
        # tombstone purged before the slow client gets to its own delete
        server.note_path(board_id, draft.id).unlink()
        gated.release()
        return await load

    with caplog.at_level(logging.INFO, logger="cryptboard.sync"):
        assert run(scenario()) == []
    events = [getattr(r, "event", None) for r in caplog.records]
    assert "draft_cleanup_failed" not in events
    assert events.count("draft_abandoned") == 2


def test_done_notes_are_hidden(transport, fun_zone):
    async def scenario():
        writer = _engine(transport, fun_zone)
        note = await writer.create_note(NoteType.TEXT, {"text": "finished"})
        await writer.update_note(note.id, {"done": True})
        reader = _engine(transport, fun_zone)
        return await reader.load_notes()

    assert run(scenario()) == []


def test_delta_converges_with_full_load(transport, fun_zone):
    async def scenario():
        a = _engine(transport, fun_zone)
        keep = await a.create_note(NoteType.TEXT, {"text": "keep"})
        edit = await a.create_note(NoteType.TEXT, {"text": "edit me"})
        gone = await a.create_note(NoteType.TEXT, {"text": "delete me"})

        b = _engine(transport, fun_zone)
        await b.load_notes()
        await asyncio.sleep(0.005)

        await a.update_note(edit.id, {"text": "edited", "x": 42})
        await a.delete_note(gone.id)
        await a.create_note(NoteType.DOODLE, {"doodle": {"bits": "AQ=="}})

        await b.load_notes(reset_cache=False)
        fresh = _engine(transport, fun_zone)
        await fresh.load_notes()
        return keep, b, fresh

    keep, delta_engine, fresh_engine = run(scenario())
    assert _snapshot(delta_engine) == _snapshot(fresh_engine)
    assert len(delta_engine) == 3
    assert delta_engine.get_note(keep.id) is not None


def test_two_clients_see_create_then_tombstone(transport, loadtest):
    async def scenario():
        a = _engine(transport, loadtest)
        b = _engine(transport, loadtest)
        await a.load_notes()
        await b.load_notes()
        await asyncio.sleep(0.005)

        m = await a.create_note(NoteType.TEXT, {"text": "M"})
        after_create = await b.refresh()
        await asyncio.sleep(0.005)
        await a.delete_note(m.id)
        after_delete = await b.refresh()
        return m, after_create, after_delete

    m, after_create, after_delete = run(scenario())
    assert m.id in {n.id for n in after_create}
    assert m.id not in {n.id for n in after_delete}


def test_poll_started_before_local_edit_is_discarded(transport, fun_zone):
    gated = GatedTransport(transport)

    async def scenario():
        writer = _engine(transport, fun_zone)
        note = await writer.create_note(NoteType.TEXT, {"text": "before"})
        engine = _engine(gated, fun_zone)
        await engine.load_notes()

        gated.hold()
        poll = asyncio.ensure_future(engine.refresh())
        await gated.entered.wait()
        await engine.update_note(note.id, {"text": "local edit", "x": 12})
        # someone else rewrites the note while our poll is still out
        await writer.update_note(note.id, {"text": "remote"})
        gated.release()
        return note, await poll, engine

    note, result, engine = run(scenario())
    assert result is None
    assert engine.get_note(note.id).payload.content == "local edit"
    assert engine.get_note(note.id).payload.x == 12


def test_refresh_is_skipped_while_busy(transport, fun_zone):
    async def scenario():
        engine = _engine(transport, fun_zone, save_debounce_s=10)
        note = await engine.create_note(NoteType.TEXT, {"text": "x"})
        await engine.load_notes()
        results = {}

        engine.begin_interaction(note.id)
        results["dragging"] = await engine.refresh()
        engine.end_interaction(note.id)

        engine.open_modal()
        results["modal"] = await engine.refresh()
        engine.close_modal()

        engine.queue_update(note.id, {"x": 1})
        results["pending"] = await engine.refresh()
        await engine.flush_updates()

        results["idle"] = await engine.refresh()
        return results

    results = run(scenario())
    assert results["dragging"] is None
    assert results["modal"] is None
    assert results["pending"] is None
    assert results["idle"] is not None


def test_queued_updates_are_coalesced(transport, fun_zone):
    async def scenario():
        engine = _engine(transport, fun_zone, save_debounce_s=0.05)
        note = await engine.create_note(NoteType.TEXT, {"text": "drag me"})
        transport.calls.clear()
        for i in range(50):
            engine.queue_update(note.id, {"x": float(i)})
        engine.queue_update(note.id, {"rot": 2.5})
        assert engine.saves_pending
        await asyncio.sleep(0.2)
        reader = _engine(transport, fun_zone)
        await reader.load_notes()
        return engine, reader.get_note(note.id)

    engine, remote = run(scenario())
    assert transport.calls.count("/api/notes/update") == 1
    assert not engine.saves_pending
    assert remote.payload.x == 49.0
    assert remote.payload.rot == 2.5


def test_debounced_save_errors_reach_callback(transport, fun_zone):
    errors = []

    async def scenario():
        engine = _engine(transport, fun_zone, save_debounce_s=0.01, on_save_error=lambda nid, e: errors.append((nid, e)))
        note = await engine.create_note(NoteType.TEXT, {"text": "x"})
        server.note_path(fun_zone[0], note.id).unlink()
        engine.queue_update(note.id, {"x": 3})
        await engine.flush_updates()
        return note

    note = run(scenario())
    assert len(errors) == 1
    assert errors[0][0] == note.id
    assert isinstance(errors[0][1], NoteNotFound)


def test_update_of_unknown_note_fails_locally(transport, fun_zone):
    engine = _engine(transport, fun_zone)
    with pytest.raises(NoteNotCached):
        run(engine.update_note("deadbeefdeadbeef", {"x": 1}))
    assert transport.calls == []


def test_delete_evicts_even_when_server_lost_the_note(transport, fun_zone):
    async def scenario():
        engine = _engine(transport, fun_zone)
        note = await engine.create_note(NoteType.TEXT, {"text": "x"})
        server.note_path(fun_zone[0], note.id).unlink()
        with pytest.raises(NoteNotFound):
            await engine.delete_note(note.id)
        return engine, note

    engine, note = run(scenario())
    assert engine.get_note(note.id) is None


def test_capacity_errors_are_typed(transport, fun_zone, monkeypatch):
    async def create(engine):
        return await engine.create_note(NoteType.TEXT, {"text": "x"})

    engine = _engine(transport, fun_zone)
    monkeypatch.setitem(server.app.config, "MAX_NOTES_PER_BOARD", 1)
    run(create(engine))
    with pytest.raises(NoteLimitExceeded):
        run(create(engine))

    monkeypatch.setitem(server.app.config, "MAX_NOTES_PER_BOARD", 300)
    monkeypatch.setitem(server.app.config, "MAX_STORAGE_BYTES", 1)
    with pytest.raises(StorageLimitExceeded):
        run(create(engine))

    monkeypatch.setitem(server.app.config, "MAX_STORAGE_BYTES", 10 ** 9)
    monkeypatch.setitem(server.app.config, "MAX_PAYLOAD_CHARS", 10)
    with pytest.raises(ValidationFailure):
        run(create(engine))
    assert len(engine) == 1


def test_init_resets_session(transport, fun_zone, loadtest):
    async def scenario():
        engine = _engine(transport, fun_zone)
        await engine.create_note(NoteType.TEXT, {"text": "fun"})
        await engine.load_notes()
        engine.init(*loadtest)
        return engine

    engine = run(scenario())
    assert len(engine) == 0
    assert engine.watermark is None
    assert engine.board_id == loadtest[0]


def test_close_flushes_and_blocks_further_use(transport, fun_zone):
    async def scenario():
        engine = _engine(transport, fun_zone, save_debounce_s=10)
        note = await engine.create_note(NoteType.TEXT, {"text": "x"})
        engine.queue_update(note.id, {"text": "saved on close"})
        await engine.close()
        reader = _engine(transport, fun_zone)
        await reader.load_notes()
        return engine, reader.get_note(note.id)

    engine, remote = run(scenario())
    assert remote.payload.content == "saved on close"
    assert engine.state is SyncState.CLOSED
    with pytest.raises(SessionClosed):
        run(engine.load_notes())


def test_own_abandoned_draft_leaves_cache_on_delta(transport, fun_zone):
    async def scenario():
        a = _engine(transport, fun_zone)
        await a.load_notes()
        await asyncio.sleep(0.002)
        await a.create_note(NoteType.TEXT, {"text": "keep"})
        draft = await a.create_note(NoteType.TEXT, {"text": ""}, draft=True)
        assert await a.refresh() is not None
        fresh = _engine(transport, fun_zone)
        await fresh.load_notes()
        return a, fresh, draft

    a, fresh, draft = run(scenario())
    assert a.get_note(draft.id) is None
    assert _snapshot(a) == _snapshot(fresh)


def test_refresh_skipped_while_delete_in_flight(transport, fun_zone):
    gated = GatedTransport(transport)

    async def scenario():
        engine = _engine(gated, fun_zone)
        note = await engine.create_note(NoteType.TEXT, {"text": "bye"})
        await engine.load_notes()

        gated.hold("delete_note")
        deleting = asyncio.ensure_future(engine.delete_note(note.id))
        await gated.entered.wait()
        assert engine.saves_pending
        polled = await engine.refresh()
        gated.release()
        await deleting
        assert not engine.saves_pending
        after = await engine.refresh()
        return note, engine, polled, after

    note, engine, polled, after = run(scenario())
    assert polled is None
    assert engine.get_note(note.id) is None
    assert note.id not in {n.id for n in after}


@pytest.mark.parametrize("action", ["touch", "rotate"])
def test_touch_and_rotation_discard_poll_in_flight(transport, fun_zone, action):
    gated = GatedTransport(transport)

    async def scenario():
        engine = _engine(gated, fun_zone)
        note = await engine.create_note(NoteType.TEXT, {"text": "spin"})
        await engine.load_notes()

        gated.hold()
        poll = asyncio.ensure_future(engine.refresh())
        await gated.entered.wait()
        if action == "touch":
            engine.touch(note.id)
        else:
            engine.set_rotation(note.id, 3.5)
        gated.release()
        return note, engine, await poll

    note, engine, result = run(scenario())
    assert result is None
    if action == "rotate":
        assert engine.get_note(note.id).payload.rot == 3.5
