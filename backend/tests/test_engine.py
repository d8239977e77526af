"""Tests for the per-room sync engine: history, live feed, teardown, failures."""
import asyncio

import pytest

from chatsync.config import SyncSettings
from chatsync.store.base import StoreError
from chatsync.sync.engine import RoomSyncEngine
from chatsync.sync.models import SyncState

from conftest import shape


def _seed_scenario(store):
    """u1 "hi", then u2 "yo", then u2 "sup" in room main."""
    return [
        store.add_history("main", "u1", "hi"),
        store.add_history("main", "u2", "yo"),
        store.add_history("main", "u2", "sup"),
    ]


async def _started(store, settings=None, room_id="main", changes=None):
    engine = RoomSyncEngine(
        room_id,
        store,
        settings,
        on_change=changes.append if changes is not None else None,
    )
    engine.start()
    await engine.load_task
    return engine


class TestHistoryLoad:
    """Tests for the initial bulk load."""

    @pytest.mark.asyncio
    async def test_history_is_grouped_oldest_first(self, fake_store):
        _seed_scenario(fake_store)

        engine = await _started(fake_store)

        assert engine.state is SyncState.LIVE
        assert shape(engine.blocks) == [("u1", ["hi"]), ("u2", ["yo", "sup"])]

    @pytest.mark.asyncio
    async def test_cursor_is_newest_history_token(self, fake_store):
        docs = _seed_scenario(fake_store)

        engine = await _started(fake_store)

        assert engine.cursor == docs[-1]["createdAt"]
        [sub] = fake_store.active_subscriptions("main")
        assert sub.after == engine.cursor

    @pytest.mark.asyncio
    async def test_history_limit_is_passed_to_store(self, fake_store):
        for i in range(5):
            fake_store.add_history("main", "u1", f"m{i}")

        engine = await _started(fake_store, SyncSettings(history_limit=2))

        assert shape(engine.blocks) == [("u1", ["m3", "m4"])]

    @pytest.mark.asyncio
    async def test_empty_room_goes_live_without_cursor(self, fake_store):
        engine = await _started(fake_store)

        assert engine.state is SyncState.LIVE
        assert engine.cursor is None
        assert engine.blocks == []

    @pytest.mark.asyncio
    async def test_malformed_documents_are_skipped(self, fake_store):
        fake_store.add_history("main", "u1", "hi")
        fake_store.messages["main"].append({"id": "broken", "text": "no sender", "createdAt": 99.0})
        fake_store.add_history("main", "u1", "still here")

        engine = await _started(fake_store)

        assert shape(engine.blocks) == [("u1", ["hi", "still here"])]

    @pytest.mark.asyncio
    async def test_start_twice_is_a_no_op(self, fake_store):
        engine = RoomSyncEngine("main", fake_store)
        engine.start()
        first_task = engine.load_task
        engine.start()
        await first_task

        assert engine.load_task is first_task
        assert fake_store.fetch_calls == ["main"]
        assert len(fake_store.active_subscriptions("main")) == 1

    @pytest.mark.asyncio
    async def test_change_notifications(self, fake_store):
        _seed_scenario(fake_store)
        changes = []

        await _started(fake_store, changes=changes)

        assert changes and set(changes) == {"main"}


class TestLiveFeed:
    """Tests for live additions and reaction updates."""

    @pytest.mark.asyncio
    async def test_live_message_extends_sender_block(self, fake_store):
        _seed_scenario(fake_store)
        engine = await _started(fake_store)

        fake_store.emit_added("main", fake_store.make_doc("main", "u2", "newMsg"))

        assert shape(engine.blocks) == [("u1", ["hi"]), ("u2", ["yo", "sup", "newMsg"])]

    @pytest.mark.asyncio
    async def test_live_message_from_other_sender_opens_block(self, fake_store):
        _seed_scenario(fake_store)
        engine = await _started(fake_store)
        fake_store.emit_added("main", fake_store.make_doc("main", "u2", "newMsg"))

        fake_store.emit_added("main", fake_store.make_doc("main", "u1", "back"))

        assert shape(engine.blocks) == [
            ("u1", ["hi"]),
            ("u2", ["yo", "sup", "newMsg"]),
            ("u1", ["back"]),
        ]

    @pytest.mark.asyncio
    async def test_replayed_history_is_not_added_twice(self, fake_store):
        docs = _seed_scenario(fake_store)
        engine = await _started(fake_store)

        for doc in docs:
            fake_store.emit_added("main", doc)

        assert shape(engine.blocks) == [("u1", ["hi"]), ("u2", ["yo", "sup"])]

    @pytest.mark.asyncio
    async def test_items_at_or_before_cursor_are_dropped(self, fake_store):
        _seed_scenario(fake_store)
        engine = await _started(fake_store)

        old = {"id": "late", "text": "late", "senderId": "u3", "createdAt": engine.cursor}
        older = {"id": "later", "text": "later", "senderId": "u3", "createdAt": 0.5}
        fake_store.emit_added("main", old)
        fake_store.emit_added("main", older)

        assert engine.get_message("late") is None
        assert engine.get_message("later") is None
        assert len(engine.blocks) == 2

    @pytest.mark.asyncio
    async def test_duplicate_live_delivery_is_ignored(self, fake_store):
        _seed_scenario(fake_store)
        engine = await _started(fake_store)
        doc = fake_store.make_doc("main", "u3", "once")

        fake_store.emit_added("main", doc)
        fake_store.emit_added("main", doc)

        assert shape(engine.blocks)[-1] == ("u3", ["once"])

    @pytest.mark.asyncio
    async def test_reaction_update_patches_message(self, fake_store):
        docs = _seed_scenario(fake_store)
        engine = await _started(fake_store)

        fake_store.emit_reacts("main", docs[0]["id"], {"👍": ["u2"]})

        assert engine.get_message(docs[0]["id"]).reacts == {"👍": ["u2"]}
        assert engine.get_message(docs[1]["id"]).reacts == {}
        assert shape(engine.blocks) == [("u1", ["hi"]), ("u2", ["yo", "sup"])]

    @pytest.mark.asyncio
    async def test_repeated_reaction_update_does_not_notify(self, fake_store):
        docs = _seed_scenario(fake_store)
        changes = []
        engine = await _started(fake_store, changes=changes)

        fake_store.emit_reacts("main", docs[0]["id"], {"👍": ["u2"]})
        count = len(changes)
        fake_store.emit_reacts("main", docs[0]["id"], {"👍": ["u2"]})

        assert len(changes) == count
        assert engine.get_message(docs[0]["id"]).reacts == {"👍": ["u2"]}

    @pytest.mark.asyncio
    async def test_reaction_for_unknown_message_is_ignored(self, fake_store):
        _seed_scenario(fake_store)
        engine = await _started(fake_store)
        before = engine.blocks

        fake_store.emit_reacts("main", "missing", {"👍": ["u2"]})

        assert engine.blocks == before

    @pytest.mark.asyncio
    async def test_status_reports_counts(self, fake_store):
        _seed_scenario(fake_store)
        engine = await _started(fake_store)

        status = engine.status()

        assert status.roomId == "main"
        assert status.state is SyncState.LIVE
        assert status.blockCount == 2
        assert status.messageCount == 3
        assert status.degraded is False


class TestTeardown:
    """Tests for stop() and late-arriving results."""

    @pytest.mark.asyncio
    async def test_stop_during_history_load_discards_result(self, fake_store):
        _seed_scenario(fake_store)
        fake_store.gates["main"] = asyncio.Event()
        engine = RoomSyncEngine("main", fake_store)
        engine.start()
        await asyncio.sleep(0)
        assert fake_store.fetch_calls == ["main"]

        engine.stop()
        fake_store.gates["main"].set()
        await engine.load_task

        assert engine.state is SyncState.STOPPED
        assert engine.blocks == []
        assert fake_store.subscriptions == []

    @pytest.mark.asyncio
    async def test_stop_detaches_listener_exactly_once(self, fake_store):
        _seed_scenario(fake_store)
        engine = await _started(fake_store)
        [sub] = fake_store.subscriptions

        engine.stop()
        engine.stop()

        assert sub.unsubscribe_calls == 1
        assert engine.state is SyncState.STOPPED
        assert engine.blocks == []

    @pytest.mark.asyncio
    async def test_events_after_stop_are_ignored(self, fake_store):
        _seed_scenario(fake_store)
        engine = await _started(fake_store)
        [sub] = fake_store.subscriptions
        engine.stop()

        # Deliver straight to the callback, as a racing store might
        sub.on_added(fake_store.make_doc("main", "u1", "ghost"))

        assert engine.blocks == []

    @pytest.mark.asyncio
    async def test_stop_before_start(self, fake_store):
        engine = RoomSyncEngine("main", fake_store)
        engine.stop()
        engine.start()

        assert engine.state is SyncState.STOPPED
        assert engine.load_task is None

    @pytest.mark.asyncio
    async def test_unsubscribe_failure_is_contained(self, fake_store):
        engine = await _started(fake_store)

        def broken():
            raise RuntimeError("already gone")

        engine._unsubscribe = broken
        engine.stop()

        assert engine.state is SyncState.STOPPED


class TestFailures:
    """Tests for history retries and live feed errors."""

    @pytest.mark.asyncio
    async def test_history_retry_recovers(self, fake_store, sync_settings):
        _seed_scenario(fake_store)
        fake_store.failures["main"] = [StoreError("boom")]

        engine = await _started(fake_store, sync_settings)

        assert engine.state is SyncState.LIVE
        assert engine.degraded is False
        assert engine.last_error is None
        assert fake_store.fetch_calls == ["main", "main"]

    @pytest.mark.asyncio
    async def test_history_gives_up_and_reports_degraded(self, fake_store, sync_settings):
        fake_store.failures["main"] = [StoreError("boom")] * 3

        engine = await _started(fake_store, sync_settings)

        assert engine.state is SyncState.LOADING_HISTORY
        assert engine.degraded is True
        assert engine.last_error == "boom"
        assert len(fake_store.fetch_calls) == sync_settings.history_max_attempts
        assert fake_store.subscriptions == []

    @pytest.mark.asyncio
    async def test_retry_history_after_giving_up(self, fake_store, sync_settings):
        _seed_scenario(fake_store)
        fake_store.failures["main"] = [StoreError("boom")] * 3
        engine = await _started(fake_store, sync_settings)

        assert engine.retry_history() is True
        await engine.load_task

        assert engine.state is SyncState.LIVE
        assert engine.degraded is False
        assert shape(engine.blocks) == [("u1", ["hi"]), ("u2", ["yo", "sup"])]

    @pytest.mark.asyncio
    async def test_retry_history_refused_when_live(self, fake_store):
        engine = await _started(fake_store)
        assert engine.retry_history() is False

    @pytest.mark.asyncio
    async def test_subscribe_failure_keeps_history(self, fake_store):
        _seed_scenario(fake_store)
        fake_store.subscribe_error = StoreError("listen refused")

        engine = await _started(fake_store)

        assert engine.degraded is True
        assert engine.last_error == "listen refused"
        assert engine.state is SyncState.LOADING_HISTORY
        assert shape(engine.blocks) == [("u1", ["hi"]), ("u2", ["yo", "sup"])]

    @pytest.mark.asyncio
    async def test_live_error_keeps_blocks(self, fake_store):
        _seed_scenario(fake_store)
        engine = await _started(fake_store)
        [sub] = fake_store.subscriptions

        sub.on_error(RuntimeError("disconnected"))

        assert engine.degraded is True
        assert engine.state is SyncState.LIVE
        assert shape(engine.blocks) == [("u1", ["hi"]), ("u2", ["yo", "sup"])]

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_break_engine(self, fake_store):
        _seed_scenario(fake_store)

        def observer(room_id):
            raise RuntimeError("ui crashed")

        engine = RoomSyncEngine("main", fake_store, on_change=observer)
        engine.start()
        await engine.load_task

        assert engine.state is SyncState.LIVE
        assert len(engine.blocks) == 2
