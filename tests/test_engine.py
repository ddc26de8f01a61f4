"""
Tests for sync-cycle ordering, pull skipping and the debounced triggers.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cardsync.errors import RemoteError
from cardsync.remote.mongo_repo import MongoRemoteStore
from cardsync.remote.retry import NO_RETRY
from cardsync.schemas import StudySession
from cardsync.sync.engine import SyncEngine
from cardsync.sync.pull import LAST_PULL
from cardsync.sync.queue_manager import QueueManager


class Recorder:
    """Stands in for both reconcilers and records the calls it receives."""

    def __init__(self):
        self.calls = []

    async def reconcile_all(self):
        self.calls.append("reconcile_all")
        return 0

    async def resume_pending(self):
        self.calls.append("resume_pending")
        return 0


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


async def wait_for_pull(engine, attempts: int = 200):
    for _ in range(attempts):
        if engine.last_pull_at is not None:
            return
        await asyncio.sleep(0.01)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def engine(queue_manager, recorder, notices, clock):
    engine = SyncEngine(
        queue_manager, cloze=recorder, chains=recorder, notifier=notices.append,
        soon_delay=0.01, clock=clock,
    )
    yield engine
    await engine.stop()


# =============================================================================
# Cycle ordering
# =============================================================================


class TestCycle:
    async def test_push_then_pull(self, engine, queue_manager, remote, make_deck):
        deck = await make_deck()
        remote.seed("deck", deck.id, {"name": deck.name})
        await queue_manager.enqueue_deck_upsert(deck)

        result = await engine.sync_now()

        assert result.push.succeeded == 1
        assert result.pull is not None and result.pull.full
        first_list = remote.calls.index(("list", "deck"))
        assert remote.calls.index(("update", "deck", deck.id)) < first_list

    async def test_pull_skipped_while_queue_not_empty(self, engine, queue_manager, remote, make_deck):
        deck = await make_deck()
        remote.seed("deck", deck.id, {})
        remote.fail_next("update", RemoteError(503, "unavailable"))
        await queue_manager.enqueue_deck_upsert(deck)

        result = await engine.sync_now()

        assert result.pull is None
        assert result.pull_skipped == "queue not empty"
        assert ("list", "deck") not in remote.calls

    async def test_busy_cycle_returns_none(self, engine):
        engine.busy = True
        assert await engine.sync_now() is None
        assert engine._soon_handle is not None

    async def test_reconcile_only_after_full_pull(self, engine, recorder):
        await engine.sync_now()
        assert recorder.calls == ["resume_pending", "reconcile_all"]

        recorder.calls.clear()
        result = await engine.sync_now()
        assert result.pull.full is False
        assert recorder.calls == ["resume_pending"]

    async def test_remote_error_becomes_notice(self, engine, remote, notices):
        remote.fail_next("list", RemoteError(503, "maintenance"))
        result = await engine.sync_now()

        assert result.error == "maintenance"
        assert any("maintenance" in n for n in notices)
        assert engine.busy is False


# =============================================================================
# Automatic cycles
# =============================================================================


class TestAutomatic:
    async def test_session_blocks_automatic_pull_only(self, engine, store):
        store.session = StudySession(id="s1")

        result = await engine.tick()
        assert result.pull_skipped == "study session in progress"

        manual = await engine.sync_now()
        assert manual.pull is not None

    async def test_minimum_pull_interval(self, engine, clock):
        first = await engine.tick()
        assert first.pull is not None

        clock.advance(60)
        second = await engine.tick()
        assert second.pull_skipped == "pulled recently"

        clock.advance(200)
        third = await engine.tick()
        assert third.pull is not None


# =============================================================================
# Debounced triggers
# =============================================================================


class TestTriggers:
    async def test_soon_request_runs_a_cycle(self, engine, store):
        engine.request_sync_soon()
        await wait_for_pull(engine)
        await asyncio.gather(*engine._tasks)
        assert await store.get_meta(LAST_PULL) is not None

    async def test_rating_request_never_delays_earlier_trigger(self, queue_manager):
        engine = SyncEngine(queue_manager, soon_delay=1.5, rating_delay=300)
        try:
            engine.request_sync_soon()
            deadline = engine._soon_deadline
            engine.request_sync_soon("rating")
            assert engine._soon_deadline == deadline
        finally:
            await engine.stop()

    async def test_ordinary_edit_brings_rating_trigger_forward(self, queue_manager):
        engine = SyncEngine(queue_manager, soon_delay=1.5, rating_delay=300)
        try:
            engine.request_sync_soon("rating")
            rating_deadline = engine._soon_deadline
            engine.request_sync_soon()
            assert engine._soon_deadline < rating_deadline
        finally:
            await engine.stop()

    async def test_enqueue_hook_uses_mutation_reason(self, queue_manager, make_deck):
        engine = SyncEngine(queue_manager, soon_delay=1.5, rating_delay=300)
        queue_manager.on_enqueue = engine.on_enqueue
        try:
            deck = await make_deck()
            await queue_manager.enqueue_deck_upsert(deck, reason="rating")
            remaining = engine._soon_deadline - asyncio.get_running_loop().time()
            assert remaining > 250
        finally:
            await engine.stop()

    async def test_start_and_stop_periodic_task(self, engine, store):
        engine.start()
        await wait_for_pull(engine)
        await engine.stop()
        assert engine._periodic is None
        assert await store.get_meta(LAST_PULL) is not None


# =============================================================================
# Failures outside the remote protocol
# =============================================================================


class TestFailures:
    async def test_missing_mongo_uri_is_reported_and_keeps_the_queue(self, store, notices, make_deck,
                                                                     monkeypatch):
        monkeypatch.delenv("MONGO_URI", raising=False)
        manager = QueueManager(store, MongoRemoteStore(mongo_uri=None), retry_policy=NO_RETRY,
                               pacing=0, notifier=notices.append)
        engine = SyncEngine(manager, notifier=notices.append)
        deck = await make_deck()
        await manager.enqueue_deck_upsert(deck)

        result = await engine.sync_now()

        assert "MONGO_URI" in result.error
        assert any("MONGO_URI" in n for n in notices)
        assert engine.busy is False
        [queued] = await store.list_mutations()
        assert queued.retry_count == 0 and queued.parked is False

    async def test_crashed_cycle_does_not_stop_periodic_sync(self, queue_manager, notices, monkeypatch):
        drain = queue_manager.drain_queue
        calls = []

        async def crash_once():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("disk on fire")
            return await drain()

        monkeypatch.setattr(queue_manager, "drain_queue", crash_once)
        engine = SyncEngine(queue_manager, notifier=notices.append, interval=0.01)
        try:
            engine.start()
            await wait_for_pull(engine)
        finally:
            await engine.stop()

        assert len(calls) >= 2
        assert engine.last_pull_at is not None
        assert any("disk on fire" in n for n in notices)
