"""Tests for the periodic sync scheduler."""

import asyncio
from datetime import timedelta

from storesync.sync.errors import NetworkError, NotConfiguredError
from storesync.sync.models import BatchResult, BatchStatus
from storesync.sync.scheduler import SyncScheduler


class StubEngine:
    """Engine double returning canned batch outcomes."""

    def __init__(self, settings, outcomes=None):
        self.settings = settings
        self.outcomes = list(outcomes or [])
        self.runs = 0
        self.stop_requested = False

    async def run_batch(self):
        self.runs += 1
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
        result = BatchResult(status=BatchStatus.RUNNING)
        result.complete()
        return result

    def request_stop(self):
        self.stop_requested = True


class TestSyncScheduler:

    async def test_run_once_with_real_engine(self, engine):
        scheduler = SyncScheduler(engine)

        result = await scheduler.run_once()

        assert result.status is BatchStatus.COMPLETED
        assert scheduler.history == [result]
        assert scheduler.interval == engine.settings.sync_interval

    async def test_running_batch_is_skipped(self, engine):
        engine.lock.acquire(engine.sync_target, owner_token="other-process")
        scheduler = SyncScheduler(engine)

        assert await scheduler.run_once() is None
        assert scheduler.history == []

    async def test_errors_do_not_escape(self, settings):
        engine = StubEngine(settings, [NotConfiguredError(["access_token"]), NetworkError("down")])
        scheduler = SyncScheduler(engine)

        assert await scheduler.run_once() is None
        assert await scheduler.run_once() is None
        assert await scheduler.run_once() is not None
        assert engine.runs == 3

    async def test_history_is_bounded(self, settings):
        scheduler = SyncScheduler(StubEngine(settings))

        for _ in range(SyncScheduler.MAX_HISTORY + 5):
            await scheduler.run_once()

        assert len(scheduler.history) == SyncScheduler.MAX_HISTORY

    async def test_start_and_stop(self, settings):
        engine = StubEngine(settings)
        scheduler = SyncScheduler(engine, interval=3600)
        assert scheduler.next_run_at is None

        scheduler.start()
        await asyncio.sleep(0.05)

        assert scheduler.is_running
        assert engine.runs == 1
        assert scheduler.next_run_at == scheduler.last_run_at + timedelta(seconds=3600)

        await scheduler.stop()

        assert not scheduler.is_running
        assert engine.stop_requested
