"""Periodic background runner for the sync engine."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from ..utils.datetime import now_utc
from .errors import NotConfiguredError, SyncError, SyncInProgressError
from .models import BatchResult


logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs ``engine.run_batch`` every ``interval`` seconds.

    A tick that finds a batch already running is skipped rather than queued.
    """

    MAX_HISTORY = 50

    def __init__(self, engine, interval: Optional[int] = None):
        self.engine = engine
        self.interval = interval or engine.settings.sync_interval
        self.history: List[BatchResult] = []
        self.last_run_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(__name__)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def next_run_at(self) -> Optional[datetime]:
        if not self.is_running:
            return None
        if self.last_run_at is None:
            return now_utc()
        return self.last_run_at + timedelta(seconds=self.interval)

    async def run_once(self) -> Optional[BatchResult]:
        """Run one batch, returning None when it was skipped or failed."""
        self.last_run_at = now_utc()
        try:
            result = await self.engine.run_batch()
        except SyncInProgressError:
            self.logger.info("Scheduled sync skipped: a batch is already running")
            return None
        except NotConfiguredError as e:
            self.logger.warning(f"Scheduled sync skipped: {e}")
            return None
        except SyncError as e:
            self.logger.error(f"Scheduled sync failed: {e}")
            return None

        self.history.append(result)
        if len(self.history) > self.MAX_HISTORY:
            self.history = self.history[-self.MAX_HISTORY:]
        return result

    def start(self):
        if self.is_running:
            return
        self.logger.info(f"Starting sync scheduler every {self.interval}s")
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        """Cancel the loop and ask a running batch to stop."""
        if self._task is None:
            return
        self.engine.request_stop()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.info("Sync scheduler stopped")

    async def _loop(self):
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)
