"""
Sync Engine - one mutually exclusive push-then-pull cycle.

Triggers (a periodic task and debounced "sync soon" requests raised by
enqueue) all funnel into sync_now(), guarded by a busy flag: a trigger that
arrives while a cycle runs reschedules itself for after the push cooldown
instead of running concurrently.

Ordering contract:
1. push (drain the queue) always runs first
2. derived generation jobs are resumed while the remote is reachable
3. pull is skipped while remote-bound mutations are still queued; automatic
   cycles also skip it during a study session or within the minimum pull
   interval
4. a full pull is followed by a cloze reconciliation pass
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from cardsync.config import (
    MIN_PULL_INTERVAL_S,
    MIN_PUSH_INTERVAL_S,
    RATING_SYNC_DELAY_S,
    SOON_DELAY_S,
    SYNC_INTERVAL_S,
)
from cardsync.errors import Notifier, RemoteError, StorageError, log_notifier
from cardsync.schemas import Mutation, utc_now
from cardsync.sync.queue_manager import DrainResult, QueueManager
from cardsync.sync.pull import PullResult

logger = logging.getLogger(__name__)

RATING_REASON = "rating"


@dataclass
class SyncResult:
    push: Optional[DrainResult] = None
    pull: Optional[PullResult] = None
    pull_skipped: Optional[str] = None
    error: Optional[str] = None


class SyncEngine:
    """
    Owns sync timing. Reconcilers are optional collaborators.

    Args:
        queue_manager: Push/pull implementation
        cloze: Object with `async reconcile_all()` (run after full pulls)
        chains: Object with `async resume_pending()` (run after each push)
        notifier: Receives user-facing notices
        clock: Returns the current time (injectable for tests)
    """

    def __init__(
        self,
        queue_manager: QueueManager,
        cloze=None,
        chains=None,
        notifier: Notifier = log_notifier,
        interval: float = SYNC_INTERVAL_S,
        min_pull_interval: float = MIN_PULL_INTERVAL_S,
        min_push_interval: float = MIN_PUSH_INTERVAL_S,
        soon_delay: float = SOON_DELAY_S,
        rating_delay: float = RATING_SYNC_DELAY_S,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.queue_manager = queue_manager
        self.store = queue_manager.store
        self.cloze = cloze
        self.chains = chains
        self.notifier = notifier
        self.interval = interval
        self.min_pull_interval = min_pull_interval
        self.min_push_interval = min_push_interval
        self.soon_delay = soon_delay
        self.rating_delay = rating_delay
        self.clock = clock

        self.busy = False
        self.last_pull_at: Optional[datetime] = None
        self._soon_handle: Optional[asyncio.TimerHandle] = None
        self._soon_deadline: Optional[float] = None
        self._periodic: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    # ---- Cycle ----

    async def sync_now(self, full: bool = False, automatic: bool = False) -> Optional[SyncResult]:
        """
        Run one sync cycle.

        Args:
            full: Force a full pull (mark-and-sweep)
            automatic: True for timer-driven cycles (applies the session and
                pull-interval skips)

        Returns:
            SyncResult, or None when another cycle was already running
        """
        if self.busy:
            logger.debug("Sync already running; rescheduling")
            self._schedule(self.min_push_interval + 0.1)
            return None

        self.busy = True
        result = SyncResult()
        try:
            result.push = await self.queue_manager.drain_queue()

            if self.chains is not None:
                await self.chains.resume_pending()

            result.pull_skipped = self._pull_skip_reason(full, automatic)
            if result.pull_skipped:
                logger.info(f"Pull skipped: {result.pull_skipped}")
                return result

            result.pull = await self.queue_manager.pull(full=full)
            self.last_pull_at = self.clock()
            if result.pull.full and self.cloze is not None:
                await self.cloze.reconcile_all()
            return result
        except RemoteError as e:
            logger.error(f"Sync cycle failed: {e}")
            result.error = e.message
            self.notifier(f"Sync failed: {e.message}")
            return result
        except StorageError as e:
            logger.error(f"Sync cycle hit a storage error: {e}")
            result.error = str(e)
            self.notifier("Could not save synced data locally. Please retry.")
            return result
        finally:
            self.busy = False

    def _pull_skip_reason(self, full: bool, automatic: bool) -> Optional[str]:
        if self.queue_manager.has_active_mutations():
            return "queue not empty"
        if not automatic or full:
            return None
        if self.store.session is not None:
            return "study session in progress"
        if self.last_pull_at is not None:
            elapsed = (self.clock() - self.last_pull_at).total_seconds()
            if elapsed < self.min_pull_interval:
                return "pulled recently"
        return None

    async def tick(self) -> Optional[SyncResult]:
        """One timer-driven cycle."""
        return await self.sync_now(automatic=True)

    # ---- Triggers ----

    def request_sync_soon(self, reason: Optional[str] = None) -> None:
        """
        Debounce a sync after a local edit.

        Rating-derived edits wait longer (to batch rapid reviews) and never
        push back an earlier pending trigger.
        """
        delay = self.rating_delay if reason == RATING_REASON else self.soon_delay
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; sync-soon request ignored")
            return
        deadline = loop.time() + delay
        if self._soon_handle is not None and self._soon_deadline is not None:
            if reason == RATING_REASON and self._soon_deadline <= deadline:
                return
            self._soon_handle.cancel()
        self._soon_deadline = deadline
        self._soon_handle = loop.call_later(delay, self._fire_soon)

    def on_enqueue(self, mutation: Mutation) -> None:
        self.request_sync_soon(mutation.reason)

    def _schedule(self, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._soon_handle is not None and self._soon_deadline is not None:
            if self._soon_deadline <= loop.time() + delay:
                return
            self._soon_handle.cancel()
        self._soon_deadline = loop.time() + delay
        self._soon_handle = loop.call_later(delay, self._fire_soon)

    def _fire_soon(self) -> None:
        self._soon_handle = None
        self._soon_deadline = None
        task = asyncio.get_running_loop().create_task(self._guarded_tick())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ---- Lifecycle ----

    def start(self) -> None:
        """Start the periodic sync task on the running loop."""
        if self._periodic is None or self._periodic.done():
            self._periodic = asyncio.get_running_loop().create_task(self._run_periodic())
            logger.info(f"Periodic sync started (every {self.interval:.0f}s)")

    async def _guarded_tick(self) -> Optional[SyncResult]:
        """A timer-driven cycle whose failure is logged instead of ending the timer."""
        try:
            return await self.tick()
        except Exception as e:
            logger.exception(f"Sync cycle crashed: {e}")
            self.notifier(f"Sync failed: {e}")
            return None

    async def _run_periodic(self) -> None:
        while True:
            await self._guarded_tick()
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        if self._soon_handle is not None:
            self._soon_handle.cancel()
            self._soon_handle = None
            self._soon_deadline = None
        tasks = list(self._tasks)
        if self._periodic is not None:
            tasks.append(self._periodic)
            self._periodic = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Sync engine stopped")
