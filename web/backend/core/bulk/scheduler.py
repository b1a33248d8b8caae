"""Due-time promotion of deferred bulk actions."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from web.backend.core.bulk.constants import QUEUE_BACKOFF_DELAY_MS, QUEUE_RETRY_ATTEMPTS
from web.backend.core.bulk.exceptions import SchedulingRaceFault
from web.backend.core.bulk.queue import WorkQueue
from web.backend.core.bulk.store import ActionStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BulkActionScheduler:
    """
    Periodically enqueues pending actions whose ``scheduled_for`` has passed.

    Each tick first claims the due set (pending -> queued in one statement)
    and only then enqueues, so overlapping ticks cannot promote the same
    action twice. An enqueue that fails hands the action back to pending
    for the next tick.
    """

    def __init__(
        self,
        actions: ActionStore,
        queue: WorkQueue,
        interval_seconds: float = 60,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._actions = actions
        self._queue = queue
        self._interval = interval_seconds
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Bulk action scheduler is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info("Bulk action scheduler started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Bulk action scheduler stopped")

    async def _scheduler_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Scheduler tick failed: %s", e)
                await asyncio.sleep(self._interval)

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Promote every due action. Returns the ids that were enqueued."""
        now = now or self._clock()
        claimed = await self._actions.claim_due_actions(now)
        promoted = []
        for action in claimed:
            try:
                await self._queue.enqueue(
                    action.id,
                    action.action_type,
                    attempts=QUEUE_RETRY_ATTEMPTS,
                    backoff_ms=QUEUE_BACKOFF_DELAY_MS,
                )
            except SchedulingRaceFault:
                logger.info("Scheduled action %s already has a live job", action.id)
                continue
            except Exception as e:
                logger.error("Failed to enqueue scheduled action %s: %s", action.id, e)
                await self._actions.release_claim(action.id)
                continue
            promoted.append(action.id)
            logger.info("Promoted scheduled action %s to queued", action.id)
        if claimed:
            logger.debug("Scheduler tick: %d due, %d promoted", len(claimed), len(promoted))
        return promoted
