"""At-least-once work queue for ``process-action`` jobs, backed by PostgreSQL.

Jobs live in ``bulk_action_jobs``; one queue per action type
(``queue_name``). A ``QueueWorker`` polls its queue, claims due jobs with
``FOR UPDATE SKIP LOCKED`` and runs the bound consumer. Failed runs are
retried with exponential backoff until the job's attempts are used up.
Jobs whose worker died are detected by a stale lock and redelivered.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol, Set

import asyncpg

from shared.database import DatabaseService, db_service
from web.backend.core.bulk.constants import PROCESS_ACTION_TOPIC
from web.backend.core.bulk.exceptions import SchedulingRaceFault

logger = logging.getLogger(__name__)


@dataclass
class Job:
    id: int
    action_id: str
    queue_name: str
    topic: str = PROCESS_ACTION_TOPIC
    attempts_made: int = 0
    max_attempts: int = 1
    backoff_ms: int = 0
    status: str = "waiting"
    run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def payload(self) -> dict:
        return {"actionId": self.action_id}

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            action_id=str(row["action_id"]),
            queue_name=row["queue_name"],
            topic=row["topic"],
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            backoff_ms=row["backoff_ms"],
            status=row["status"],
            run_at=row["run_at"],
            last_error=row["last_error"],
        )


def backoff_delay_ms(backoff_ms: int, attempt: int) -> int:
    """Exponential delay before retry number ``attempt`` (1-based)."""
    if backoff_ms <= 0:
        return 0
    return backoff_ms * 2 ** max(attempt - 1, 0)


Consumer = Callable[[Job], Awaitable[None]]


class WorkQueue(Protocol):
    async def enqueue(
        self,
        action_id: str,
        queue_name: str,
        attempts: int = 1,
        backoff_ms: int = 0,
    ) -> int: ...


class PostgresWorkQueue:
    """Job table operations. Workers drive it through ``QueueWorker``."""

    def __init__(self, db: DatabaseService = db_service):
        self._db = db

    async def enqueue(self, action_id: str, queue_name: str, attempts: int = 1, backoff_ms: int = 0) -> int:
        """Add a job for ``action_id``. Raises SchedulingRaceFault if one is already live."""
        try:
            async with self._db.acquire() as conn:
                job_id = await conn.fetchval(
                    """
                    INSERT INTO bulk_action_jobs (queue_name, topic, action_id, max_attempts, backoff_ms)
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING id
                    """,
                    queue_name, PROCESS_ACTION_TOPIC, uuid.UUID(action_id), max(attempts, 1), backoff_ms,
                )
        except asyncpg.UniqueViolationError:
            raise SchedulingRaceFault(action_id)
        logger.info(
            "Enqueued %s job id=%s action=%s queue=%s (attempts=%d, backoff=%dms)",
            PROCESS_ACTION_TOPIC, job_id, action_id, queue_name, attempts, backoff_ms,
        )
        return job_id

    async def claim(self, queue_name: str, limit: int) -> List[Job]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE bulk_action_jobs
                SET status = 'active', attempts_made = attempts_made + 1, locked_at = NOW()
                WHERE id IN (
                    SELECT id FROM bulk_action_jobs
                    WHERE queue_name = $1
                      AND status IN ('waiting', 'delayed')
                      AND run_at <= NOW()
                    ORDER BY run_at, id
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                queue_name, limit,
            )
        return [Job.from_row(r) for r in rows]

    async def touch(self, job_ids: List[int]) -> None:
        """Refresh the lock of jobs still being worked on."""
        if not job_ids:
            return
        async with self._db.acquire() as conn:
            await conn.execute(
                "UPDATE bulk_action_jobs SET locked_at = NOW() WHERE id = ANY($1::bigint[]) AND status = 'active'",
                job_ids,
            )

    async def complete(self, job: Job) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                """
                UPDATE bulk_action_jobs
                SET status = 'completed', locked_at = NULL, finished_at = NOW()
                WHERE id = $1
                """,
                job.id,
            )

    async def fail(self, job: Job, error: str) -> str:
        """Schedule a retry or give up. Returns the job's new status."""
        error = error[:500]
        if job.attempts_made >= job.max_attempts:
            async with self._db.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE bulk_action_jobs
                    SET status = 'failed', last_error = $2, locked_at = NULL, finished_at = NOW()
                    WHERE id = $1
                    """,
                    job.id, error,
                )
            return "failed"

        delay = backoff_delay_ms(job.backoff_ms, job.attempts_made)
        async with self._db.acquire() as conn:
            await conn.execute(
                """
                UPDATE bulk_action_jobs
                SET status = 'delayed', last_error = $2, locked_at = NULL,
                    run_at = NOW() + ($3::int * INTERVAL '1 millisecond')
                WHERE id = $1
                """,
                job.id, error, delay,
            )
        return "delayed"

    async def requeue_stalled(self, queue_name: str, stall_timeout_seconds: int) -> int:
        """Return jobs with a stale lock to the queue.

        A stalled job gets one redelivery beyond its attempt budget; after
        that it is failed, and so is its action if it was left processing.
        """
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE bulk_action_jobs
                SET status = CASE WHEN attempts_made > max_attempts THEN 'failed' ELSE 'waiting' END,
                    finished_at = CASE WHEN attempts_made > max_attempts THEN NOW() ELSE NULL END,
                    last_error = 'job stalled',
                    locked_at = NULL
                WHERE queue_name = $1
                  AND status = 'active'
                  AND locked_at < NOW() - ($2::int * INTERVAL '1 second')
                RETURNING id, action_id, status
                """,
                queue_name, stall_timeout_seconds,
            )
            given_up = [row["action_id"] for row in rows if row["status"] == "failed"]
            if given_up:
                await conn.execute(
                    """
                    UPDATE bulk_actions SET status = 'failed', updated_at = NOW()
                    WHERE id = ANY($1::uuid[]) AND status = 'processing'
                    """,
                    given_up,
                )
        for row in rows:
            logger.warning(
                "Stalled job id=%s action=%s -> %s", row["id"], row["action_id"], row["status"],
            )
        return len(rows)


class QueueWorker:
    """Background consumer for one queue.

    Runs up to ``concurrency`` jobs at a time. The consumer's exception
    decides the job's fate: success completes it, an error retries it.
    """

    def __init__(
        self,
        queue: PostgresWorkQueue,
        queue_name: str,
        consumer: Consumer,
        poll_interval: float = 1.0,
        concurrency: int = 1,
        stall_timeout_seconds: int = 300,
    ):
        self.queue = queue
        self.queue_name = queue_name
        self._consumer = consumer
        self._poll_interval = poll_interval
        self._concurrency = max(concurrency, 1)
        self._stall_timeout = stall_timeout_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._inflight: dict[int, asyncio.Task] = {}
        self._last_stall_check: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Queue worker started: %s (poll=%.1fs, concurrency=%d)",
            self.queue_name, self._poll_interval, self._concurrency,
        )

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        # Unfinished jobs stay active and are redelivered after the stall timeout
        pending: Set[asyncio.Task] = set(self._inflight.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()
        logger.info("Queue worker stopped: %s", self.queue_name)

    async def _run_loop(self):
        while self._running:
            try:
                await self.poll_once()
                await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Queue worker %s loop error: %s", self.queue_name, e)
                await asyncio.sleep(5)

    async def poll_once(self) -> int:
        """Heartbeat, stall sweep and claim. Returns the number of jobs started."""
        loop = asyncio.get_running_loop()
        await self.queue.touch(list(self._inflight))

        now = loop.time()
        if self._last_stall_check is None or now - self._last_stall_check >= max(self._stall_timeout / 2, 1):
            self._last_stall_check = now
            await self.queue.requeue_stalled(self.queue_name, self._stall_timeout)

        free = self._concurrency - len(self._inflight)
        if free <= 0:
            return 0
        jobs = await self.queue.claim(self.queue_name, free)
        for job in jobs:
            task = asyncio.create_task(self._run_job(job))
            self._inflight[job.id] = task
            task.add_done_callback(lambda _t, job_id=job.id: self._inflight.pop(job_id, None))
        return len(jobs)

    async def _run_job(self, job: Job):
        logger.info(
            "Processing job id=%s action=%s (attempt %d/%d)",
            job.id, job.action_id, job.attempts_made, job.max_attempts,
        )
        try:
            await self._consumer(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            try:
                status = await self.queue.fail(job, str(e) or type(e).__name__)
            except Exception as db_err:
                logger.error("Could not record failure of job id=%s: %s", job.id, db_err)
                return
            logger.warning(
                "Job id=%s action=%s failed (%s), now %s",
                job.id, job.action_id, e, status,
            )
            return
        try:
            await self.queue.complete(job)
        except Exception as e:
            logger.error("Could not mark job id=%s completed: %s", job.id, e)
