"""Tests for due-time promotion of scheduled actions."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from web.backend.core.bulk.constants import BulkActionStatus
from web.backend.core.bulk.exceptions import SchedulingRaceFault
from web.backend.core.bulk.scheduler import BulkActionScheduler

CONFIG = {"fieldsToUpdate": {"status": "active"}}


async def _schedule(bulk_service, minutes: int = 10):
    when = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    request = {"config": {**CONFIG, "scheduledFor": when.isoformat()}, "entities": [{"id": "1", "email": "a@x.com"}]}
    return await bulk_service.create_bulk_action("bulk-update", request), when


class TestTick:

    @pytest.mark.asyncio
    async def test_due_action_promoted(self, bulk_service, scheduler, action_store, work_queue):
        action, when = await _schedule(bulk_service)
        assert action.status is BulkActionStatus.PENDING
        assert work_queue.jobs == []

        # Before the due time nothing happens
        assert await scheduler.tick(when - timedelta(seconds=1)) == []
        assert action_store.actions[action.id].status is BulkActionStatus.PENDING

        promoted = await scheduler.tick(when + timedelta(minutes=1))

        assert promoted == [action.id]
        assert action_store.actions[action.id].status is BulkActionStatus.QUEUED
        (job,) = work_queue.jobs_for(action.id)
        assert job.payload == {"actionId": action.id}
        assert job.queue_name == "bulk-update"
        assert job.max_attempts == 3
        assert job.backoff_ms == 2000

    @pytest.mark.asyncio
    async def test_repeated_ticks_enqueue_once(self, bulk_service, scheduler, work_queue):
        action, when = await _schedule(bulk_service)
        later = when + timedelta(minutes=1)

        results = [await scheduler.tick(later) for _ in range(3)]

        assert results == [[action.id], [], []]
        assert len(work_queue.jobs_for(action.id)) == 1

    @pytest.mark.asyncio
    async def test_overlapping_ticks_enqueue_once(self, bulk_service, action_store, work_queue):
        action, when = await _schedule(bulk_service)
        first = BulkActionScheduler(action_store, work_queue)
        second = BulkActionScheduler(action_store, work_queue)
        later = when + timedelta(minutes=1)

        results = await asyncio.gather(first.tick(later), second.tick(later))

        assert sorted(len(r) for r in results) == [0, 1]
        assert len(work_queue.jobs_for(action.id)) == 1

    @pytest.mark.asyncio
    async def test_unscheduled_pending_ignored(self, action_store, scheduler, work_queue):
        await action_store.create("bulk-update", CONFIG, None, "default")
        assert await scheduler.tick(datetime.now(timezone.utc)) == []
        assert work_queue.jobs == []

    @pytest.mark.asyncio
    async def test_enqueue_failure_returns_action_to_pending(self, bulk_service, scheduler, action_store, work_queue):
        action, when = await _schedule(bulk_service)
        later = when + timedelta(minutes=1)
        work_queue.enqueue_error = ConnectionError("queue down")

        assert await scheduler.tick(later) == []
        assert action_store.actions[action.id].status is BulkActionStatus.PENDING

        # Next tick retries
        work_queue.enqueue_error = None
        assert await scheduler.tick(later) == [action.id]
        assert action_store.actions[action.id].status is BulkActionStatus.QUEUED

    @pytest.mark.asyncio
    async def test_live_job_keeps_action_queued(self, bulk_service, scheduler, action_store, work_queue):
        action, when = await _schedule(bulk_service)
        work_queue.enqueue_error = SchedulingRaceFault(action.id)

        assert await scheduler.tick(when + timedelta(minutes=1)) == []
        assert action_store.actions[action.id].status is BulkActionStatus.QUEUED

    @pytest.mark.asyncio
    async def test_uses_clock(self, bulk_service, action_store, work_queue):
        action, when = await _schedule(bulk_service, 30)
        scheduler = BulkActionScheduler(action_store, work_queue, clock=lambda: when + timedelta(seconds=1))
        assert await scheduler.tick() == [action.id]


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_stop(self, action_store, work_queue):
        scheduler = BulkActionScheduler(action_store, work_queue, interval_seconds=3600)
        scheduler.tick = AsyncMock(return_value=[])

        await scheduler.start()
        assert scheduler.is_running
        await asyncio.sleep(0)
        await scheduler.stop()

        assert not scheduler.is_running
        scheduler.tick.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_loop_survives_tick_error(self, action_store, work_queue):
        scheduler = BulkActionScheduler(action_store, work_queue, interval_seconds=0)
        calls = []

        async def flaky_tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return []

        scheduler.tick = flaky_tick
        await scheduler.start()
        for _ in range(10):
            await asyncio.sleep(0)
        await scheduler.stop()

        assert len(calls) >= 2
