"""Shared test fixtures for backend tests.

Provides:
- In-memory fakes of the action, entity and contact stores and the work queue
- The bulk pipeline (registry, service, processor, scheduler) wired to the fakes
- FastAPI test app with dependency overrides
- httpx AsyncClient for API testing
"""
import copy
import os
import sys
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import pytest
import pytest_asyncio

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# Set environment variables BEFORE any app imports
os.environ.setdefault("WEB_DEBUG", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("RATE_LIMIT", "100/minute")
os.environ.pop("DATABASE_URL", None)
os.environ.pop("REDIS_URL", None)

# Clear the lru_cache so test env vars take effect
from web.backend.core.config import get_web_settings
get_web_settings.cache_clear()

from httpx import ASGITransport, AsyncClient
from web.backend.api.deps import get_bulk_service, get_stats_service
from web.backend.core.bulk.constants import BulkActionStatus, EntityStatus, Outcome
from web.backend.core.bulk.csv_ingest import CsvIngestor
from web.backend.core.bulk.dedup import DeduplicationIndex
from web.backend.core.bulk.exceptions import SchedulingRaceFault
from web.backend.core.bulk.handlers import HandlerRegistry
from web.backend.core.bulk.models import ActionStats, BulkAction, BulkActionEntity
from web.backend.core.bulk.notifications import ActionNotifier
from web.backend.core.bulk.processor import BatchProcessor
from web.backend.core.bulk.queue import Job
from web.backend.core.bulk.scheduler import BulkActionScheduler
from web.backend.core.bulk.service import BulkActionService
from web.backend.core.bulk.stats import StatsService
from web.backend.core.bulk.store import CONTACT_COLUMNS
from web.backend.core.bulk.update_handler import BulkUpdateHandler
from web.backend.core.rate_limit import limiter
from web.backend.main import create_app


class StoreUnavailable(ConnectionError):
    """Raised by fakes for operations listed in ``fail_on``."""


# ── In-memory stores ──────────────────────────────────────────

class FakeActionStore:
    def __init__(self):
        self.actions: Dict[str, BulkAction] = {}
        self.completions: List[Tuple[str, Dict[str, int]]] = []
        self.stat_writes: List[ActionStats] = []
        self.fail_on: Set[str] = set()

    def _check(self, op: str) -> None:
        if op in self.fail_on:
            raise StoreUnavailable(f"{op}: store unavailable")

    async def create(self, action_type, config, scheduled_for, account_id) -> BulkAction:
        self._check("create")
        now = datetime.now(timezone.utc)
        action = BulkAction(
            id=str(uuid.uuid4()),
            action_type=action_type,
            config=copy.deepcopy(config),
            scheduled_for=scheduled_for,
            account_id=account_id,
            created_at=now,
            updated_at=now,
        )
        self.actions[action.id] = action
        return copy.deepcopy(action)

    async def get(self, action_id: str) -> Optional[BulkAction]:
        action = self.actions.get(action_id)
        return copy.deepcopy(action) if action else None

    async def list(self, status=None, account_id=None, page=1, per_page=50):
        items = [
            a for a in self.actions.values()
            if (status is None or a.status == status)
            and (account_id is None or a.account_id == account_id)
        ]
        items.sort(key=lambda a: a.created_at, reverse=True)
        start = (page - 1) * per_page
        return [copy.deepcopy(a) for a in items[start:start + per_page]], len(items)

    async def set_total(self, action_id: str, total: int) -> None:
        self.actions[action_id].stats.total = total

    async def set_status(self, action_id: str, status: BulkActionStatus) -> Optional[BulkAction]:
        self._check("set_status")
        action = self.actions.get(action_id)
        if action is None:
            return None
        action.status = BulkActionStatus(status)
        return copy.deepcopy(action)

    async def update_stats(self, action_id: str, stats: ActionStats) -> Optional[BulkAction]:
        self._check("update_stats")
        action = self.actions.get(action_id)
        if action is None:
            return None
        action.stats = ActionStats(
            total=action.stats.total,
            success=stats.success,
            failed=stats.failed,
            skipped=stats.skipped,
        )
        self.stat_writes.append(copy.copy(action.stats))
        return copy.deepcopy(action)

    async def mark_queued_if_pending(self, action_id: str) -> bool:
        self._check("mark_queued_if_pending")
        action = self.actions.get(action_id)
        if action is None or action.status is not BulkActionStatus.PENDING:
            return False
        action.status = BulkActionStatus.QUEUED
        return True

    async def claim_due_actions(self, now: datetime, limit: int = 100) -> List[BulkAction]:
        due = [
            a for a in self.actions.values()
            if a.status is BulkActionStatus.PENDING
            and a.scheduled_for is not None
            and a.scheduled_for <= now
        ][:limit]
        for action in due:
            action.status = BulkActionStatus.QUEUED
        return [copy.deepcopy(a) for a in due]

    async def release_claim(self, action_id: str) -> bool:
        action = self.actions.get(action_id)
        if action is None or action.status is not BulkActionStatus.QUEUED:
            return False
        action.status = BulkActionStatus.PENDING
        if action.scheduled_for is None:
            action.scheduled_for = datetime.now(timezone.utc)
        return True

    async def status_summary(self, account_id: Optional[str] = None) -> Dict[str, int]:
        summary = {s.value: 0 for s in BulkActionStatus}
        for action in self.actions.values():
            if account_id is None or action.account_id == account_id:
                summary[action.status.value] += 1
        return summary

    async def record_completion(self, action_id: str, summary: Dict[str, int]) -> None:
        self.completions.append((action_id, dict(summary)))


class FakeEntityStore:
    def __init__(self):
        self.entities: Dict[str, Dict[str, BulkActionEntity]] = defaultdict(dict)
        self.logs: List[Tuple[str, str, str, str]] = []
        self.batches: List[List[Dict[str, Any]]] = []
        self.fail_on: Set[str] = set()
        self._next_id = 1

    def _check(self, op: str) -> None:
        if op in self.fail_on:
            raise StoreUnavailable(f"{op}: store unavailable")

    async def create_entities(self, action_id: str, entities: Sequence[Dict[str, Any]]) -> int:
        self._check("create_entities")
        self.batches.append(list(entities))
        stored = 0
        for item in entities:
            entity_id = str(item["entity_id"])
            if entity_id in self.entities[action_id]:
                continue
            self.entities[action_id][entity_id] = BulkActionEntity(
                id=self._next_id,
                bulk_action_id=action_id,
                entity_id=entity_id,
                entity_data=copy.deepcopy(item.get("entity_data") or {}),
            )
            self._next_id += 1
            stored += 1
        return stored

    async def get_entities_for_processing(self, action_id: str, batch_size: int) -> List[BulkActionEntity]:
        self._check("get_entities_for_processing")
        pending = [
            e for e in self.entities.get(action_id, {}).values()
            if e.status is EntityStatus.PENDING
        ]
        return [copy.deepcopy(e) for e in pending[:batch_size]]

    async def complete_entity(self, entity: BulkActionEntity, outcome: Outcome, message: str) -> bool:
        self._check("complete_entity")
        stored = self.entities.get(entity.bulk_action_id, {}).get(entity.entity_id)
        if stored is None or stored.status is not EntityStatus.PENDING:
            return False
        stored.status = outcome.entity_status
        stored.error_message = message if outcome is not Outcome.SUCCESS else None
        self.logs.append((entity.bulk_action_id, entity.entity_id, outcome.value, message))
        return True

    async def get_entities_stats(self, action_id: str) -> Dict[str, int]:
        stats = {"total": 0, **{s.value: 0 for s in EntityStatus}}
        for entity in self.entities.get(action_id, {}).values():
            stats[entity.status.value] += 1
            stats["total"] += 1
        return stats

    async def list_entities(self, action_id, status=None, page=1, per_page=50):
        items = [
            e for e in self.entities.get(action_id, {}).values()
            if status is None or e.status == status
        ]
        start = (page - 1) * per_page
        return [copy.deepcopy(e) for e in items[start:start + per_page]], len(items)

    def statuses(self, action_id: str) -> Dict[str, str]:
        return {eid: e.status.value for eid, e in self.entities.get(action_id, {}).items()}


class FakeContactStore:
    def __init__(self, contacts: Sequence[Dict[str, Any]] = ()):
        self.contacts: Dict[str, Dict[str, Any]] = {c["email"]: dict(c) for c in contacts}
        self.updates: List[Tuple[str, Dict[str, Any]]] = []

    async def update_by_email(self, email: str, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - CONTACT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown contact field(s): {', '.join(sorted(unknown))}")
        self.updates.append((email, dict(fields)))
        contact = self.contacts.get(email)
        if contact is None:
            return False
        contact.update(fields)
        return True

    async def insert_many(self, contacts: Sequence[Dict[str, Any]]) -> int:
        inserted = 0
        for contact in contacts:
            if contact.get("email") and contact["email"] not in self.contacts:
                self.contacts[contact["email"]] = dict(contact)
                inserted += 1
        return inserted


class FakeWorkQueue:
    LIVE = ("waiting", "delayed", "active")

    def __init__(self):
        self.jobs: List[Job] = []
        self.enqueue_error: Optional[Exception] = None

    async def enqueue(self, action_id: str, queue_name: str, attempts: int = 1, backoff_ms: int = 0) -> int:
        if self.enqueue_error is not None:
            raise self.enqueue_error
        if any(j.action_id == action_id and j.status in self.LIVE for j in self.jobs):
            raise SchedulingRaceFault(action_id)
        job = Job(
            id=len(self.jobs) + 1,
            action_id=action_id,
            queue_name=queue_name,
            max_attempts=max(attempts, 1),
            backoff_ms=backoff_ms,
        )
        self.jobs.append(job)
        return job.id

    def jobs_for(self, action_id: str) -> List[Job]:
        return [j for j in self.jobs if j.action_id == action_id]


# ── Pipeline fixtures ─────────────────────────────────────────

@pytest.fixture()
def action_store():
    return FakeActionStore()


@pytest.fixture()
def entity_store():
    return FakeEntityStore()


@pytest.fixture()
def contact_store():
    return FakeContactStore([
        {"name": "A", "email": "a@x.com", "age": 30, "status": "inactive"},
        {"name": "B", "email": "b@x.com", "age": 41, "status": "inactive"},
    ])


@pytest.fixture()
def work_queue():
    return FakeWorkQueue()


@pytest.fixture()
def dedup():
    return DeduplicationIndex()


@pytest.fixture()
def update_handler(contact_store, dedup):
    return BulkUpdateHandler(contact_store, dedup)


@pytest.fixture()
def registry(update_handler):
    return HandlerRegistry([update_handler])


@pytest.fixture()
def bulk_service(registry, action_store, entity_store, work_queue, notifier):
    return BulkActionService(
        registry,
        action_store,
        entity_store,
        work_queue,
        ingestor=CsvIngestor(entity_store, batch_size=2, max_inflight=1),
        notifier=notifier,
    )


@pytest.fixture()
def stats_service(action_store, entity_store):
    return StatsService(action_store, entity_store)


@pytest.fixture()
def notifier():
    return ActionNotifier(send_timeout=0.5)


@pytest.fixture()
def processor(update_handler, action_store, entity_store, notifier, stats_service):
    return BatchProcessor(update_handler, action_store, entity_store, notifier, stats_service)


@pytest.fixture()
def scheduler(action_store, work_queue):
    return BulkActionScheduler(action_store, work_queue, interval_seconds=60)


# ── App and client fixtures ──────────────────────────────────

@pytest.fixture(autouse=True)
def reset_rate_limits():
    """The limiter is module-global; start every test with an empty window."""
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture()
def app():
    """Create a fresh FastAPI app for testing."""
    # Clear settings cache for each test
    get_web_settings.cache_clear()
    _app = create_app()
    yield _app
    # Clean up overrides
    _app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(app, bulk_service, stats_service):
    """Async HTTP client with the pipeline wired to in-memory stores."""
    app.dependency_overrides[get_bulk_service] = lambda: bulk_service
    app.dependency_overrides[get_stats_service] = lambda: stats_service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def bare_client(app):
    """Client against an app whose pipeline never started (no database)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
