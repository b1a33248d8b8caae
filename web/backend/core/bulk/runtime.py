"""Assembly of the bulk action pipeline for one process.

``build_runtime`` wires stores, queue, handlers, processors, workers and
the scheduler; the FastAPI lifespan starts and stops the result.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from shared.database import DatabaseService, db_service
from web.backend.core.bulk.csv_ingest import CsvIngestor
from web.backend.core.bulk.dedup import DeduplicationIndex
from web.backend.core.bulk.handlers import BulkActionHandler, HandlerRegistry
from web.backend.core.bulk.notifications import ActionNotifier, notifier as default_notifier
from web.backend.core.bulk.processor import BatchProcessor
from web.backend.core.bulk.queue import PostgresWorkQueue, QueueWorker
from web.backend.core.bulk.scheduler import BulkActionScheduler
from web.backend.core.bulk.service import BulkActionService
from web.backend.core.bulk.stats import StatsService
from web.backend.core.bulk.store import (
    PostgresActionStore,
    PostgresContactStore,
    PostgresEntityStore,
)
from web.backend.core.bulk.update_handler import BulkUpdateHandler
from web.backend.core.config import WebSettings

logger = logging.getLogger(__name__)

HandlerFactory = Callable[[PostgresContactStore, DeduplicationIndex], BulkActionHandler]

# Handlers registered at startup; add a factory here to support a new action type
HANDLER_FACTORIES: List[HandlerFactory] = [BulkUpdateHandler]


@dataclass
class BulkRuntime:
    registry: HandlerRegistry
    actions: PostgresActionStore
    entities: PostgresEntityStore
    contacts: PostgresContactStore
    queue: PostgresWorkQueue
    notifier: ActionNotifier
    dedup: DeduplicationIndex
    stats: StatsService
    service: BulkActionService
    processors: Dict[str, BatchProcessor] = field(default_factory=dict)
    workers: List[QueueWorker] = field(default_factory=list)
    scheduler: Optional[BulkActionScheduler] = None

    async def start(self) -> None:
        for worker in self.workers:
            await worker.start()
        if self.scheduler is not None:
            await self.scheduler.start()
        logger.info(
            "Bulk pipeline started: handlers=%s, workers=%d, scheduler=%s",
            ",".join(self.registry.action_types()), len(self.workers),
            "on" if self.scheduler is not None else "off",
        )

    async def stop(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        for worker in self.workers:
            await worker.stop()
        await self.notifier.drain()


def build_runtime(
    settings: WebSettings,
    db: DatabaseService = db_service,
    handler_factories: Optional[Iterable[HandlerFactory]] = None,
    notifier: Optional[ActionNotifier] = None,
) -> BulkRuntime:
    actions = PostgresActionStore(db)
    entities = PostgresEntityStore(db)
    contacts = PostgresContactStore(db)
    queue = PostgresWorkQueue(db)
    notifier = notifier or default_notifier
    dedup = DeduplicationIndex(max_keys=settings.dedup_bound)
    stats = StatsService(actions, entities)

    factories = HANDLER_FACTORIES if handler_factories is None else list(handler_factories)
    registry = HandlerRegistry(factory(contacts, dedup) for factory in factories)

    service = BulkActionService(
        registry,
        actions,
        entities,
        queue,
        ingestor=CsvIngestor(
            entities,
            batch_size=settings.file_batch_size,
            max_inflight=settings.max_inflight_batches,
        ),
        notifier=notifier,
    )

    runtime = BulkRuntime(
        registry=registry,
        actions=actions,
        entities=entities,
        contacts=contacts,
        queue=queue,
        notifier=notifier,
        dedup=dedup,
        stats=stats,
        service=service,
    )

    # One queue, processor and worker per action type
    for handler in registry:
        processor = BatchProcessor(handler, actions, entities, notifier, stats)
        runtime.processors[handler.action_type] = processor
        runtime.workers.append(QueueWorker(
            queue,
            handler.action_type,
            processor.handle_job,
            poll_interval=settings.queue_poll_interval,
            concurrency=settings.queue_concurrency,
            stall_timeout_seconds=settings.queue_stall_timeout_seconds,
        ))

    if settings.scheduler_enabled:
        runtime.scheduler = BulkActionScheduler(
            actions, queue, interval_seconds=settings.scheduler_interval_seconds,
        )
    return runtime
