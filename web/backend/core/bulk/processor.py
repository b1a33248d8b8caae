"""Batch processor: the queue consumer that runs one action to a terminal status.

Entities are pulled in batches of ``PROCESSING_BATCH_SIZE`` pending items;
each batch is worked in chunks of ``STATS_FLUSH_EVERY`` concurrent handler
calls, and the running counters are written to the action record and pushed
to subscribers after every chunk. Every call in a chunk finishes before a
store error from any of them fails the run. Batches run one after another.

Counters start from the entity store's terminal counts, so a redelivered
job picks up where the last delivery stopped and ends with the same stats
as an uninterrupted run. The terminal counters are read back from the
entity store as well.
"""
import asyncio
import logging
from typing import Optional

from shared.logger import log_entity_outcome
from web.backend.core.bulk.constants import (
    PROCESSING_BATCH_SIZE,
    STATS_FLUSH_EVERY,
    BulkActionStatus,
    Outcome,
)
from web.backend.core.bulk.exceptions import (
    ActionNotFound,
    EntityProcessingFailure,
    UnsupportedActionType,
)
from web.backend.core.bulk.handlers import BulkActionHandler
from web.backend.core.bulk.models import (
    ActionStats,
    BulkAction,
    BulkActionEntity,
    EntityContext,
    EntityResult,
)
from web.backend.core.bulk.notifications import ActionNotifier
from web.backend.core.bulk.queue import Job
from web.backend.core.bulk.stats import StatsService
from web.backend.core.bulk.store import ActionStore, EntityStore

logger = logging.getLogger(__name__)


class BatchProcessor:
    """Consumer bound to exactly one handler (one queue per action type)."""

    def __init__(
        self,
        handler: BulkActionHandler,
        actions: ActionStore,
        entities: EntityStore,
        notifier: ActionNotifier,
        stats_service: Optional[StatsService] = None,
        batch_size: int = PROCESSING_BATCH_SIZE,
        flush_every: int = STATS_FLUSH_EVERY,
    ):
        self.handler = handler
        self._actions = actions
        self._entities = entities
        self._notifier = notifier
        self._stats_service = stats_service or StatsService(actions, entities)
        self._batch_size = batch_size
        self._flush_every = flush_every

    @property
    def action_type(self) -> str:
        return self.handler.action_type

    async def handle_job(self, job: Job) -> None:
        await self.process(job.action_id)

    async def process(self, action_id: str) -> BulkAction:
        """Run ``action_id`` to completion. Errors mark it failed and propagate."""
        try:
            return await self._run(action_id)
        except Exception as e:
            logger.error("Bulk action %s failed: %s", action_id, e)
            failed = await self._actions.set_status(action_id, BulkActionStatus.FAILED)
            if failed is not None:
                self._notifier.notify_action_update(failed)
            raise

    async def _run(self, action_id: str) -> BulkAction:
        action = await self._actions.set_status(action_id, BulkActionStatus.PROCESSING)
        if action is None:
            raise ActionNotFound(action_id)
        self._notifier.notify_action_update(action)

        if action.action_type != self.handler.action_type:
            raise UnsupportedActionType(action.action_type)

        stats = await self._stored_counts(action_id, action.stats.total)
        if stats.completed:
            logger.info(
                "Resuming bulk action %s with %d of %d entities already done",
                action_id, stats.completed, stats.total,
            )

        batches = 0
        while True:
            batch = await self._entities.get_entities_for_processing(action_id, self._batch_size)
            if not batch:
                break
            batches += 1
            for start in range(0, len(batch), self._flush_every):
                chunk = batch[start:start + self._flush_every]
                results = await asyncio.gather(
                    *(self._process_entity(action, e) for e in chunk),
                    return_exceptions=True,
                )
                errors = [r for r in results if isinstance(r, BaseException)]
                if errors:
                    if len(errors) > 1:
                        logger.warning(
                            "Bulk action %s: %d entity completions failed in one chunk",
                            action_id, len(errors),
                        )
                    raise errors[0]
                for outcome in results:
                    if outcome is not None:
                        stats.record(outcome)
                await self._flush(action_id, stats)
            logger.debug("Bulk action %s: batch %d done (%d entities)", action_id, batches, len(batch))

        # Recount so entities finished by a concurrent delivery are included
        stats = await self._stored_counts(action_id, stats.total)
        await self._actions.update_stats(action_id, stats)
        final_status = (
            BulkActionStatus.COMPLETED if stats.failed == 0 else BulkActionStatus.COMPLETED_WITH_ERRORS
        )
        action = await self._actions.set_status(action_id, final_status)
        await self._stats_service.record_action_completion(action, stats)
        self._notifier.notify_action_update(action)
        return action

    async def _stored_counts(self, action_id: str, total: int) -> ActionStats:
        counts = await self._entities.get_entities_stats(action_id)
        return ActionStats(
            total=total,
            success=counts["processed"],
            failed=counts["failed"],
            skipped=counts["skipped"],
        )

    async def _flush(self, action_id: str, stats: ActionStats) -> None:
        updated = await self._actions.update_stats(action_id, stats)
        if updated is not None:
            self._notifier.notify_action_update(updated)

    async def _process_entity(self, action: BulkAction, entity: BulkActionEntity) -> Optional[Outcome]:
        """Run the handler for one entity and record its terminal status.

        Returns None when another delivery already finished the entity.
        """
        try:
            result = await self.handler.process_entity(
                entity.entity_data, action.config, EntityContext(action.id, entity.entity_id),
            )
        except EntityProcessingFailure as e:
            result = EntityResult.failure(e.message)
        except Exception as e:
            result = EntityResult.failure(str(e) or type(e).__name__)
        if not isinstance(result, EntityResult):
            result = EntityResult.failure(f"Handler returned {type(result).__name__}, expected EntityResult")

        if not await self._entities.complete_entity(entity, result.outcome, result.message):
            logger.debug("Entity %s of action %s already completed", entity.entity_id, action.id)
            return None

        log_entity_outcome(
            action.id,
            entity.entity_id,
            result.outcome.value,
            result.message if result.outcome is not Outcome.SUCCESS else None,
        )
        return result.outcome
