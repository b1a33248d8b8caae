"""Aggregate views over actions and their entities."""
import logging
from typing import Dict, Optional

from web.backend.core.bulk.models import ActionStats, BulkAction
from web.backend.core.bulk.store import ActionStore, EntityStore

logger = logging.getLogger(__name__)


class StatsService:
    def __init__(self, actions: ActionStore, entities: EntityStore):
        self._actions = actions
        self._entities = entities

    async def get_stats(self, action_id: str) -> Dict[str, int]:
        """Live per-status entity counts for one action."""
        return await self._entities.get_entities_stats(action_id)

    async def status_summary(self, account_id: Optional[str] = None) -> Dict[str, int]:
        return await self._actions.status_summary(account_id)

    async def record_action_completion(self, action: BulkAction, stats: ActionStats) -> Dict[str, int]:
        summary = {
            "successCount": stats.success,
            "failedCount": stats.failed,
            "skippedCount": stats.skipped,
            "totalCount": stats.completed,
        }
        await self._actions.record_completion(action.id, summary)
        logger.info(
            "Bulk action %s completed: %d ok, %d failed, %d skipped (of %d)",
            action.id, stats.success, stats.failed, stats.skipped, stats.total,
        )
        return summary
