"""Bulk action intake: validation, persistence, entity fan-out and enqueue."""
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from web.backend.core.bulk.constants import DEFAULT_ACCOUNT_ID, BulkActionStatus, EntityStatus
from web.backend.core.bulk.csv_ingest import CsvIngestor
from web.backend.core.bulk.exceptions import (
    ActionNotFound,
    BulkActionError,
    InvalidPayload,
    SchedulingRaceFault,
)
from web.backend.core.bulk.handlers import BulkActionHandler, HandlerRegistry
from web.backend.core.bulk.models import BulkAction, BulkActionEntity
from web.backend.core.bulk.notifications import ActionNotifier
from web.backend.core.bulk.queue import WorkQueue
from web.backend.core.bulk.store import ActionStore, EntityStore

logger = logging.getLogger(__name__)

_datetime_adapter = TypeAdapter(datetime)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_scheduled_for(value: Any) -> Optional[datetime]:
    """Parse ``config.scheduledFor``; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError:
        raise InvalidPayload("config.scheduledFor must be an ISO 8601 datetime")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_status_filter(status: Optional[str]) -> Optional[BulkActionStatus]:
    """Unknown status values mean "no filter"."""
    if not status:
        return None
    try:
        return BulkActionStatus(status)
    except ValueError:
        logger.debug("Ignoring unknown status filter %r", status)
        return None


def to_work_items(entities: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Map inline entities to ``{entity_id, entity_data}`` using ``id`` or ``_id``."""
    items = []
    for position, entity in enumerate(entities):
        if not isinstance(entity, dict):
            raise InvalidPayload(f"entities[{position}] must be an object")
        entity_id = entity.get("id")
        if entity_id is None or entity_id == "":
            entity_id = entity.get("_id")
        if entity_id is None or entity_id == "":
            raise InvalidPayload(f"entities[{position}] has no id")
        items.append({"entity_id": str(entity_id), "entity_data": entity})
    return items


class BulkActionService:
    """Entry point for creating and reading bulk actions."""

    def __init__(
        self,
        registry: HandlerRegistry,
        actions: ActionStore,
        entities: EntityStore,
        queue: WorkQueue,
        ingestor: Optional[CsvIngestor] = None,
        clock: Callable[[], datetime] = _utcnow,
        notifier: Optional[ActionNotifier] = None,
    ):
        self.registry = registry
        self._actions = actions
        self._entities = entities
        self._queue = queue
        self._ingestor = ingestor or CsvIngestor(entities)
        self._clock = clock
        self._notifier = notifier

    async def _validated_handler(self, action_type: str, payload: Dict[str, Any]) -> BulkActionHandler:
        handler = self.registry.require(action_type)
        try:
            valid = await handler.validate(payload)
        except BulkActionError:
            raise
        except Exception as e:
            raise InvalidPayload(str(e) or type(e).__name__)
        if not valid:
            raise InvalidPayload(f"Invalid data for action type {action_type}")
        return handler

    async def create_bulk_action(
        self,
        action_type: str,
        request: Dict[str, Any],
        account_id: Optional[str] = None,
    ) -> BulkAction:
        """Create an action from an inline entity list."""
        await self._validated_handler(action_type, request)

        config = dict(request.get("config") or {})
        scheduled_for = parse_scheduled_for(config.get("scheduledFor"))
        raw_entities = request.get("entities") or []
        if not isinstance(raw_entities, list):
            raise InvalidPayload("entities must be a list")
        items = to_work_items(raw_entities)

        action = await self._actions.create(
            action_type,
            config,
            scheduled_for,
            account_id or request.get("accountId") or DEFAULT_ACCOUNT_ID,
        )
        logger.info("Created bulk action %s (%s, %d entities)", action.id, action_type, len(items))

        try:
            if items:
                stored = await self._entities.create_entities(action.id, items)
                await self._actions.set_total(action.id, stored)
        except Exception as e:
            await self._abandon(action, e)
            raise

        await self._dispatch(action, scheduled_for)
        return await self._reload(action)

    async def create_bulk_action_from_file(
        self,
        action_type: str,
        chunks: AsyncIterator[bytes],
        config: Dict[str, Any],
        account_id: Optional[str] = None,
    ) -> BulkAction:
        """Create an action whose entities stream in from a CSV upload."""
        config = dict(config or {})
        await self._validated_handler(action_type, {"config": config})
        scheduled_for = parse_scheduled_for(config.get("scheduledFor"))

        action = await self._actions.create(
            action_type, config, scheduled_for, account_id or DEFAULT_ACCOUNT_ID,
        )
        logger.info("Created bulk action %s (%s) from file upload", action.id, action_type)

        try:
            stored = await self._ingestor.ingest(action.id, chunks)
            await self._actions.set_total(action.id, stored)
        except Exception as e:
            await self._abandon(action, e)
            raise

        await self._dispatch(action, scheduled_for)
        return await self._reload(action)

    async def _dispatch(self, action: BulkAction, scheduled_for: Optional[datetime]) -> None:
        """Enqueue now unless scheduled for later; the scheduler picks up deferred actions."""
        if scheduled_for is not None and scheduled_for > self._clock():
            logger.info("Bulk action %s scheduled for %s", action.id, scheduled_for.isoformat())
            return

        # Whoever flips pending -> queued owns the enqueue
        try:
            claimed = await self._actions.mark_queued_if_pending(action.id)
        except Exception as e:
            await self._abandon(action, e)
            raise
        if not claimed:
            logger.info("Bulk action %s already claimed, not enqueuing", action.id)
            return
        try:
            await self._queue.enqueue(action.id, action.action_type)
        except SchedulingRaceFault:
            logger.info("Bulk action %s already has a live job", action.id)
        except Exception:
            await self._actions.release_claim(action.id)
            raise

    async def _abandon(self, action: BulkAction, error: Exception) -> None:
        """Fail an action whose intake broke off; nothing would ever pick it up."""
        logger.error("Intake of bulk action %s failed: %s", action.id, error)
        try:
            failed = await self._actions.set_status(action.id, BulkActionStatus.FAILED)
        except Exception as e:
            logger.error("Could not mark bulk action %s failed: %s", action.id, e)
            return
        if failed is not None and self._notifier is not None:
            self._notifier.notify_action_update(failed)

    async def _reload(self, action: BulkAction) -> BulkAction:
        return await self._actions.get(action.id) or action

    async def get_all_actions(
        self,
        status: Optional[str] = None,
        account_id: Optional[str] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Tuple[List[BulkAction], int]:
        return await self._actions.list(parse_status_filter(status), account_id, page, per_page)

    async def get_action_by_id(self, action_id: str) -> BulkAction:
        action = await self._actions.get(action_id)
        if action is None:
            raise ActionNotFound(action_id)
        return action

    async def list_action_entities(
        self,
        action_id: str,
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Tuple[List[BulkActionEntity], int]:
        await self.get_action_by_id(action_id)
        entity_status = None
        if status:
            try:
                entity_status = EntityStatus(status)
            except ValueError:
                logger.debug("Ignoring unknown entity status filter %r", status)
        return await self._entities.list_entities(action_id, entity_status, page, per_page)
