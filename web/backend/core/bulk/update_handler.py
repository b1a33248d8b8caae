"""The ``bulk-update`` handler: patches contacts matched by email."""
import logging
from typing import Any, Dict, Optional

from web.backend.core.bulk.constants import ActionType
from web.backend.core.bulk.dedup import DeduplicationIndex
from web.backend.core.bulk.exceptions import InvalidPayload
from web.backend.core.bulk.models import EntityContext, EntityResult
from web.backend.core.bulk.store import ContactStore

logger = logging.getLogger(__name__)


class BulkUpdateHandler:
    action_type = ActionType.UPDATE.value

    def __init__(self, contacts: ContactStore, dedup: DeduplicationIndex):
        self._contacts = contacts
        self._dedup = dedup

    async def validate(self, payload: Dict[str, Any]) -> bool:
        if not payload:
            raise InvalidPayload("Payload is required")
        config = payload.get("config")
        if not isinstance(config, dict) or not config.get("fieldsToUpdate"):
            raise InvalidPayload("config.fieldsToUpdate is required")
        if not isinstance(config["fieldsToUpdate"], dict):
            raise InvalidPayload("config.fieldsToUpdate must be an object")
        return True

    async def process_entity(
        self,
        entity: Dict[str, Any],
        config: Dict[str, Any],
        context: Optional[EntityContext] = None,
    ) -> EntityResult:
        email = entity.get("email")
        if not email:
            return EntityResult.failure("No email id found for the entity")

        owner = context.owner if context is not None else None
        if self._dedup.is_duplicate(email, owner):
            return EntityResult.skipped("Duplicate email detected")

        fields: Dict[str, Any] = {}
        if entity.get("name"):
            fields["name"] = entity["name"]
        if entity.get("age") is not None:
            fields["age"] = entity["age"]
        fields.update(config.get("fieldsToUpdate") or {})

        try:
            matched = await self._contacts.update_by_email(email, fields)
        except Exception as e:
            logger.debug("Contact update failed for %s: %s", email, e)
            return EntityResult.failure(f"Failed to update: {e}")

        if not matched:
            logger.debug("No contact matched %s", email)
        return EntityResult.success("Entity updated successfully")

    def describe_config_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "fieldsToUpdate": {"type": "object"},
                "scheduledFor": {"type": "string", "format": "date-time"},
            },
            "required": ["fieldsToUpdate"],
        }
