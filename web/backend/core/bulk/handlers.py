"""Action handler contract and the registry that dispatches on action type."""
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from web.backend.core.bulk.exceptions import UnsupportedActionType
from web.backend.core.bulk.models import EntityContext, EntityResult

logger = logging.getLogger(__name__)


@runtime_checkable
class BulkActionHandler(Protocol):
    """Strategy for one action type.

    ``validate`` returns True, or returns False / raises with a reason.
    ``process_entity`` receives the entity payload and the action config and
    returns an ``EntityResult``; raising counts as a failure. ``context``
    identifies the work item, so a retried item can be told apart from a
    genuine repeat.
    """

    action_type: str

    async def validate(self, payload: Dict[str, Any]) -> bool: ...

    async def process_entity(
        self,
        entity: Dict[str, Any],
        config: Dict[str, Any],
        context: Optional[EntityContext] = None,
    ) -> EntityResult: ...

    def describe_config_schema(self) -> Dict[str, Any]: ...


class HandlerRegistry:
    """Maps action type to its handler. Built once at startup."""

    def __init__(self, handlers: Iterable[BulkActionHandler] = ()):
        self._handlers: Dict[str, BulkActionHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: BulkActionHandler) -> None:
        action_type = handler.action_type
        if action_type in self._handlers:
            raise ValueError(f"Handler already registered for action type: {action_type}")
        self._handlers[action_type] = handler
        logger.debug("Registered bulk handler %s (%s)", action_type, type(handler).__name__)

    def get(self, action_type: str) -> Optional[BulkActionHandler]:
        return self._handlers.get(action_type)

    def require(self, action_type: str) -> BulkActionHandler:
        handler = self._handlers.get(action_type)
        if handler is None:
            raise UnsupportedActionType(action_type)
        return handler

    def action_types(self) -> List[str]:
        return list(self._handlers)

    def __contains__(self, action_type: str) -> bool:
        return action_type in self._handlers

    def __iter__(self):
        return iter(self._handlers.values())

    def __len__(self) -> int:
        return len(self._handlers)
