"""Progress fan-out: pushes action snapshots to connections subscribed by action id."""
import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Dict, Protocol, Set

from web.backend.core.bulk.models import BulkAction

logger = logging.getLogger(__name__)

SEND_TIMEOUT = 5.0


class Subscriber(Protocol):
    async def send_text(self, data: str) -> None: ...


def action_snapshot(action: BulkAction) -> Dict[str, Any]:
    return {
        "id": action.id,
        "status": action.status.value,
        "stats": action.stats.to_dict(),
    }


class ActionNotifier:
    """Subscription registry keyed by action id.

    Delivery is best-effort and at-most-once: each notify schedules the sends
    and returns immediately; a send that fails or times out is dropped.
    """

    def __init__(self, send_timeout: float = SEND_TIMEOUT):
        self._send_timeout = send_timeout
        self._by_action: Dict[str, Set[Subscriber]] = defaultdict(set)
        self._by_connection: Dict[Subscriber, Set[str]] = defaultdict(set)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, connection: Subscriber, action_id: str) -> None:
        self._by_action[action_id].add(connection)
        self._by_connection[connection].add(action_id)
        logger.debug("Subscribed to action %s (%d listeners)", action_id, len(self._by_action[action_id]))

    def unsubscribe(self, connection: Subscriber, action_id: str) -> None:
        listeners = self._by_action.get(action_id)
        if listeners is not None:
            listeners.discard(connection)
            if not listeners:
                del self._by_action[action_id]
        actions = self._by_connection.get(connection)
        if actions is not None:
            actions.discard(action_id)
            if not actions:
                del self._by_connection[connection]

    def disconnect(self, connection: Subscriber) -> None:
        """Drop every subscription held by ``connection``."""
        for action_id in list(self._by_connection.get(connection, ())):
            self.unsubscribe(connection, action_id)
        self._by_connection.pop(connection, None)

    def subscribers(self, action_id: str) -> Set[Subscriber]:
        return set(self._by_action.get(action_id, ()))

    def subscriptions(self, connection: Subscriber) -> Set[str]:
        return set(self._by_connection.get(connection, ()))

    def notify_action_update(self, action: BulkAction) -> int:
        """Schedule a push of ``action``'s snapshot. Returns the number of sends scheduled."""
        listeners = self._by_action.get(action.id)
        if not listeners:
            return 0

        data = json.dumps({"type": "actionUpdate", "data": action_snapshot(action)}, default=str)
        for connection in list(listeners):
            task = asyncio.create_task(self._send(connection, data))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(listeners)

    async def _send(self, connection: Subscriber, data: str) -> None:
        try:
            await asyncio.wait_for(connection.send_text(data), timeout=self._send_timeout)
        except Exception as e:
            logger.debug("Failed to push action update: %s", e)

    async def drain(self) -> None:
        """Wait for scheduled sends to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# Global notifier shared by the processors and the WebSocket endpoint
notifier = ActionNotifier()
