"""WebSocket endpoint for live bulk action progress."""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from web.backend.api.deps import get_notifier
from web.backend.core.bulk.notifications import ActionNotifier

router = APIRouter()
logger = logging.getLogger(__name__)

RECEIVE_TIMEOUT = 60.0


async def send_to(websocket: WebSocket, message: Dict[str, Any]):
    """Send a message to one client."""
    try:
        await websocket.send_text(json.dumps(message, default=str))
    except Exception as e:
        logger.debug("Failed to send to client: %s", e)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    notifier: ActionNotifier = Depends(get_notifier),
):
    """
    Progress updates for bulk actions.

    Client messages:
    - {"type": "subscribe", "actionId": "..."}
    - {"type": "unsubscribe", "actionId": "..."}
    - {"type": "ping"} or the bare text "ping"

    Server pushes {"type": "actionUpdate", "data": {id, status, stats}}
    for every subscribed action.
    """
    await websocket.accept()
    logger.info("WebSocket connected")

    try:
        await send_to(websocket, {
            "type": "connected",
            "data": {"timestamp": datetime.now(timezone.utc).isoformat()},
        })

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=RECEIVE_TIMEOUT)
            except asyncio.TimeoutError:
                # Probe idle connections
                try:
                    await websocket.send_text("ping")
                except Exception as e:
                    logger.debug("Non-critical: %s", e)
                    break
                continue

            if data == "ping":
                await websocket.send_text("pong")
            elif data.startswith("{"):
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError as e:
                    logger.debug("Non-critical: %s", e)
                    continue
                await handle_client_message(websocket, notifier, msg)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("WebSocket error: %s", e)
    finally:
        notifier.disconnect(websocket)
        logger.info("WebSocket disconnected")


async def handle_client_message(
    websocket: WebSocket,
    notifier: ActionNotifier,
    message: Dict[str, Any],
):
    """Handle a JSON message from the client."""
    msg_type = message.get("type")
    action_id = message.get("actionId")

    if msg_type in ("subscribe", "unsubscribe"):
        if not isinstance(action_id, str) or not action_id:
            await send_to(websocket, {"type": "error", "data": {"message": "actionId is required"}})
            return
        if msg_type == "subscribe":
            notifier.subscribe(websocket, action_id)
            await send_to(websocket, {"type": "subscribed", "data": {"actionId": action_id}})
        else:
            notifier.unsubscribe(websocket, action_id)
            await send_to(websocket, {"type": "unsubscribed", "data": {"actionId": action_id}})

    elif msg_type == "ping":
        await send_to(websocket, {"type": "pong"})
