"""
WebSocket endpoint for real-time events.

Handles:
- Connection registration for broadcasts
- Joining the caller's private room with a bearer token
- Keepalive pings

Events themselves are pushed by the services through the EventHub.
"""

import asyncio
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from smartscribe.api.routes.utils import authenticate_token
from smartscribe.core.errors import SmartScribeError
from smartscribe.core.realtime import build_event, get_event_hub
from smartscribe.logging import get_logger

logger = get_logger("api.websocket")

router = APIRouter()


async def _send(websocket: WebSocket, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
    await websocket.send_json(build_event(event_type, data))


async def handle_join(websocket: WebSocket, data: Dict[str, Any]) -> Optional[int]:
    """
    Put the socket into the room of the user named in ``data``.

    The token must belong to that same user, so nobody can listen in on
    another user's channel.

    Returns:
        The joined user id, or None if the join was refused
    """
    try:
        auth = await authenticate_token(data.get("token"))
    except SmartScribeError as e:
        await _send(websocket, "join_fail", {"message": e.message})
        return None

    claimed = data.get("userId")
    if claimed is None or str(claimed) != str(auth.user_id):
        await _send(websocket, "join_fail", {"message": "Token does not match user"})
        return None

    get_event_hub().join(websocket, auth.user_id)
    await _send(websocket, "joined", {"userId": auth.user_id})
    logger.info(f"User {auth.user_id} joined the event channel")
    return auth.user_id


@router.websocket("/ws/events")
async def events_endpoint(websocket: WebSocket) -> None:
    """Live event channel; broadcasts reach every socket, private events need a join."""
    await websocket.accept()
    hub = get_event_hub()
    hub.connect(websocket)
    user_id: Optional[int] = None

    try:
        while True:
            message = await websocket.receive()

            if message.get("type") == "websocket.disconnect":
                break

            if "text" not in message or message["text"] is None:
                continue

            try:
                msg = json.loads(message["text"])
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON message: {e}")
                continue

            msg_type = msg.get("type") if isinstance(msg, dict) else None
            if msg_type == "join":
                joined = await handle_join(websocket, msg.get("data") or {})
                if joined is not None:
                    user_id = joined
            elif msg_type == "ping":
                await _send(websocket, "pong")
            else:
                logger.debug(f"Ignoring event channel message of type {msg_type!r}")

    except WebSocketDisconnect:
        pass

    except asyncio.CancelledError:
        raise

    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
        try:
            await websocket.close()
        except Exception as close_error:
            logger.debug(f"Failed to close WebSocket (already closed?): {close_error}")

    finally:
        hub.disconnect(websocket)
        if user_id is not None:
            logger.info(f"User {user_id} left the event channel")
