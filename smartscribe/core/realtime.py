"""
Per-user real-time event channels over WebSockets.

Every connected socket is tracked globally (for broadcasts) and, once it has
joined, in its user's room (for private events). Delivery is at-most-once:
an event for a user with no joined socket is simply dropped. Durable state
lives in the database, the live push is only a latency optimization.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from smartscribe.logging import get_logger

logger = get_logger("realtime")

# Event names pushed to clients
NEW_NOTIFICATION = "new_notification"
ANALYTICS_UPDATE = "analytics_update"
ACCOUNT_STATUS_CHANGED = "account_status_changed"
USER_LIST_UPDATED = "user_list_updated"
APK_LIST_UPDATED = "apk_list_updated"
MAINTENANCE_MODE_CHANGED = "maintenance_mode_changed"


def build_event(event_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "type": event_type,
        "data": data or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class EventHub:
    """Registry of connected sockets and per-user rooms."""

    def __init__(self):
        self._connections: Set[WebSocket] = set()
        self._rooms: Dict[int, Set[WebSocket]] = {}
        self._socket_user: Dict[WebSocket, int] = {}

    def connect(self, websocket: WebSocket) -> None:
        self._connections.add(websocket)

    def join(self, websocket: WebSocket, user_id: int) -> None:
        """Put a socket into a user's room, leaving any previous room."""
        self._leave_room(websocket)
        self._connections.add(websocket)
        self._rooms.setdefault(user_id, set()).add(websocket)
        self._socket_user[websocket] = user_id
        logger.debug(f"Socket joined room user:{user_id}")

    def disconnect(self, websocket: WebSocket) -> None:
        self._leave_room(websocket)
        self._connections.discard(websocket)

    def _leave_room(self, websocket: WebSocket) -> None:
        user_id = self._socket_user.pop(websocket, None)
        if user_id is None:
            return
        room = self._rooms.get(user_id)
        if room is not None:
            room.discard(websocket)
            if not room:
                del self._rooms[user_id]

    def is_online(self, user_id: int) -> bool:
        return bool(self._rooms.get(user_id))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def _send(self, websocket: WebSocket, message: Dict[str, Any]) -> bool:
        if websocket.client_state != WebSocketState.CONNECTED:
            self.disconnect(websocket)
            return False
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"Dropping socket after failed send: {e}")
            self.disconnect(websocket)
            return False

    async def emit_to_user(
        self, user_id: int, event_type: str, data: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Push an event to every socket in a user's room.

        Returns:
            Number of sockets the event reached (0 if the user is offline)
        """
        sockets = list(self._rooms.get(user_id, ()))
        if not sockets:
            return 0
        message = build_event(event_type, data)
        results = await asyncio.gather(*(self._send(ws, message) for ws in sockets))
        return sum(results)

    async def broadcast(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> int:
        """Push an event to every connected socket."""
        sockets = list(self._connections)
        if not sockets:
            return 0
        message = build_event(event_type, data)
        results = await asyncio.gather(*(self._send(ws, message) for ws in sockets))
        return sum(results)


_event_hub: Optional[EventHub] = None


def get_event_hub() -> EventHub:
    """Get or create the process-wide event hub."""
    global _event_hub
    if _event_hub is None:
        _event_hub = EventHub()
    return _event_hub


def reset_event_hub() -> None:
    global _event_hub
    _event_hub = None
