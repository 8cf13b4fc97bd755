"""WebSocket hub for real-time group chat.

This module tracks every open realtime connection, the user each one is
bound to, and the group rooms each connection has joined. It is the only
writer to server-side sockets.

Key features:
    - One connection set per user (a user may have several tabs open)
    - Group rooms (``group:<id>``) with idempotent join/leave
    - Per-user event delivery for ``notification-<userId>`` events
    - Concurrent fan-out with asyncio.gather()
    - Automatic dead connection cleanup
    - Eviction of a removed member's sockets from a group room

Wire format:
    Every frame is a JSON object ``{"event": <name>, "data": <payload>}``.

Thread Safety:
    Designed for a single asyncio event loop. NOT thread-safe.
"""
import asyncio
import logging
from typing import Any, Dict, List, Set

from fastapi import WebSocket

from .events import envelope, room_name

logger = logging.getLogger(__name__)


class RealtimeHub:
    """Connection, identity and room registry for the realtime channel."""

    def __init__(self) -> None:
        # user_id -> list of that user's open WebSocket connections
        self.user_connections: Dict[str, List[WebSocket]] = {}

        # room name -> set of WebSocket connections that joined it
        self.rooms: Dict[str, Set[WebSocket]] = {}

        # websocket -> user_id bound at connect time
        self.websocket_to_user: Dict[WebSocket, str] = {}

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        """Accept a connection and bind it to ``user_id``."""
        await websocket.accept()
        self.user_connections.setdefault(user_id, []).append(websocket)
        self.websocket_to_user[websocket] = user_id
        logger.info(
            f"[Hub] User {user_id} connected "
            f"({len(self.user_connections[user_id])} connection(s))"
        )

    def disconnect(self, websocket: WebSocket) -> None:
        """Forget a connection and remove it from every room it joined."""
        user_id = self.websocket_to_user.pop(websocket, None)
        if user_id is not None:
            connections = self.user_connections.get(user_id, [])
            if websocket in connections:
                connections.remove(websocket)
            if not connections:
                self.user_connections.pop(user_id, None)

        for room, members in list(self.rooms.items()):
            members.discard(websocket)
            if not members:
                del self.rooms[room]

        if user_id is not None:
            logger.info(f"[Hub] User {user_id} disconnected")

    def user_of(self, websocket: WebSocket) -> str:
        return self.websocket_to_user.get(websocket, "")

    # =========================================================================
    # Rooms
    # =========================================================================

    def join_room(self, websocket: WebSocket, group_id: str) -> bool:
        """Add a connection to a group room.

        Returns:
            False if the connection had already joined (no-op), True otherwise.
        """
        members = self.rooms.setdefault(room_name(group_id), set())
        if websocket in members:
            return False
        members.add(websocket)
        return True

    def leave_room(self, websocket: WebSocket, group_id: str) -> bool:
        """Remove a connection from a group room. Returns True if it was in it."""
        room = room_name(group_id)
        members = self.rooms.get(room)
        if not members or websocket not in members:
            return False
        members.discard(websocket)
        if not members:
            del self.rooms[room]
        return True

    def evict_user(self, group_id: str, user_id: str) -> int:
        """Remove every connection of ``user_id`` from a group room.

        Called when the user is removed from the group so they stop
        receiving its messages immediately.

        Returns:
            Number of connections evicted.
        """
        evicted = 0
        for websocket in list(self.user_connections.get(user_id, [])):
            if self.leave_room(websocket, group_id):
                evicted += 1
        if evicted:
            logger.info(f"[Hub] Evicted {user_id} from group {group_id} ({evicted} connection(s))")
        return evicted

    def room_size(self, group_id: str) -> int:
        return len(self.rooms.get(room_name(group_id), ()))

    def is_in_room(self, websocket: WebSocket, group_id: str) -> bool:
        return websocket in self.rooms.get(room_name(group_id), ())

    # =========================================================================
    # Delivery
    # =========================================================================

    async def emit_to_room(self, group_id: str, event: str, data: Any) -> None:
        """Send an event to every connection in a group room concurrently."""
        connections = list(self.rooms.get(room_name(group_id), ()))
        await self._fan_out(connections, envelope(event, data))

    async def emit_to_user(self, user_id: str, event: str, data: Any) -> int:
        """Send an event to every connection of one user.

        Returns:
            Number of connections the event was addressed to.
        """
        connections = list(self.user_connections.get(user_id, []))
        await self._fan_out(connections, envelope(event, data))
        return len(connections)

    async def emit(self, websocket: WebSocket, event: str, data: Any) -> None:
        """Send an event to a single connection."""
        await self._fan_out([websocket], envelope(event, data))

    async def _fan_out(self, connections: List[WebSocket], frame: dict) -> None:
        if not connections:
            return

        results = await asyncio.gather(
            *[self._safe_send(conn, frame) for conn in connections],
            return_exceptions=True
        )

        # Remove failed connections
        for conn, success in zip(connections, results):
            if success is False:
                logger.debug("[Hub] Removing dead connection")
                self.disconnect(conn)

    async def _safe_send(self, connection: WebSocket, frame: dict) -> bool:
        try:
            await connection.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def clear(self) -> None:
        """Drop all state (used by tests)."""
        self.user_connections.clear()
        self.rooms.clear()
        self.websocket_to_user.clear()


# Global singleton instance used by the realtime endpoint and REST routers
hub = RealtimeHub()
