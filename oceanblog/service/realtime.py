from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket

from oceanblog.logging import get_logger
from oceanblog.storage.models import User

logger = get_logger(__name__)


def user_room(user_id: str) -> str:
    return f"user_{user_id}"


def post_room(post_id: str) -> str:
    return f"post_{post_id}"


class RealtimeConnection:
    """One authenticated websocket and the rooms it sits in."""

    def __init__(self, websocket: WebSocket, user: User) -> None:
        self.websocket = websocket
        self.user = user
        self.connection_id = str(uuid.uuid4())
        self.connected_at = datetime.now(timezone.utc)
        self.rooms: Set[str] = set()
        self.active = True

    async def emit(self, event: str, data: Any) -> bool:
        if not self.active:
            return False
        try:
            await self.websocket.send_json({"event": event, "data": data})
            return True
        except (RuntimeError, OSError) as exc:
            # peer went away between the room lookup and the send
            logger.warning(
                "realtime_send_failed",
                connection_id=self.connection_id,
                user_id=self.user.id,
                error=str(exc),
            )
            self.active = False
            return False


class RealtimeHub:
    """Room membership and fan-out for live notifications.

    Mutations never await, so on a single event loop they cannot interleave.
    """

    def __init__(self) -> None:
        self.connections: Dict[str, RealtimeConnection] = {}
        self.rooms: Dict[str, Set[str]] = {}

    def register(self, connection: RealtimeConnection) -> None:
        """Track a new connection and put it in its private user room."""
        self.connections[connection.connection_id] = connection
        self.join(connection, user_room(connection.user.id))
        logger.info(
            "realtime_connected",
            connection_id=connection.connection_id,
            user_id=connection.user.id,
        )

    def unregister(self, connection: RealtimeConnection) -> None:
        connection.active = False
        self.connections.pop(connection.connection_id, None)
        for room in list(connection.rooms):
            self.leave(connection, room)
        logger.info(
            "realtime_disconnected",
            connection_id=connection.connection_id,
            user_id=connection.user.id,
        )

    def join(self, connection: RealtimeConnection, room: str) -> None:
        self.rooms.setdefault(room, set()).add(connection.connection_id)
        connection.rooms.add(room)

    def leave(self, connection: RealtimeConnection, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection.connection_id)
            if not members:
                del self.rooms[room]
        connection.rooms.discard(room)

    def members(self, room: str) -> List[RealtimeConnection]:
        return [
            self.connections[cid]
            for cid in self.rooms.get(room, ())
            if cid in self.connections
        ]

    def room_size(self, room: str) -> int:
        return len(self.rooms.get(room, ()))

    async def emit_to_room(
        self, room: str, event: str, data: Any, *, exclude: Optional[str] = None
    ) -> int:
        """Send to every member of ``room``; returns how many sends succeeded."""
        delivered = 0
        for connection in self.members(room):
            if connection.connection_id == exclude:
                continue
            if await connection.emit(event, data):
                delivered += 1
        return delivered

    async def emit_to_user(self, user_id: str, event: str, data: Any) -> int:
        return await self.emit_to_room(user_room(user_id), event, data)

    async def emit_to_all(self, event: str, data: Any) -> int:
        delivered = 0
        for connection in list(self.connections.values()):
            if await connection.emit(event, data):
                delivered += 1
        return delivered

    @property
    def connection_count(self) -> int:
        return len(self.connections)
