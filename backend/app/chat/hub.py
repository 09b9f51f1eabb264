"""WebSocket connection hub for the chat service.

This module owns the transport side of the chat: which connections are open
and which rooms each of them has joined. It is the group-membership
primitive that the RoomRouter's ids are resolved against.

Key features:
    - Connections addressed by a backend-generated connection id
    - Room membership per connection (global room + any direct rooms)
    - Broadcast to a room, to every connection, or to a single connection
    - Concurrent delivery with asyncio.gather()
    - Automatic dead connection cleanup

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
from typing import Any, Dict, List, Set

logger = logging.getLogger(__name__)


class ConnectionHub:
    """Tracks open WebSocket connections and their room memberships.

    Connections are anything with an async ``send_json(dict)`` method, which
    in production is a ``fastapi.WebSocket``.
    """

    def __init__(self) -> None:
        # connection_id -> websocket
        self.connections: Dict[str, Any] = {}

        # room_id -> connection ids joined to it
        self.room_members: Dict[str, Set[str]] = {}

        # connection_id -> room ids it joined (for release on disconnect)
        self.connection_rooms: Dict[str, Set[str]] = {}

    def register(self, connection_id: str, websocket: Any) -> None:
        self.connections[connection_id] = websocket
        self.connection_rooms.setdefault(connection_id, set())

    def unregister(self, connection_id: str) -> None:
        """Forget a connection and release all of its room memberships."""
        self.connections.pop(connection_id, None)
        for room_id in self.connection_rooms.pop(connection_id, set()):
            members = self.room_members.get(room_id)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self.room_members[room_id]

    def join(self, connection_id: str, room_id: str) -> None:
        if connection_id not in self.connections:
            return
        self.room_members.setdefault(room_id, set()).add(connection_id)
        self.connection_rooms.setdefault(connection_id, set()).add(room_id)

    def is_member(self, connection_id: str, room_id: str) -> bool:
        return connection_id in self.room_members.get(room_id, set())

    def members(self, room_id: str) -> Set[str]:
        return set(self.room_members.get(room_id, set()))

    def get_room_size(self, room_id: str) -> int:
        """Get the number of connections joined to a room."""
        return len(self.room_members.get(room_id, set()))

    async def broadcast(self, message: dict, room_id: str) -> None:
        """Broadcast a message to every connection joined to a room.

        Args:
            message: JSON-serializable message to broadcast.
            room_id: Room to broadcast to.
        """
        await self._deliver(message, sorted(self.room_members.get(room_id, set())))

    async def broadcast_all(self, message: dict) -> None:
        """Broadcast a message to every open connection, joined or not."""
        await self._deliver(message, list(self.connections))

    async def send_to(self, connection_id: str, message: dict) -> bool:
        """Send to one connection. Returns False if it is gone or failed."""
        websocket = self.connections.get(connection_id)
        if websocket is None:
            return False
        if await self._safe_send(websocket, message):
            return True
        self._cleanup_connections([connection_id])
        return False

    async def _deliver(self, message: dict, connection_ids: List[str]) -> None:
        targets = [
            (cid, self.connections[cid])
            for cid in connection_ids
            if cid in self.connections
        ]
        if not targets:
            return

        # Send to all connections concurrently
        results = await asyncio.gather(
            *[self._safe_send(conn, message) for _, conn in targets],
            return_exceptions=True
        )

        # Remove failed connections
        failed_connections = [
            cid for (cid, _), success in zip(targets, results)
            if success is not True
        ]
        self._cleanup_connections(failed_connections)

    async def _safe_send(self, connection: Any, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed_connections: List[str]) -> None:
        for connection_id in failed_connections:
            if connection_id in self.connections:
                self.unregister(connection_id)
                logger.debug(f"Removed dead connection {connection_id}")
