"""Room identifiers for the two chat topologies.

There is one global room and one direct room per unordered pair of users.
The router only names rooms; who is in them is tracked by the ConnectionHub.
"""
from .schemas import ChatMessage

DIRECT_ROOM_PREFIX = "room_"


class RoomRouter:
    """Computes room ids for the global room and direct conversations."""

    def __init__(self, global_room_id: str = "globalChat") -> None:
        self._global_room_id = global_room_id

    def global_room_id(self) -> str:
        return self._global_room_id

    def direct_room_id(self, user_a: str, user_b: str) -> str:
        """Order-independent id for the conversation between two users.

        ``direct_room_id(a, b) == direct_room_id(b, a)`` for all a, b.
        """
        low, high = sorted((str(user_a), str(user_b)))
        return f"{DIRECT_ROOM_PREFIX}{low}_{high}"

    def room_for(self, message: ChatMessage) -> str:
        """The room that owns a message, fixed by its sender and recipient."""
        if not message.is_direct:
            return self._global_room_id
        return self.direct_room_id(message.senderId, message.recipientId)
