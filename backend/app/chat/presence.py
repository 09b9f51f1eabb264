"""In-memory presence registry.

Maps userId -> PresenceEntry for every user that has joined since the
process started. Entries are never removed; a user who goes away stays in
the registry as ``offline`` with the time they were last seen.

Thread Safety:
    Mutated only from ChatService handlers on the event loop, so there is a
    single writer and no locking. A multi-process deployment would need to
    move this map into a shared store.
"""
import logging
from typing import Dict, List, Optional

from .schemas import PresenceEntry, PresenceStatus, utcnow

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Tracks which users are online and on which connection."""

    def __init__(self) -> None:
        self._entries: Dict[str, PresenceEntry] = {}

    def join(self, user_id: str, connection_id: str, name: str) -> PresenceEntry:
        """Mark a user online on the given connection (upsert)."""
        entry = PresenceEntry(
            userId=user_id,
            connectionId=connection_id,
            name=name,
            status=PresenceStatus.ONLINE,
            lastSeen=None,
        )
        self._entries[user_id] = entry
        logger.info(f"[Presence] {user_id} online on connection {connection_id}")
        return entry

    def leave(self, user_id: str) -> Optional[PresenceEntry]:
        """Mark a user offline. Returns None if the user never joined."""
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        entry = entry.model_copy(update={
            "status": PresenceStatus.OFFLINE,
            "connectionId": None,
            "lastSeen": utcnow(),
        })
        self._entries[user_id] = entry
        logger.info(f"[Presence] {user_id} offline")
        return entry

    def disconnect(
        self, user_id: str, connection_id: Optional[str] = None
    ) -> Optional[PresenceEntry]:
        """Mark a user offline because their transport closed.

        When ``connection_id`` is given, the entry is only touched if it still
        belongs to that connection; a user who re-joined from another tab
        stays online when the old tab goes away.
        """
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        if connection_id is not None and entry.connectionId not in (None, connection_id):
            logger.debug(
                f"[Presence] Ignoring disconnect of {connection_id}; "
                f"{user_id} is on {entry.connectionId}"
            )
            return None
        return self.leave(user_id)

    def get(self, user_id: str) -> Optional[PresenceEntry]:
        return self._entries.get(user_id)

    def connection_for(self, user_id: str) -> Optional[str]:
        """Connection id of an online user, None if offline or unknown."""
        entry = self._entries.get(user_id)
        if entry is None or entry.status != PresenceStatus.ONLINE:
            return None
        return entry.connectionId

    def snapshot(self, exclude_user_id: Optional[str] = None) -> List[PresenceEntry]:
        """All entries, optionally without one user (their own "others" view)."""
        return [
            entry for user_id, entry in self._entries.items()
            if user_id != exclude_user_id
        ]

    def __len__(self) -> int:
        return len(self._entries)
