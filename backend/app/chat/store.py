"""Message persistence for the chat service.

``MessageStore`` is the interface the session layer depends on. Two
implementations ship here:

    - InMemoryMessageStore: dict-backed, used by tests and the ``memory``
      store backend.
    - DuckDBMessageStore: durable storage in an embedded DuckDB file.

Database Schema:
    messages table:
        - message_id: Client-supplied primary key
        - sender_id / sender_name: Author snapshot
        - body: Message text
        - timestamp: Creation time (naive UTC)
        - recipient_id: NULL for the global room
        - is_read / is_edited: Status flags
        - file_url / file_type: Optional attachment

Ordering:
    ``query_recent`` always returns messages oldest-first. Implementations
    fetch the newest ``limit`` rows and sort ascending before returning, so
    callers never depend on store-native ordering.

Deleting:
    ``delete`` of an unknown id raises NotFoundError rather than silently
    succeeding, so the session layer can report it to the caller.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

import duckdb

from app.config import StoreSettings

from .errors import DuplicateKeyError, NotFoundError, PersistenceError
from .schemas import ChatMessage, HistoryQuery

logger = logging.getLogger(__name__)

# Fields that may change after a message is created. recipientId and
# senderId are absent: a message never changes rooms.
UPDATABLE_FIELDS = frozenset({"message", "edited", "read"})


def _check_updatable(fields: dict) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")


def _matches(message: ChatMessage, query: HistoryQuery) -> bool:
    if message.recipientId is None:
        return True
    if query.participant_id is None:
        return False
    return query.participant_id in (message.senderId, message.recipientId)


class MessageStore(ABC):
    """Durable storage for chat messages keyed by messageId."""

    @abstractmethod
    async def insert(self, message: ChatMessage) -> ChatMessage:
        """Store a new message.

        Raises:
            DuplicateKeyError: A message with this messageId already exists.
        """

    @abstractmethod
    async def get(self, message_id: str) -> Optional[ChatMessage]:
        """Return the message, or None if it does not exist."""

    @abstractmethod
    async def update_fields(self, message_id: str, **fields) -> ChatMessage:
        """Update ``message``, ``edited`` and/or ``read`` on a message.

        Returns:
            The updated message.

        Raises:
            NotFoundError: No message with this id.
        """

    @abstractmethod
    async def delete(self, message_id: str) -> None:
        """Remove a message.

        Raises:
            NotFoundError: No message with this id.
        """

    @abstractmethod
    async def query_recent(self, query: HistoryQuery, limit: int) -> List[ChatMessage]:
        """Most recent ``limit`` messages matching ``query``, oldest first."""

    def close(self) -> None:
        """Release any resources held by the store."""


class InMemoryMessageStore(MessageStore):
    """Dict-backed store. Not durable; one instance per process."""

    def __init__(self) -> None:
        self._messages: Dict[str, ChatMessage] = {}

    async def insert(self, message: ChatMessage) -> ChatMessage:
        if message.messageId in self._messages:
            raise DuplicateKeyError(message.messageId)
        self._messages[message.messageId] = message.model_copy()
        return message

    async def get(self, message_id: str) -> Optional[ChatMessage]:
        message = self._messages.get(message_id)
        return message.model_copy() if message is not None else None

    async def update_fields(self, message_id: str, **fields) -> ChatMessage:
        _check_updatable(fields)
        current = self._messages.get(message_id)
        if current is None:
            raise NotFoundError(message_id)
        updated = current.model_copy(update=fields)
        self._messages[message_id] = updated
        return updated.model_copy()

    async def delete(self, message_id: str) -> None:
        if self._messages.pop(message_id, None) is None:
            raise NotFoundError(message_id)

    async def query_recent(self, query: HistoryQuery, limit: int) -> List[ChatMessage]:
        matching = [m for m in self._messages.values() if _matches(m, query)]
        newest = sorted(matching, key=lambda m: m.timestamp, reverse=True)[:limit]
        return sorted((m.model_copy() for m in newest), key=lambda m: m.timestamp)

    def __len__(self) -> int:
        return len(self._messages)


class DuckDBMessageStore(MessageStore):
    """Message store backed by an embedded DuckDB database.

    DuckDB calls are synchronous and fast for this workload, so they run
    inline on the event loop like the rest of the service.

    Attributes:
        _db_path: Path to the DuckDB database file (":memory:" for tests).
    """

    _COLUMNS = (
        "message_id, sender_id, sender_name, body, timestamp, "
        "recipient_id, is_read, is_edited, file_url, file_type"
    )

    def __init__(self, db_path: str = "chat_messages.duckdb") -> None:
        self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self._db_path)
            except duckdb.Error as e:
                raise PersistenceError(f"Could not open message store: {e}") from e
        return self._connection

    def _initialize_db(self) -> None:
        """Create the messages table if it does not exist (idempotent)."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                message_id VARCHAR PRIMARY KEY,
                sender_id VARCHAR NOT NULL,
                sender_name VARCHAR NOT NULL,
                body VARCHAR NOT NULL,
                timestamp TIMESTAMP NOT NULL,
                recipient_id VARCHAR,
                is_read BOOLEAN NOT NULL DEFAULT FALSE,
                is_edited BOOLEAN NOT NULL DEFAULT FALSE,
                file_url VARCHAR,
                file_type VARCHAR
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_timestamp_idx ON messages (timestamp)"
        )
        logger.info(f"[Store] DuckDB message store ready at {self._db_path}")

    @staticmethod
    def _to_db_timestamp(value: datetime) -> datetime:
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    @staticmethod
    def _row_to_message(row: tuple) -> ChatMessage:
        return ChatMessage(
            messageId=row[0],
            senderId=row[1],
            senderName=row[2],
            message=row[3],
            timestamp=row[4].replace(tzinfo=timezone.utc),
            recipientId=row[5],
            read=row[6],
            edited=row[7],
            fileUrl=row[8],
            fileType=row[9],
        )

    def _fetch_one(self, message_id: str) -> Optional[ChatMessage]:
        row = self._get_connection().execute(
            f"SELECT {self._COLUMNS} FROM messages WHERE message_id = ?",
            [message_id],
        ).fetchone()
        return self._row_to_message(row) if row else None

    async def insert(self, message: ChatMessage) -> ChatMessage:
        try:
            if self._fetch_one(message.messageId) is not None:
                raise DuplicateKeyError(message.messageId)
            self._get_connection().execute(
                f"INSERT INTO messages ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    message.messageId,
                    message.senderId,
                    message.senderName,
                    message.message,
                    self._to_db_timestamp(message.timestamp),
                    message.recipientId,
                    message.read,
                    message.edited,
                    message.fileUrl,
                    message.fileType,
                ],
            )
        except duckdb.ConstraintException as e:
            raise DuplicateKeyError(message.messageId) from e
        except duckdb.Error as e:
            logger.error(f"[Store] Insert of {message.messageId} failed: {e}")
            raise PersistenceError("Failed to save message") from e
        return message

    async def get(self, message_id: str) -> Optional[ChatMessage]:
        try:
            return self._fetch_one(message_id)
        except duckdb.Error as e:
            logger.error(f"[Store] Lookup of {message_id} failed: {e}")
            raise PersistenceError("Failed to load message") from e

    async def update_fields(self, message_id: str, **fields) -> ChatMessage:
        _check_updatable(fields)
        columns = {"message": "body", "edited": "is_edited", "read": "is_read"}
        try:
            if self._fetch_one(message_id) is None:
                raise NotFoundError(message_id)
            if fields:
                assignments = ", ".join(f"{columns[name]} = ?" for name in fields)
                self._get_connection().execute(
                    f"UPDATE messages SET {assignments} WHERE message_id = ?",
                    [*fields.values(), message_id],
                )
            updated = self._fetch_one(message_id)
        except duckdb.Error as e:
            logger.error(f"[Store] Update of {message_id} failed: {e}")
            raise PersistenceError("Failed to update message") from e
        if updated is None:
            raise NotFoundError(message_id)
        return updated

    async def delete(self, message_id: str) -> None:
        try:
            if self._fetch_one(message_id) is None:
                raise NotFoundError(message_id)
            self._get_connection().execute(
                "DELETE FROM messages WHERE message_id = ?", [message_id]
            )
        except duckdb.Error as e:
            logger.error(f"[Store] Delete of {message_id} failed: {e}")
            raise PersistenceError("Failed to delete message") from e

    async def query_recent(self, query: HistoryQuery, limit: int) -> List[ChatMessage]:
        try:
            if query.participant_id is None:
                rows = self._get_connection().execute(
                    f"""
                    SELECT {self._COLUMNS} FROM messages
                    WHERE recipient_id IS NULL
                    ORDER BY timestamp DESC
                    LIMIT ?
                    """,
                    [limit],
                ).fetchall()
            else:
                rows = self._get_connection().execute(
                    f"""
                    SELECT {self._COLUMNS} FROM messages
                    WHERE recipient_id IS NULL OR sender_id = ? OR recipient_id = ?
                    ORDER BY timestamp DESC
                    LIMIT ?
                    """,
                    [query.participant_id, query.participant_id, limit],
                ).fetchall()
        except duckdb.Error as e:
            logger.error(f"[Store] History query failed: {e}")
            raise PersistenceError("Failed to load chat history") from e

        messages = [self._row_to_message(row) for row in rows]
        return sorted(messages, key=lambda m: m.timestamp)

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None


def create_message_store(settings: StoreSettings) -> MessageStore:
    """Build the store selected by ``store.backend``."""
    if settings.backend == "memory":
        logger.info("[Store] Using in-memory message store")
        return InMemoryMessageStore()
    return DuckDBMessageStore(settings.db_path)
