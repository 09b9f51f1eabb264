"""Chat session lifecycle and intent dispatch.

A ChatSession is the server-side state of one WebSocket connection. The
ChatService owns everything shared between sessions (presence registry,
room router, connection hub, message store) and runs each inbound intent
through exactly one handler.

Session states:
    CONNECTING -> AUTHENTICATED -> JOINED -> CLOSED

    - AUTHENTICATED: token verified, connection registered with the hub.
    - JOINED: member of the global room (via ``join`` or ``joinGlobal``);
      may additionally be a member of any number of direct rooms.
    - CLOSED: transport gone; further intents are ignored.

Routing:
    Every message mutation (send, edit, delete) is broadcast to the room
    that owns the message, derived from the stored sender/recipient pair.
    The room the acting session happens to be looking at never matters.

Ordering:
    Mutations are serialized per messageId, and broadcasts per room, with
    keyed asyncio locks. A broadcast is only issued after the store write
    it reports on has completed.

Errors:
    Handlers raise ChatError subclasses. ``dispatch`` is the single place
    that converts them into an ``error`` event for the originating session,
    so one client's bad intent never affects another connection.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from app.auth.service import Identity, TokenVerifier
from app.config import AppSettings, get_config

from .errors import ChatError, NotFoundError, ValidationError
from .hub import ConnectionHub
from .presence import PresenceRegistry
from .rooms import RoomRouter
from .schemas import (
    INTENT_TYPES,
    ChatMessage,
    ConnectedEvent,
    DeleteMessageIntent,
    EditMessageIntent,
    ErrorEvent,
    HistoryQuery,
    JoinDirectIntent,
    JoinGlobalIntent,
    JoinIntent,
    LeaveIntent,
    MarkAsReadIntent,
    MessageDeletedEvent,
    MessageEditedEvent,
    MessageReadEvent,
    OnlineUsersEvent,
    ReceiveMessageEvent,
    SendMessageIntent,
    TypingIntent,
    UserTypingEvent,
    parse_intent,
    to_wire,
    utcnow,
)
from .store import MessageStore, create_message_store

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    JOINED = "joined"
    CLOSED = "closed"


@dataclass
class ChatSession:
    """Per-connection state. The identity is fixed for the session's lifetime."""
    connection_id: str
    identity: Identity
    state: SessionState = SessionState.CONNECTING
    direct_rooms: Set[str] = field(default_factory=set)

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def name(self) -> str:
        return self.identity.name


class KeyedLock:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class ChatService:
    """Shared chat state plus the transition function for every intent.

    Note:
        One instance per process. All sessions share its presence registry,
        hub and store, and all mutation goes through its handlers.
    """

    def __init__(
        self,
        store: MessageStore,
        verifier: TokenVerifier,
        *,
        presence: Optional[PresenceRegistry] = None,
        rooms: Optional[RoomRouter] = None,
        hub: Optional[ConnectionHub] = None,
        reject_self_messages: bool = True,
        history_limit: int = 50,
        max_history_limit: int = 100,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.presence = presence or PresenceRegistry()
        self.rooms = rooms or RoomRouter()
        self.hub = hub or ConnectionHub()
        self.reject_self_messages = reject_self_messages
        self.history_limit = history_limit
        self.max_history_limit = max_history_limit

        self._message_locks = KeyedLock()
        self._room_locks = KeyedLock()

        self._handlers: Dict[type, Callable[[ChatSession, Any], Awaitable[None]]] = {
            JoinIntent: self._on_join,
            JoinGlobalIntent: self._on_join_global,
            JoinDirectIntent: self._on_join_direct,
            SendMessageIntent: self._on_send_message,
            TypingIntent: self._on_typing,
            MarkAsReadIntent: self._on_mark_as_read,
            EditMessageIntent: self._on_edit_message,
            DeleteMessageIntent: self._on_delete_message,
            LeaveIntent: self._on_leave,
        }
        missing = [t.__name__ for t in INTENT_TYPES if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler for intents: {missing}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def authenticate(self, token: Optional[str]) -> Identity:
        """Verify a connection credential. Raises AuthenticationError."""
        return self.verifier.verify(token)

    def open_session(self, websocket: Any, identity: Identity) -> ChatSession:
        """Register an accepted connection for an already-verified identity."""
        session = ChatSession(
            connection_id=str(uuid.uuid4()),
            identity=identity,
        )
        self.hub.register(session.connection_id, websocket)
        session.state = SessionState.AUTHENTICATED
        logger.info(
            f"[Chat] Session {session.connection_id} authenticated as {identity.user_id}"
        )
        return session

    async def send_connected(self, session: ChatSession) -> None:
        await self.hub.send_to(session.connection_id, to_wire(ConnectedEvent(
            userId=session.user_id,
            name=session.name,
            connectionId=session.connection_id,
        )))

    async def close_session(self, session: ChatSession) -> None:
        """Transport closed: release rooms and mark the user offline."""
        if session.state == SessionState.CLOSED:
            return
        session.state = SessionState.CLOSED
        session.direct_rooms.clear()
        self.hub.unregister(session.connection_id)

        entry = self.presence.disconnect(session.user_id, session.connection_id)
        if entry is not None:
            await self._broadcast_presence()
        logger.info(f"[Chat] Session {session.connection_id} ({session.user_id}) closed")

    async def dispatch(self, session: ChatSession, data: Any) -> None:
        """Validate one inbound frame and run its handler.

        Errors are reported to this session only; the caller's receive loop
        keeps going.
        """
        if session.state == SessionState.CLOSED:
            return
        try:
            intent = parse_intent(data)
            logger.debug(f"[Chat] {session.user_id} -> {intent.type}")
            await self._handlers[type(intent)](session, intent)
        except ChatError as e:
            logger.info(f"[Chat] {type(e).__name__} for {session.user_id}: {e.message}")
            await self._send_error(session, e.message)
        except Exception:
            logger.exception(f"[Chat] Unexpected error handling intent from {session.user_id}")
            await self._send_error(session, "Internal server error")

    async def report_error(self, session: ChatSession, error: ChatError) -> None:
        """Send an error raised outside ``dispatch`` (e.g. undecodable frames)."""
        await self._send_error(session, error.message)

    # =========================================================================
    # History
    # =========================================================================

    async def history(self, user_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        """Recent global messages plus the user's direct messages, oldest first."""
        limit = min(limit or self.history_limit, self.max_history_limit)
        return await self.store.query_recent(HistoryQuery(participant_id=user_id), limit)

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _on_join(self, session: ChatSession, intent: JoinIntent) -> None:
        self._check_claimed_user(session, intent.userId)
        self.presence.join(session.user_id, session.connection_id, session.name)
        self._join_global_room(session)
        await self._broadcast_presence()

    async def _on_join_global(self, session: ChatSession, intent: JoinGlobalIntent) -> None:
        self._check_claimed_user(session, intent.userId)
        self._join_global_room(session)

    async def _on_join_direct(self, session: ChatSession, intent: JoinDirectIntent) -> None:
        self._check_claimed_user(session, intent.userId)
        self._require_joined(session)
        if intent.targetUserId == session.user_id and self.reject_self_messages:
            raise ValidationError("Cannot open a direct conversation with yourself")

        room_id = self.rooms.direct_room_id(session.user_id, intent.targetUserId)
        self.hub.join(session.connection_id, room_id)
        session.direct_rooms.add(room_id)
        logger.info(f"[Chat] {session.user_id} joined direct room {room_id}")

    async def _on_send_message(self, session: ChatSession, intent: SendMessageIntent) -> None:
        self._require_joined(session)

        # senderId defaults to the authenticated user and may not differ from it
        sender_id = intent.senderId or session.user_id
        if not sender_id:
            raise ValidationError("Sender ID is required")
        self._check_claimed_user(session, sender_id, field_name="senderId")

        if not intent.message.strip() and not intent.fileUrl:
            raise ValidationError("Message text or an attachment is required")
        if intent.recipientId == sender_id and self.reject_self_messages:
            raise ValidationError("Cannot send a direct message to yourself")

        fields: Dict[str, Any] = {
            "senderId": sender_id,
            "senderName": session.name,
            "message": intent.message,
            "timestamp": intent.timestamp or utcnow(),
            "recipientId": intent.recipientId,
            "fileUrl": intent.fileUrl,
            "fileType": intent.fileType,
        }
        if intent.messageId:
            fields["messageId"] = intent.messageId
        message = ChatMessage(**fields)

        room_id = self.rooms.room_for(message)
        if not self.hub.is_member(session.connection_id, room_id):
            raise ValidationError("Join the conversation before sending messages to it")

        async with self._message_locks.hold(message.messageId), self._room_locks.hold(room_id):
            await self.store.insert(message)
            await self.hub.broadcast(to_wire(ReceiveMessageEvent.of(message)), room_id)
        logger.info(
            f"[Chat] Message {message.messageId} from {sender_id} -> {room_id} "
            f"({self.hub.get_room_size(room_id)} connections)"
        )

    async def _on_edit_message(self, session: ChatSession, intent: EditMessageIntent) -> None:
        async with self._message_locks.hold(intent.messageId):
            message = await self._load_own_message(session, intent.messageId, "edit")
            if not intent.newMessage.strip() and not message.fileUrl:
                raise ValidationError("Edited message cannot be empty")

            room_id = self.rooms.room_for(message)
            async with self._room_locks.hold(room_id):
                await self.store.update_fields(
                    intent.messageId, message=intent.newMessage, edited=True
                )
                await self.hub.broadcast(to_wire(MessageEditedEvent(
                    messageId=intent.messageId,
                    newMessage=intent.newMessage,
                )), room_id)
        logger.info(f"[Chat] Message {intent.messageId} edited in {room_id}")

    async def _on_delete_message(self, session: ChatSession, intent: DeleteMessageIntent) -> None:
        async with self._message_locks.hold(intent.messageId):
            message = await self._load_own_message(session, intent.messageId, "delete")

            room_id = self.rooms.room_for(message)
            async with self._room_locks.hold(room_id):
                await self.store.delete(intent.messageId)
                await self.hub.broadcast(to_wire(MessageDeletedEvent(
                    messageId=intent.messageId,
                )), room_id)
        logger.info(f"[Chat] Message {intent.messageId} deleted from {room_id}")

    async def _on_mark_as_read(self, session: ChatSession, intent: MarkAsReadIntent) -> None:
        async with self._message_locks.hold(intent.messageId):
            message = await self.store.get(intent.messageId)
            if message is None:
                raise NotFoundError(intent.messageId)
            # Direct messages can only be acknowledged by the person they were sent to.
            if message.is_direct and message.recipientId != session.user_id:
                raise ValidationError("Only the recipient can mark this message as read")
            await self.store.update_fields(intent.messageId, read=True)

            # The receipt goes to whoever wrote the message, if they are online.
            sender_connection = self.presence.connection_for(message.senderId)
            if sender_connection is not None:
                await self.hub.send_to(sender_connection, to_wire(MessageReadEvent(
                    messageId=intent.messageId,
                )))

    async def _on_typing(self, session: ChatSession, intent: TypingIntent) -> None:
        self._check_claimed_user(session, intent.userId)
        self._require_joined(session)
        await self.hub.broadcast_all(to_wire(UserTypingEvent(
            userId=session.user_id,
            isTyping=intent.isTyping,
        )))

    async def _on_leave(self, session: ChatSession, intent: LeaveIntent) -> None:
        self._check_claimed_user(session, intent.userId)
        if self.presence.leave(session.user_id) is not None:
            await self._broadcast_presence()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _join_global_room(self, session: ChatSession) -> None:
        self.hub.join(session.connection_id, self.rooms.global_room_id())
        session.state = SessionState.JOINED

    @staticmethod
    def _require_joined(session: ChatSession) -> None:
        if session.state != SessionState.JOINED:
            raise ValidationError("Join the chat first")

    @staticmethod
    def _check_claimed_user(
        session: ChatSession, claimed: Optional[str], field_name: str = "userId"
    ) -> None:
        # SECURITY: the token decides who a session is, not the payload
        if claimed is not None and claimed != session.user_id:
            raise ValidationError(f"{field_name} does not match the authenticated user")

    async def _load_own_message(
        self, session: ChatSession, message_id: str, action: str
    ) -> ChatMessage:
        message = await self.store.get(message_id)
        if message is None:
            raise NotFoundError(message_id)
        if message.senderId != session.user_id:
            raise ValidationError(f"You can only {action} your own messages")
        return message

    async def _broadcast_presence(self) -> None:
        await self.hub.broadcast_all(to_wire(OnlineUsersEvent(users=self.presence.snapshot())))

    async def _send_error(self, session: ChatSession, message: str) -> None:
        await self.hub.send_to(session.connection_id, to_wire(ErrorEvent(message=message)))


def build_chat_service(config: AppSettings) -> ChatService:
    """Wire a ChatService from application settings."""
    return ChatService(
        store=create_message_store(config.store),
        verifier=TokenVerifier(config.secrets.jwt.secret_key, config.auth.algorithm),
        rooms=RoomRouter(config.chat.global_room_id),
        reject_self_messages=config.chat.reject_self_messages,
        history_limit=config.chat.history_limit,
        max_history_limit=config.chat.max_history_limit,
    )


_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    """Process-wide ChatService shared by every WebSocket handler."""
    global _service
    if _service is None:
        _service = build_chat_service(get_config())
    return _service


def set_chat_service(service: Optional[ChatService]) -> None:
    global _service
    _service = service
