"""Wire protocol for the chat WebSocket.

Every frame is a JSON object with a ``type`` discriminator and flat payload
fields, e.g.::

    {"type": "sendMessage", "messageId": "m1", "message": "hi", "recipientId": null}

Inbound frames are parsed into one member of the closed :data:`InboundIntent`
union; outbound frames are built from the :data:`OutboundEvent` models and
serialized with :func:`to_wire`.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _blank_to_none(value: Any) -> Any:
    # Browsers send "" for "no recipient"; treat it like null.
    if isinstance(value, str) and not value.strip():
        return None
    return value


# =============================================================================
# Data Models
# =============================================================================


class PresenceStatus(str, Enum):
    """Whether a user currently has a live connection."""
    ONLINE = "online"
    OFFLINE = "offline"


class Attachment(BaseModel):
    """A file attached to a message (stored elsewhere, referenced by URL)."""
    url: str
    mediaType: Optional[str] = None


class ChatMessage(BaseModel):
    """A persisted chat message.

    Attributes:
        messageId: Client-generated id, stable across edit/delete.
        senderId: Author's user id.
        senderName: Author's display name at send time.
        message: Text body; may be empty when a file is attached.
        timestamp: Creation time as reported by the sending session.
        recipientId: None for the global room, otherwise the other
            participant of a direct conversation. Never changes.
        read: Set once the recipient marks the message as read.
        edited: Set once the body has been edited.
        fileUrl: Optional attachment URL.
        fileType: Optional attachment media type.
    """
    messageId: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1)
    senderId: str = Field(..., min_length=1)
    senderName: str = ""
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    recipientId: Optional[str] = None
    read: bool = False
    edited: bool = False
    fileUrl: Optional[str] = None
    fileType: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def attachment(self) -> Optional[Attachment]:
        if not self.fileUrl:
            return None
        return Attachment(url=self.fileUrl, mediaType=self.fileType)

    @property
    def is_direct(self) -> bool:
        return self.recipientId is not None


class PresenceEntry(BaseModel):
    """Online/offline record for one user."""
    userId: str
    connectionId: Optional[str] = None
    name: str = ""
    status: PresenceStatus = PresenceStatus.ONLINE
    lastSeen: Optional[datetime] = None


class HistoryQuery(BaseModel):
    """Filter for recent-history lookups.

    ``participant_id=None`` selects global messages only; otherwise direct
    messages sent or received by that user are included as well.
    """
    participant_id: Optional[str] = None


# =============================================================================
# Inbound intents (client -> server)
# =============================================================================


class _Intent(BaseModel):
    model_config = ConfigDict(extra="ignore")


class JoinIntent(_Intent):
    type: Literal["join"]
    userId: Optional[str] = None


class JoinGlobalIntent(_Intent):
    type: Literal["joinGlobal"]
    userId: Optional[str] = None


class JoinDirectIntent(_Intent):
    type: Literal["joinDirect"]
    userId: Optional[str] = None
    targetUserId: str = Field(..., min_length=1)


class SendMessageIntent(_Intent):
    type: Literal["sendMessage"]
    senderId: Optional[str] = None
    senderName: Optional[str] = None
    message: str = ""
    timestamp: Optional[datetime] = None
    messageId: Optional[str] = None
    recipientId: Optional[str] = None
    fileUrl: Optional[str] = None
    fileType: Optional[str] = None

    @field_validator(
        "senderId", "senderName", "messageId", "recipientId", "fileUrl", "fileType",
        mode="before",
    )
    @classmethod
    def _blank_fields(cls, value: Any) -> Any:
        return _blank_to_none(value)


class TypingIntent(_Intent):
    type: Literal["typing"]
    userId: Optional[str] = None
    isTyping: bool


class MarkAsReadIntent(_Intent):
    type: Literal["markAsRead"]
    messageId: str = Field(..., min_length=1)
    recipientId: Optional[str] = None


class EditMessageIntent(_Intent):
    type: Literal["editMessage"]
    messageId: str = Field(..., min_length=1)
    newMessage: str


class DeleteMessageIntent(_Intent):
    type: Literal["deleteMessage"]
    messageId: str = Field(..., min_length=1)


class LeaveIntent(_Intent):
    type: Literal["leave"]
    userId: Optional[str] = None


InboundIntent = Annotated[
    Union[
        JoinIntent,
        JoinGlobalIntent,
        JoinDirectIntent,
        SendMessageIntent,
        TypingIntent,
        MarkAsReadIntent,
        EditMessageIntent,
        DeleteMessageIntent,
        LeaveIntent,
    ],
    Field(discriminator="type"),
]

# Members of the union, used to check that dispatch tables are exhaustive.
INTENT_TYPES = get_args(get_args(InboundIntent)[0])

_intent_adapter = TypeAdapter(InboundIntent)


def parse_intent(data: Any) -> InboundIntent:
    """Validate a decoded JSON frame into an intent.

    Raises:
        ValidationError: The frame is not an object, has an unknown ``type``,
            or its payload does not match that type.
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid message format: expected a JSON object")
    try:
        return _intent_adapter.validate_python(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "payload"
        raise ValidationError(
            f"Invalid {data.get('type', 'unknown')} payload: {location}: {first['msg']}"
        ) from exc


# =============================================================================
# Outbound events (server -> client)
# =============================================================================


class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"
    userId: str
    name: str
    connectionId: str


class OnlineUsersEvent(BaseModel):
    type: Literal["onlineUsers"] = "onlineUsers"
    users: List[PresenceEntry]


class ReceiveMessageEvent(ChatMessage):
    type: Literal["receiveMessage"] = "receiveMessage"

    @classmethod
    def of(cls, message: ChatMessage) -> "ReceiveMessageEvent":
        return cls(**message.model_dump())


class UserTypingEvent(BaseModel):
    type: Literal["userTyping"] = "userTyping"
    userId: str
    isTyping: bool


class MessageReadEvent(BaseModel):
    type: Literal["messageRead"] = "messageRead"
    messageId: str


class MessageEditedEvent(BaseModel):
    type: Literal["messageEdited"] = "messageEdited"
    messageId: str
    newMessage: str


class MessageDeletedEvent(BaseModel):
    type: Literal["messageDeleted"] = "messageDeleted"
    messageId: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


OutboundEvent = Union[
    ConnectedEvent,
    OnlineUsersEvent,
    ReceiveMessageEvent,
    UserTypingEvent,
    MessageReadEvent,
    MessageEditedEvent,
    MessageDeletedEvent,
    ErrorEvent,
]


def to_wire(event: OutboundEvent) -> dict:
    """JSON-ready dict for an outbound event."""
    return event.model_dump(mode="json")
