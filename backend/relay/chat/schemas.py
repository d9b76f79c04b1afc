"""Pydantic models for the chat relay wire protocol.

Every WebSocket frame is an ``Envelope``. The ``data`` of an inbound frame is
validated against the model registered for its event name in
``INBOUND_EVENTS``; payloads that fail validation are dropped by the
dispatcher. Outbound payloads are built from ``Message``, ``PresenceEntry``
and ``SendAck`` and serialized with ``model_dump(mode="json")``.
"""
import itertools
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# =============================================================================
# Constants
# =============================================================================

# Page size used by history:fetch when the client omits ``limit``
DEFAULT_PAGE_SIZE = 25

# Display name given to connections that never announced one
ANONYMOUS_NAME = "Anonymous"


class Scope(str, Enum):
    """Addressing scope of a message.

    Attributes:
        GLOBAL: Broadcast to every connection.
        ROOM: Delivered to the members of a named room.
        DM: Delivered to one other connection (plus an echo to the sender).
    """
    GLOBAL = "global"
    ROOM = "room"
    DM = "dm"


# =============================================================================
# Identifiers and time
# =============================================================================

# Random per-process seed; the counter keeps ids ordered within one process.
_ID_SEED = uuid.uuid4().hex[:12]
_id_counter = itertools.count(1)


def new_message_id() -> str:
    """Return a process-unique message id that sorts in creation order."""
    return f"{_ID_SEED}-{next(_id_counter):012d}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with stored timestamps."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Stored / outbound models
# =============================================================================


class Message(BaseModel):
    """A chat message as stored in history and broadcast to clients.

    Attributes:
        id: Unique message id (seeded counter, see ``new_message_id``).
        scope: global, room or dm.
        userId: Connection id of the sender.
        displayName: Sender's display name at send time.
        text: Trimmed message text, empty only when an attachment is present.
        attachment: Opaque attachment descriptor, passed through unchanged.
        room: Room name (room scope only).
        to: Recipient connection id (dm scope only).
        ts: Creation time (UTC).
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id, description="Unique message ID")
    scope: Scope = Field(..., description="Addressing scope")
    userId: str = Field(..., description="Connection ID of the sender")
    displayName: str = Field(..., description="Sender display name snapshot")
    text: str = Field(default="", description="Trimmed message text")
    attachment: Any = Field(
        default=None,
        description="Opaque attachment descriptor (name, type, dataUrl, size)"
    )
    room: Optional[str] = Field(default=None, description="Room name for room scope")
    to: Optional[str] = Field(default=None, description="Recipient for dm scope")
    ts: datetime = Field(default_factory=utcnow, description="Creation time (UTC)")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


class PresenceEntry(BaseModel):
    """One online connection in the presence list."""
    id: str
    name: str


class SystemNotice(BaseModel):
    """Room-scoped notice such as "<name> joined"."""
    room: str
    text: str
    ts: datetime = Field(default_factory=utcnow)


class SendAck(BaseModel):
    """Acknowledgment returned to the sender of a message."""
    ok: bool = True
    id: str
    ts: datetime


class Envelope(BaseModel):
    """JSON wrapper of every WebSocket frame.

    Inbound frames carry an optional ``ack`` id; when present the server
    answers with ``{"event": "ack", "ack": <id>, "data": ...}``.
    """
    event: str = Field(..., min_length=1)
    data: Any = None
    ack: Optional[Union[int, str]] = None


# =============================================================================
# Inbound event payloads
# =============================================================================


class InboundEvent(BaseModel):
    """Base for inbound payloads; unknown keys are ignored."""
    model_config = ConfigDict(extra="ignore")


class JoinEvent(InboundEvent):
    displayName: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("displayName", "username"),
    )


class _ContentEvent(InboundEvent):
    text: Optional[str] = None
    # Opaque: any JSON value is carried through; only None means "no attachment"
    attachment: Any = Field(
        default=None,
        validation_alias=AliasChoices("attachment", "file"),
    )


class MessageSendEvent(_ContentEvent):
    pass


class RoomMessageSendEvent(_ContentEvent):
    room: Optional[str] = None


class DmSendEvent(_ContentEvent):
    to: Optional[str] = None


class RoomMembershipEvent(InboundEvent):
    room: Optional[str] = None


def _str_or_none(value: Any) -> Optional[str]:
    """Addressing values that are not strings are treated as absent."""
    return value if isinstance(value, str) else None


class TypingEvent(InboundEvent):
    """Typing indicator. Unusable addressing falls back to the global rule."""
    isTyping: Any = False
    scope: Optional[str] = Scope.GLOBAL.value
    room: Optional[str] = None
    to: Optional[str] = None

    @field_validator("scope", "room", "to", mode="before")
    @classmethod
    def _addressing(cls, value: Any) -> Optional[str]:
        return _str_or_none(value)


class ReadEvent(InboundEvent):
    """Read receipt. ``messageId`` is relayed as sent."""
    messageId: Any = None
    scope: Optional[str] = Scope.GLOBAL.value
    room: Optional[str] = None
    otherUserId: Optional[str] = None

    @field_validator("scope", "room", "otherUserId", mode="before")
    @classmethod
    def _addressing(cls, value: Any) -> Optional[str]:
        return _str_or_none(value)


class ReactEvent(ReadEvent):
    reaction: Any = None


class HistoryFetchEvent(InboundEvent):
    scope: Optional[str] = None
    before: Optional[datetime] = None
    limit: Optional[int] = None
    room: Optional[str] = None
    otherUserId: Optional[str] = None

    @field_validator("before")
    @classmethod
    def _before_as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


INBOUND_EVENTS: Dict[str, Type[InboundEvent]] = {
    "join": JoinEvent,
    "message:send": MessageSendEvent,
    "room:join": RoomMembershipEvent,
    "room:leave": RoomMembershipEvent,
    "room:message:send": RoomMessageSendEvent,
    "dm:send": DmSendEvent,
    "typing": TypingEvent,
    "message:read": ReadEvent,
    "message:react": ReactEvent,
    "history:fetch": HistoryFetchEvent,
}

# Event names used by older clients
EVENT_ALIASES: Dict[str, str] = {
    "user:join": "join",
    "chat:message": "message:send",
    "room:message": "room:message:send",
}
