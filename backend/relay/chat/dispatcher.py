"""Per-connection event dispatcher.

The dispatcher is the state machine behind every connection:

    UNIDENTIFIED --join--> ACTIVE --disconnect--> CLOSED
    UNIDENTIFIED ---------disconnect------------> CLOSED

It validates inbound payloads, records names in the SessionRegistry, appends
messages to the HistoryStore, asks ``route()`` where each outbound event goes
and emits through the Transport. Invalid or empty input is dropped silently:
nothing here raises back into the gateway.

Events from a connection that never joined are processed with the
placeholder name. A ``join`` arriving after disconnect is ignored so that a
dead connection can never reappear in the presence list.

Every handler finishes its registry/history mutations before its first
``await``, so on a single event loop mutations are applied one event at a
time.
"""
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from .history import HistoryStore, ScopeKey, dm_key, global_key, key_for, room_key
from .registry import SessionRegistry
from .routing import Delivery, EventKind, Target, route
from .schemas import (
    DEFAULT_PAGE_SIZE,
    EVENT_ALIASES,
    INBOUND_EVENTS,
    DmSendEvent,
    HistoryFetchEvent,
    JoinEvent,
    Message,
    MessageSendEvent,
    ReactEvent,
    ReadEvent,
    RoomMembershipEvent,
    RoomMessageSendEvent,
    Scope,
    SendAck,
    SystemNotice,
    TypingEvent,
)
from .transport import Transport

logger = logging.getLogger(__name__)

# Reply channel supplied by the gateway when the client asked for an ack
AckCallback = Callable[[Any], Awaitable[None]]


class ConnectionState(str, Enum):
    """Lifecycle state of one connection."""
    UNIDENTIFIED = "unidentified"
    ACTIVE = "active"
    CLOSED = "closed"


class Dispatcher:
    """Routes inbound events for all connections.

    Args:
        registry: Shared presence registry.
        history: Shared message history.
        transport: Delivery primitive (sockets and room groups).
        default_page_size: ``limit`` used by history:fetch when omitted.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        history: HistoryStore,
        transport: Transport,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.registry = registry
        self.history = history
        self.transport = transport
        self.default_page_size = default_page_size

        # connection_id -> state; closed connections are forgotten
        self._states: Dict[str, ConnectionState] = {}

        self._handlers = {
            "join": self._on_join,
            "message:send": self._on_message_send,
            "room:join": self._on_room_join,
            "room:leave": self._on_room_leave,
            "room:message:send": self._on_room_message_send,
            "dm:send": self._on_dm_send,
            "typing": self._on_typing,
            "message:read": self._on_read,
            "message:react": self._on_react,
            "history:fetch": self._on_history_fetch,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self, connection_id: str) -> None:
        """Start tracking a freshly accepted connection."""
        self._states[connection_id] = ConnectionState.UNIDENTIFIED
        logger.info(f"[Dispatcher] Connection {connection_id} opened")

    def state_of(self, connection_id: str) -> ConnectionState:
        return self._states.get(connection_id, ConnectionState.CLOSED)

    async def disconnect(self, connection_id: str, reason: Any = None) -> bool:
        """Close a connection: drop its session and broadcast presence.

        Duplicate disconnect signals are no-ops.

        Returns:
            True if this call closed the connection, False if it was already closed.
        """
        if self._states.pop(connection_id, None) is None:
            logger.debug(f"[Dispatcher] Duplicate disconnect for {connection_id} ignored")
            return False

        name = self.registry.name_of(connection_id)
        self.registry.unregister(connection_id)
        logger.info(f"[Dispatcher] {name} ({connection_id}) disconnected: {reason}")

        await self._broadcast_presence()
        return True

    # =========================================================================
    # Inbound events
    # =========================================================================

    async def handle(
        self,
        connection_id: str,
        event: str,
        data: Any = None,
        ack: Optional[AckCallback] = None,
    ) -> None:
        """Process one inbound event from a connection.

        Args:
            connection_id: Connection the event arrived on.
            event: Event name (legacy aliases accepted).
            data: Raw payload, validated against the event's model.
            ack: Optional reply channel to the sender.
        """
        event = EVENT_ALIASES.get(event, event)
        model = INBOUND_EVENTS.get(event)
        if model is None:
            logger.debug("[Dispatcher] Unknown event %r from %s", event, connection_id)
            return

        try:
            payload = model.model_validate(data if data is not None else {})
        except ValidationError as exc:
            logger.debug(
                "[Dispatcher] Invalid %s payload from %s dropped: %s",
                event, connection_id, exc.errors(include_url=False),
            )
            if event == "history:fetch":
                await self._reply(ack, {"items": []})
            return

        await self._handlers[event](connection_id, payload, ack)

    async def _on_join(
        self, connection_id: str, event: JoinEvent, ack: Optional[AckCallback]
    ) -> None:
        if self.state_of(connection_id) == ConnectionState.CLOSED:
            logger.debug(f"[Dispatcher] Join from closed connection {connection_id} ignored")
            return

        name = self.registry.register(connection_id, event.displayName)
        self._states[connection_id] = ConnectionState.ACTIVE
        logger.info(f"[Dispatcher] {connection_id} joined as {name!r}. Online: {len(self.registry)}")

        await self._broadcast_presence()
        await self.transport.emit_to(connection_id, "server:welcome", {
            "message": f"Welcome, {name}!",
            "id": connection_id,
        })

    async def _on_message_send(
        self, connection_id: str, event: MessageSendEvent, ack: Optional[AckCallback]
    ) -> None:
        message = self._compose(connection_id, Scope.GLOBAL, event)
        if message is None:
            logger.debug(f"[Dispatcher] Empty global message from {connection_id} dropped")
            return
        await self._publish(message, "chat:message", ack)

    async def _on_room_message_send(
        self, connection_id: str, event: RoomMessageSendEvent, ack: Optional[AckCallback]
    ) -> None:
        room = (event.room or "").strip()
        message = self._compose(connection_id, Scope.ROOM, event, room=room) if room else None
        if message is None:
            logger.debug(f"[Dispatcher] Room message from {connection_id} dropped (room={room!r})")
            return
        await self._publish(message, "room:message", ack)

    async def _on_dm_send(
        self, connection_id: str, event: DmSendEvent, ack: Optional[AckCallback]
    ) -> None:
        target = (event.to or "").strip()
        message = self._compose(connection_id, Scope.DM, event, to=target) if target else None
        if message is None:
            logger.debug(f"[Dispatcher] DM from {connection_id} dropped (to={target!r})")
            return
        await self._publish(message, "dm:message", ack)

    async def _on_room_join(
        self, connection_id: str, event: RoomMembershipEvent, ack: Optional[AckCallback]
    ) -> None:
        room = (event.room or "").strip()
        if not room:
            return
        self.transport.join_group(connection_id, room)
        await self._notify_room(connection_id, room, "joined")

    async def _on_room_leave(
        self, connection_id: str, event: RoomMembershipEvent, ack: Optional[AckCallback]
    ) -> None:
        room = (event.room or "").strip()
        if not room:
            return
        self.transport.leave_group(connection_id, room)
        await self._notify_room(connection_id, room, "left")

    async def _on_typing(
        self, connection_id: str, event: TypingEvent, ack: Optional[AckCallback]
    ) -> None:
        delivery = route(
            EventKind.TYPING, event.scope, connection_id, room=event.room, other=event.to
        )
        await self._deliver(delivery, "typing", {
            "userId": connection_id,
            "displayName": self.registry.name_of(connection_id),
            "isTyping": bool(event.isTyping),
            "scope": event.scope or Scope.GLOBAL.value,
            "room": event.room,
            "to": event.to,
        })

    async def _on_read(
        self, connection_id: str, event: ReadEvent, ack: Optional[AckCallback]
    ) -> None:
        delivery = route(
            EventKind.READ, event.scope, connection_id,
            room=event.room, other=event.otherUserId,
        )
        await self._deliver(delivery, "message:read", {
            "messageId": event.messageId,
            "readerId": connection_id,
            "scope": event.scope or Scope.GLOBAL.value,
            "room": event.room,
        })

    async def _on_react(
        self, connection_id: str, event: ReactEvent, ack: Optional[AckCallback]
    ) -> None:
        delivery = route(
            EventKind.REACT, event.scope, connection_id,
            room=event.room, other=event.otherUserId,
        )
        await self._deliver(delivery, "message:react", {
            "messageId": event.messageId,
            "reaction": event.reaction,
            "userId": connection_id,
            "displayName": self.registry.name_of(connection_id),
            "scope": event.scope or Scope.GLOBAL.value,
            "room": event.room,
        })

    async def _on_history_fetch(
        self, connection_id: str, event: HistoryFetchEvent, ack: Optional[AckCallback]
    ) -> None:
        key = self._history_key(connection_id, event)
        if key is None:
            logger.debug(f"[Dispatcher] history:fetch with scope={event.scope!r} answered empty")
            await self._reply(ack, {"items": []})
            return

        limit = event.limit if event.limit is not None else self.default_page_size
        items = self.history.page(key, event.before, limit)
        await self._reply(ack, {"items": [msg.to_wire() for msg in items]})

    # =========================================================================
    # Helpers
    # =========================================================================

    def _compose(self, connection_id: str, scope: Scope, event, **address) -> Optional[Message]:
        """Build a message, or None when there is neither text nor attachment."""
        text = (event.text or "").strip()
        if not text and event.attachment is None:
            return None
        return Message(
            scope=scope,
            userId=connection_id,
            displayName=self.registry.name_of(connection_id),
            text=text,
            attachment=event.attachment,
            **address,
        )

    async def _publish(
        self, message: Message, event: str, ack: Optional[AckCallback]
    ) -> None:
        self.history.append(key_for(message), message)
        delivery = route(
            EventKind.MESSAGE, message.scope.value, message.userId,
            room=message.room, other=message.to,
        )
        await self._deliver(delivery, event, message.to_wire())
        await self._reply(ack, SendAck(id=message.id, ts=message.ts).model_dump(mode="json"))

    def _history_key(self, connection_id: str, event: HistoryFetchEvent) -> Optional[ScopeKey]:
        if event.scope == Scope.GLOBAL.value:
            return global_key()
        if event.scope == Scope.ROOM.value:
            room = (event.room or "").strip()
            return room_key(room) if room else None
        if event.scope == Scope.DM.value and event.otherUserId:
            return dm_key(connection_id, event.otherUserId)
        return None

    async def _notify_room(self, connection_id: str, room: str, verb: str) -> None:
        notice = SystemNotice(room=room, text=f"{self.registry.name_of(connection_id)} {verb}")
        delivery = route(EventKind.NOTICE, Scope.ROOM.value, connection_id, room=room)
        await self._deliver(delivery, "room:system", notice.model_dump(mode="json"))

    async def _broadcast_presence(self) -> None:
        users = [entry.model_dump() for entry in self.registry.list_presence()]
        await self.transport.emit_all("presence:list", users)

    async def _deliver(self, delivery: Delivery, event: str, data: Any) -> None:
        if delivery.target == Target.ALL:
            await self.transport.emit_all(event, data, exclude=delivery.exclude)
        elif delivery.target == Target.GROUP:
            await self.transport.emit_group(
                delivery.address, event, data, exclude=delivery.exclude
            )
        elif delivery.address and delivery.address != delivery.exclude:
            await self.transport.emit_to(delivery.address, event, data)

        if delivery.echo:
            await self.transport.emit_to(delivery.echo, event, data)

    @staticmethod
    async def _reply(ack: Optional[AckCallback], payload: Any) -> None:
        if ack is None:
            return
        try:
            await ack(payload)
        except Exception as e:
            logger.debug(f"[Dispatcher] Failed to deliver ack: {e}")
