"""Addressing rules for outbound events.

``route()`` is a pure function of the event kind, its scope and addressing
parameters, and the sender. It never looks at room membership: a GROUP
delivery means "whoever the transport currently has in that group".

    kind      scope   delivery                      echo to sender
    --------  ------  ----------------------------  ---------------------
    message   global  all connections               yes (sender is in all)
    message   room    group(room)                   only via membership
    message   dm      connection(to)                explicit
    notice    room    group(room)                   only via membership
    typing    dm      connection(to)                no
    typing    room    group(room) minus sender      no
    typing    *       all minus sender              no
    read      dm      connection(other)             only if other is sender
    read      room    group(room) minus sender      no
    read      *       all minus sender              no
    react     dm      connection(other)             explicit
    react     room    group(room)                   only via membership
    react     *       all connections               yes

Signal events (typing/read/react) with an unknown scope or a missing room or
recipient fall back to the ``*`` row.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .schemas import Scope


class EventKind(str, Enum):
    MESSAGE = "message"
    NOTICE = "notice"
    TYPING = "typing"
    READ = "read"
    REACT = "react"


class Target(str, Enum):
    ALL = "all"
    GROUP = "group"
    CONNECTION = "connection"


@dataclass(frozen=True)
class Delivery:
    """Where an outbound event goes.

    Attributes:
        target: ALL, GROUP or CONNECTION.
        address: Room name for GROUP, connection id for CONNECTION.
        exclude: Connection that must not receive the event.
        echo: Connection that gets a separate copy after the main delivery.
    """
    target: Target
    address: Optional[str] = None
    exclude: Optional[str] = None
    echo: Optional[str] = None


def route(
    kind: EventKind,
    scope: Optional[str],
    sender_id: str,
    room: Optional[str] = None,
    other: Optional[str] = None,
) -> Delivery:
    """Compute the delivery for one outbound event.

    Args:
        kind: What is being delivered.
        scope: Scope as sent by the client (any string, or None).
        sender_id: Connection id of the originator.
        room: Room name, used by room scope.
        other: Recipient / other participant, used by dm scope.

    Returns:
        The Delivery to hand to the transport.
    """
    if kind in (EventKind.MESSAGE, EventKind.NOTICE):
        if scope == Scope.DM.value:
            return _direct(other, sender_id)
        if scope == Scope.ROOM.value:
            return Delivery(Target.GROUP, address=room)
        return Delivery(Target.ALL)

    if scope == Scope.DM.value and other:
        if kind == EventKind.REACT:
            return _direct(other, sender_id)
        if kind == EventKind.READ:
            return Delivery(Target.CONNECTION, address=other)
        return Delivery(Target.CONNECTION, address=other, exclude=sender_id)

    if scope == Scope.ROOM.value and room:
        if kind == EventKind.REACT:
            return Delivery(Target.GROUP, address=room)
        return Delivery(Target.GROUP, address=room, exclude=sender_id)

    if kind == EventKind.REACT:
        return Delivery(Target.ALL)
    return Delivery(Target.ALL, exclude=sender_id)


def _direct(recipient: Optional[str], sender_id: str) -> Delivery:
    # A DM to oneself is delivered once, not echoed a second time
    echo_to = sender_id if recipient != sender_id else None
    return Delivery(Target.CONNECTION, address=recipient, echo=echo_to)
