"""Bounded in-memory message history, one buffer per scope key.

Scope keys:
    - global: ("global", "global")
    - room:   ("room", <room name verbatim>)
    - dm:     ("dm", "<a>|<b>") with the two connection ids sorted, so both
              participants address the same buffer

Each buffer is a ``deque(maxlen=capacity)``: appending past capacity evicts
the oldest message. Buffers keep arrival order, which is not necessarily
timestamp order.
"""
import logging
import threading
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, NamedTuple, Optional, Tuple

from .schemas import DEFAULT_PAGE_SIZE, Message, Scope, as_utc

logger = logging.getLogger(__name__)

# Maximum messages kept per scope key
DEFAULT_HISTORY_CAPACITY = 500


class ScopeKey(NamedTuple):
    scope: Scope
    key: str


def global_key() -> ScopeKey:
    return ScopeKey(Scope.GLOBAL, Scope.GLOBAL.value)


def room_key(room: str) -> ScopeKey:
    return ScopeKey(Scope.ROOM, room)


def dm_key(a: str, b: str) -> ScopeKey:
    """Order-independent key for the conversation between two connections."""
    return ScopeKey(Scope.DM, "|".join(sorted([a, b])))


def key_for(message: Message) -> ScopeKey:
    """Derive the buffer key a message belongs to."""
    if message.scope == Scope.ROOM:
        return room_key(message.room or "")
    if message.scope == Scope.DM:
        return dm_key(message.userId, message.to or "")
    return global_key()


class HistoryStore:
    """Fixed-capacity FIFO buffers keyed by ``ScopeKey``.

    All access goes through one lock: appends never interleave, and a page is
    computed from a consistent snapshot of its buffer.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"History capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._buffers: Dict[ScopeKey, Deque[Message]] = {}
        self._lock = threading.Lock()

    def append(self, scope_key: ScopeKey, message: Message) -> Message:
        """Append a message to the tail of its buffer, evicting the head if full.

        Returns:
            The same message (for chaining).
        """
        with self._lock:
            buffer = self._buffers.get(scope_key)
            if buffer is None:
                buffer = deque(maxlen=self.capacity)
                self._buffers[scope_key] = buffer
            buffer.append(message)
        return message

    def page(
        self,
        scope_key: ScopeKey,
        before: Optional[datetime] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> List[Message]:
        """Get the page of messages immediately preceding a cursor.

        Args:
            scope_key: Buffer to read.
            before: Only messages with ``ts`` strictly earlier than this are
                    eligible. None means no upper bound.
            limit: Maximum number of messages; clamped to the capacity.

        Returns:
            The latest eligible messages, oldest first. Empty for an unknown
            key or a non-positive limit.
        """
        return self.page_with_more(scope_key, before, limit)[0]

    def page_with_more(
        self,
        scope_key: ScopeKey,
        before: Optional[datetime] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[Message], bool]:
        """Like ``page`` but also report whether eligible messages were left out.

        The flag counts eligible messages rather than comparing timestamps,
        so older messages sharing the oldest returned ``ts`` still count.
        """
        messages = self._snapshot(scope_key)
        if before is not None:
            cursor = as_utc(before)
            messages = [msg for msg in messages if msg.ts < cursor]

        if limit <= 0:
            return [], bool(messages)
        limit = min(limit, self.capacity)
        return messages[-limit:], len(messages) > limit

    def count(self, scope_key: ScopeKey) -> int:
        with self._lock:
            return len(self._buffers.get(scope_key, ()))

    def clear(self) -> None:
        with self._lock:
            self._buffers.clear()
        logger.info("[History] All buffers cleared")

    def _snapshot(self, scope_key: ScopeKey) -> List[Message]:
        with self._lock:
            return list(self._buffers.get(scope_key, ()))
