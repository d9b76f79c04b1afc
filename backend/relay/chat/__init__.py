"""Real-time chat relay core.

Components:
    - SessionRegistry: who is online (connection id -> display name).
    - HistoryStore: bounded per-scope message buffers with backward paging.
    - route(): addressing rules for global / room / dm events.
    - Dispatcher: per-connection state machine driving the above.
    - ConnectionManager: WebSocket-backed Transport used by the gateway.
"""
from .dispatcher import ConnectionState, Dispatcher
from .history import HistoryStore, dm_key, global_key, room_key
from .registry import SessionRegistry

__all__ = [
    "ConnectionState",
    "Dispatcher",
    "HistoryStore",
    "SessionRegistry",
    "dm_key",
    "global_key",
    "room_key",
]
