"""Shared test fixtures and configuration for backend tests."""
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from fastapi.testclient import TestClient

from relay.chat.dispatcher import Dispatcher
from relay.chat.history import HistoryStore
from relay.chat.registry import SessionRegistry
from relay.chat.transport import Transport
from relay.config import AppSettings
from relay.main import create_app


class RecordingTransport(Transport):
    """In-memory transport that records what each connection would receive."""

    def __init__(self) -> None:
        self.connections: List[str] = []
        self.groups: Dict[str, Set[str]] = {}
        self.sent: List[Tuple[str, str, Any]] = []  # (connection_id, event, data)

    def add(self, connection_id: str) -> None:
        self.connections.append(connection_id)

    def remove(self, connection_id: str) -> None:
        if connection_id in self.connections:
            self.connections.remove(connection_id)
        for members in self.groups.values():
            members.discard(connection_id)

    async def emit_to(self, connection_id, event, data):
        if connection_id in self.connections:
            self.sent.append((connection_id, event, data))

    async def emit_all(self, event, data, exclude=None):
        for cid in self.connections:
            if cid != exclude:
                self.sent.append((cid, event, data))

    async def emit_group(self, group, event, data, exclude=None):
        for cid in self.connections:
            if cid in self.groups.get(group, ()) and cid != exclude:
                self.sent.append((cid, event, data))

    def join_group(self, connection_id, group):
        self.groups.setdefault(group, set()).add(connection_id)

    def leave_group(self, connection_id, group):
        self.groups.get(group, set()).discard(connection_id)

    def received(self, connection_id: str, event: Optional[str] = None) -> List[Any]:
        """Payloads delivered to a connection, optionally filtered by event."""
        return [
            data for cid, ev, data in self.sent
            if cid == connection_id and (event is None or ev == event)
        ]

    def events(self, connection_id: str) -> List[str]:
        return [ev for cid, ev, _ in self.sent if cid == connection_id]

    def clear(self) -> None:
        self.sent.clear()


class AckRecorder:
    """Stands in for a client's ack callback."""

    def __init__(self) -> None:
        self.replies: List[Any] = []

    async def __call__(self, payload: Any) -> None:
        self.replies.append(payload)


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def history():
    return HistoryStore(capacity=500)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(registry, history, transport):
    return Dispatcher(registry, history, transport)


@pytest.fixture
def ack_recorder():
    """Factory for ack callbacks: ``ack = ack_recorder()``."""
    return AckRecorder


@pytest.fixture
def join(dispatcher, transport):
    """Connect a connection to the transport and dispatcher, then join."""
    async def _join(connection_id: str, name: Optional[str] = None) -> None:
        transport.add(connection_id)
        dispatcher.connect(connection_id)
        await dispatcher.handle(connection_id, "join", {"displayName": name})
    return _join


@pytest.fixture
def api_client():
    """Provide a TestClient for a freshly built app (independent relay state)."""
    return TestClient(create_app(AppSettings()))
