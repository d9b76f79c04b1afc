"""WebSocket connection manager for the chat relay.

This module owns the live WebSocket objects and the room groups built on top
of them. It implements the ``Transport`` interface the dispatcher emits
through; it knows nothing about names, history or routing rules.

Key features:
    - Backend-assigned connection ids (UUID4), never client-provided
    - Named groups (rooms) with join/leave; disconnect leaves every group
    - Concurrent fan-out with asyncio.gather()
    - Automatic dead connection cleanup

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.

Performance Notes:
    - Broadcasting uses asyncio.gather() for concurrent message delivery
    - Failed connections are removed from the send map during broadcast; their
      receive loop then ends and runs the normal disconnect path
    - Uvicorn handles ping/pong at the protocol level (default 20s interval)
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from .transport import Transport

logger = logging.getLogger(__name__)


class ConnectionManager(Transport):
    """Tracks accepted WebSockets and their group memberships."""

    def __init__(self) -> None:
        """Initialize empty connection manager."""
        # connection_id -> WebSocket
        self.active_connections: Dict[str, WebSocket] = {}

        # group name -> set of connection ids
        self.groups: Dict[str, Set[str]] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a WebSocket connection and assign its connection id.

        Args:
            websocket: The WebSocket connection to accept.

        Returns:
            Backend-generated connection id.
        """
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket
        logger.info(
            f"[Manager] Accepted {connection_id}. "
            f"{len(self.active_connections)} active connections"
        )
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        """Forget a connection and remove it from every group. Idempotent."""
        self.active_connections.pop(connection_id, None)
        for group in list(self.groups):
            self._discard_member(group, connection_id)

    def join_group(self, connection_id: str, group: str) -> None:
        self.groups.setdefault(group, set()).add(connection_id)
        logger.debug(f"[Manager] {connection_id} joined group {group}")

    def leave_group(self, connection_id: str, group: str) -> None:
        self._discard_member(group, connection_id)
        logger.debug(f"[Manager] {connection_id} left group {group}")

    def group_members(self, group: str) -> Set[str]:
        return set(self.groups.get(group, ()))

    def get_connection_count(self) -> int:
        return len(self.active_connections)

    # =========================================================================
    # Transport
    # =========================================================================

    async def emit_to(self, connection_id: str, event: str, data: Any) -> None:
        await self._fan_out([connection_id], event, data)

    async def emit_all(
        self, event: str, data: Any, exclude: Optional[str] = None
    ) -> None:
        await self._fan_out(
            [cid for cid in self.active_connections if cid != exclude], event, data
        )

    async def emit_group(
        self, group: str, event: str, data: Any, exclude: Optional[str] = None
    ) -> None:
        await self._fan_out(
            [cid for cid in self.groups.get(group, ()) if cid != exclude], event, data
        )

    async def send_ack(self, connection_id: str, ack_id: Any, data: Any) -> None:
        """Answer a client request that carried an ``ack`` id."""
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return
        frame = {"event": "ack", "ack": ack_id, "data": data}
        if not await self._safe_send(websocket, frame):
            self._cleanup_connections([connection_id])

    async def _fan_out(
        self, connection_ids: Iterable[str], event: str, data: Any
    ) -> None:
        """Send one event to several connections concurrently.

        Unknown ids are skipped; connections whose send fails are dropped
        from the send map.
        """
        targets = [
            (cid, self.active_connections[cid])
            for cid in connection_ids
            if cid in self.active_connections
        ]
        if not targets:
            return

        frame = {"event": event, "data": data}
        results = await asyncio.gather(
            *[self._safe_send(ws, frame) for _, ws in targets],
            return_exceptions=True
        )

        failed = [cid for (cid, _), success in zip(targets, results) if success is not True]
        self._cleanup_connections(failed)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed_connections: List[str]) -> None:
        for cid in failed_connections:
            if self.active_connections.pop(cid, None) is not None:
                logger.debug(f"[Manager] Removed dead connection {cid}")

    def _discard_member(self, group: str, connection_id: str) -> None:
        members = self.groups.get(group)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.groups[group]
