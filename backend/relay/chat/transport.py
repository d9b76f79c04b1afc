"""Transport capability the dispatcher emits through.

The dispatcher only knows connection ids and group names. Implementations
own the sockets and the group membership used for rooms, and must swallow
per-connection send failures: emission is fire-and-forget.
"""
from abc import ABC, abstractmethod
from typing import Any, Optional


class Transport(ABC):
    """Abstract delivery + group-membership primitive."""

    @abstractmethod
    async def emit_to(self, connection_id: str, event: str, data: Any) -> None:
        """Send an event to a single connection."""

    @abstractmethod
    async def emit_all(
        self, event: str, data: Any, exclude: Optional[str] = None
    ) -> None:
        """Send an event to every connection, optionally skipping one."""

    @abstractmethod
    async def emit_group(
        self, group: str, event: str, data: Any, exclude: Optional[str] = None
    ) -> None:
        """Send an event to the members of a group, optionally skipping one."""

    @abstractmethod
    def join_group(self, connection_id: str, group: str) -> None:
        ...

    @abstractmethod
    def leave_group(self, connection_id: str, group: str) -> None:
        ...
