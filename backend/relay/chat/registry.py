"""Session registry: the source of truth for who is online.

Maps a live connection id to the display name it announced on join. The
registry performs no I/O; callers broadcast presence after mutating it.
"""
import threading
from typing import Dict, List

from .schemas import ANONYMOUS_NAME, PresenceEntry


class SessionRegistry:
    """Connection id -> display name map guarded by a lock.

    Snapshots and mutations hold the same lock, so ``list_presence`` never
    observes a half-applied register/unregister.
    """

    def __init__(self, anonymous_name: str = ANONYMOUS_NAME) -> None:
        self.anonymous_name = anonymous_name
        self._names: Dict[str, str] = {}
        self._lock = threading.Lock()

    def normalize(self, raw_name) -> str:
        if not isinstance(raw_name, str):
            return self.anonymous_name
        return raw_name.strip() or self.anonymous_name

    def register(self, connection_id: str, raw_name) -> str:
        """Store the normalized name for a connection, replacing any previous one.

        Args:
            connection_id: Transport-assigned connection id.
            raw_name: Name as sent by the client (may be empty or missing).

        Returns:
            The normalized name actually stored.
        """
        name = self.normalize(raw_name)
        with self._lock:
            self._names[connection_id] = name
        return name

    def unregister(self, connection_id: str) -> bool:
        """Remove a connection. Safe to call more than once.

        Returns:
            True if an entry was removed, False if there was none.
        """
        with self._lock:
            return self._names.pop(connection_id, None) is not None

    def name_of(self, connection_id: str) -> str:
        with self._lock:
            return self._names.get(connection_id, self.anonymous_name)

    def list_presence(self) -> List[PresenceEntry]:
        """Snapshot of online sessions in registration order."""
        with self._lock:
            items = list(self._names.items())
        return [PresenceEntry(id=cid, name=name) for cid, name in items]

    def __contains__(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._names

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)
