"""Process-wide mapping from user identity to the live realtime connection."""

from __future__ import annotations

import logging
from typing import Any, Dict, Protocol, runtime_checkable
from uuid import UUID

logger = logging.getLogger(__name__)


@runtime_checkable
class Connection(Protocol):
    """Handle for one authenticated realtime client."""

    user_id: UUID

    async def send(self, payload: dict[str, Any]) -> bool:
        ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        ...


class ConnectionRegistry:
    """Keep at most one active connection per user.

    All mutations happen on the event loop thread and never await, so the
    mapping needs no lock. Registering a second connection for the same user
    replaces the first (last connect wins) and hands the displaced handle back
    to the caller.
    """

    def __init__(self) -> None:
        self._connections: Dict[UUID, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._connections

    def register(self, user_id: UUID, connection: Connection) -> Connection | None:
        previous = self._connections.get(user_id)
        self._connections[user_id] = connection
        if previous is not None and previous is not connection:
            logger.info("Connection for user %s replaced by a newer session", user_id)
            return previous
        return None

    def unregister(self, user_id: UUID, connection: Connection) -> bool:
        """Remove *connection* only if it is still the registered handle."""

        current = self._connections.get(user_id)
        if current is None or current is not connection:
            return False
        del self._connections[user_id]
        return True

    def lookup(self, user_id: UUID) -> Connection | None:
        return self._connections.get(user_id)

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def user_ids(self) -> list[UUID]:
        return list(self._connections)


__all__ = ["Connection", "ConnectionRegistry"]
