"""In-process realtime state: chat rooms, typing indicators and fan-out."""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Set
from uuid import UUID

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import realtime_events_total

from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Safely send JSON data through websocket, handling disconnections gracefully.

    Returns True if message was sent successfully, False otherwise.
    """
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------


class RoomManager:
    """Track which connections listen to which chat.

    Besides the membership sets the manager hands out one ``asyncio.Lock`` per
    chat. Writers hold it across persist-then-broadcast so the order in which
    a room sees ``new_message`` events equals the order of the writes. A lock
    lives only while some writer holds or awaits it.
    """

    def __init__(self) -> None:
        self._rooms: Dict[UUID, Set[Connection]] = defaultdict(set)
        self._memberships: Dict[Connection, Set[UUID]] = defaultdict(set)
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = weakref.WeakValueDictionary()

    def join(self, chat_id: UUID, connection: Connection) -> bool:
        bucket = self._rooms[chat_id]
        if connection in bucket:
            return False
        bucket.add(connection)
        self._memberships[connection].add(chat_id)
        return True

    def leave(self, chat_id: UUID, connection: Connection) -> bool:
        bucket = self._rooms.get(chat_id)
        if not bucket or connection not in bucket:
            return False
        bucket.discard(connection)
        if not bucket:
            self._rooms.pop(chat_id, None)
        chats = self._memberships.get(connection)
        if chats is not None:
            chats.discard(chat_id)
            if not chats:
                self._memberships.pop(connection, None)
        return True

    def leave_all(self, connection: Connection) -> list[UUID]:
        chats = list(self._memberships.pop(connection, set()))
        for chat_id in chats:
            bucket = self._rooms.get(chat_id)
            if bucket is None:
                continue
            bucket.discard(connection)
            if not bucket:
                self._rooms.pop(chat_id, None)
        return chats

    def members(self, chat_id: UUID) -> list[Connection]:
        return list(self._rooms.get(chat_id, ()))

    def chats_for(self, connection: Connection) -> set[UUID]:
        return set(self._memberships.get(connection, ()))

    def is_listening(self, chat_id: UUID, connection: Connection) -> bool:
        return connection in self._rooms.get(chat_id, ())

    def sequence(self, chat_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chat_id] = lock
        return lock


# ---------------------------------------------------------------------------
# Typing indicators
# ---------------------------------------------------------------------------


class TypingStatusStore:
    """Stores transient typing indicators."""

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[UUID, Dict[UUID, float]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def _cleanup_expired(self, chat_id: UUID, bucket: Dict[UUID, float], now: float) -> bool:
        removed = [user_id for user_id, ts in bucket.items() if now - ts > self._ttl]
        for user_id in removed:
            bucket.pop(user_id, None)
        if not bucket and chat_id in self._entries:
            self._entries.pop(chat_id, None)
        return bool(removed)

    async def set_status(self, chat_id: UUID, *, user_id: UUID, is_typing: bool) -> bool:
        now = self._clock()
        async with self._lock:
            bucket = self._entries.setdefault(chat_id, {})
            changed = False
            if is_typing:
                changed = user_id not in bucket
                bucket[user_id] = now
            elif user_id in bucket:
                bucket.pop(user_id, None)
                changed = True

            self._cleanup_expired(chat_id, bucket, now)
            return changed

    async def clear_user(self, user_id: UUID) -> list[UUID]:
        """Drop *user_id* from every chat, returning the chats it was typing in."""

        now = self._clock()
        cleared: list[UUID] = []
        async with self._lock:
            for chat_id, bucket in list(self._entries.items()):
                if user_id in bucket:
                    expired = now - bucket.pop(user_id) > self._ttl
                    if not expired:
                        cleared.append(chat_id)
                self._cleanup_expired(chat_id, bucket, now)
        return cleared

    async def typing_users(self, chat_id: UUID) -> list[UUID]:
        now = self._clock()
        async with self._lock:
            bucket = self._entries.get(chat_id)
            if not bucket:
                return []
            self._cleanup_expired(chat_id, bucket, now)
            return sorted(bucket, key=str)


# ---------------------------------------------------------------------------
# Shared state and fan-out
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RealtimeState:
    """Transient state owned by one realtime hub."""

    typing_ttl_seconds: float = 8.0
    registry: ConnectionRegistry = field(default_factory=ConnectionRegistry)
    rooms: RoomManager = field(default_factory=RoomManager)
    typing: TypingStatusStore | None = None

    def __post_init__(self) -> None:
        if self.typing is None:
            self.typing = TypingStatusStore(self.typing_ttl_seconds)


class Broadcaster:
    """Deliver events to one user, one chat room or every connection.

    Delivery is best effort: offline recipients are skipped without queuing
    and a failed send never raises to the caller.
    """

    def __init__(self, state: RealtimeState) -> None:
        self._state = state

    @staticmethod
    async def _deliver(connection: Connection, payload: dict[str, Any]) -> bool:
        try:
            return await connection.send(payload)
        except Exception:  # pragma: no cover - connection implementations swallow errors
            logger.warning("Dropping %s event for user %s", payload.get("type"), connection.user_id, exc_info=True)
            return False

    @staticmethod
    def _record(payload: dict[str, Any], delivered: int) -> None:
        if delivered:
            realtime_events_total.labels(str(payload.get("type", "unknown")), "outbound").inc(delivered)

    async def to_user(self, user_id: UUID, payload: dict[str, Any]) -> bool:
        connection = self._state.registry.lookup(user_id)
        if connection is None:
            return False
        delivered = await self._deliver(connection, payload)
        self._record(payload, int(delivered))
        return delivered

    async def to_chat(
        self,
        chat_id: UUID,
        payload: dict[str, Any],
        *,
        exclude: Iterable[Connection] | None = None,
    ) -> int:
        exclude_set = set(exclude or ())
        delivered = 0
        for connection in self._state.rooms.members(chat_id):
            if connection in exclude_set:
                continue
            if await self._deliver(connection, payload):
                delivered += 1
        self._record(payload, delivered)
        return delivered

    async def to_all(
        self,
        payload: dict[str, Any],
        *,
        exclude: Iterable[Connection] | None = None,
    ) -> int:
        exclude_set = set(exclude or ())
        delivered = 0
        for connection in self._state.registry.connections():
            if connection in exclude_set:
                continue
            if await self._deliver(connection, payload):
                delivered += 1
        self._record(payload, delivered)
        return delivered


__all__ = [
    "Broadcaster",
    "RealtimeState",
    "RoomManager",
    "TypingStatusStore",
    "safe_send_json",
]
