from __future__ import annotations

import gc
from typing import Any
from uuid import uuid4

import pytest

from app.monitoring.metrics import realtime_events_total
from baatkare.realtime.managers import Broadcaster, RealtimeState, RoomManager, TypingStatusStore


class FakeConnection:
    def __init__(self, user_id=None, *, healthy: bool = True) -> None:
        self.user_id = user_id or uuid4()
        self.healthy = healthy
        self.sent: list[dict[str, Any]] = []

    async def send(self, payload: dict[str, Any]) -> bool:
        if not self.healthy:
            return False
        self.sent.append(payload)
        return True

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.healthy = False


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture(autouse=True)
def reset_event_metrics() -> None:
    realtime_events_total.reset()
    yield
    realtime_events_total.reset()


def test_room_join_leave_and_leave_all() -> None:
    rooms = RoomManager()
    chat_a, chat_b = uuid4(), uuid4()
    conn = FakeConnection()

    assert rooms.join(chat_a, conn) is True
    assert rooms.join(chat_a, conn) is False
    rooms.join(chat_b, conn)

    assert rooms.is_listening(chat_a, conn)
    assert rooms.chats_for(conn) == {chat_a, chat_b}

    assert rooms.leave(chat_a, conn) is True
    assert rooms.leave(chat_a, conn) is False
    assert rooms.members(chat_a) == []

    assert rooms.leave_all(conn) == [chat_b]
    assert rooms.members(chat_b) == []
    assert rooms.chats_for(conn) == set()


def test_room_sequence_lock_is_per_chat() -> None:
    rooms = RoomManager()
    chat_a, chat_b = uuid4(), uuid4()

    assert rooms.sequence(chat_a) is rooms.sequence(chat_a)
    assert rooms.sequence(chat_a) is not rooms.sequence(chat_b)


@pytest.mark.anyio("asyncio")
async def test_room_sequence_lock_is_released_once_unused() -> None:
    rooms = RoomManager()
    chat_id = uuid4()

    async with rooms.sequence(chat_id):
        assert rooms.sequence(chat_id).locked()
    gc.collect()

    assert chat_id not in rooms._locks
    assert not rooms.sequence(chat_id).locked()


@pytest.mark.anyio("asyncio")
async def test_typing_status_reports_changes_only() -> None:
    store = TypingStatusStore(5)
    chat_id, user_id = uuid4(), uuid4()

    assert await store.set_status(chat_id, user_id=user_id, is_typing=True) is True
    assert await store.set_status(chat_id, user_id=user_id, is_typing=True) is False
    assert await store.typing_users(chat_id) == [user_id]
    assert await store.set_status(chat_id, user_id=user_id, is_typing=False) is True
    assert await store.set_status(chat_id, user_id=user_id, is_typing=False) is False
    assert await store.typing_users(chat_id) == []


@pytest.mark.anyio("asyncio")
async def test_typing_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    store = TypingStatusStore(5, clock=clock)
    chat_id, user_id = uuid4(), uuid4()

    await store.set_status(chat_id, user_id=user_id, is_typing=True)
    clock.now += 6

    assert await store.typing_users(chat_id) == []


@pytest.mark.anyio("asyncio")
async def test_clear_user_returns_only_live_entries() -> None:
    clock = FakeClock()
    store = TypingStatusStore(5, clock=clock)
    user_id = uuid4()
    stale_chat, live_chat = uuid4(), uuid4()

    await store.set_status(stale_chat, user_id=user_id, is_typing=True)
    clock.now += 4
    await store.set_status(live_chat, user_id=user_id, is_typing=True)
    clock.now += 2

    assert await store.clear_user(user_id) == [live_chat]
    assert await store.typing_users(live_chat) == []


@pytest.mark.anyio("asyncio")
async def test_broadcaster_to_chat_respects_exclude_and_counts() -> None:
    state = RealtimeState()
    broadcaster = Broadcaster(state)
    chat_id = uuid4()
    sender, peer, broken = FakeConnection(), FakeConnection(), FakeConnection(healthy=False)
    outsider = FakeConnection()
    for conn in (sender, peer, broken):
        state.rooms.join(chat_id, conn)

    delivered = await broadcaster.to_chat(chat_id, {"type": "user_typing"}, exclude=[sender])

    assert delivered == 1
    assert peer.sent == [{"type": "user_typing"}]
    assert sender.sent == []
    assert outsider.sent == []
    assert realtime_events_total.value("user_typing", "outbound") == 1


@pytest.mark.anyio("asyncio")
async def test_broadcaster_to_user_and_to_all() -> None:
    state = RealtimeState()
    broadcaster = Broadcaster(state)
    first, second = FakeConnection(), FakeConnection()
    state.registry.register(first.user_id, first)
    state.registry.register(second.user_id, second)

    assert await broadcaster.to_user(first.user_id, {"type": "incoming_call"}) is True
    assert await broadcaster.to_user(uuid4(), {"type": "incoming_call"}) is False
    assert await broadcaster.to_all({"type": "user_online"}, exclude=[first]) == 1

    assert [p["type"] for p in first.sent] == ["incoming_call"]
    assert [p["type"] for p in second.sent] == ["user_online"]


def test_state_builds_typing_store_with_ttl() -> None:
    state = RealtimeState(typing_ttl_seconds=3)

    assert state.typing.ttl == 3
