from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

import pytest
from sqlalchemy import select

from app.models import Message, RecurrencePattern, ScheduledMessage
from app.monitoring.metrics import scheduled_deliveries_total
from app.services.store import SqlAlchemyChatStore, as_utc
from baatkare.realtime.errors import TransientStoreError
from baatkare.realtime.managers import Broadcaster, RealtimeState
from baatkare.realtime.scheduler import ScheduledDeliveryLoop, add_months, next_occurrence

UTC = timezone.utc
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class Listener:
    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        self.sent: list[dict[str, Any]] = []

    async def send(self, payload: dict[str, Any]) -> bool:
        self.sent.append(payload)
        return True

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        return None


class FlakyStore(SqlAlchemyChatStore):
    def __init__(self, session_factory, broken: set[UUID]) -> None:
        super().__init__(session_factory)
        self.broken = broken

    async def promote_scheduled_message(self, scheduled_id, *, next_time):
        if scheduled_id in self.broken:
            raise TransientStoreError()
        return await super().promote_scheduled_message(scheduled_id, next_time=next_time)


@pytest.fixture(autouse=True)
def reset_delivery_metrics() -> None:
    scheduled_deliveries_total.reset()
    yield
    scheduled_deliveries_total.reset()


@pytest.fixture()
def schedule(session_factory):
    def factory(
        chat_id: UUID,
        author_id: UUID,
        content: str,
        scheduled_time: datetime,
        pattern: RecurrencePattern | None = None,
        *,
        is_recurring: bool | None = None,
    ) -> UUID:
        with session_factory() as session:
            row = ScheduledMessage(
                chat_id=chat_id,
                author_id=author_id,
                content=content,
                scheduled_time=scheduled_time,
                is_recurring=pattern is not None if is_recurring is None else is_recurring,
                recurrence_pattern=pattern,
            )
            session.add(row)
            session.commit()
            return row.id

    return factory


def build_loop(store) -> tuple[ScheduledDeliveryLoop, RealtimeState]:
    state = RealtimeState()
    return ScheduledDeliveryLoop(store, state, Broadcaster(state), interval_seconds=3600), state


def test_add_months_clamps_to_last_day() -> None:
    assert add_months(datetime(2026, 1, 31, 9, 30, tzinfo=UTC), 1) == datetime(2026, 2, 28, 9, 30, tzinfo=UTC)
    assert add_months(datetime(2024, 1, 31, tzinfo=UTC), 1) == datetime(2024, 2, 29, tzinfo=UTC)
    assert add_months(datetime(2026, 12, 15, tzinfo=UTC), 1) == datetime(2027, 1, 15, tzinfo=UTC)
    assert add_months(datetime(2026, 3, 31, tzinfo=UTC), 13) == datetime(2027, 4, 30, tzinfo=UTC)


def test_next_occurrence_per_pattern() -> None:
    previous = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)

    assert next_occurrence(previous, "daily") == previous + timedelta(days=1)
    assert next_occurrence(previous, "weekly") == previous + timedelta(days=7)
    assert next_occurrence(previous, "monthly") == datetime(2026, 11, 19, 8, 0, tzinfo=UTC)
    with pytest.raises(ValueError):
        next_occurrence(previous, "hourly")


@pytest.mark.anyio("asyncio")
async def test_one_shot_message_is_delivered_exactly_once(
    session_factory, make_user, make_chat, schedule
) -> None:
    alice, bob = make_user(), make_user()
    chat_id = make_chat(alice, bob)
    due_at = NOW - timedelta(minutes=5)
    scheduled_id = schedule(chat_id, alice, "good morning", due_at)
    loop, state = build_loop(SqlAlchemyChatStore(session_factory))
    listener = Listener(bob)
    state.rooms.join(chat_id, listener)

    first = await loop.run_once(NOW)
    second = await loop.run_once(NOW + timedelta(minutes=1))

    assert (first.delivered, first.failed, first.skipped) == (1, 0, 0)
    assert (second.delivered, second.failed, second.skipped) == (0, 0, 0)
    assert scheduled_deliveries_total.value("delivered") == 1
    [event] = listener.sent
    assert event["type"] == "new_message"
    assert event["message"]["content"] == "good morning"
    assert event["message"]["author_id"] == str(alice)
    with session_factory() as session:
        messages = session.execute(select(Message)).scalars().all()
        assert len(messages) == 1
        assert as_utc(messages[0].created_at) == due_at
        assert session.get(ScheduledMessage, scheduled_id).is_sent is True


@pytest.mark.anyio("asyncio")
async def test_future_messages_are_left_pending(session_factory, make_user, make_chat, schedule) -> None:
    alice = make_user()
    chat_id = make_chat(alice, make_user())
    scheduled_id = schedule(chat_id, alice, "later", NOW + timedelta(hours=1))
    loop, _ = build_loop(SqlAlchemyChatStore(session_factory))

    stats = await loop.run_once(NOW)

    assert stats.delivered == 0
    with session_factory() as session:
        assert session.get(ScheduledMessage, scheduled_id).is_sent is False


@pytest.mark.anyio("asyncio")
async def test_recurring_message_advances_from_previous_occurrence(
    session_factory, make_user, make_chat, schedule
) -> None:
    alice = make_user()
    chat_id = make_chat(alice, make_user())
    first_time = NOW - timedelta(days=3)
    scheduled_id = schedule(chat_id, alice, "standup", first_time, RecurrencePattern.DAILY)
    loop, _ = build_loop(SqlAlchemyChatStore(session_factory))

    await loop.run_once(NOW)

    with session_factory() as session:
        row = session.get(ScheduledMessage, scheduled_id)
        assert row.is_sent is False
        assert as_utc(row.scheduled_time) == first_time + timedelta(days=1)

    await loop.run_once(NOW)

    with session_factory() as session:
        row = session.get(ScheduledMessage, scheduled_id)
        assert as_utc(row.scheduled_time) == first_time + timedelta(days=2)
        created = [
            as_utc(value)
            for value in session.execute(select(Message.created_at).order_by(Message.created_at)).scalars()
        ]
        assert created == [first_time, first_time + timedelta(days=1)]


@pytest.mark.anyio("asyncio")
async def test_monthly_recurrence_clamps_short_months(
    session_factory, make_user, make_chat, schedule
) -> None:
    alice = make_user()
    chat_id = make_chat(alice, make_user())
    jan_31 = datetime(2026, 1, 31, 9, 0, tzinfo=UTC)
    scheduled_id = schedule(chat_id, alice, "rent", jan_31, RecurrencePattern.MONTHLY)
    loop, _ = build_loop(SqlAlchemyChatStore(session_factory))

    await loop.run_once(datetime(2026, 2, 1, tzinfo=UTC))

    with session_factory() as session:
        assert as_utc(session.get(ScheduledMessage, scheduled_id).scheduled_time) == datetime(
            2026, 2, 28, 9, 0, tzinfo=UTC
        )


@pytest.mark.anyio("asyncio")
async def test_recurring_without_pattern_is_sent_once(
    session_factory, make_user, make_chat, schedule
) -> None:
    alice = make_user()
    chat_id = make_chat(alice, make_user())
    scheduled_id = schedule(chat_id, alice, "odd", NOW - timedelta(minutes=1), is_recurring=True)
    loop, _ = build_loop(SqlAlchemyChatStore(session_factory))

    stats = await loop.run_once(NOW)

    assert stats.delivered == 1
    with session_factory() as session:
        assert session.get(ScheduledMessage, scheduled_id).is_sent is True


@pytest.mark.anyio("asyncio")
async def test_failing_row_does_not_block_the_rest(
    session_factory, make_user, make_chat, schedule
) -> None:
    alice = make_user()
    chat_id = make_chat(alice, make_user())
    broken = schedule(chat_id, alice, "broken", NOW - timedelta(minutes=2))
    healthy = schedule(chat_id, alice, "healthy", NOW - timedelta(minutes=1))
    loop, _ = build_loop(FlakyStore(session_factory, {broken}))

    stats = await loop.run_once(NOW)

    assert (stats.delivered, stats.failed) == (1, 1)
    assert scheduled_deliveries_total.value("failed") == 1
    assert scheduled_deliveries_total.value("delivered") == 1
    with session_factory() as session:
        assert session.get(ScheduledMessage, broken).is_sent is False
        assert session.get(ScheduledMessage, healthy).is_sent is True


@pytest.mark.anyio("asyncio")
async def test_row_already_sent_is_skipped(session_factory, make_user, make_chat, schedule) -> None:
    alice = make_user()
    chat_id = make_chat(alice, make_user())
    schedule(chat_id, alice, "once", NOW - timedelta(minutes=1))
    store = SqlAlchemyChatStore(session_factory)
    stale = await store.due_scheduled_messages(NOW)
    await store.promote_scheduled_message(stale[0].id, next_time=None)

    class StaleStore(SqlAlchemyChatStore):
        async def due_scheduled_messages(self, now):
            return stale

    loop, _ = build_loop(StaleStore(session_factory))
    stats = await loop.run_once(NOW)

    assert (stats.delivered, stats.skipped) == (0, 1)
    with session_factory() as session:
        assert len(session.execute(select(Message)).scalars().all()) == 1


@pytest.mark.anyio("asyncio")
async def test_loop_start_runs_a_tick_and_stop_cancels(
    session_factory, make_user, make_chat, schedule
) -> None:
    alice = make_user()
    chat_id = make_chat(alice, make_user())
    scheduled_id = schedule(chat_id, alice, "tick", datetime.now(UTC) - timedelta(minutes=1))
    loop, _ = build_loop(SqlAlchemyChatStore(session_factory))

    loop.start()
    assert loop.running
    for _ in range(5):
        await asyncio.sleep(0)
    await loop.stop()

    assert not loop.running
    with session_factory() as session:
        assert session.get(ScheduledMessage, scheduled_id).is_sent is True
