"""Periodic promotion of scheduled messages into the live chat stream."""

from __future__ import annotations

import asyncio
import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from app.monitoring.metrics import scheduled_deliveries_total

from .events import new_message_event
from .managers import Broadcaster, RealtimeState
from .store import ChatStore, ScheduledMessageRecord

logger = logging.getLogger(__name__)

RECURRENCE_PATTERNS = ("daily", "weekly", "monthly")


def add_months(value: datetime, months: int) -> datetime:
    """Shift *value* by calendar months, clamping the day to the target month."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_occurrence(previous: datetime, pattern: str) -> datetime:
    """Return the occurrence one interval after *previous*."""

    if pattern == "daily":
        return previous + timedelta(days=1)
    if pattern == "weekly":
        return previous + timedelta(days=7)
    if pattern == "monthly":
        return add_months(previous, 1)
    raise ValueError(f"Unknown recurrence pattern: {pattern}")


@dataclass(slots=True)
class DeliveryStats:
    delivered: int = 0
    failed: int = 0
    skipped: int = 0


class ScheduledDeliveryLoop:
    """Deliver due scheduled messages once per interval.

    Each tick re-scans the store, so nothing is carried between ticks. Rows
    are processed independently: a failure is logged and counted and the
    remaining rows are still delivered.
    """

    def __init__(
        self,
        store: ChatStore,
        state: RealtimeState,
        broadcaster: Broadcaster,
        *,
        interval_seconds: float = 60.0,
    ) -> None:
        self._store = store
        self._state = state
        self._broadcaster = broadcaster
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> DeliveryStats:
        now = now or datetime.now(timezone.utc)
        stats = DeliveryStats()
        due = await self._store.due_scheduled_messages(now)
        for row in due:
            try:
                delivered = await self._deliver(row)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Failed to deliver scheduled message %s", row.id)
                scheduled_deliveries_total.labels("failed").inc()
                stats.failed += 1
                continue
            if delivered:
                scheduled_deliveries_total.labels("delivered").inc()
                stats.delivered += 1
            else:
                stats.skipped += 1
        if due:
            logger.info(
                "Scheduled delivery tick: %s delivered, %s failed, %s skipped",
                stats.delivered,
                stats.failed,
                stats.skipped,
            )
        return stats

    async def _deliver(self, row: ScheduledMessageRecord) -> bool:
        next_time = None
        if row.is_recurring:
            if row.recurrence_pattern in RECURRENCE_PATTERNS:
                next_time = next_occurrence(row.scheduled_time, row.recurrence_pattern)
            else:
                logger.warning(
                    "Scheduled message %s is recurring without a valid pattern; sending once",
                    row.id,
                )

        async with self._state.rooms.sequence(row.chat_id):
            message = await self._store.promote_scheduled_message(row.id, next_time=next_time)
            if message is None:
                return False
            await self._broadcaster.to_chat(row.chat_id, new_message_event(message.to_payload()))
        return True

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled delivery tick failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="scheduled-delivery-loop")
        logger.info("Scheduled delivery loop started (interval %.0fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Scheduled delivery loop stopped")


__all__ = [
    "DeliveryStats",
    "RECURRENCE_PATTERNS",
    "ScheduledDeliveryLoop",
    "add_months",
    "next_occurrence",
]
