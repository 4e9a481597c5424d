"""Schemas for scheduled and recurring messages."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.enums import RecurrencePattern


class ScheduledMessageCreate(BaseModel):
    chat_id: UUID
    content: str = Field(..., min_length=1)
    scheduled_time: datetime = Field(..., description="Earliest delivery time; naive values are UTC")
    is_recurring: bool = False
    recurrence_pattern: RecurrencePattern | None = None

    @field_validator("scheduled_time")
    @classmethod
    def ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def check_recurrence(self) -> "ScheduledMessageCreate":
        if self.is_recurring and self.recurrence_pattern is None:
            raise ValueError("Recurring messages require a recurrence pattern")
        if not self.is_recurring:
            self.recurrence_pattern = None
        return self


class ScheduledMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    chat_id: UUID
    author_id: UUID
    content: str
    scheduled_time: datetime
    is_recurring: bool
    recurrence_pattern: RecurrencePattern | None = None
    is_sent: bool
    created_at: datetime
