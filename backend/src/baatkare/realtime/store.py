"""Boundary between the realtime core and the durable chat store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, Sequence
from uuid import UUID


@dataclass(slots=True)
class UserRecord:
    id: UUID
    username: str
    display_name: str
    avatar_url: str | None = None
    presence_status: str = "offline"
    last_seen: datetime | None = None


@dataclass(slots=True)
class ChatRecord:
    id: UUID
    is_group: bool
    name: str | None = None
    admin_id: UUID | None = None


@dataclass(slots=True)
class MessageRecord:
    """A persisted message with the author's display fields joined in."""

    id: UUID
    chat_id: UUID
    author_id: UUID
    content: str
    created_at: datetime
    message_type: str = "text"
    file_url: str | None = None
    file_name: str | None = None
    reply_to: UUID | None = None
    is_deleted: bool = False
    is_pinned: bool = False
    author_username: str | None = None
    author_display_name: str | None = None
    author_avatar_url: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "chat_id": str(self.chat_id),
            "author_id": str(self.author_id),
            "content": self.content,
            "message_type": self.message_type,
            "file_url": self.file_url,
            "file_name": self.file_name,
            "reply_to": str(self.reply_to) if self.reply_to else None,
            "is_deleted": self.is_deleted,
            "is_pinned": self.is_pinned,
            "created_at": self.created_at.isoformat(),
            "author": {
                "id": str(self.author_id),
                "username": self.author_username,
                "display_name": self.author_display_name,
                "avatar_url": self.author_avatar_url,
            },
        }


@dataclass(slots=True)
class ScheduledMessageRecord:
    id: UUID
    chat_id: UUID
    author_id: UUID
    content: str
    scheduled_time: datetime
    is_recurring: bool = False
    recurrence_pattern: str | None = None
    is_sent: bool = False


class ChatStore(Protocol):
    """Asynchronous query interface the realtime core depends on.

    Every mutating call is committed before it returns, so callers may
    broadcast the result immediately. Implementations raise
    :class:`~baatkare.realtime.errors.TransientStoreError` when the backend
    fails.
    """

    async def get_user(self, user_id: UUID) -> UserRecord | None:
        ...

    async def set_presence(self, user_id: UUID, status: str, last_seen: datetime) -> None:
        ...

    async def chat_ids_for_user(self, user_id: UUID) -> list[UUID]:
        ...

    async def get_chat(self, chat_id: UUID) -> ChatRecord | None:
        ...

    async def is_member(self, chat_id: UUID, user_id: UUID) -> bool:
        ...

    async def member_ids(self, chat_id: UUID) -> list[UUID]:
        ...

    async def create_message(
        self,
        chat_id: UUID,
        author_id: UUID,
        content: str,
        *,
        message_type: str = "text",
        file_url: str | None = None,
        file_name: str | None = None,
        reply_to: UUID | None = None,
        created_at: datetime | None = None,
    ) -> MessageRecord:
        ...

    async def touch_chat(self, chat_id: UUID, at: datetime) -> None:
        ...

    async def get_message(self, message_id: UUID) -> MessageRecord | None:
        ...

    async def recent_messages(self, chat_id: UUID, limit: int) -> Sequence[MessageRecord]:
        """Return up to *limit* latest messages, oldest first."""
        ...

    async def mark_read(self, message_id: UUID, user_id: UUID, read_at: datetime) -> datetime:
        ...

    async def due_scheduled_messages(self, now: datetime) -> Sequence[ScheduledMessageRecord]:
        ...

    async def promote_scheduled_message(
        self, scheduled_id: UUID, *, next_time: datetime | None
    ) -> MessageRecord | None:
        """Insert the due message and advance or close the scheduled row atomically.

        ``next_time`` set means the row stays pending with that time; ``None``
        marks it sent. Returns ``None`` when the row is gone or already sent.
        """
        ...


__all__ = [
    "ChatRecord",
    "ChatStore",
    "MessageRecord",
    "ScheduledMessageRecord",
    "UserRecord",
]
