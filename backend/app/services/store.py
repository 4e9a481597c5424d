"""SQLAlchemy implementation of the realtime core's chat store."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from baatkare.realtime.errors import TransientStoreError
from baatkare.realtime.store import (
    ChatRecord,
    MessageRecord,
    ScheduledMessageRecord,
    UserRecord,
)

from app.core.ids import utcnow
from app.models import (
    Chat,
    ChatMember,
    Message,
    MessageReceipt,
    MessageType,
    PresenceStatus,
    ScheduledMessage,
    User,
)

logger = logging.getLogger(__name__)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def message_record(message: Message) -> MessageRecord:
    author = message.author
    return MessageRecord(
        id=message.id,
        chat_id=message.chat_id,
        author_id=message.author_id,
        content=message.content,
        created_at=as_utc(message.created_at),
        message_type=message.message_type.value,
        file_url=message.file_url,
        file_name=message.file_name,
        reply_to=message.reply_to_id,
        is_deleted=message.is_deleted,
        is_pinned=message.is_pinned,
        author_username=author.username if author else None,
        author_display_name=author.name if author else None,
        author_avatar_url=author.avatar if author else None,
    )


class SqlAlchemyChatStore:
    """Chat store backed by the application's SQLAlchemy session factory.

    Every call opens a short-lived session, commits its writes before
    returning and converts driver failures into ``TransientStoreError``. The
    queries are small indexed lookups and run inline on the event loop.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Chat store operation failed: %s", exc)
            raise TransientStoreError() from exc
        finally:
            db.close()

    # Users -----------------------------------------------------------------

    async def get_user(self, user_id: UUID) -> UserRecord | None:
        with self._session() as db:
            user = db.get(User, user_id)
            if user is None:
                return None
            return UserRecord(
                id=user.id,
                username=user.username,
                display_name=user.name,
                avatar_url=user.avatar,
                presence_status=user.presence_status.value,
                last_seen=as_utc(user.last_seen),
            )

    async def set_presence(self, user_id: UUID, status: str, last_seen: datetime) -> None:
        with self._session() as db:
            user = db.get(User, user_id)
            if user is None:
                return
            user.presence_status = PresenceStatus(status)
            user.last_seen = last_seen
            db.commit()

    # Chats -----------------------------------------------------------------

    async def chat_ids_for_user(self, user_id: UUID) -> list[UUID]:
        with self._session() as db:
            stmt = select(ChatMember.chat_id).where(ChatMember.user_id == user_id)
            return list(db.execute(stmt).scalars())

    async def get_chat(self, chat_id: UUID) -> ChatRecord | None:
        with self._session() as db:
            chat = db.get(Chat, chat_id)
            if chat is None:
                return None
            return ChatRecord(id=chat.id, is_group=chat.is_group, name=chat.name, admin_id=chat.admin_id)

    async def is_member(self, chat_id: UUID, user_id: UUID) -> bool:
        with self._session() as db:
            stmt = select(ChatMember.id).where(
                ChatMember.chat_id == chat_id,
                ChatMember.user_id == user_id,
            )
            return db.execute(stmt).first() is not None

    async def member_ids(self, chat_id: UUID) -> list[UUID]:
        with self._session() as db:
            stmt = select(ChatMember.user_id).where(ChatMember.chat_id == chat_id)
            return list(db.execute(stmt).scalars())

    async def touch_chat(self, chat_id: UUID, at: datetime) -> None:
        with self._session() as db:
            chat = db.get(Chat, chat_id)
            if chat is None:
                return
            chat.updated_at = at
            db.commit()

    # Messages --------------------------------------------------------------

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
        with self._session() as db:
            message = Message(
                chat_id=chat_id,
                author_id=author_id,
                content=content,
                message_type=MessageType(message_type),
                file_url=file_url,
                file_name=file_name,
                reply_to_id=reply_to,
                created_at=created_at or utcnow(),
            )
            db.add(message)
            db.commit()
            db.refresh(message)
            return message_record(message)

    async def get_message(self, message_id: UUID) -> MessageRecord | None:
        with self._session() as db:
            stmt = (
                select(Message)
                .options(joinedload(Message.author))
                .where(Message.id == message_id)
            )
            message = db.execute(stmt).scalar_one_or_none()
            return message_record(message) if message is not None else None

    async def recent_messages(self, chat_id: UUID, limit: int) -> Sequence[MessageRecord]:
        with self._session() as db:
            stmt = (
                select(Message)
                .options(joinedload(Message.author))
                .where(Message.chat_id == chat_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
            )
            messages = list(db.execute(stmt).scalars())
            messages.reverse()
            return [message_record(message) for message in messages]

    async def mark_read(self, message_id: UUID, user_id: UUID, read_at: datetime) -> datetime:
        with self._session() as db:
            stmt = select(MessageReceipt).where(
                MessageReceipt.message_id == message_id,
                MessageReceipt.user_id == user_id,
            )
            receipt = db.execute(stmt).scalar_one_or_none()
            if receipt is None:
                db.add(MessageReceipt(message_id=message_id, user_id=user_id, read_at=read_at))
            else:
                receipt.read_at = read_at
            try:
                db.commit()
            except IntegrityError:
                # A concurrent mark for the same pair won the insert; update it instead.
                db.rollback()
                receipt = db.execute(stmt).scalar_one()
                receipt.read_at = read_at
                db.commit()
            return read_at

    # Scheduled messages ----------------------------------------------------

    async def due_scheduled_messages(self, now: datetime) -> Sequence[ScheduledMessageRecord]:
        with self._session() as db:
            stmt = (
                select(ScheduledMessage)
                .where(
                    ScheduledMessage.is_sent.is_(False),
                    ScheduledMessage.scheduled_time <= now,
                )
                .order_by(ScheduledMessage.scheduled_time, ScheduledMessage.id)
            )
            return [
                ScheduledMessageRecord(
                    id=row.id,
                    chat_id=row.chat_id,
                    author_id=row.author_id,
                    content=row.content,
                    scheduled_time=as_utc(row.scheduled_time),
                    is_recurring=row.is_recurring,
                    recurrence_pattern=row.recurrence_pattern.value if row.recurrence_pattern else None,
                    is_sent=row.is_sent,
                )
                for row in db.execute(stmt).scalars()
            ]

    async def promote_scheduled_message(
        self, scheduled_id: UUID, *, next_time: datetime | None
    ) -> MessageRecord | None:
        with self._session() as db:
            row = db.get(ScheduledMessage, scheduled_id)
            if row is None or row.is_sent:
                return None

            message = Message(
                chat_id=row.chat_id,
                author_id=row.author_id,
                content=row.content,
                message_type=MessageType.TEXT,
                created_at=as_utc(row.scheduled_time),
            )
            db.add(message)
            if next_time is not None:
                row.scheduled_time = next_time
            else:
                row.is_sent = True
            chat = db.get(Chat, row.chat_id)
            if chat is not None:
                chat.updated_at = utcnow()
            db.commit()
            db.refresh(message)
            return message_record(message)


__all__ = ["SqlAlchemyChatStore", "as_utc", "message_record"]
