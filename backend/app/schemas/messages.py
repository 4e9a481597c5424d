"""Schemas related to chat messages."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from app.models.enums import MessageType


class MessageAuthor(BaseModel):
    """Lightweight author information for displaying messages."""

    id: UUID
    username: str
    name: str
    avatar: str | None = None


class ReadReceipt(BaseModel):
    user_id: UUID
    username: str
    name: str
    read_at: datetime


class MessageRead(BaseModel):
    """Serialized representation of a chat message."""

    id: UUID
    chat_id: UUID
    author_id: UUID
    author: MessageAuthor
    content: str
    message_type: MessageType = MessageType.TEXT
    file_url: str | None = None
    file_name: str | None = None
    reply_to_id: UUID | None = None
    is_deleted: bool = False
    is_pinned: bool = False
    created_at: datetime
    read_by: list[ReadReceipt] = []


class MessagePinUpdate(BaseModel):
    is_pinned: bool
