"""Database models package."""

from .base import Base
from .chat import (
    Chat,
    ChatMember,
    JoinRequest,
    Message,
    MessageReceipt,
    ScheduledMessage,
    User,
)
from .enums import (
    ChatRole,
    JoinRequestStatus,
    MessageType,
    PresenceStatus,
    RecurrencePattern,
)

__all__ = [
    "Base",
    "User",
    "Chat",
    "ChatMember",
    "Message",
    "MessageReceipt",
    "JoinRequest",
    "ScheduledMessage",
    "ChatRole",
    "JoinRequestStatus",
    "MessageType",
    "PresenceStatus",
    "RecurrencePattern",
]
