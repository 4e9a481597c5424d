from __future__ import annotations

from enum import Enum


class PresenceStatus(str, Enum):
    """User-configurable presence indicator."""

    ONLINE = "online"
    OFFLINE = "offline"
    AWAY = "away"
    BUSY = "busy"


class ChatRole(str, Enum):
    """Roles that a user can have inside a chat."""

    ADMIN = "admin"
    MEMBER = "member"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    VOICE = "voice"
    EMOJI = "emoji"


class JoinRequestStatus(str, Enum):
    """Lifecycle states for group join requests."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RecurrencePattern(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
