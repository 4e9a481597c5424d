"""Pydantic schemas for API payloads."""

from .auth import LoginRequest, Token, UserCreate, UserRead
from .chats import (
    ActionResult,
    ChatCreate,
    ChatMemberRead,
    ChatRead,
    GroupSearchResult,
    JoinRequestDecision,
    JoinRequestRead,
    LastMessage,
)
from .messages import MessageAuthor, MessagePinUpdate, MessageRead, ReadReceipt
from .scheduled import ScheduledMessageCreate, ScheduledMessageRead
from .users import PasswordChange, PresenceUpdate, ProfileRead, ProfileUpdate, PublicUser

__all__ = [
    "LoginRequest",
    "Token",
    "UserCreate",
    "UserRead",
    "PasswordChange",
    "PresenceUpdate",
    "ProfileRead",
    "ProfileUpdate",
    "PublicUser",
    "ActionResult",
    "ChatCreate",
    "ChatMemberRead",
    "ChatRead",
    "GroupSearchResult",
    "JoinRequestDecision",
    "JoinRequestRead",
    "LastMessage",
    "MessageAuthor",
    "MessagePinUpdate",
    "MessageRead",
    "ReadReceipt",
    "ScheduledMessageCreate",
    "ScheduledMessageRead",
]
