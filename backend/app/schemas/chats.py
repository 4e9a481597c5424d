"""Schemas for chats, memberships and join requests."""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, constr, model_validator

from app.models.enums import ChatRole, JoinRequestStatus, MessageType
from app.schemas.users import PublicUser


class ChatCreate(BaseModel):
    """Payload for creating a group or a one-to-one chat."""

    is_group: bool = False
    name: constr(strip_whitespace=True, min_length=1, max_length=128) | None = None
    icon: constr(max_length=512) | None = None
    description: constr(max_length=2000) | None = None
    member_ids: list[UUID] = Field(..., min_length=1, description="Users to add besides the creator")

    @model_validator(mode="after")
    def check_shape(self) -> "ChatCreate":
        if self.is_group and not self.name:
            raise ValueError("Group chats require a name")
        if not self.is_group and len(set(self.member_ids)) != 1:
            raise ValueError("One-to-one chats take exactly one other member")
        return self


class ChatMemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    role: ChatRole
    is_muted: bool = False
    joined_at: datetime
    user: PublicUser


class LastMessage(BaseModel):
    id: UUID
    content: str
    message_type: MessageType
    is_deleted: bool = False
    created_at: datetime
    author_id: UUID


class ChatRead(BaseModel):
    """Chat as listed for one of its members."""

    id: UUID
    is_group: bool
    name: str | None = None
    icon: str | None = None
    description: str | None = None
    admin_id: UUID | None = None
    created_at: datetime
    updated_at: datetime
    members: list[ChatMemberRead] = []
    last_message: LastMessage | None = None
    unread_count: int = 0


class GroupSearchResult(BaseModel):
    id: UUID
    name: str | None
    icon: str | None = None
    description: str | None = None
    member_count: int
    is_member: bool
    has_pending_request: bool


class JoinRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    chat_id: UUID
    status: JoinRequestStatus
    created_at: datetime
    user: PublicUser


class JoinRequestDecision(BaseModel):
    action: Literal["approve", "reject"]


class ActionResult(BaseModel):
    """Plain acknowledgement returned by mutating endpoints."""

    message: str
    id: UUID | None = None
