"""Schemas describing users, profiles and self-service account updates."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, constr

from app.models.enums import PresenceStatus


class PublicUser(BaseModel):
    """Minimal public-facing user information."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    name: str
    avatar: str | None = None
    presence_status: PresenceStatus = PresenceStatus.OFFLINE
    last_seen: datetime | None = None


class ProfileRead(PublicUser):
    """Public profile shown when opening another user's card."""

    bio: str | None = None
    created_at: datetime


class ProfileUpdate(BaseModel):
    """Partial update of the caller's own profile; omitted fields are kept."""

    name: constr(strip_whitespace=True, min_length=2, max_length=128) | None = None
    avatar: constr(max_length=512) | None = None
    bio: constr(max_length=500) | None = None


class PresenceUpdate(BaseModel):
    status: PresenceStatus


class PasswordChange(BaseModel):
    current_password: constr(min_length=1, max_length=128)
    new_password: constr(min_length=6, max_length=128) = Field(
        ..., description="Replacement password, hashed before storing"
    )
