"""Schemas for authentication endpoints."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, constr

from app.models.enums import PresenceStatus


class UserBase(BaseModel):
    """Base fields shared across user schemas."""

    username: constr(strip_whitespace=True, min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.]+$") = Field(
        ..., description="Unique handle consisting of 3-64 letters, digits, dots or underscores"
    )
    name: constr(strip_whitespace=True, min_length=2, max_length=128) = Field(
        ..., description="Display name shown in chats"
    )
    email: constr(strip_whitespace=True, to_lower=True, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$") = Field(..., description="Unique e-mail address used to sign in")


class UserCreate(UserBase):
    """Payload for creating a new user via registration."""

    password: constr(min_length=6, max_length=128) = Field(
        ..., description="Plain text password that will be hashed before storing"
    )


class UserRead(UserBase):
    """Representation of the authenticated user."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    avatar: str | None = None
    bio: str | None = None
    presence_status: PresenceStatus = PresenceStatus.OFFLINE
    last_seen: datetime | None = None
    created_at: datetime


class LoginRequest(BaseModel):
    """Payload for user login; ``login`` accepts either username or e-mail."""

    login: constr(strip_whitespace=True, min_length=3, max_length=255) = Field(..., description="Username or e-mail")
    password: constr(min_length=1, max_length=128) = Field(..., description="User password")


class Token(BaseModel):
    """Access token returned after successful authentication."""

    access_token: str = Field(..., description="JWT access token")
    token_type: str = Field(default="bearer", description="Token type, always 'bearer'")
    expires_in: int | None = Field(
        default=None,
        description="Number of seconds until the access token expires",
    )
