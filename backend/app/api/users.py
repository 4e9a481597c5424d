"""User discovery, profile and account endpoints."""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from baatkare.realtime import RealtimeHub
from baatkare.realtime.events import presence_changed_event

from app.api.deps import get_current_user
from app.core.ids import utcnow
from app.core.security import get_password_hash, verify_password
from app.database import get_db
from app.models import User
from app.schemas import (
    ActionResult,
    PasswordChange,
    PresenceUpdate,
    ProfileRead,
    ProfileUpdate,
    PublicUser,
    UserRead,
)
from app.services.realtime import get_realtime_hub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])
profile_router = APIRouter(prefix="/profile", tags=["profile"])


def _apply_profile_update(user: User, payload: ProfileUpdate, db: Session) -> User:
    for field, value in payload.model_dump(exclude_unset=True).items():
        if field == "name" and value is None:
            continue
        setattr(user, field, value)
    db.commit()
    db.refresh(user)
    return user


@router.get("/me", response_model=UserRead)
def read_me(current_user: User = Depends(get_current_user)) -> User:
    return current_user


@router.patch("/me", response_model=UserRead)
def update_me(
    payload: ProfileUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    """Update the caller's display name, avatar or bio."""

    return _apply_profile_update(current_user, payload, db)


@router.get("/search", response_model=list[PublicUser])
def search_users(
    q: str = Query(..., min_length=1, max_length=128),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[User]:
    """Find other users by display name, username or e-mail."""

    term = q.strip()
    if not term:
        return []

    pattern = f"%{term}%"
    stmt = (
        select(User)
        .where(
            User.id != current_user.id,
            or_(User.name.ilike(pattern), User.username.ilike(pattern), User.email.ilike(pattern)),
        )
        .order_by(User.name, User.username)
        .limit(20)
    )
    return list(db.execute(stmt).scalars())


@router.post("/me/change-password", response_model=ActionResult)
def change_password(
    payload: PasswordChange,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ActionResult:
    if not verify_password(payload.current_password, current_user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Current password is incorrect",
        )

    current_user.hashed_password = get_password_hash(payload.new_password)
    db.commit()
    logger.info("User %s changed their password", current_user.id)
    return ActionResult(message="Password changed successfully")


@profile_router.get("/{user_id}", response_model=ProfileRead)
def read_profile(
    user_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@profile_router.patch("/me", response_model=ProfileRead)
def update_profile(
    payload: ProfileUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    return _apply_profile_update(current_user, payload, db)


@profile_router.patch("/me/presence", response_model=PublicUser)
async def update_presence(
    payload: PresenceUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_realtime_hub),
) -> User:
    """Persist a manual presence status and announce it to every other connection."""

    now = utcnow()
    current_user.presence_status = payload.status
    current_user.last_seen = now
    db.commit()
    db.refresh(current_user)

    await hub.notify_all(
        presence_changed_event(current_user.id, payload.status.value, now),
        exclude_user=current_user.id,
    )
    return current_user
