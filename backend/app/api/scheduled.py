"""HTTP endpoints for scheduled and recurring messages."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.api.deps import get_chat_or_404, get_current_user, require_chat_member
from app.config import get_settings
from app.database import get_db
from app.models import ScheduledMessage, User
from app.schemas import ActionResult, ScheduledMessageCreate, ScheduledMessageRead

router = APIRouter(prefix="/scheduled-messages", tags=["scheduled-messages"])

settings = get_settings()


@router.post("", response_model=ScheduledMessageRead, status_code=status.HTTP_201_CREATED)
def schedule_message(
    payload: ScheduledMessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ScheduledMessage:
    """Queue a message for delivery by the scheduled delivery loop."""

    get_chat_or_404(payload.chat_id, db)
    require_chat_member(payload.chat_id, current_user.id, db)
    if len(payload.content) > settings.chat_message_max_length:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message is too long")

    scheduled = ScheduledMessage(
        chat_id=payload.chat_id,
        author_id=current_user.id,
        content=payload.content,
        scheduled_time=payload.scheduled_time,
        is_recurring=payload.is_recurring,
        recurrence_pattern=payload.recurrence_pattern,
    )
    db.add(scheduled)
    db.commit()
    db.refresh(scheduled)
    return scheduled


@router.get("/chat/{chat_id}", response_model=list[ScheduledMessageRead])
def list_scheduled_messages(
    chat_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ScheduledMessage]:
    """Return the caller's pending scheduled messages for a chat, soonest first."""

    get_chat_or_404(chat_id, db)
    require_chat_member(chat_id, current_user.id, db)

    stmt = (
        select(ScheduledMessage)
        .where(
            ScheduledMessage.chat_id == chat_id,
            ScheduledMessage.author_id == current_user.id,
            ScheduledMessage.is_sent.is_(False),
        )
        .order_by(ScheduledMessage.scheduled_time)
    )
    return list(db.execute(stmt).scalars())


@router.delete("/{scheduled_id}", response_model=ActionResult)
def delete_scheduled_message(
    scheduled_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ActionResult:
    """Cancel one of the caller's scheduled messages."""

    scheduled = db.get(ScheduledMessage, scheduled_id)
    if scheduled is None or scheduled.author_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduled message not found")

    db.delete(scheduled)
    db.commit()
    return ActionResult(message="Scheduled message deleted", id=scheduled_id)
