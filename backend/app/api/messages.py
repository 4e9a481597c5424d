"""HTTP endpoints for managing chat messages."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.api.chats import serialize_message
from app.api.deps import get_chat_member, get_current_user
from app.database import get_db
from app.models import ChatRole, Message, MessageReceipt, User
from app.schemas import MessagePinUpdate, MessageRead

router = APIRouter(prefix="/messages", tags=["messages"])

DELETED_PLACEHOLDER = "This message was deleted"


def _get_message(message_id: UUID, db: Session) -> Message:
    stmt = (
        select(Message)
        .where(Message.id == message_id)
        .options(
            selectinload(Message.author),
            selectinload(Message.chat),
            selectinload(Message.reads).selectinload(MessageReceipt.user),
        )
    )
    message = db.execute(stmt).scalar_one_or_none()
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return message


@router.delete("/{message_id}", response_model=MessageRead)
def delete_message(
    message_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    """Soft delete a message. Only its author may do this."""

    message = _get_message(message_id, db)
    if message.author_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot delete this message")

    message.is_deleted = True
    message.content = DELETED_PLACEHOLDER
    db.commit()
    db.refresh(message)
    return serialize_message(message)


@router.patch("/{message_id}/pin", response_model=MessageRead)
def pin_message(
    message_id: UUID,
    payload: MessagePinUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    """Pin or unpin a message. In group chats only admins may pin."""

    message = _get_message(message_id, db)
    membership = get_chat_member(message.chat_id, current_user.id, db)
    if membership is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a chat member")
    if message.chat.is_group and membership.role != ChatRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins can pin messages")

    message.is_pinned = payload.is_pinned
    db.commit()
    db.refresh(message)
    return serialize_message(message)
