"""HTTP endpoints for chats, memberships and join requests."""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from baatkare.realtime import RealtimeHub
from baatkare.realtime.events import (
    join_request_approved_event,
    join_request_received_event,
    join_request_rejected_event,
    member_left_group_event,
    new_chat_event,
    removed_from_group_event,
)

from app.api.deps import (
    get_chat_member,
    get_chat_or_404,
    get_current_user,
    require_chat_admin,
    require_chat_member,
)
from app.config import get_settings
from app.database import get_db
from app.models import (
    Chat,
    ChatMember,
    ChatRole,
    JoinRequest,
    JoinRequestStatus,
    Message,
    MessageReceipt,
    User,
)
from app.schemas import (
    ActionResult,
    ChatCreate,
    ChatMemberRead,
    ChatRead,
    GroupSearchResult,
    JoinRequestDecision,
    JoinRequestRead,
    LastMessage,
    MessageAuthor,
    MessageRead,
    ReadReceipt,
)
from app.services.realtime import get_realtime_hub
from app.services.store import as_utc

router = APIRouter(prefix="/chats", tags=["chats"])

settings = get_settings()

logger = logging.getLogger(__name__)


def serialize_message(message: Message) -> MessageRead:
    author = message.author
    return MessageRead(
        id=message.id,
        chat_id=message.chat_id,
        author_id=message.author_id,
        author=MessageAuthor(id=author.id, username=author.username, name=author.name, avatar=author.avatar),
        content=message.content,
        message_type=message.message_type,
        file_url=message.file_url,
        file_name=message.file_name,
        reply_to_id=message.reply_to_id,
        is_deleted=message.is_deleted,
        is_pinned=message.is_pinned,
        created_at=as_utc(message.created_at),
        read_by=[
            ReadReceipt(
                user_id=receipt.user_id,
                username=receipt.user.username,
                name=receipt.user.name,
                read_at=as_utc(receipt.read_at),
            )
            for receipt in message.reads
        ],
    )


def _last_message(chat_id: UUID, db: Session) -> Message | None:
    stmt = (
        select(Message)
        .where(Message.chat_id == chat_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def _unread_count(chat_id: UUID, viewer_id: UUID, db: Session) -> int:
    stmt = (
        select(func.count(Message.id))
        .select_from(Message)
        .outerjoin(
            MessageReceipt,
            and_(MessageReceipt.message_id == Message.id, MessageReceipt.user_id == viewer_id),
        )
        .where(
            Message.chat_id == chat_id,
            Message.author_id != viewer_id,
            MessageReceipt.id.is_(None),
        )
    )
    return int(db.execute(stmt).scalar_one())


def serialize_chat(chat: Chat, db: Session, viewer_id: UUID) -> ChatRead:
    last = _last_message(chat.id, db)
    return ChatRead(
        id=chat.id,
        is_group=chat.is_group,
        name=chat.name,
        icon=chat.icon,
        description=chat.description,
        admin_id=chat.admin_id,
        created_at=as_utc(chat.created_at),
        updated_at=as_utc(chat.updated_at),
        members=[ChatMemberRead.model_validate(member) for member in chat.members],
        last_message=(
            LastMessage(
                id=last.id,
                content=last.content,
                message_type=last.message_type,
                is_deleted=last.is_deleted,
                created_at=as_utc(last.created_at),
                author_id=last.author_id,
            )
            if last is not None
            else None
        ),
        unread_count=_unread_count(chat.id, viewer_id, db),
    )


def chat_payload(chat: Chat, db: Session, viewer_id: UUID) -> dict:
    return serialize_chat(chat, db, viewer_id).model_dump(mode="json")


def _find_direct_chat(first: UUID, second: UUID, db: Session) -> Chat | None:
    mine = select(ChatMember.chat_id).where(ChatMember.user_id == first)
    theirs = select(ChatMember.chat_id).where(ChatMember.user_id == second)
    stmt = (
        select(Chat)
        .where(Chat.is_group.is_(False), Chat.id.in_(mine), Chat.id.in_(theirs))
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def _require_group(chat: Chat) -> None:
    if not chat.is_group:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not a group chat")


def _remove_member(chat: Chat, membership: ChatMember, db: Session) -> None:
    """Delete *membership*, handing the admin role on when the admin goes."""

    user_id = membership.user_id
    db.delete(membership)
    db.flush()
    if chat.admin_id != user_id:
        return

    successor = db.execute(
        select(ChatMember)
        .where(ChatMember.chat_id == chat.id)
        .order_by(ChatMember.joined_at, ChatMember.id)
        .limit(1)
    ).scalar_one_or_none()
    if successor is None:
        chat.admin_id = None
        return
    successor.role = ChatRole.ADMIN
    chat.admin_id = successor.user_id
    logger.info("Chat %s admin passed from %s to %s", chat.id, user_id, successor.user_id)


@router.get("", response_model=list[ChatRead])
def list_chats(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ChatRead]:
    """Return every chat the current user belongs to, most recently active first."""

    stmt = (
        select(Chat)
        .join(ChatMember, ChatMember.chat_id == Chat.id)
        .where(ChatMember.user_id == current_user.id)
        .options(selectinload(Chat.members).selectinload(ChatMember.user))
        .order_by(Chat.updated_at.desc())
    )
    chats = db.execute(stmt).scalars().unique().all()
    return [serialize_chat(chat, db, current_user.id) for chat in chats]


@router.get("/search", response_model=list[GroupSearchResult])
def search_groups(
    q: str = Query(default=""),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[GroupSearchResult]:
    """Search group chats by name."""

    term = q.strip()
    if not term:
        return []

    stmt = (
        select(Chat)
        .where(Chat.is_group.is_(True), Chat.name.ilike(f"%{term}%"))
        .order_by(Chat.name)
        .limit(20)
    )
    results: list[GroupSearchResult] = []
    for chat in db.execute(stmt).scalars():
        member_count = db.execute(
            select(func.count(ChatMember.id)).where(ChatMember.chat_id == chat.id)
        ).scalar_one()
        pending = db.execute(
            select(JoinRequest.id).where(
                JoinRequest.chat_id == chat.id,
                JoinRequest.user_id == current_user.id,
                JoinRequest.status == JoinRequestStatus.PENDING,
            )
        ).first()
        results.append(
            GroupSearchResult(
                id=chat.id,
                name=chat.name,
                icon=chat.icon,
                description=chat.description,
                member_count=member_count,
                is_member=get_chat_member(chat.id, current_user.id, db) is not None,
                has_pending_request=pending is not None,
            )
        )
    return results


@router.post("", response_model=ChatRead, status_code=status.HTTP_201_CREATED)
async def create_chat(
    payload: ChatCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_realtime_hub),
) -> ChatRead:
    """Create a group or one-to-one chat and announce it to every member."""

    member_ids = [member_id for member_id in dict.fromkeys(payload.member_ids) if member_id != current_user.id]
    if not member_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A chat needs at least one other member",
        )
    found = set(db.execute(select(User.id).where(User.id.in_(member_ids))).scalars())
    if len(found) != len(member_ids):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if not payload.is_group:
        existing = _find_direct_chat(current_user.id, member_ids[0], db)
        if existing is not None:
            return serialize_chat(existing, db, current_user.id)

    chat = Chat(
        is_group=payload.is_group,
        name=payload.name if payload.is_group else None,
        icon=payload.icon,
        description=payload.description,
        admin_id=current_user.id if payload.is_group else None,
    )
    db.add(chat)
    db.flush()
    db.add(
        ChatMember(
            chat_id=chat.id,
            user_id=current_user.id,
            role=ChatRole.ADMIN if payload.is_group else ChatRole.MEMBER,
        )
    )
    for member_id in member_ids:
        db.add(ChatMember(chat_id=chat.id, user_id=member_id, role=ChatRole.MEMBER))
    db.commit()
    db.refresh(chat)

    result = serialize_chat(chat, db, current_user.id)
    event = new_chat_event(result.model_dump(mode="json"))
    for member_id in [current_user.id, *member_ids]:
        hub.add_to_room(member_id, chat.id)
        await hub.notify_user(member_id, event)
    return result


@router.get("/{chat_id}/messages", response_model=list[MessageRead])
def get_chat_messages(
    chat_id: UUID,
    limit: int = Query(default=settings.chat_history_default_limit, ge=1, le=settings.chat_history_max_limit),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MessageRead]:
    """Return the latest messages of a chat in persisted order, oldest first."""

    get_chat_or_404(chat_id, db)
    require_chat_member(chat_id, current_user.id, db)

    stmt = (
        select(Message)
        .where(Message.chat_id == chat_id)
        .options(
            selectinload(Message.author),
            selectinload(Message.reads).selectinload(MessageReceipt.user),
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
    )
    messages = list(db.execute(stmt).scalars())
    messages.reverse()
    return [serialize_message(message) for message in messages]


@router.post("/{chat_id}/join-request", response_model=ActionResult, status_code=status.HTTP_201_CREATED)
async def send_join_request(
    chat_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_realtime_hub),
) -> ActionResult:
    """Ask to join a group; the admin is notified if connected."""

    chat = get_chat_or_404(chat_id, db)
    _require_group(chat)
    if get_chat_member(chat_id, current_user.id, db) is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Already a member of this group")

    pending = db.execute(
        select(JoinRequest.id).where(
            JoinRequest.chat_id == chat_id,
            JoinRequest.user_id == current_user.id,
            JoinRequest.status == JoinRequestStatus.PENDING,
        )
    ).first()
    if pending is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Join request already sent")

    join_request = JoinRequest(chat_id=chat_id, user_id=current_user.id)
    db.add(join_request)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Join request already sent")
    db.refresh(join_request)

    if chat.admin_id is not None:
        await hub.notify_user(
            chat.admin_id,
            join_request_received_event(chat_id, current_user.id, join_request.id),
        )
    return ActionResult(message="Join request sent successfully", id=join_request.id)


@router.get("/{chat_id}/join-requests", response_model=list[JoinRequestRead])
def list_join_requests(
    chat_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[JoinRequest]:
    """List pending join requests, newest first. Admin only."""

    chat = get_chat_or_404(chat_id, db)
    require_chat_admin(chat, current_user.id, db)

    stmt = (
        select(JoinRequest)
        .where(JoinRequest.chat_id == chat_id, JoinRequest.status == JoinRequestStatus.PENDING)
        .options(selectinload(JoinRequest.user))
        .order_by(JoinRequest.created_at.desc())
    )
    return list(db.execute(stmt).scalars())


@router.patch("/{chat_id}/join-requests/{request_id}", response_model=ActionResult)
async def decide_join_request(
    chat_id: UUID,
    request_id: UUID,
    decision: JoinRequestDecision,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_realtime_hub),
) -> ActionResult:
    """Approve or reject a pending join request."""

    chat = get_chat_or_404(chat_id, db)
    require_chat_admin(chat, current_user.id, db)

    join_request = db.get(JoinRequest, request_id)
    if join_request is None or join_request.chat_id != chat_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Join request not found")
    if join_request.status != JoinRequestStatus.PENDING:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Join request already handled")

    requester_id = join_request.user_id
    if decision.action == "reject":
        join_request.status = JoinRequestStatus.REJECTED
        db.commit()
        await hub.notify_user(requester_id, join_request_rejected_event(chat_id))
        return ActionResult(message="Join request rejected", id=join_request.id)

    if get_chat_member(chat_id, requester_id, db) is None:
        db.add(ChatMember(chat_id=chat_id, user_id=requester_id, role=ChatRole.MEMBER))
    join_request.status = JoinRequestStatus.APPROVED
    db.commit()
    db.refresh(chat)

    hub.add_to_room(requester_id, chat_id)
    await hub.notify_user(
        requester_id,
        join_request_approved_event(chat_id, chat_payload(chat, db, requester_id)),
    )
    return ActionResult(message="Join request approved", id=join_request.id)


@router.post("/{chat_id}/leave", response_model=ActionResult)
async def leave_group(
    chat_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_realtime_hub),
) -> ActionResult:
    """Leave a group chat."""

    chat = get_chat_or_404(chat_id, db)
    _require_group(chat)
    membership = require_chat_member(chat_id, current_user.id, db)
    _remove_member(chat, membership, db)
    db.commit()

    hub.remove_from_room(current_user.id, chat_id)
    await hub.notify_user(current_user.id, removed_from_group_event(chat_id))
    await hub.notify_chat(chat_id, member_left_group_event(chat_id, current_user.id))
    return ActionResult(message="Left group successfully", id=chat_id)


@router.delete("/{chat_id}/members/{user_id}", response_model=ActionResult)
async def remove_member(
    chat_id: UUID,
    user_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_realtime_hub),
) -> ActionResult:
    """Remove a member from a group. Admin only."""

    chat = get_chat_or_404(chat_id, db)
    require_chat_admin(chat, current_user.id, db)
    if user_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Use leave to exit the group")

    membership = get_chat_member(chat_id, user_id, db)
    if membership is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found")
    _remove_member(chat, membership, db)
    db.commit()

    hub.remove_from_room(user_id, chat_id)
    await hub.notify_user(user_id, removed_from_group_event(chat_id))
    await hub.notify_chat(chat_id, member_left_group_event(chat_id, user_id))
    return ActionResult(message="Member removed successfully", id=user_id)
