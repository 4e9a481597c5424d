"""FastAPI dependencies for the API layer."""

from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import get_settings
from app.core.security import decode_access_token
from app.database import get_db
from app.models import Chat, ChatMember, ChatRole, User

settings = get_settings()

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Retrieve the current user from the JWT token."""

    return get_user_from_token(token, db)


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve a user from a JWT token or raise an HTTP 401 error."""

    payload = decode_access_token(token)
    sub = payload.get("sub")
    if sub is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )

    try:
        user_id = UUID(str(sub))
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from None

    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return user


def get_chat_or_404(chat_id: UUID, db: Session) -> Chat:
    chat = db.get(Chat, chat_id)
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return chat


def get_chat_member(chat_id: UUID, user_id: UUID, db: Session) -> ChatMember | None:
    """Return membership entry for the given user and chat if it exists."""

    stmt = select(ChatMember).where(
        ChatMember.chat_id == chat_id,
        ChatMember.user_id == user_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def require_chat_member(chat_id: UUID, user_id: UUID, db: Session) -> ChatMember:
    """Ensure the user belongs to the chat, raising HTTP 403 otherwise."""

    membership = get_chat_member(chat_id, user_id, db)
    if membership is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not a chat member",
        )
    return membership


def require_chat_admin(chat: Chat, user_id: UUID, db: Session) -> ChatMember:
    """Ensure the user administers the group chat."""

    membership = require_chat_member(chat.id, user_id, db)
    if not chat.is_group or (chat.admin_id != user_id and membership.role != ChatRole.ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the group admin can do this",
        )
    return membership
