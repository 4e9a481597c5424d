"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence
from uuid import UUID

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.pop("GEMINI_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketState
from passlib.context import CryptContext
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.core import security
from app.database import get_db
from app.main import app
from app.models import Base, Chat, ChatMember, ChatRole, User
from app.services import realtime as realtime_service

security.pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class DummyWebSocket:
    """In-process stand-in for a starlette websocket that records traffic."""

    def __init__(self, token: str | None = None, *, headers: dict[str, str] | None = None) -> None:
        self.query_params: dict[str, str] = {"token": token} if token else {}
        self.headers: dict[str, str] = headers or {}
        self.application_state = WebSocketState.CONNECTING
        self.sent: list[dict[str, Any]] = []
        self.accepted = False
        self.close_code: int | None = None
        self.close_reason: str | None = None

    async def accept(self) -> None:
        self.accepted = True
        self.application_state = WebSocketState.CONNECTED

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_code = code
        self.close_reason = reason
        self.application_state = WebSocketState.DISCONNECTED

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for payload in self.sent if payload.get("type") == event_type]


async def echo_generator(message: str, history: Sequence[str]) -> str:
    return f"echo: {message}"


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(session_factory) -> Callable[..., UUID]:
    """Create a user row and return its id."""

    counter = {"value": 0}

    def factory(username: str | None = None, *, name: str | None = None, password: str = "secret123") -> UUID:
        counter["value"] += 1
        username = username or f"user{counter['value']}"
        with session_factory() as session:
            user = User(
                username=username,
                email=f"{username}@example.com",
                name=name or username.title(),
                hashed_password=security.get_password_hash(password),
            )
            session.add(user)
            session.commit()
            return user.id

    return factory


@pytest.fixture()
def make_chat(session_factory) -> Callable[..., UUID]:
    """Create a chat with the given members; the first member administers groups."""

    def factory(*member_ids: UUID, is_group: bool = False, name: str | None = None) -> UUID:
        with session_factory() as session:
            chat = Chat(
                is_group=is_group,
                name=name,
                admin_id=member_ids[0] if is_group else None,
            )
            session.add(chat)
            session.flush()
            for index, member_id in enumerate(member_ids):
                role = ChatRole.ADMIN if is_group and index == 0 else ChatRole.MEMBER
                session.add(ChatMember(chat_id=chat.id, user_id=member_id, role=role))
            session.commit()
            return chat.id

    return factory


def auth_token(user_id: UUID) -> str:
    return security.create_access_token({"sub": str(user_id)})


def auth_headers(user_id: UUID) -> dict[str, str]:
    return {"Authorization": f"Bearer {auth_token(user_id)}"}


@pytest.fixture()
def hub(session_factory):
    """A realtime hub wired to the test database with a canned reply generator."""

    return realtime_service.configure_realtime(session_factory, generator=echo_generator)


@pytest.fixture()
def client(session_factory, hub) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    realtime_service.configure_realtime()
