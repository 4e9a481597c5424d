"""Application wiring for the realtime hub."""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from baatkare.realtime import AssistantConfig, RealtimeHub, TextGenerator, TokenVerifier

from app.config import ASSISTANT_USER_ID, get_settings
from app.database import SessionLocal
from app.models import User
from app.services.assistant import (
    GeminiTextGenerator,
    ensure_assistant_chat,
    ensure_assistant_user,
    find_assistant_chat,
)
from app.services.store import SqlAlchemyChatStore

logger = logging.getLogger(__name__)

settings = get_settings()

_hub: RealtimeHub | None = None
_session_factory: Callable[[], Session] = SessionLocal


def build_realtime_hub(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    generator: TextGenerator | None = None,
) -> RealtimeHub:
    """Create a hub backed by *session_factory* using the configured tuning."""

    assistant = AssistantConfig(
        bot_user_id=settings.assistant_user_id,
        mention=settings.assistant_mention,
        context_messages=settings.assistant_context_messages,
        timeout_seconds=settings.assistant_timeout_seconds,
        typing_ms_per_char=settings.assistant_typing_ms_per_char,
        min_delay_seconds=settings.assistant_min_delay_seconds,
        max_delay_seconds=settings.assistant_max_delay_seconds,
    )
    return RealtimeHub(
        SqlAlchemyChatStore(session_factory),
        TokenVerifier(settings.jwt_secret_key, settings.jwt_algorithm),
        generator=generator or GeminiTextGenerator(),
        assistant=assistant,
        typing_ttl_seconds=settings.realtime_typing_ttl_seconds,
        scheduler_interval_seconds=settings.scheduler_interval_seconds,
        message_max_length=settings.chat_message_max_length,
    )


def configure_realtime(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    generator: TextGenerator | None = None,
) -> RealtimeHub:
    """Replace the process-wide hub, e.g. to point it at another database."""

    global _hub, _session_factory
    _session_factory = session_factory
    _hub = build_realtime_hub(session_factory, generator=generator)
    return _hub


def get_realtime_hub() -> RealtimeHub:
    global _hub
    if _hub is None:
        _hub = build_realtime_hub(_session_factory)
    return _hub


def bootstrap_assistant(db: Session) -> int:
    """Ensure the SmartBot account exists and every user has a chat with it."""

    ensure_assistant_user(db)
    created = 0
    users = db.execute(select(User).where(User.id != ASSISTANT_USER_ID)).scalars().all()
    for user in users:
        if find_assistant_chat(db, user.id) is None:
            ensure_assistant_chat(db, user)
            created += 1
    return created


async def startup_realtime() -> None:
    hub = get_realtime_hub()
    try:
        with closing(_session_factory()) as db:
            bootstrap_assistant(db)
    except SQLAlchemyError:
        logger.warning(
            "SmartBot bootstrap failed; continuing without the assistant account",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
    hub.start(scheduler=settings.scheduler_enabled)
    logger.info("Realtime hub started (scheduler=%s)", settings.scheduler_enabled)


async def shutdown_realtime() -> None:
    if _hub is not None:
        await _hub.stop()


__all__ = [
    "bootstrap_assistant",
    "build_realtime_hub",
    "configure_realtime",
    "get_realtime_hub",
    "shutdown_realtime",
    "startup_realtime",
]
