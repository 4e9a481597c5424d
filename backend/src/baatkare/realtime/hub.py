"""Owner of the realtime state and every component that shares it."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi.websockets import WebSocket

from .assistant import AssistantConfig, MentionResponder, TextGenerator
from .auth import TokenVerifier
from .managers import Broadcaster, RealtimeState
from .scheduler import ScheduledDeliveryLoop
from .session import RealtimeSession
from .store import ChatStore

logger = logging.getLogger(__name__)


class RealtimeHub:
    """Wire the registry, rooms, broadcaster, scheduler and responder together.

    One hub is one isolated realtime world; tests build as many as they need.
    HTTP handlers use the ``notify_*`` and room helpers to push events that
    originate outside a websocket session.
    """

    def __init__(
        self,
        store: ChatStore,
        verifier: TokenVerifier,
        *,
        generator: TextGenerator | None = None,
        assistant: AssistantConfig | None = None,
        typing_ttl_seconds: float = 8.0,
        scheduler_interval_seconds: float = 60.0,
        message_max_length: int = 4000,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.state = RealtimeState(typing_ttl_seconds=typing_ttl_seconds)
        self.broadcaster = Broadcaster(self.state)
        self.responder: MentionResponder | None = None
        if generator is not None and assistant is not None:
            self.responder = MentionResponder(store, self.state, self.broadcaster, generator, assistant)
        self.scheduler = ScheduledDeliveryLoop(
            store, self.state, self.broadcaster, interval_seconds=scheduler_interval_seconds
        )
        self._message_max_length = message_max_length

    def create_session(self, websocket: WebSocket) -> RealtimeSession:
        return RealtimeSession(
            websocket,
            store=self.store,
            state=self.state,
            broadcaster=self.broadcaster,
            verifier=self.verifier,
            responder=self.responder,
            message_max_length=self._message_max_length,
        )

    def is_online(self, user_id: UUID) -> bool:
        return user_id in self.state.registry

    def add_to_room(self, user_id: UUID, chat_id: UUID) -> bool:
        connection = self.state.registry.lookup(user_id)
        if connection is None:
            return False
        return self.state.rooms.join(chat_id, connection)

    def remove_from_room(self, user_id: UUID, chat_id: UUID) -> bool:
        connection = self.state.registry.lookup(user_id)
        if connection is None:
            return False
        return self.state.rooms.leave(chat_id, connection)

    async def notify_user(self, user_id: UUID, payload: dict[str, Any]) -> bool:
        return await self.broadcaster.to_user(user_id, payload)

    def _excluded(self, user_id: UUID | None) -> list:
        if user_id is None:
            return []
        connection = self.state.registry.lookup(user_id)
        return [connection] if connection is not None else []

    async def notify_chat(
        self, chat_id: UUID, payload: dict[str, Any], *, exclude_user: UUID | None = None
    ) -> int:
        return await self.broadcaster.to_chat(chat_id, payload, exclude=self._excluded(exclude_user))

    async def notify_all(self, payload: dict[str, Any], *, exclude_user: UUID | None = None) -> int:
        return await self.broadcaster.to_all(payload, exclude=self._excluded(exclude_user))

    def start(self, *, scheduler: bool = True) -> None:
        if scheduler:
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self.responder is not None:
            await self.responder.aclose()
        logger.info("Realtime hub stopped")


__all__ = ["RealtimeHub"]
