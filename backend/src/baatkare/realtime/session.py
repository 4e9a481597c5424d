"""Per-connection realtime session: handshake, inbound dispatch and teardown."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

from fastapi import status
from fastapi.websockets import WebSocket, WebSocketState

from app.monitoring.metrics import realtime_connections, realtime_events_total

from .assistant import MentionResponder
from .auth import TokenVerifier
from .errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    RealtimeError,
    ValidationError,
)
from .events import (
    CallAnswerEvent,
    CallUserEvent,
    ClientEvent,
    EndCallEvent,
    IceCandidateEvent,
    JoinChatEvent,
    MarkReadEvent,
    MessageDeliveredEvent,
    SendMessageEvent,
    TypingEvent,
    UpdatePresenceEvent,
    call_answered_event,
    call_ended_event,
    ice_candidate_event,
    incoming_call_event,
    message_delivered_event,
    message_read_event,
    new_message_event,
    parse_inbound_event,
    pong_event,
    presence_changed_event,
    user_offline_event,
    user_online_event,
    user_typing_event,
)
from .managers import Broadcaster, RealtimeState, safe_send_json
from .store import ChatRecord, ChatStore, MessageRecord, UserRecord

logger = logging.getLogger(__name__)

SUPERSEDED_CLOSE_CODE = 4000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSED = "closed"


def extract_token(websocket: WebSocket) -> str | None:
    """Read the bearer credential from the query string or Authorization header."""

    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


class RealtimeSession:
    """State machine for one websocket client.

    ``open`` authenticates and registers the connection, ``handle_raw``
    processes one inbound frame and ``disconnect`` tears everything down. A
    rejected inbound event is answered with an ``error`` event and never
    closes the connection.
    """

    def __init__(
        self,
        websocket: WebSocket,
        *,
        store: ChatStore,
        state: RealtimeState,
        broadcaster: Broadcaster,
        verifier: TokenVerifier,
        responder: MentionResponder | None = None,
        message_max_length: int = 4000,
    ) -> None:
        self.websocket = websocket
        self.state = SessionState.CONNECTING
        self.user_id: UUID | None = None
        self.user: UserRecord | None = None
        self._store = store
        self._realtime = state
        self._broadcaster = broadcaster
        self._verifier = verifier
        self._responder = responder
        self._message_max_length = message_max_length
        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            "ping": self._handle_ping,
            "pong": self._handle_pong,
            "join_chat": self._handle_join_chat,
            "send_message": self._handle_send_message,
            "typing": self._handle_typing,
            "message_delivered": self._handle_message_delivered,
            "mark_read": self._handle_mark_read,
            "update_presence": self._handle_update_presence,
            "call_user": self._handle_call_user,
            "call_answer": self._handle_call_answer,
            "ice_candidate": self._handle_ice_candidate,
            "end_call": self._handle_end_call,
        }

    def __repr__(self) -> str:
        return f"<RealtimeSession user={self.user_id} state={self.state.value}>"

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    # ------------------------------------------------------------------
    # Connection protocol
    # ------------------------------------------------------------------

    async def send(self, payload: dict[str, Any]) -> bool:
        if self.state is SessionState.CLOSED:
            return False
        return await safe_send_json(self.websocket, payload)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as exc:
            logger.debug("Websocket for user %s already closed: %s", self.user_id, exc)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> bool:
        """Authenticate, accept and register the connection.

        Returns ``False`` when the handshake was refused; in that case nothing
        was registered and the websocket is closed with a policy violation.
        """

        self.state = SessionState.AUTHENTICATING
        try:
            user_id = self._verifier.verify(extract_token(self.websocket))
            user = await self._store.get_user(user_id)
            if user is None:
                raise AuthenticationError("Unknown user")
        except RealtimeError as exc:
            logger.info("Rejected realtime connection: %s", exc.detail)
            self.state = SessionState.CLOSED
            await self.websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.detail)
            return False

        await self.websocket.accept()
        self.user_id = user_id
        self.user = user

        registry = self._realtime.registry
        displaced = registry.register(user_id, self)
        if displaced is not None:
            self._realtime.rooms.leave_all(displaced)
            await displaced.close(code=SUPERSEDED_CLOSE_CODE, reason="Connection superseded")
        self.state = SessionState.ACTIVE
        realtime_connections.set(len(registry))

        now = _utcnow()
        try:
            await self._store.set_presence(user_id, "online", now)
        except RealtimeError as exc:
            logger.warning("Could not persist online presence for %s: %s", user_id, exc.detail)
        await self._broadcaster.to_all(user_online_event(user_id), exclude=[self])

        try:
            chat_ids = await self._store.chat_ids_for_user(user_id)
        except RealtimeError as exc:
            logger.warning("Could not load chats for %s: %s", user_id, exc.detail)
            chat_ids = []
        for chat_id in chat_ids:
            self._realtime.rooms.join(chat_id, self)

        logger.info("User %s connected to %s chat rooms", user_id, len(chat_ids))
        return True

    async def disconnect(self) -> None:
        """Leave every room and, unless superseded, announce the user offline."""

        if self.state is SessionState.CLOSED:
            return
        was_active = self.state is SessionState.ACTIVE
        self.state = SessionState.CLOSED
        if not was_active or self.user_id is None:
            return

        user_id = self.user_id
        self._realtime.rooms.leave_all(self)
        registry = self._realtime.registry
        still_current = registry.unregister(user_id, self)
        realtime_connections.set(len(registry))
        if not still_current:
            logger.info("Superseded connection for user %s closed", user_id)
            return

        # Offline is written before any fan-out yields; a reconnect in between wins.
        typing_chats = await self._realtime.typing.clear_user(user_id)
        last_seen = _utcnow()
        if registry.lookup(user_id) is None:
            try:
                await self._store.set_presence(user_id, "offline", last_seen)
            except RealtimeError as exc:
                logger.warning("Could not persist offline presence for %s: %s", user_id, exc.detail)

        for chat_id in typing_chats:
            await self._broadcaster.to_chat(chat_id, user_typing_event(chat_id, user_id, False))

        if registry.lookup(user_id) is not None:
            logger.info("User %s reconnected while the previous connection was closing", user_id)
            return
        await self._broadcaster.to_all(user_offline_event(user_id, last_seen))
        logger.info("User %s disconnected", user_id)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def handle_raw(self, raw: str | bytes | dict[str, Any]) -> None:
        if not self.active:
            return
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except json.JSONDecodeError:
            await self.send(ValidationError("Malformed JSON").to_event())
            return

        try:
            event = parse_inbound_event(data)
            realtime_events_total.labels(event.type, "inbound").inc()
            await self.dispatch(event)
        except RealtimeError as exc:
            logger.debug("Rejected event from user %s: %s", self.user_id, exc.detail)
            await self.send(exc.to_event())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unhandled error while processing realtime event for user %s", self.user_id)
            await self.send({"type": "error", "code": "internal_error", "detail": "Internal server error"})

    async def dispatch(self, event: ClientEvent) -> None:
        handler = self._handlers.get(event.type)
        if handler is None:  # pragma: no cover - guarded by parse_inbound_event
            raise ValidationError(f"Unsupported event type: {event.type}")
        await handler(event)

    async def _require_member(self, chat_id: UUID) -> ChatRecord:
        chat = await self._store.get_chat(chat_id)
        if chat is None:
            raise NotFoundError("Chat not found")
        if not await self._store.is_member(chat_id, self.user_id):
            raise AuthorizationError("Not a chat member")
        return chat

    async def _require_message(self, message_id: UUID, chat_id: UUID) -> MessageRecord:
        message = await self._store.get_message(message_id)
        if message is None or message.chat_id != chat_id:
            raise NotFoundError("Message not found")
        return message

    async def _handle_ping(self, event: Any) -> None:
        await self.send(pong_event())

    async def _handle_pong(self, event: Any) -> None:
        return None

    async def _handle_join_chat(self, event: JoinChatEvent) -> None:
        await self._require_member(event.chat_id)
        self._realtime.rooms.join(event.chat_id, self)

    async def _handle_send_message(self, event: SendMessageEvent) -> None:
        content = event.content
        if len(content) > self._message_max_length:
            raise ValidationError("Message is too long")
        if not content.strip() and not event.file_url:
            raise ValidationError("Message content is required")

        await self._require_member(event.chat_id)
        if event.reply_to is not None:
            try:
                await self._require_message(event.reply_to, event.chat_id)
            except NotFoundError:
                raise NotFoundError("Reply target not found") from None

        async with self._realtime.rooms.sequence(event.chat_id):
            message = await self._store.create_message(
                event.chat_id,
                self.user_id,
                content,
                message_type=event.message_type,
                file_url=event.file_url,
                file_name=event.file_name,
                reply_to=event.reply_to,
            )
            await self._store.touch_chat(event.chat_id, message.created_at)
            self._realtime.rooms.join(event.chat_id, self)
            await self._broadcaster.to_chat(event.chat_id, new_message_event(message.to_payload()))

        if await self._realtime.typing.set_status(
            event.chat_id, user_id=self.user_id, is_typing=False
        ):
            await self._broadcaster.to_chat(
                event.chat_id,
                user_typing_event(event.chat_id, self.user_id, False),
                exclude=[self],
            )

        if self._responder is not None:
            try:
                await self._responder.maybe_respond(message)
            except Exception:
                logger.exception("Assistant scheduling failed for message %s", message.id)

    async def _handle_typing(self, event: TypingEvent) -> None:
        await self._require_member(event.chat_id)
        typing = self._realtime.typing
        await typing.set_status(event.chat_id, user_id=self.user_id, is_typing=event.is_typing)
        await self._broadcaster.to_chat(
            event.chat_id,
            user_typing_event(event.chat_id, self.user_id, event.is_typing, expires_in=typing.ttl),
            exclude=[self],
        )

    async def _handle_message_delivered(self, event: MessageDeliveredEvent) -> None:
        await self._require_member(event.chat_id)
        await self._broadcaster.to_chat(
            event.chat_id,
            message_delivered_event(event.message_id, event.chat_id, self.user_id),
        )

    async def _handle_mark_read(self, event: MarkReadEvent) -> None:
        await self._require_member(event.chat_id)
        await self._require_message(event.message_id, event.chat_id)
        read_at = await self._store.mark_read(event.message_id, self.user_id, _utcnow())
        await self._broadcaster.to_chat(
            event.chat_id,
            message_read_event(event.message_id, event.chat_id, self.user_id, read_at),
        )

    async def _handle_update_presence(self, event: UpdatePresenceEvent) -> None:
        now = _utcnow()
        await self._store.set_presence(self.user_id, event.status, now)
        await self._broadcaster.to_all(
            presence_changed_event(self.user_id, event.status, now), exclude=[self]
        )

    async def _relay(self, target_user_id: UUID, payload: dict[str, Any]) -> None:
        if target_user_id == self.user_id:
            raise ValidationError("Cannot signal your own connection")
        if not await self._broadcaster.to_user(target_user_id, payload):
            logger.debug("Call signal %s for offline user %s dropped", payload["type"], target_user_id)

    async def _handle_call_user(self, event: CallUserEvent) -> None:
        await self._relay(
            event.target_user_id, incoming_call_event(self.user_id, event.offer, event.call_type)
        )

    async def _handle_call_answer(self, event: CallAnswerEvent) -> None:
        await self._relay(event.target_user_id, call_answered_event(self.user_id, event.answer))

    async def _handle_ice_candidate(self, event: IceCandidateEvent) -> None:
        await self._relay(event.target_user_id, ice_candidate_event(self.user_id, event.candidate))

    async def _handle_end_call(self, event: EndCallEvent) -> None:
        await self._relay(event.target_user_id, call_ended_event(self.user_id))


__all__ = [
    "RealtimeSession",
    "SUPERSEDED_CLOSE_CODE",
    "SessionState",
    "extract_token",
]
