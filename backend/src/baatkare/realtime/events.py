"""Typed inbound events and builders for outbound payloads.

Inbound frames are JSON objects tagged by ``type``. Field names are accepted
both in camelCase (``chatId``) and snake_case (``chat_id``). Outbound
payloads always use snake_case keys.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError

PresenceValue = Literal["online", "offline", "away", "busy"]
MessageKind = Literal["text", "image", "file", "voice", "emoji"]


class InboundEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class PingEvent(InboundEvent):
    type: Literal["ping"]


class PongEvent(InboundEvent):
    """Client reply to a server keepalive ping."""

    type: Literal["pong"]


class JoinChatEvent(InboundEvent):
    type: Literal["join_chat"]
    chat_id: UUID


class SendMessageEvent(InboundEvent):
    """New chat message.

    ``type`` tags the event itself, so the message kind travels as
    ``messageType``.
    """

    type: Literal["send_message"]
    chat_id: UUID
    content: str = ""
    message_type: MessageKind = "text"
    file_url: str | None = Field(default=None, max_length=1024)
    file_name: str | None = Field(default=None, max_length=255)
    reply_to: UUID | None = None


class TypingEvent(InboundEvent):
    type: Literal["typing"]
    chat_id: UUID
    is_typing: bool = True


class MessageDeliveredEvent(InboundEvent):
    type: Literal["message_delivered"]
    message_id: UUID
    chat_id: UUID


class MarkReadEvent(InboundEvent):
    type: Literal["mark_read"]
    message_id: UUID
    chat_id: UUID


class UpdatePresenceEvent(InboundEvent):
    type: Literal["update_presence"]
    status: PresenceValue


class CallUserEvent(InboundEvent):
    type: Literal["call_user"]
    target_user_id: UUID
    offer: Any = None
    call_type: Literal["audio", "video"] = "audio"


class CallAnswerEvent(InboundEvent):
    type: Literal["call_answer"]
    target_user_id: UUID
    answer: Any = None


class IceCandidateEvent(InboundEvent):
    type: Literal["ice_candidate"]
    target_user_id: UUID
    candidate: Any = None


class EndCallEvent(InboundEvent):
    type: Literal["end_call"]
    target_user_id: UUID


ClientEvent = Annotated[
    Union[
        PingEvent,
        PongEvent,
        JoinChatEvent,
        SendMessageEvent,
        TypingEvent,
        MessageDeliveredEvent,
        MarkReadEvent,
        UpdatePresenceEvent,
        CallUserEvent,
        CallAnswerEvent,
        IceCandidateEvent,
        EndCallEvent,
    ],
    Field(discriminator="type"),
]

_client_event_adapter: TypeAdapter[ClientEvent] = TypeAdapter(ClientEvent)

INBOUND_EVENT_TYPES = frozenset(
    {
        "ping",
        "pong",
        "join_chat",
        "send_message",
        "typing",
        "message_delivered",
        "mark_read",
        "update_presence",
        "call_user",
        "call_answer",
        "ice_candidate",
        "end_call",
    }
)


def parse_inbound_event(raw: Any) -> ClientEvent:
    """Validate a decoded frame, raising :class:`ValidationError` on bad input."""

    if not isinstance(raw, dict):
        raise ValidationError("Event must be a JSON object")
    event_type = raw.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ValidationError("Event type is required")
    if event_type not in INBOUND_EVENT_TYPES:
        raise ValidationError(f"Unsupported event type: {event_type}")
    try:
        return _client_event_adapter.validate_python(raw)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else None
        if first is not None:
            location = ".".join(str(part) for part in first.get("loc", ())[1:]) or "payload"
            raise ValidationError(f"Invalid {location}: {first.get('msg')}") from exc
        raise ValidationError() from exc


# ---------------------------------------------------------------------------
# Outbound payloads
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def pong_event() -> dict[str, Any]:
    return {"type": "pong"}


def new_message_event(message: dict[str, Any]) -> dict[str, Any]:
    return {"type": "new_message", "message": message}


def new_chat_event(chat: dict[str, Any]) -> dict[str, Any]:
    return {"type": "new_chat", "chat": chat}


def user_online_event(user_id: UUID) -> dict[str, Any]:
    return {"type": "user_online", "user_id": str(user_id)}


def user_offline_event(user_id: UUID, last_seen: datetime) -> dict[str, Any]:
    return {"type": "user_offline", "user_id": str(user_id), "last_seen": _iso(last_seen)}


def presence_changed_event(user_id: UUID, status: str, last_seen: datetime | None) -> dict[str, Any]:
    return {
        "type": "user_presence_changed",
        "user_id": str(user_id),
        "status": status,
        "last_seen": _iso(last_seen),
    }


def user_typing_event(
    chat_id: UUID, user_id: UUID, is_typing: bool, *, expires_in: float | None = None
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": "user_typing",
        "chat_id": str(chat_id),
        "user_id": str(user_id),
        "is_typing": is_typing,
    }
    if is_typing and expires_in is not None:
        payload["expires_in"] = expires_in
    return payload


def message_delivered_event(message_id: UUID, chat_id: UUID, user_id: UUID) -> dict[str, Any]:
    return {
        "type": "message_delivered",
        "message_id": str(message_id),
        "chat_id": str(chat_id),
        "user_id": str(user_id),
    }


def message_read_event(
    message_id: UUID, chat_id: UUID, user_id: UUID, read_at: datetime
) -> dict[str, Any]:
    return {
        "type": "message_read",
        "message_id": str(message_id),
        "chat_id": str(chat_id),
        "user_id": str(user_id),
        "read_at": _iso(read_at),
    }


def join_request_received_event(chat_id: UUID, user_id: UUID, request_id: UUID) -> dict[str, Any]:
    return {
        "type": "join_request_received",
        "chat_id": str(chat_id),
        "user_id": str(user_id),
        "request_id": str(request_id),
    }


def join_request_approved_event(chat_id: UUID, chat: dict[str, Any]) -> dict[str, Any]:
    return {"type": "join_request_approved", "chat_id": str(chat_id), "chat": chat}


def join_request_rejected_event(chat_id: UUID) -> dict[str, Any]:
    return {"type": "join_request_rejected", "chat_id": str(chat_id)}


def removed_from_group_event(chat_id: UUID) -> dict[str, Any]:
    return {"type": "removed_from_group", "chat_id": str(chat_id)}


def member_left_group_event(chat_id: UUID, user_id: UUID) -> dict[str, Any]:
    return {"type": "member_left_group", "chat_id": str(chat_id), "user_id": str(user_id)}


def incoming_call_event(caller_id: UUID, offer: Any, call_type: str) -> dict[str, Any]:
    return {
        "type": "incoming_call",
        "caller_id": str(caller_id),
        "offer": offer,
        "call_type": call_type,
    }


def call_answered_event(user_id: UUID, answer: Any) -> dict[str, Any]:
    return {"type": "call_answered", "user_id": str(user_id), "answer": answer}


def ice_candidate_event(user_id: UUID, candidate: Any) -> dict[str, Any]:
    return {"type": "ice_candidate", "user_id": str(user_id), "candidate": candidate}


def call_ended_event(user_id: UUID) -> dict[str, Any]:
    return {"type": "call_ended", "user_id": str(user_id)}


__all__ = [
    "ClientEvent",
    "INBOUND_EVENT_TYPES",
    "CallAnswerEvent",
    "CallUserEvent",
    "EndCallEvent",
    "IceCandidateEvent",
    "JoinChatEvent",
    "MarkReadEvent",
    "MessageDeliveredEvent",
    "PingEvent",
    "PongEvent",
    "SendMessageEvent",
    "TypingEvent",
    "UpdatePresenceEvent",
    "parse_inbound_event",
]
