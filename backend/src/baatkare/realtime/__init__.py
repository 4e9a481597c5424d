"""Realtime messaging core: connections, rooms, fan-out and background delivery."""

from .assistant import AssistantConfig, MentionResponder, TextGenerator  # noqa: F401
from .auth import TokenVerifier  # noqa: F401
from .errors import (  # noqa: F401
    AuthenticationError,
    AuthorizationError,
    ExternalServiceError,
    NotFoundError,
    RealtimeError,
    TransientStoreError,
    ValidationError,
)
from .hub import RealtimeHub  # noqa: F401
from .managers import Broadcaster, RealtimeState, RoomManager, TypingStatusStore  # noqa: F401
from .registry import Connection, ConnectionRegistry  # noqa: F401
from .scheduler import ScheduledDeliveryLoop  # noqa: F401
from .session import RealtimeSession, SessionState  # noqa: F401

__all__ = [
    "AssistantConfig",
    "AuthenticationError",
    "AuthorizationError",
    "Broadcaster",
    "Connection",
    "ConnectionRegistry",
    "ExternalServiceError",
    "MentionResponder",
    "NotFoundError",
    "RealtimeError",
    "RealtimeHub",
    "RealtimeSession",
    "RealtimeState",
    "RoomManager",
    "ScheduledDeliveryLoop",
    "SessionState",
    "TextGenerator",
    "TokenVerifier",
    "TransientStoreError",
    "TypingStatusStore",
    "ValidationError",
]
