"""Error taxonomy shared by the realtime session, scheduler and responder."""

from __future__ import annotations

from typing import Any


class RealtimeError(Exception):
    """Base class for failures reported back to a realtime client."""

    code = "realtime_error"
    default_detail = "Realtime request failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_event(self) -> dict[str, Any]:
        return {"type": "error", "code": self.code, "detail": self.detail}


class AuthenticationError(RealtimeError):
    """Missing, malformed or expired credential during the handshake."""

    code = "authentication_failed"
    default_detail = "Could not validate credentials"


class AuthorizationError(RealtimeError):
    """The acting user lacks membership or admin rights for the target chat."""

    code = "forbidden"
    default_detail = "Not a chat member"


class ValidationError(RealtimeError):
    code = "invalid_payload"
    default_detail = "Invalid payload"


class NotFoundError(RealtimeError):
    code = "not_found"
    default_detail = "Not found"


class ExternalServiceError(RealtimeError):
    """Text generation backend failed, timed out or is not configured."""

    code = "external_service"
    default_detail = "External service unavailable"


class TransientStoreError(RealtimeError):
    """A single store operation failed; callers may retry on the next event or tick."""

    code = "store_unavailable"
    default_detail = "Storage temporarily unavailable"


__all__ = [
    "RealtimeError",
    "AuthenticationError",
    "AuthorizationError",
    "ValidationError",
    "NotFoundError",
    "ExternalServiceError",
    "TransientStoreError",
]
