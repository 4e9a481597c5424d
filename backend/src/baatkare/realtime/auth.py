"""Bearer credential verification for the realtime handshake."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

import jwt

from .errors import AuthenticationError


@dataclass(slots=True)
class TokenVerifier:
    """Check a signed access token and return the user identifier it carries."""

    secret: str
    algorithm: str = "HS256"

    def verify(self, token: str | None) -> UUID:
        if not token:
            raise AuthenticationError("Missing token")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationError("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationError("Invalid token") from exc

        subject = payload.get("sub")
        try:
            return UUID(str(subject))
        except (TypeError, ValueError):
            raise AuthenticationError("Invalid token subject") from None


__all__ = ["TokenVerifier"]
