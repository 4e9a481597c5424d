"""Identifier and timestamp helpers for persisted rows."""

from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone
from threading import Lock
from uuid import UUID

_lock = Lock()
_last_micros = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_ordered_id() -> UUID:
    """Return a UUID whose integer value grows with creation time.

    The top 64 bits hold a strictly increasing microsecond counter, so rows
    created in the same process sort by ``id`` in insertion order even when
    their timestamps are equal.
    """

    global _last_micros
    with _lock:
        micros = max(time.time_ns() // 1000, _last_micros + 1)
        _last_micros = micros
    return UUID(int=(micros << 64) | secrets.randbits(64))
