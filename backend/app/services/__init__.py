"""Application service helpers."""

from .realtime import (
    configure_realtime,
    get_realtime_hub,
    shutdown_realtime,
    startup_realtime,
)
from .store import SqlAlchemyChatStore

__all__ = [
    "SqlAlchemyChatStore",
    "configure_realtime",
    "get_realtime_hub",
    "shutdown_realtime",
    "startup_realtime",
]
