"""Monitoring helpers and metric registry for the realtime backend."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
