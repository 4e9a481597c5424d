"""Metric definitions for the realtime layer and its background workers."""

from __future__ import annotations

from .registry import registry


realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of authenticated websocket sessions registered in this process.",
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events received from clients or delivered to them.",
    label_names=("event", "direction"),
)

scheduled_deliveries_total = registry.counter(
    "scheduled_deliveries_total",
    "Scheduled messages promoted into chats by the delivery loop.",
    label_names=("outcome",),
)

assistant_replies_total = registry.counter(
    "assistant_replies_total",
    "Replies posted by the assistant user, by how the text was produced.",
    label_names=("outcome",),
)
