"""Prometheus-compatible metrics endpoint."""

from fastapi import APIRouter, Depends, Response

from baatkare.realtime import RealtimeHub

from app.monitoring.metrics import realtime_connections
from app.monitoring.registry import registry
from app.services.realtime import get_realtime_hub


router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=Response)
def export_metrics(hub: RealtimeHub = Depends(get_realtime_hub)) -> Response:
    """Expose realtime counters and the live connection gauge for Prometheus."""

    realtime_connections.set(len(hub.state.registry))
    payload = registry.render()
    return Response(content=payload, media_type="text/plain; version=0.0.4")
