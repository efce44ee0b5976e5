from __future__ import annotations

import json
from typing import Iterator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from src.auth import TenantContext, get_tenant_context
from src.services.container import get_notification_hub
from src.services.notifications import NotificationHub, Subscription


router = APIRouter(prefix="/api/notifications", tags=["notifications"])

_HEARTBEAT_SECONDS = 15.0


def _event_stream(
    hub: NotificationHub,
    subscription: Subscription,
    *,
    max_events: int | None,
    heartbeat_seconds: float,
) -> Iterator[str]:
    sent = 0
    try:
        yield ": connected\n\n"
        while max_events is None or sent < max_events:
            event = subscription.get(timeout=heartbeat_seconds)
            if event is None:
                yield ": keepalive\n\n"
                continue
            yield f"event: {event.get('type', 'status')}\ndata: {json.dumps(event, sort_keys=True, default=str)}\n\n"
            sent += 1
    finally:
        hub.unsubscribe(subscription)


@router.get("/stream")
def stream_notifications(
    max_events: int | None = Query(default=None, ge=1, le=10000),
    tenant: TenantContext = Depends(get_tenant_context),
    hub: NotificationHub = Depends(get_notification_hub),
):
    """Server-sent events for the tenant's message status and job progress updates."""
    subscription = hub.subscribe(tenant.tenant_id)
    return StreamingResponse(
        _event_stream(hub, subscription, max_events=max_events, heartbeat_seconds=_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
