"""
FastAPI routes: alert notification dispatch.

Provides endpoints to:
    POST /api/v1/alerts/{id}/notify            — broad dispatch (geo/area/emergency)
    POST /api/v1/alerts/{id}/notify/targeted   — resend to explicit users
    POST /api/v1/alerts/{id}/notify/role       — resend to a role cohort
    GET  /api/v1/notifications/channels        — provider connectivity

Errors (unknown alert, alert not dispatchable, store outage) are raised as
NotificationEngineError subclasses and rendered by the global handlers.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from backend.app.alerts.notification_service import NotificationEngine
from backend.app.api.deps import get_notification_engine
from backend.app.api.schemas import (
    ChannelsResponse,
    NotifyRequest,
    NotifyResponse,
    RoleNotifyRequest,
    TargetedNotifyRequest,
)

router = APIRouter(prefix="/api/v1/alerts", tags=["notifications"])
channels_router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.post("/{alert_id}/notify", response_model=NotifyResponse)
async def notify_alert(
    alert_id: str,
    body: Optional[NotifyRequest] = None,
    engine: NotificationEngine = Depends(get_notification_engine),
):
    """Notify everyone the alert targets, optionally narrowed by role or radius."""
    body = body or NotifyRequest()
    alert = await engine.alert_store.get_alert(alert_id)
    result = await engine.send_alert_notifications(
        alert, roles=body.roles, radius_km=body.radius_km,
    )
    return NotifyResponse.from_result(alert.alert_id, result)


@router.post("/{alert_id}/notify/targeted", response_model=NotifyResponse)
async def notify_targeted(
    alert_id: str,
    body: TargetedNotifyRequest,
    engine: NotificationEngine = Depends(get_notification_engine),
):
    alert = await engine.alert_store.get_alert(alert_id)
    result = await engine.send_targeted_notifications(body.user_ids, alert)
    return NotifyResponse.from_result(alert.alert_id, result)


@router.post("/{alert_id}/notify/role", response_model=NotifyResponse)
async def notify_role(
    alert_id: str,
    body: RoleNotifyRequest,
    engine: NotificationEngine = Depends(get_notification_engine),
):
    alert = await engine.alert_store.get_alert(alert_id)
    result = await engine.send_role_based_notifications(body.role, alert)
    return NotifyResponse.from_result(alert.alert_id, result)


@channels_router.get("/channels", response_model=ChannelsResponse)
async def channel_status(
    engine: NotificationEngine = Depends(get_notification_engine),
):
    """Check SMS and email provider connectivity."""
    return {"channels": await engine.check_channels()}
