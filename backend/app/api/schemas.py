"""
Pydantic schemas for the notification API.

Separated from the route handlers so they are reusable across the
codebase (background workers, tests).
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.alerts.models import DispatchResult, UserRole


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class NotifyRequest(BaseModel):
    """Request body for POST /api/v1/alerts/{alert_id}/notify."""
    roles: Optional[List[UserRole]] = Field(
        default=None,
        description="Only notify users holding one of these roles",
        examples=[["citizen", "volunteer"]],
    )
    radius_km: Optional[float] = Field(
        default=None, gt=0.0, le=20_000.0,
        description="Override the severity-based radius (km)",
        examples=[25.0],
    )


class TargetedNotifyRequest(BaseModel):
    """Request body for POST /api/v1/alerts/{alert_id}/notify/targeted."""
    user_ids: List[str] = Field(
        ..., min_length=1,
        description="Users to re-notify",
        examples=[["64f1c2a9e4b0a1b2c3d4e5f6"]],
    )

    @field_validator("user_ids")
    @classmethod
    def strip_blank_ids(cls, v: List[str]) -> List[str]:
        ids = [i.strip() for i in v if i and i.strip()]
        if not ids:
            raise ValueError("user_ids must contain at least one non-empty id")
        return ids


class RoleNotifyRequest(BaseModel):
    """Request body for POST /api/v1/alerts/{alert_id}/notify/role."""
    role: UserRole = Field(..., examples=["responder"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class DeliveryErrorOut(BaseModel):
    user: str
    user_id: str
    error: str


class ChannelTallyOut(BaseModel):
    sent: int
    failed: int
    errors: List[DeliveryErrorOut] = Field(default_factory=list)


class ChannelResults(BaseModel):
    sms: ChannelTallyOut
    email: ChannelTallyOut


class NotifyResponse(BaseModel):
    alert_id: str
    recipient_count: int
    results: ChannelResults

    @classmethod
    def from_result(cls, alert_id: str, result: DispatchResult) -> "NotifyResponse":
        return cls.model_validate({
            "alert_id": alert_id,
            "recipient_count": result.recipient_count,
            "results": result.to_dict(),
        })


class ChannelStatusOut(BaseModel):
    available: bool
    status: str = Field(..., examples=["connected"])
    provider: Optional[str] = None
    error: Optional[str] = None


class ChannelsResponse(BaseModel):
    channels: Dict[str, ChannelStatusOut]
