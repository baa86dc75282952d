"""
Pydantic schemas for the notification, reference and sign-in APIs.

Separated from the route handlers so they are reusable across
the codebase (background workers, tests).
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.hazardwatch.alerts.models import NotificationEvent, TriggerType
from backend.hazardwatch.reference.models import SafetyStatus

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class NotificationEventIn(BaseModel):
    """Inbound event, as emitted by the measurement pipeline or an admin."""
    trigger_type: TriggerType = Field(..., examples=["status_change"])
    location_key: str = Field(..., min_length=1, examples=["10001"])
    substance_id: Optional[str] = Field(None, examples=["nitrate"])
    substance_name: Optional[str] = Field(None, examples=["Nitrate"])
    old_status: Optional[SafetyStatus] = Field(None, examples=["warning"])
    new_status: Optional[SafetyStatus] = Field(None, examples=["danger"])
    current_value: Optional[float] = Field(None, examples=[16.2])
    unit: Optional[str] = Field(None, examples=["mg/L"])
    city_name: Optional[str] = Field(None, examples=["New York"])
    admin_triggered: bool = Field(False)

    def to_event(self) -> NotificationEvent:
        return NotificationEvent(
            trigger_type=self.trigger_type,
            location_key=self.location_key,
            substance_id=self.substance_id,
            substance_name=self.substance_name,
            old_status=self.old_status,
            new_status=self.new_status,
            current_value=self.current_value,
            unit=self.unit,
            city_name=self.city_name,
            admin_triggered=self.admin_triggered,
        )


class DispatchResponse(BaseModel):
    success: bool
    notified_count: int
    sent_by_channel: Dict[str, int]
    failed_by_channel: Dict[str, int]
    total_sent: int
    total_failed: int
    errors: List[str]
    invalid_tokens: List[str]


# ---------------------------------------------------------------------------
# Reference
# ---------------------------------------------------------------------------

class StatusRequest(BaseModel):
    """Evaluate one value for a substance in a jurisdiction."""
    substance_id: str = Field(..., min_length=1, examples=["nitrate"])
    value: float = Field(..., examples=[12.0])
    jurisdiction_code: Optional[str] = Field(
        None, examples=["US-NY"],
        description="Explicit jurisdiction; otherwise derived from state/country",
    )
    state: Optional[str] = Field(None, examples=["NY"])
    country: Optional[str] = Field(None, examples=["US"])


class StatusResponse(BaseModel):
    substance_id: str
    value: float
    jurisdiction_code: str
    status: SafetyStatus
    threshold: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------

class SignInRequest(BaseModel):
    email: str = Field(..., examples=["user@example.com"])

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        v = v.strip()
        if len(v) > 254 or not _EMAIL_RE.match(v):
            raise ValueError("Invalid email address")
        return v.lower()


class SignInResponse(BaseModel):
    success: bool = True
    message: str
    remaining: int
