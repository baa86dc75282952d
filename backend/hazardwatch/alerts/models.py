"""
models.py — Shared data structures for the notification pipeline.

Defines:
    • TriggerType       — why a notification event was generated
    • Channel           — delivery channel enum (push, email)
    • DeliveryOutcome   — sent / failed, as recorded in the audit trail
    • Subscription      — one subscriber's location + alert preferences
    • NotificationEvent — the inbound event fanned out by the dispatcher
    • RecipientOutcome  — per-recipient result reported by a channel sender
    • DeliveryRecord    — one append-only audit entry
    • DispatchResult    — aggregate summary returned by dispatch()

═══════════════════════════════════════════════════════════════════════════
PREFERENCE DEFAULTS
═══════════════════════════════════════════════════════════════════════════

Subscriber stores hand back loosely-typed records where any flag may be
missing or null. Subscription.from_record resolves every flag once:

    Flag                          Default
    ──────────────────────────    ───────
    enable_push                   True
    enable_email                  False
    alert_on_danger               True
    alert_on_warning              False
    alert_on_any_change           False
    notify_when_data_available    False

After construction a Subscription has only plain booleans, so "unset"
and "False" can no longer be confused downstream.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from backend.hazardwatch.core.errors import ValidationError
from backend.hazardwatch.reference.models import SafetyStatus


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class TriggerType(str, Enum):
    DATA_UPDATE    = "data_update"
    DATA_AVAILABLE = "data_available"
    STATUS_CHANGE  = "status_change"


class Channel(str, Enum):
    """Delivery channel."""
    PUSH  = "push"
    EMAIL = "email"


class DeliveryOutcome(str, Enum):
    SENT   = "sent"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Subscription
# ═══════════════════════════════════════════════════════════════════════════

_FLAG_DEFAULTS: Dict[str, bool] = {
    "enable_push": True,
    "enable_email": False,
    "alert_on_danger": True,
    "alert_on_warning": False,
    "alert_on_any_change": False,
    "notify_when_data_available": False,
}


@dataclass(frozen=True)
class Subscription:
    """
    A subscriber's interest in one location.

    Attributes
    ----------
    id : str
        Subscription id (unique per owner + location).
    owner_id : str
        Account that owns the subscription; used for email resolution.
    location_key : str
        Postal code or other location index key.
    watch_list : frozenset of str
        Substance ids that may trigger alerts. Empty means all substances.
    push_token : str, optional
        Device push token. Push is skipped without one.
    email : str, optional
        Pre-resolved email address. When absent the dispatcher asks its
        EmailResolver using ``owner_id``.
    """
    id: str
    owner_id: str
    location_key: str
    enable_push: bool = True
    enable_email: bool = False
    alert_on_danger: bool = True
    alert_on_warning: bool = False
    alert_on_any_change: bool = False
    notify_when_data_available: bool = False
    watch_list: FrozenSet[str] = frozenset()
    push_token: Optional[str] = None
    email: Optional[str] = None
    city_name: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.watch_list, frozenset):
            object.__setattr__(self, "watch_list", frozenset(self.watch_list or ()))

    @property
    def has_customised_alerts(self) -> bool:
        """False when none of the status-alert flags are set."""
        return self.alert_on_danger or self.alert_on_warning or self.alert_on_any_change

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Subscription":
        """
        Build a Subscription from a store record.

        Missing or None flags take their defaults; anything else is read
        as a boolean. ``watch_list`` may be a list, a set or None.
        """
        flags = {}
        for name, default in _FLAG_DEFAULTS.items():
            value = record.get(name)
            flags[name] = default if value is None else bool(value)

        return cls(
            id=str(record["id"]),
            owner_id=str(record.get("owner_id") or ""),
            location_key=str(record["location_key"]),
            watch_list=frozenset(record.get("watch_list") or ()),
            push_token=record.get("push_token") or None,
            email=record.get("email") or None,
            city_name=record.get("city_name") or None,
            **flags,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "location_key": self.location_key,
            "enable_push": self.enable_push,
            "enable_email": self.enable_email,
            "alert_on_danger": self.alert_on_danger,
            "alert_on_warning": self.alert_on_warning,
            "alert_on_any_change": self.alert_on_any_change,
            "notify_when_data_available": self.notify_when_data_available,
            "watch_list": sorted(self.watch_list),
            "has_push_token": bool(self.push_token),
            "city_name": self.city_name,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Event
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NotificationEvent:
    """
    Inbound event: one location changed and subscribers may need to know.

    Not persisted. Call ``validate()`` (the dispatcher does) before acting
    on an event built from untrusted input.
    """
    trigger_type: TriggerType
    location_key: str
    substance_id: Optional[str] = None
    substance_name: Optional[str] = None
    old_status: Optional[SafetyStatus] = None
    new_status: Optional[SafetyStatus] = None
    current_value: Optional[float] = None
    unit: Optional[str] = None
    city_name: Optional[str] = None
    admin_triggered: bool = False

    @property
    def location_display(self) -> str:
        return self.city_name or self.location_key

    @property
    def display_substance(self) -> Optional[str]:
        return self.substance_name or self.substance_id

    def validate(self) -> "NotificationEvent":
        """
        Check the event is well formed.

        Raises
        ------
        ValidationError
            Unknown trigger type or status, blank location key, a
            status_change without ``new_status``, or a non-finite value.
        """
        if not isinstance(self.trigger_type, TriggerType):
            raise ValidationError(
                f"Unknown trigger type: {self.trigger_type!r}", field="trigger_type",
            )
        if not isinstance(self.location_key, str) or not self.location_key.strip():
            raise ValidationError("location_key is required", field="location_key")

        for name in ("old_status", "new_status"):
            status = getattr(self, name)
            if status is not None and not isinstance(status, SafetyStatus):
                raise ValidationError(f"Unknown status: {status!r}", field=name)

        if self.trigger_type == TriggerType.STATUS_CHANGE and self.new_status is None:
            raise ValidationError(
                "status_change events require new_status", field="new_status",
            )

        if self.current_value is not None:
            if isinstance(self.current_value, bool) or not isinstance(self.current_value, (int, float)):
                raise ValidationError("current_value must be a number", field="current_value")
            if not math.isfinite(self.current_value):
                raise ValidationError("current_value must be finite", field="current_value")

        return self

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NotificationEvent":
        """Parse and validate an event from a plain mapping."""
        try:
            trigger_type = TriggerType(data.get("trigger_type"))
        except ValueError:
            raise ValidationError(
                f"Unknown trigger type: {data.get('trigger_type')!r}", field="trigger_type",
            )

        statuses: Dict[str, Optional[SafetyStatus]] = {}
        for name in ("old_status", "new_status"):
            raw = data.get(name)
            try:
                statuses[name] = SafetyStatus(raw) if raw is not None else None
            except ValueError:
                raise ValidationError(f"Unknown status: {raw!r}", field=name)

        event = cls(
            trigger_type=trigger_type,
            location_key=data.get("location_key") or "",
            substance_id=data.get("substance_id"),
            substance_name=data.get("substance_name"),
            current_value=data.get("current_value"),
            unit=data.get("unit"),
            city_name=data.get("city_name"),
            admin_triggered=bool(data.get("admin_triggered", False)),
            **statuses,
        )
        return event.validate()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_type": self.trigger_type.value,
            "location_key": self.location_key,
            "substance_id": self.substance_id,
            "substance_name": self.substance_name,
            "old_status": self.old_status.value if self.old_status else None,
            "new_status": self.new_status.value if self.new_status else None,
            "current_value": self.current_value,
            "unit": self.unit,
            "city_name": self.city_name,
            "admin_triggered": self.admin_triggered,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Delivery results
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class RecipientOutcome:
    """Result of one recipient within a channel batch."""
    recipient: str
    success: bool
    error: Optional[str] = None
    # push only: the provider says this token will never work again
    invalid_token: bool = False
    provider_id: Optional[str] = None


@dataclass(frozen=True)
class DeliveryRecord:
    """One audit-trail entry. Written once, never updated."""
    id: str
    subscription_id: str
    owner_id: str
    location_key: str
    channel: Channel
    status: DeliveryOutcome
    title: str
    body: str
    trigger_type: TriggerType
    error: Optional[str] = None
    sent_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "owner_id": self.owner_id,
            "location_key": self.location_key,
            "channel": self.channel.value,
            "status": self.status.value,
            "title": self.title,
            "body": self.body,
            "trigger_type": self.trigger_type.value,
            "error": self.error,
            "sent_at": self.sent_at.isoformat(),
        }


@dataclass
class DispatchResult:
    """
    Aggregate outcome of one dispatch() call.

    ``notified_count`` counts distinct subscriptions with at least one
    channel attempt; a subscriber on both channels counts once.
    """
    notified_count: int = 0
    sent_by_channel: Dict[str, int] = field(
        default_factory=lambda: {c.value: 0 for c in Channel}
    )
    failed_by_channel: Dict[str, int] = field(
        default_factory=lambda: {c.value: 0 for c in Channel}
    )
    errors: List[str] = field(default_factory=list)
    invalid_tokens: List[str] = field(default_factory=list)

    @property
    def total_sent(self) -> int:
        return sum(self.sent_by_channel.values())

    @property
    def total_failed(self) -> int:
        return sum(self.failed_by_channel.values())

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "notified_count": self.notified_count,
            "sent_by_channel": dict(self.sent_by_channel),
            "failed_by_channel": dict(self.failed_by_channel),
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
            "errors": list(self.errors),
            "invalid_tokens": list(self.invalid_tokens),
        }
