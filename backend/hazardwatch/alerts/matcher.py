"""
matcher.py — Decide whether one subscriber should hear about one event.

═══════════════════════════════════════════════════════════════════════════
DECISION ORDER (first match wins)
═══════════════════════════════════════════════════════════════════════════

    1. data_available trigger    → notify_when_data_available (opt-in only,
                                   no other preference is consulted)
    2. watch-list set and the event's substance is not on it → False
    3. alert_on_any_change       → True
    4. new_status DANGER  and alert_on_danger   → True
    5. new_status WARNING and alert_on_warning  → True
    6. no status-alert flag set  → new_status == policy floor (DANGER)
    7. otherwise                 → False

Step 6 is a product policy, not a derived rule: a subscriber who never
touched their preferences still hears about the most severe class of
alert. MatchPolicy keeps it overridable (floor=None disables it).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from backend.hazardwatch.alerts.models import NotificationEvent, Subscription, TriggerType
from backend.hazardwatch.core.config import settings
from backend.hazardwatch.reference.models import SafetyStatus


@dataclass(frozen=True)
class MatchPolicy:
    """Tunable matching policy."""
    default_floor: Optional[SafetyStatus] = SafetyStatus.DANGER

    @classmethod
    def from_settings(cls) -> "MatchPolicy":
        floor = settings.DEFAULT_ALERT_FLOOR.strip().lower()
        return cls(default_floor=SafetyStatus(floor) if floor else None)


DEFAULT_POLICY = MatchPolicy()


def should_notify(
    subscription: Subscription,
    event: NotificationEvent,
    policy: MatchPolicy = DEFAULT_POLICY,
) -> bool:
    """
    Return True if ``subscription`` should receive ``event``.

    Pure function of its inputs.
    """
    if event.trigger_type == TriggerType.DATA_AVAILABLE:
        return subscription.notify_when_data_available

    if (
        event.substance_id
        and subscription.watch_list
        and event.substance_id not in subscription.watch_list
    ):
        return False

    if subscription.alert_on_any_change:
        return True

    if event.new_status == SafetyStatus.DANGER and subscription.alert_on_danger:
        return True

    if event.new_status == SafetyStatus.WARNING and subscription.alert_on_warning:
        return True

    if not subscription.has_customised_alerts:
        return policy.default_floor is not None and event.new_status == policy.default_floor

    return False
