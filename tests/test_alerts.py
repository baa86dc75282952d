"""
test_alerts.py — Tests for notification models, matching, copy and events.

Covers:
    • Subscription defaults and record parsing
    • NotificationEvent validation and parsing
    • DispatchResult aggregation
    • Subscriber matching rules and the default-floor policy
    • Notification titles / bodies, push deep link, email rendering
    • Status-change event construction from measurements

Run with:
    pytest tests/test_alerts.py -v
"""

from __future__ import annotations

import math

import pytest

from backend.hazardwatch.alerts.events import build_status_change_event
from backend.hazardwatch.alerts.matcher import MatchPolicy, should_notify
from backend.hazardwatch.alerts.models import (
    DispatchResult,
    NotificationEvent,
    Subscription,
    TriggerType,
)
from backend.hazardwatch.alerts.templates import (
    build_email_content,
    build_notification_content,
    build_push_data,
)
from backend.hazardwatch.core.errors import ValidationError
from backend.hazardwatch.reference.models import (
    Jurisdiction,
    Measurement,
    SafetyStatus,
    Substance,
    Threshold,
)
from backend.hazardwatch.reference.resolver import ReferenceSnapshot


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _make_subscription(**overrides) -> Subscription:
    defaults = dict(
        id="sub-1",
        owner_id="user-1",
        location_key="10001",
        alert_on_danger=False,
        alert_on_warning=False,
        alert_on_any_change=False,
        notify_when_data_available=False,
    )
    defaults.update(overrides)
    return Subscription(**defaults)


def _make_event(
    new_status=SafetyStatus.DANGER,
    trigger_type=TriggerType.STATUS_CHANGE,
    **overrides,
) -> NotificationEvent:
    defaults = dict(
        trigger_type=trigger_type,
        location_key="10001",
        substance_id="nitrate",
        substance_name="Nitrate",
        old_status=SafetyStatus.SAFE,
        new_status=new_status,
        current_value=16.0,
        unit="mg/L",
    )
    defaults.update(overrides)
    return NotificationEvent(**defaults)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Models
# ═══════════════════════════════════════════════════════════════════════════

class TestSubscription:
    """Preference defaults and record parsing."""

    def test_constructor_defaults(self):
        sub = Subscription(id="s", owner_id="u", location_key="10001")
        assert sub.enable_push is True
        assert sub.enable_email is False
        assert sub.alert_on_danger is True
        assert sub.has_customised_alerts

    def test_from_record_missing_flags_take_defaults(self):
        sub = Subscription.from_record({"id": "s", "location_key": "10001"})
        assert sub.enable_push is True
        assert sub.enable_email is False
        assert sub.alert_on_danger is True
        assert sub.alert_on_warning is False
        assert sub.notify_when_data_available is False

    def test_from_record_null_flags_take_defaults(self):
        sub = Subscription.from_record({
            "id": "s", "location_key": "10001",
            "enable_push": None, "alert_on_danger": None,
        })
        assert sub.enable_push is True
        assert sub.alert_on_danger is True

    def test_from_record_explicit_false_kept(self):
        sub = Subscription.from_record({
            "id": "s", "location_key": "10001",
            "enable_push": False, "alert_on_danger": False,
        })
        assert sub.enable_push is False
        assert sub.alert_on_danger is False

    def test_watch_list_coerced_to_frozenset(self):
        sub = _make_subscription(watch_list=["lead", "nitrate"])
        assert sub.watch_list == frozenset({"lead", "nitrate"})

    def test_to_dict_hides_token(self):
        d = _make_subscription(push_token="ExponentPushToken[abc]").to_dict()
        assert d["has_push_token"] is True
        assert "push_token" not in d


class TestNotificationEventValidation:
    """validate() and from_dict()."""

    def test_valid_event_returns_self(self):
        event = _make_event()
        assert event.validate() is event

    def test_blank_location_rejected(self):
        with pytest.raises(ValidationError):
            _make_event(location_key="  ").validate()

    def test_status_change_requires_new_status(self):
        with pytest.raises(ValidationError) as exc:
            _make_event(new_status=None).validate()
        assert exc.value.details["field"] == "new_status"

    @pytest.mark.parametrize("value", [math.nan, math.inf, "16", True])
    def test_bad_value_rejected(self, value):
        with pytest.raises(ValidationError):
            _make_event(current_value=value).validate()

    def test_unknown_trigger_rejected(self):
        with pytest.raises(ValidationError):
            NotificationEvent.from_dict({"trigger_type": "earthquake", "location_key": "1"})

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationError):
            NotificationEvent.from_dict({
                "trigger_type": "status_change", "location_key": "1",
                "new_status": "catastrophic",
            })

    def test_from_dict_parses_enums(self):
        event = NotificationEvent.from_dict({
            "trigger_type": "status_change",
            "location_key": "10001",
            "new_status": "warning",
            "current_value": 12,
        })
        assert event.trigger_type is TriggerType.STATUS_CHANGE
        assert event.new_status is SafetyStatus.WARNING

    def test_data_update_without_status_is_valid(self):
        _make_event(trigger_type=TriggerType.DATA_UPDATE, new_status=None).validate()


class TestDispatchResult:

    def test_empty_result(self):
        result = DispatchResult()
        assert result.success
        assert result.total_sent == 0
        assert result.sent_by_channel == {"push": 0, "email": 0}

    def test_errors_mean_not_success(self):
        result = DispatchResult(errors=["email:s1: bounced"])
        assert not result.success
        assert result.to_dict()["success"] is False


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Matching
# ═══════════════════════════════════════════════════════════════════════════

class TestShouldNotify:
    """Decision order of the matcher."""

    def test_uncustomised_gets_danger(self):
        assert should_notify(_make_subscription(), _make_event(SafetyStatus.DANGER))

    def test_uncustomised_skips_warning(self):
        assert not should_notify(_make_subscription(), _make_event(SafetyStatus.WARNING))

    def test_uncustomised_skips_safe(self):
        assert not should_notify(_make_subscription(), _make_event(SafetyStatus.SAFE))

    def test_warning_only_skips_danger(self):
        sub = _make_subscription(alert_on_warning=True)
        assert not should_notify(sub, _make_event(SafetyStatus.DANGER))
        assert should_notify(sub, _make_event(SafetyStatus.WARNING))

    def test_any_change_gets_everything(self):
        sub = _make_subscription(alert_on_any_change=True)
        for status in SafetyStatus:
            assert should_notify(sub, _make_event(status))

    def test_watch_list_filters_substances(self):
        sub = _make_subscription(alert_on_any_change=True, watch_list={"lead"})
        assert not should_notify(sub, _make_event(substance_id="nitrate"))
        assert should_notify(sub, _make_event(substance_id="lead"))

    def test_watch_list_beats_default_floor(self):
        sub = _make_subscription(watch_list={"lead"})
        assert not should_notify(sub, _make_event(SafetyStatus.DANGER))

    def test_event_without_substance_passes_watch_list(self):
        sub = _make_subscription(alert_on_any_change=True, watch_list={"lead"})
        assert should_notify(sub, _make_event(substance_id=None))

    def test_data_available_opt_in_only(self):
        event = _make_event(trigger_type=TriggerType.DATA_AVAILABLE, new_status=None)
        opted_out = _make_subscription(alert_on_any_change=True, alert_on_danger=True)
        opted_in = _make_subscription(notify_when_data_available=True, watch_list={"lead"})
        assert not should_notify(opted_out, event)
        assert should_notify(opted_in, event)

    def test_policy_floor_disabled(self):
        policy = MatchPolicy(default_floor=None)
        assert not should_notify(_make_subscription(), _make_event(SafetyStatus.DANGER), policy)

    def test_policy_floor_warning(self):
        policy = MatchPolicy(default_floor=SafetyStatus.WARNING)
        assert should_notify(_make_subscription(), _make_event(SafetyStatus.WARNING), policy)

    def test_pure(self):
        sub, event = _make_subscription(alert_on_danger=True), _make_event()
        assert should_notify(sub, event) == should_notify(sub, event)


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Notification copy
# ═══════════════════════════════════════════════════════════════════════════

class TestNotificationContent:

    def test_danger_title(self):
        title, body = build_notification_content(_make_event(SafetyStatus.DANGER))
        assert title == "⚠️ DANGER: Nitrate"
        assert body == "Nitrate levels in 10001 have changed to DANGER. Tap for details."

    def test_warning_and_safe_titles(self):
        assert build_notification_content(_make_event(SafetyStatus.WARNING))[0] == "⚡ Warning: Nitrate"
        assert build_notification_content(_make_event(SafetyStatus.SAFE))[0] == "✅ Safe: Nitrate"

    def test_city_name_used_in_body(self):
        _, body = build_notification_content(_make_event(city_name="New York"))
        assert "in New York" in body

    def test_substance_id_used_without_name(self):
        title, _ = build_notification_content(_make_event(substance_name=None))
        assert title.endswith(": nitrate")

    def test_data_available(self):
        event = _make_event(trigger_type=TriggerType.DATA_AVAILABLE, new_status=None)
        title, body = build_notification_content(event)
        assert title == "Data Now Available"
        assert "10001" in body

    def test_generic_update(self):
        event = _make_event(trigger_type=TriggerType.DATA_UPDATE, new_status=None)
        assert build_notification_content(event)[0] == "Water Quality Update"

    def test_push_deep_link(self):
        assert build_push_data(_make_event()) == {
            "screen": "Dashboard", "location_key": "10001", "substance_id": "nitrate",
        }

    def test_push_deep_link_without_substance(self):
        assert "substance_id" not in build_push_data(_make_event(substance_id=None))


class TestEmailContent:

    def test_status_change_subject(self):
        event = _make_event(city_name="New York")
        title, body = build_notification_content(event)
        content = build_email_content(event, title, body)
        assert content.subject == "[DANGER] Safety Alert: Nitrate in New York"
        assert "New York (10001)" in content.text_body
        assert "Previous Status: SAFE" in content.text_body
        assert "Current Value: 16 mg/L" in content.text_body
        assert "<html>" in content.html_body

    def test_html_escapes_event_fields(self):
        event = _make_event(
            city_name="<script>alert(1)</script>",
            substance_name="Lead & Copper",
            unit="<b>ppb</b>",
        )
        title, body = build_notification_content(event)
        content = build_email_content(event, title, body)
        assert "<script>" not in content.html_body
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in content.html_body
        assert "Lead &amp; Copper Status Changed" in content.html_body
        assert "16 &lt;b&gt;ppb&lt;/b&gt;" in content.html_body
        assert "<script>alert(1)</script>" in content.text_body

    def test_simple_html_escapes_location(self):
        event = _make_event(
            trigger_type=TriggerType.DATA_AVAILABLE, new_status=None,
            city_name='"><img src=x>',
        )
        title, body = build_notification_content(event)
        content = build_email_content(event, title, body)
        assert "<img" not in content.html_body
        assert "&quot;&gt;&lt;img src=x&gt;" in content.html_body

    def test_other_triggers_reuse_title(self):
        event = _make_event(trigger_type=TriggerType.DATA_AVAILABLE, new_status=None)
        title, body = build_notification_content(event)
        content = build_email_content(event, title, body)
        assert content.subject == title
        assert body in content.text_body


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Status-change events
# ═══════════════════════════════════════════════════════════════════════════

def _make_reference() -> ReferenceSnapshot:
    return ReferenceSnapshot.from_records(
        [Substance("nitrate", name="Nitrate", unit="mg/L")],
        [Jurisdiction("WHO", is_default=True), Jurisdiction("US", parent_code="WHO")],
        [Threshold("nitrate", "US", limit_value=15)],
    )


class TestBuildStatusChangeEvent:

    def test_change_produces_event(self):
        event = build_status_change_event(
            Measurement("nitrate", "10001", 10.0),
            Measurement("nitrate", "10001", 16.0),
            "US", _make_reference(), city_name="New York",
        )
        assert event.old_status == SafetyStatus.SAFE
        assert event.new_status == SafetyStatus.DANGER
        assert event.substance_name == "Nitrate"
        assert event.unit == "mg/L"
        assert event.city_name == "New York"
        event.validate()

    def test_same_status_returns_none(self):
        assert build_status_change_event(
            Measurement("nitrate", "10001", 12.0),
            Measurement("nitrate", "10001", 13.0),
            "US", _make_reference(),
        ) is None

    def test_mismatched_locations_rejected(self):
        with pytest.raises(ValidationError):
            build_status_change_event(
                Measurement("nitrate", "10001", 1.0),
                Measurement("nitrate", "94105", 16.0),
                "US", _make_reference(),
            )
