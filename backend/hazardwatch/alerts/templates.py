"""
templates.py — Fixed notification copy.

One (title, body) pair is built per dispatch and sent unchanged to every
push recipient. Email gets a richer rendering of the same event: subject,
HTML body and plain-text body.

    Trigger                         Title
    ────────────────────────────    ─────────────────────────────────
    data_available                  Data Now Available
    status_change (+status, name)   ⚠️ DANGER: Nitrate   (per status)
    anything else                   Water Quality Update
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from backend.hazardwatch.alerts.models import NotificationEvent, TriggerType
from backend.hazardwatch.reference.models import SafetyStatus

BRAND = "Hazard Watch"

_STATUS_TITLES = {
    SafetyStatus.DANGER:  "⚠️ DANGER",
    SafetyStatus.WARNING: "⚡ Warning",
    SafetyStatus.SAFE:    "✅ Safe",
}

_STATUS_COLOURS = {
    SafetyStatus.DANGER:  "#DC2626",
    SafetyStatus.WARNING: "#F59E0B",
    SafetyStatus.SAFE:    "#10B981",
}


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html_body: str
    text_body: str


def build_notification_content(event: NotificationEvent) -> Tuple[str, str]:
    """Return the (title, body) pair for an event."""
    location = event.location_display

    if event.trigger_type == TriggerType.DATA_AVAILABLE:
        return (
            "Data Now Available",
            f"Water quality data is now available for {location}. Tap to view the report.",
        )

    name = event.display_substance
    if event.trigger_type == TriggerType.STATUS_CHANGE and event.new_status and name:
        return (
            f"{_STATUS_TITLES[event.new_status]}: {name}",
            f"{name} levels in {location} have changed to "
            f"{event.new_status.value.upper()}. Tap for details.",
        )

    return (
        "Water Quality Update",
        f"New water quality data available for {location}. Tap to view the latest report.",
    )


def build_push_data(event: NotificationEvent) -> Dict[str, Any]:
    """Deep-link payload attached to every push message."""
    data: Dict[str, Any] = {"screen": "Dashboard", "location_key": event.location_key}
    if event.substance_id:
        data["substance_id"] = event.substance_id
    return data


# ═══════════════════════════════════════════════════════════════════════════
# Email
# ═══════════════════════════════════════════════════════════════════════════

def _email_location(event: NotificationEvent) -> str:
    if event.city_name:
        return f"{event.city_name} ({event.location_key})"
    return event.location_key


def _value_line(event: NotificationEvent) -> str:
    if event.current_value is None:
        return "n/a"
    return f"{event.current_value:g} {event.unit or ''}".strip()


def build_email_content(event: NotificationEvent, title: str, body: str) -> EmailContent:
    """
    Render the email variant of an event.

    Status changes get the safety-alert layout (previous → current status,
    current value). Other triggers reuse the push title and body.
    """
    if event.trigger_type != TriggerType.STATUS_CHANGE or event.new_status is None:
        return EmailContent(
            subject=title,
            html_body=_simple_html(title, body),
            text_body=f"{title}\n\n{body}\n\n— {BRAND}",
        )

    name = event.display_substance or "Water Quality"
    new_status = event.new_status
    old_status = event.old_status or SafetyStatus.SAFE
    location = _email_location(event)

    subject = (
        f"[{new_status.value.upper()}] Safety Alert: {name} in {event.location_display}"
    )
    return EmailContent(
        subject=subject,
        html_body=_status_html(name, location, old_status, new_status, _value_line(event)),
        text_body=(
            f"SAFETY ALERT - {BRAND}\n"
            f"{name} Status Changed\n\n"
            f"A safety condition in {location} has changed:\n\n"
            f"Previous Status: {old_status.value.upper()}\n"
            f"Current Status: {new_status.value.upper()}\n"
            f"Current Value: {_value_line(event)}\n\n"
            f"Open the {BRAND} app for more details and recommendations.\n\n"
            f"---\n"
            f"You received this email because you have email notifications "
            f"enabled for {location}.\n"
            f"To unsubscribe, update your notification preferences in the {BRAND} app."
        ),
    )


def _simple_html(title: str, body: str) -> str:
    title, body = html.escape(title), html.escape(body)
    return f"""<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; padding: 20px;">
  <h2>{title}</h2>
  <p>{body}</p>
  <p style="color: #71717a; font-size: 12px;">{BRAND}</p>
</body>
</html>"""


def _badge(status: SafetyStatus) -> str:
    return (
        f'<span style="padding: 6px 12px; border-radius: 4px; color: #ffffff; '
        f'background-color: {_STATUS_COLOURS[status]};">{status.value.upper()}</span>'
    )


def _status_html(
    name: str,
    location: str,
    old_status: SafetyStatus,
    new_status: SafetyStatus,
    value_line: str,
) -> str:
    name, location, value_line = (html.escape(s) for s in (name, location, value_line))
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Safety Alert - {BRAND}</title></head>
<body style="font-family: sans-serif; background-color: #f4f4f5; padding: 20px;">
  <div style="max-width: 600px; margin: 0 auto; background-color: #ffffff;">
    <div style="background-color: {_STATUS_COLOURS[new_status]}; padding: 24px; text-align: center;">
      <h1 style="color: #ffffff; margin: 0;">Safety Alert</h1>
    </div>
    <div style="padding: 24px;">
      <h2>{name} Status Changed</h2>
      <p>A safety condition in <strong>{location}</strong> has changed:</p>
      <p>{_badge(old_status)} &rarr; {_badge(new_status)}</p>
      <p>Current Value: <strong>{value_line}</strong></p>
      <p>Open the {BRAND} app for more details and recommendations.</p>
    </div>
    <div style="padding: 16px 24px; font-size: 12px; color: #71717a;">
      You received this email because you have email notifications enabled for {location}.
    </div>
  </div>
</body>
</html>"""
