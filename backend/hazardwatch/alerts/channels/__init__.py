"""
channels — Per-channel delivery backends.

Each sender exposes one coroutine that takes the whole recipient batch:

    EmailSender.send_batch(message, addresses) → List[RecipientOutcome]
    PushSender.send_batch(message, tokens)     → List[RecipientOutcome]

A sender reports per-recipient failures in its outcomes. An exception
escaping send_batch means the whole batch failed; the dispatcher turns
that into failures for every recipient of that channel.
"""

from backend.hazardwatch.alerts.channels.base import (
    EmailMessage,
    EmailSender,
    PushMessage,
    PushSender,
)
from backend.hazardwatch.alerts.channels.email import (
    SimulatedEmailSender,
    SmtpEmailSender,
    build_email_sender,
)
from backend.hazardwatch.alerts.channels.expo_push import ExpoPushSender, is_expo_push_token

__all__ = [
    "EmailMessage",
    "EmailSender",
    "PushMessage",
    "PushSender",
    "SimulatedEmailSender",
    "SmtpEmailSender",
    "build_email_sender",
    "ExpoPushSender",
    "is_expo_push_token",
]
