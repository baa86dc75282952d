"""
email.py — Email alert delivery channel.

Delivery mechanism:
    • SMTP relay (smtplib), run in a worker thread so the event loop
      is never blocked by a slow relay
    • multipart/alternative message: HTML + plain-text bodies
    • One SMTP transaction per address, so a rejected address fails alone;
      up to EMAIL_SEND_CONCURRENCY transactions run at once

EMAIL_PROVIDER=simulation (the default) logs the message instead of
sending it, which keeps local development and tests offline.

Addresses are never logged in full (see mask_address).
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from backend.hazardwatch.alerts.channels.base import EmailMessage, EmailSender
from backend.hazardwatch.core.config import settings
from backend.hazardwatch.core.errors import ChannelSendError
from backend.hazardwatch.core.logging_config import mask_address

logger = logging.getLogger(__name__)


class SimulatedEmailSender(EmailSender):
    """
    Development sender: logs instead of sending.

    ``fail_for`` lists addresses that should raise, which lets tests
    exercise per-address isolation without an SMTP server.
    """

    name = "simulation"

    def __init__(self, fail_for: Optional[List[str]] = None):
        self.fail_for = set(fail_for or ())
        self.delivered: List[str] = []

    async def _deliver_one(self, message: EmailMessage, address: str) -> str:
        if address in self.fail_for:
            raise ChannelSendError("email", "simulated rejection", recipient=mask_address(address))
        logger.info("[EMAIL] %s → %s", message.subject, mask_address(address))
        self.delivered.append(address)
        return f"sim-{uuid.uuid4().hex[:8]}"


class SmtpEmailSender(EmailSender):
    """Send through an SMTP relay."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_address: str = "alerts@hazardwatch.local",
        timeout_seconds: float = 10.0,
        max_concurrency: int = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self.timeout_seconds = timeout_seconds
        self.max_concurrency = max_concurrency

    @property
    def is_configured(self) -> bool:
        return bool(self.host)

    def _build_mime(self, message: EmailMessage, address: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.from_address
        msg["To"] = address
        msg.attach(MIMEText(message.text_body, "plain", "utf-8"))
        msg.attach(MIMEText(message.html_body, "html", "utf-8"))
        return msg

    def _send_sync(self, message: EmailMessage, address: str) -> str:
        msg = self._build_mime(message, address)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                refused = server.sendmail(self.from_address, [address], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelSendError("email", str(exc), recipient=mask_address(address)) from exc

        if refused:
            raise ChannelSendError("email", "recipient refused", recipient=mask_address(address))
        return msg.get("Message-ID") or uuid.uuid4().hex

    async def _deliver_one(self, message: EmailMessage, address: str) -> str:
        return await asyncio.to_thread(self._send_sync, message, address)


def build_email_sender() -> EmailSender:
    """Create the sender selected by EMAIL_PROVIDER."""
    provider = settings.EMAIL_PROVIDER.lower()
    if provider == "smtp":
        if not settings.SMTP_HOST:
            raise ValueError("EMAIL_PROVIDER=smtp requires SMTP_HOST")
        return SmtpEmailSender(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            username=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            use_tls=settings.SMTP_USE_TLS,
            from_address=settings.EMAIL_FROM_ADDRESS,
            max_concurrency=settings.EMAIL_SEND_CONCURRENCY,
        )
    if provider != "simulation":
        logger.warning("Unknown EMAIL_PROVIDER %r, falling back to simulation", provider)
    return SimulatedEmailSender()
