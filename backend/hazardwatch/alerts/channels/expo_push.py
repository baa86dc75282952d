"""
expo_push.py — Mobile push channel via the Expo Push API.

Delivery mechanism:
    • POST JSON array of messages to EXPO_PUSH_URL (≤ 100 per request)
    • Response: {"data": [ticket, ...]} with one ticket per message, in order
    • Ticket {"status": "ok", "id": ...} → sent
      Ticket {"status": "error", "details": {"error": "DeviceNotRegistered"}}
        → failed, token reported as invalid for later cleanup

═══════════════════════════════════════════════════════════════════════════
FAILURE HANDLING
═══════════════════════════════════════════════════════════════════════════

    Failure                          Effect
    ──────────────────────────       ─────────────────────────────────────
    Malformed token                  not sent, failed + invalid
    Error ticket                     that token failed
    DeviceNotRegistered ticket       that token failed + invalid
    HTTP / network error             every token in that request failed,
                                     later requests still go out

The sender never deletes tokens. Invalid tokens are only reported.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from backend.hazardwatch.alerts.channels.base import PushMessage, PushSender
from backend.hazardwatch.alerts.models import RecipientOutcome
from backend.hazardwatch.core.config import settings
from backend.hazardwatch.core.logging_config import mask_address

logger = logging.getLogger(__name__)

_TOKEN_PREFIXES = ("ExponentPushToken[", "ExpoPushToken[")
_DEVICE_NOT_REGISTERED = "DeviceNotRegistered"


def is_expo_push_token(token: Any) -> bool:
    return isinstance(token, str) and token.startswith(_TOKEN_PREFIXES)


class ExpoPushSender(PushSender):
    """
    Batching client for the Expo Push API.

    Usage:
        sender = ExpoPushSender()
        outcomes = await sender.send_batch(PushMessage("Title", "Body"), tokens)
        await sender.aclose()
    """

    name = "expo"

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        batch_size: Optional[int] = None,
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url or settings.EXPO_PUSH_URL
        self.batch_size = batch_size or settings.PUSH_BATCH_SIZE
        self.timeout_seconds = timeout_seconds
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    @staticmethod
    def _build_payload(message: PushMessage, token: str) -> Dict[str, Any]:
        return {
            "to": token,
            "title": message.title,
            "body": message.body,
            "data": message.data,
            "sound": "default",
            "channelId": message.channel_id,
            "priority": "high",
        }

    async def _post_batch(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        client = await self._get_client()
        response = await client.post(
            self.url,
            json=messages,
            headers={
                "Accept": "application/json",
                "Accept-Encoding": "gzip, deflate",
                "Content-Type": "application/json",
            },
        )
        response.raise_for_status()
        tickets = response.json().get("data")
        if not isinstance(tickets, list):
            raise ValueError("Expo response has no ticket list")
        return tickets

    async def send_batch(
        self, message: PushMessage, tokens: Sequence[str],
    ) -> List[RecipientOutcome]:
        outcomes: List[RecipientOutcome] = []

        valid: List[str] = []
        for token in tokens:
            if is_expo_push_token(token):
                valid.append(token)
            else:
                logger.warning("Invalid Expo push token: %s", mask_address(str(token)))
                outcomes.append(RecipientOutcome(
                    recipient=token, success=False,
                    error="Invalid Expo push token", invalid_token=True,
                ))

        for start in range(0, len(valid), self.batch_size):
            chunk = valid[start:start + self.batch_size]
            payload = [self._build_payload(message, t) for t in chunk]
            try:
                tickets = await self._post_batch(payload)
            except (httpx.HTTPError, ValueError) as e:
                logger.error(
                    "Expo batch %d failed (%d messages): %s",
                    start // self.batch_size + 1, len(chunk), e,
                    extra={"channel": self.channel.value, "recipient_count": len(chunk)},
                )
                outcomes.extend(
                    RecipientOutcome(recipient=t, success=False, error=f"Batch error: {e}")
                    for t in chunk
                )
                continue

            for index, token in enumerate(chunk):
                ticket = tickets[index] if index < len(tickets) else {}
                outcomes.append(self._outcome_from_ticket(token, ticket))

        sent = sum(1 for o in outcomes if o.success)
        logger.info(
            "Push complete: %d sent, %d failed", sent, len(outcomes) - sent,
            extra={"channel": self.channel.value, "recipient_count": len(outcomes)},
        )
        return outcomes

    @staticmethod
    def _outcome_from_ticket(token: str, ticket: Dict[str, Any]) -> RecipientOutcome:
        if ticket.get("status") == "ok":
            return RecipientOutcome(recipient=token, success=True, provider_id=ticket.get("id"))

        details = ticket.get("details") or {}
        error = ticket.get("message") or "No ticket returned"
        if details.get("error") == _DEVICE_NOT_REGISTERED:
            logger.warning("Device not registered: %s", mask_address(token))
            return RecipientOutcome(
                recipient=token, success=False, error=error, invalid_token=True,
            )
        logger.error("Push failed for %s: %s", mask_address(token), error)
        return RecipientOutcome(recipient=token, success=False, error=error)
