"""
base.py — Message types and sender interfaces shared by all channels.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from backend.hazardwatch.alerts.models import Channel, RecipientOutcome
from backend.hazardwatch.core.logging_config import mask_address, mask_addresses_in

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    html_body: str
    text_body: str


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    channel_id: str = "default"


class EmailSender:
    """
    Base email sender.

    Subclasses implement ``_deliver_one``; ``send_batch`` runs the
    addresses concurrently (at most ``max_concurrency`` in flight) and
    isolates each one, so one bad address never stops the rest.
    """

    channel = Channel.EMAIL
    name = "email"
    max_concurrency = 10

    async def send_batch(
        self, message: EmailMessage, addresses: Sequence[str],
    ) -> List[RecipientOutcome]:
        semaphore = asyncio.Semaphore(max(1, self.max_concurrency))

        async def deliver(address: str) -> RecipientOutcome:
            async with semaphore:
                try:
                    provider_id = await self._deliver_one(message, address)
                except Exception as e:
                    logger.warning(
                        "Email to %s failed: %s", mask_address(address), mask_addresses_in(e),
                        extra={"channel": self.channel.value},
                    )
                    return RecipientOutcome(recipient=address, success=False, error=str(e))
            return RecipientOutcome(recipient=address, success=True, provider_id=provider_id)

        outcomes = list(await asyncio.gather(*(deliver(a) for a in addresses)))

        sent = sum(1 for o in outcomes if o.success)
        logger.info(
            "Email batch via %s: %d sent, %d failed", self.name, sent, len(outcomes) - sent,
            extra={"channel": self.channel.value, "recipient_count": len(outcomes)},
        )
        return outcomes

    async def _deliver_one(self, message: EmailMessage, address: str) -> str:
        raise NotImplementedError

    @property
    def is_configured(self) -> bool:
        return True


class PushSender:
    """Base push sender. Subclasses implement ``send_batch``."""

    channel = Channel.PUSH
    name = "push"

    async def send_batch(
        self, message: PushMessage, tokens: Sequence[str],
    ) -> List[RecipientOutcome]:
        raise NotImplementedError

    @property
    def is_configured(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None
