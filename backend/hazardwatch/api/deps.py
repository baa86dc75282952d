"""
Shared service objects for the HTTP layer.

One ServiceContainer is built at startup (see main.lifespan) and kept on
``app.state.services``. Route handlers receive it through the
``get_services`` dependency, so tests can hand a container of in-memory
collaborators to ``create_app``.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from fastapi import Request

from backend.hazardwatch.alerts.channels import ExpoPushSender, build_email_sender
from backend.hazardwatch.alerts.delivery_log import (
    DeliveryLogger,
    InMemoryDeliveryLogSink,
    SqlDeliveryLogSink,
)
from backend.hazardwatch.alerts.dispatcher import NotificationDispatcher
from backend.hazardwatch.alerts.matcher import MatchPolicy
from backend.hazardwatch.alerts.subscribers import InMemorySubscriberStore, SubscriberStore
from backend.hazardwatch.core.config import settings
from backend.hazardwatch.core.database import get_session_factory
from backend.hazardwatch.core.logging_config import mask_address
from backend.hazardwatch.ratelimit import RateLimiter, build_rate_limit_store
from backend.hazardwatch.reference.resolver import ReferenceData

logger = logging.getLogger(__name__)

LinkIssuer = Callable[[str], Awaitable[None]]


async def log_only_link_issuer(email: str) -> None:
    """Development issuer: logs that a link would have been sent."""
    token = secrets.token_hex(32)
    logger.info("Sign-in link issued for %s (token %s...)", mask_address(email), token[:6])


@dataclass
class ServiceContainer:
    reference: ReferenceData
    subscribers: SubscriberStore
    dispatcher: NotificationDispatcher
    rate_limiter: RateLimiter
    link_issuer: LinkIssuer = field(default=log_only_link_issuer)

    async def aclose(self) -> None:
        await self.dispatcher.push_sender.aclose()


def build_delivery_logger() -> DeliveryLogger:
    if settings.DELIVERY_LOG_BACKEND.lower() == "sql":
        return DeliveryLogger(SqlDeliveryLogSink(get_session_factory()))
    return DeliveryLogger(InMemoryDeliveryLogSink())


def build_services(reference: Optional[ReferenceData] = None) -> ServiceContainer:
    """Wire production collaborators from settings."""
    dispatcher = NotificationDispatcher(
        build_email_sender(),
        ExpoPushSender(),
        build_delivery_logger(),
        policy=MatchPolicy.from_settings(),
    )
    return ServiceContainer(
        reference=reference or ReferenceData(),
        subscribers=InMemorySubscriberStore(),
        dispatcher=dispatcher,
        rate_limiter=RateLimiter.from_settings(build_rate_limit_store()),
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
