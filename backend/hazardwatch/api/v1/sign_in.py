"""
FastAPI route: passwordless sign-in link requests.

Provides endpoints to:
    POST /api/v1/sign-in/request   — email a sign-in link (rate limited)

Flow:
    1. Validate the address (422 on malformed input)
    2. reserve()  → atomically takes a slot; 429 + Retry-After at the cap
    3. Hand off to the link issuer
    4. release()  → slot handed back if the issuer failed
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from backend.hazardwatch.api.deps import ServiceContainer, get_services
from backend.hazardwatch.api.schemas import SignInRequest, SignInResponse
from backend.hazardwatch.core.logging_config import mask_address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sign-in", tags=["sign-in"])


@router.post(
    "/request",
    response_model=SignInResponse,
    summary="Request a sign-in link",
    responses={429: {"description": "Too many requests for this address"}},
)
async def request_link(
    request: SignInRequest,
    services: ServiceContainer = Depends(get_services),
):
    limiter = services.rate_limiter
    reservation = await limiter.reserve(request.email)

    try:
        await services.link_issuer(request.email)
    except Exception:
        # Failed issues are not counted against the address.
        await limiter.release(request.email, reservation)
        logger.warning("Sign-in link for %s not issued", mask_address(request.email))
        raise

    logger.info("Sign-in link requested for %s", mask_address(request.email))
    return SignInResponse(
        message="Check your email for a sign-in link.",
        remaining=reservation.remaining,
    )
