"""
FastAPI route: notification dispatch.

Provides endpoints to:
    POST /api/v1/notifications/dispatch   — fan an event out to subscribers

Delivery failures never turn into HTTP errors; they are reported in the
response body. Only a malformed event is rejected (422).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.hazardwatch.alerts.subscribers import process_location_event
from backend.hazardwatch.api.deps import ServiceContainer, get_services
from backend.hazardwatch.api.schemas import DispatchResponse, NotificationEventIn

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.post(
    "/dispatch",
    response_model=DispatchResponse,
    summary="Dispatch a notification event",
    description=(
        "Loads the subscribers of the event's location, filters them by "
        "their alert preferences and delivers over email and push."
    ),
)
async def dispatch_event(
    request: NotificationEventIn,
    services: ServiceContainer = Depends(get_services),
):
    result = await process_location_event(
        request.to_event(), services.subscribers, services.dispatcher,
    )
    return result.to_dict()
