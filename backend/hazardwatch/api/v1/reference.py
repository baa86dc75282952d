"""
FastAPI route: threshold resolution + status evaluation.

Provides endpoints to:
    POST /api/v1/reference/status   — evaluate a value for a substance
    GET  /api/v1/reference/summary  — counts in the loaded snapshot
    POST /api/v1/reference/refresh  — reload and swap the snapshot
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.hazardwatch.api.deps import ServiceContainer, get_services
from backend.hazardwatch.api.schemas import StatusRequest, StatusResponse
from backend.hazardwatch.core.errors import NotFoundError
from backend.hazardwatch.reference.evaluator import evaluate_status
from backend.hazardwatch.reference.loader import load_snapshot
from backend.hazardwatch.reference.resolver import ThresholdResolver, jurisdiction_for_region

router = APIRouter(prefix="/api/v1/reference", tags=["reference"])


@router.post(
    "/status",
    response_model=StatusResponse,
    summary="Evaluate a measured value",
)
async def evaluate(
    request: StatusRequest,
    services: ServiceContainer = Depends(get_services),
):
    snapshot = services.reference.snapshot
    substance = snapshot.substance(request.substance_id)
    if substance is None:
        raise NotFoundError("Substance", substance_id=request.substance_id)

    jurisdiction_code = request.jurisdiction_code or jurisdiction_for_region(
        request.state, request.country,
    )
    threshold = ThresholdResolver(snapshot).resolve(substance.id, jurisdiction_code)
    status = evaluate_status(request.value, threshold, substance.higher_is_bad)

    return StatusResponse(
        substance_id=substance.id,
        value=request.value,
        jurisdiction_code=jurisdiction_code,
        status=status,
        threshold=threshold.to_dict() if threshold else None,
    )


@router.get("/summary", summary="Loaded reference data")
async def summary(services: ServiceContainer = Depends(get_services)):
    return {
        **services.reference.snapshot.summary(),
        "version": services.reference.version,
    }


@router.post("/refresh", summary="Reload reference data from disk")
async def refresh(services: ServiceContainer = Depends(get_services)):
    services.reference.swap(load_snapshot())
    return {
        **services.reference.snapshot.summary(),
        "version": services.reference.version,
    }
