"""
evaluator.py — Map a measured value to a SafetyStatus.

═══════════════════════════════════════════════════════════════════════════
RULES (first match wins)
═══════════════════════════════════════════════════════════════════════════

    1. No threshold, or status BANNED          → DANGER
    2. NOT_CONTROLLED, or no numeric limit     → SAFE
    3. warn_at = limit × warning_ratio  (ratio defaults to 0.8)
    4. limit == 0 and value == 0               → SAFE
    5. higher is bad:  value ≥ limit   → DANGER
                       value ≥ warn_at → WARNING
                       otherwise       → SAFE
    6. lower is bad:   value ≤ limit   → DANGER
                       value ≤ warn_at → WARNING
                       otherwise       → SAFE

Example (nitrate, limit 15 mg/L, ratio 0.8, warn_at 12):

    value 10 → SAFE     value 12 → WARNING     value 16 → DANGER

The evaluation is pure and total: every input yields exactly one of the
three statuses and nothing is raised.
"""

from __future__ import annotations

from typing import Optional

from backend.hazardwatch.reference.models import (
    DEFAULT_WARNING_RATIO,
    Measurement,
    SafetyStatus,
    Threshold,
    ThresholdStatus,
)
from backend.hazardwatch.reference.resolver import ReferenceSnapshot, ThresholdResolver


def evaluate_status(
    value: float,
    threshold: Optional[Threshold],
    higher_is_bad: bool = True,
) -> SafetyStatus:
    """
    Evaluate one value against its resolved threshold.

    Parameters
    ----------
    value : float
        Measured value in the threshold's unit.
    threshold : Threshold or None
        Result of ThresholdResolver.resolve.
    higher_is_bad : bool
        Direction semantics of the substance.

    Returns
    -------
    SafetyStatus
    """
    if threshold is None or threshold.status == ThresholdStatus.BANNED:
        return SafetyStatus.DANGER

    if threshold.status == ThresholdStatus.NOT_CONTROLLED or threshold.limit_value is None:
        return SafetyStatus.SAFE

    limit = threshold.limit_value
    ratio = threshold.warning_ratio if threshold.warning_ratio is not None else DEFAULT_WARNING_RATIO
    warn_at = limit * ratio

    # zero-tolerance substance that is absent
    if limit == 0 and value == 0:
        return SafetyStatus.SAFE

    if higher_is_bad:
        if value >= limit:
            return SafetyStatus.DANGER
        if value >= warn_at:
            return SafetyStatus.WARNING
        return SafetyStatus.SAFE

    if value <= limit:
        return SafetyStatus.DANGER
    if value <= warn_at:
        return SafetyStatus.WARNING
    return SafetyStatus.SAFE


def measurement_status(
    measurement: Measurement,
    jurisdiction_code: str,
    reference: ReferenceSnapshot,
) -> SafetyStatus:
    """Resolve the threshold for a measurement and evaluate it."""
    threshold = ThresholdResolver(reference).resolve(
        measurement.substance_id, jurisdiction_code,
    )
    substance = reference.substance(measurement.substance_id)
    higher_is_bad = substance.higher_is_bad if substance is not None else True
    return evaluate_status(measurement.value, threshold, higher_is_bad)
