"""
events.py — Turn measurement changes into notification events.

A status_change event is produced only when the evaluated status of a
substance at a location actually moves. Both readings are evaluated
against the same jurisdiction and the same reference snapshot.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.hazardwatch.alerts.models import NotificationEvent, TriggerType
from backend.hazardwatch.core.errors import ValidationError
from backend.hazardwatch.reference.evaluator import measurement_status
from backend.hazardwatch.reference.models import Measurement
from backend.hazardwatch.reference.resolver import ReferenceSnapshot

logger = logging.getLogger(__name__)


def build_status_change_event(
    previous: Measurement,
    current: Measurement,
    jurisdiction_code: str,
    reference: ReferenceSnapshot,
    *,
    city_name: Optional[str] = None,
) -> Optional[NotificationEvent]:
    """
    Compare two readings of one substance at one location.

    Returns
    -------
    NotificationEvent or None
        None when the status is unchanged.

    Raises
    ------
    ValidationError
        The two measurements are for different substances or locations.
    """
    if (previous.substance_id, previous.location_key) != (current.substance_id, current.location_key):
        raise ValidationError(
            "Measurements must share substance and location",
            substance_ids=[previous.substance_id, current.substance_id],
            location_keys=[previous.location_key, current.location_key],
        )

    old_status = measurement_status(previous, jurisdiction_code, reference)
    new_status = measurement_status(current, jurisdiction_code, reference)
    if old_status == new_status:
        return None

    logger.info(
        "Status changed for %s in %s: %s -> %s",
        current.substance_id, current.location_key, old_status.value, new_status.value,
        extra={"location_key": current.location_key},
    )

    substance = reference.substance(current.substance_id)
    return NotificationEvent(
        trigger_type=TriggerType.STATUS_CHANGE,
        location_key=current.location_key,
        substance_id=current.substance_id,
        substance_name=substance.display_name if substance else current.substance_id,
        old_status=old_status,
        new_status=new_status,
        current_value=current.value,
        unit=substance.unit if substance and substance.unit else None,
        city_name=city_name,
    )
