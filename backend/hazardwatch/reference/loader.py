"""
loader.py — Build reference snapshots from JSON documents.

Document layout:

    {
      "substances":    [{"id": "nitrate", "name": "Nitrate", "unit": "mg/L",
                         "higher_is_bad": true}, ...],
      "jurisdictions": [{"code": "US-NY", "parent_code": "US"}, ...],
      "thresholds":    [{"substance_id": "nitrate", "jurisdiction_code": "US",
                         "limit_value": 10, "warning_ratio": 0.8,
                         "status": "regulated"}, ...]
    }

Without REFERENCE_DATA_PATH the bundled default_reference.json is used.
Thresholds without a warning_ratio get DEFAULT_WARNING_RATIO.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from backend.hazardwatch.core.config import settings
from backend.hazardwatch.core.errors import ValidationError
from backend.hazardwatch.reference.models import Jurisdiction, Substance, Threshold
from backend.hazardwatch.reference.resolver import ReferenceSnapshot

logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_PATH = Path(__file__).with_name("default_reference.json")


def snapshot_from_dict(document: Dict[str, Any]) -> ReferenceSnapshot:
    """Parse a reference document. Raises ValidationError on bad records."""
    try:
        substances = [Substance(**s) for s in document.get("substances", [])]
        jurisdictions = [Jurisdiction(**j) for j in document.get("jurisdictions", [])]
        thresholds = [
            Threshold(**{"warning_ratio": settings.DEFAULT_WARNING_RATIO, **t})
            for t in document.get("thresholds", [])
        ]
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Malformed reference record: {e}") from e
    return ReferenceSnapshot.from_records(substances, jurisdictions, thresholds)


def load_snapshot(path: Optional[Union[str, Path]] = None) -> ReferenceSnapshot:
    """Read and validate a reference document from disk."""
    source = Path(path or settings.REFERENCE_DATA_PATH or DEFAULT_REFERENCE_PATH)
    with source.open(encoding="utf-8") as fh:
        document = json.load(fh)
    snapshot = snapshot_from_dict(document)
    logger.info("Loaded reference data from %s: %s", source.name, snapshot.summary())
    return snapshot
