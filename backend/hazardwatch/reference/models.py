"""
models.py — Regulatory reference data and measurement types.

Defines:
    • SafetyStatus     — three-level status of a measurement
    • ThresholdStatus  — regulatory status of a substance in a jurisdiction
    • Substance        — a measured substance and its direction semantics
    • Jurisdiction     — a regulatory scope with an optional parent
    • Threshold        — limit + warning ratio for (substance, jurisdiction)
    • Measurement      — one append-only reading at a location

═══════════════════════════════════════════════════════════════════════════
JURISDICTION HIERARCHY
═══════════════════════════════════════════════════════════════════════════

    WHO  (global default)
     ├── US          (federal)
     │    ├── US-NY  (state)
     │    └── US-CA
     ├── CA
     │    └── CA-QC  (province)
     └── EU

Parents are stored as plain codes, not object references. A state that
has no threshold of its own falls back to its country, and a country
falls back to WHO.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple

DEFAULT_JURISDICTION = "WHO"
DEFAULT_WARNING_RATIO = 0.8


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class SafetyStatus(str, Enum):
    """Safety status of a measurement against its resolved threshold."""
    DANGER  = "danger"
    WARNING = "warning"
    SAFE    = "safe"


class Severity(IntEnum):
    """Integer ordering of SafetyStatus — higher is worse."""
    SAFE    = 0
    WARNING = 1
    DANGER  = 2


def severity(status: SafetyStatus) -> Severity:
    """Map a SafetyStatus to its comparable severity."""
    return Severity[SafetyStatus(status).name]


class ThresholdStatus(str, Enum):
    """Regulatory status of a substance within one jurisdiction."""
    REGULATED      = "regulated"       # has a numeric limit
    NOT_CONTROLLED = "not_controlled"  # no limit, cannot evaluate
    BANNED         = "banned"          # any presence is unsafe
    NOT_APPROVED   = "not_approved"    # evaluated against its limit like regulated


# ═══════════════════════════════════════════════════════════════════════════
# Reference Data
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Substance:
    """
    A measured substance (contaminant).

    Attributes
    ----------
    id : str
        Stable identifier, e.g. "nitrate", "lead".
    higher_is_bad : bool
        True if a larger value means worse safety. False for required
        minimums (e.g. residual disinfectant).
    name : str
        Display name used in notification copy.
    unit : str
        Unit of measurement, e.g. "mg/L".
    """
    id: str
    higher_is_bad: bool = True
    name: str = ""
    unit: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class Jurisdiction:
    """A regulatory scope that may defer to a parent for unset thresholds."""
    code: str
    parent_code: Optional[str] = None
    name: str = ""
    is_default: bool = False


@dataclass(frozen=True)
class Threshold:
    """
    Regulatory limit for one substance in one jurisdiction.

    ``warning_ratio`` of None is coerced to the 0.8 default at
    construction, so consumers never see an unset ratio.
    """
    substance_id: str
    jurisdiction_code: str
    limit_value: Optional[float] = None
    warning_ratio: float = DEFAULT_WARNING_RATIO
    status: ThresholdStatus = ThresholdStatus.REGULATED

    def __post_init__(self) -> None:
        if self.warning_ratio is None:
            object.__setattr__(self, "warning_ratio", DEFAULT_WARNING_RATIO)
        object.__setattr__(self, "status", ThresholdStatus(self.status))

    @property
    def key(self) -> Tuple[str, str]:
        return (self.substance_id, self.jurisdiction_code)

    @property
    def warning_value(self) -> Optional[float]:
        """Value at which WARNING begins, or None without a limit."""
        if self.limit_value is None:
            return None
        return self.limit_value * self.warning_ratio

    def to_dict(self) -> Dict[str, Any]:
        return {
            "substance_id": self.substance_id,
            "jurisdiction_code": self.jurisdiction_code,
            "limit_value": self.limit_value,
            "warning_ratio": self.warning_ratio,
            "warning_value": self.warning_value,
            "status": self.status.value,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Measurements
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Measurement:
    """One reading of a substance at a location. Never mutated."""
    substance_id: str
    location_key: str
    value: float
    measured_at: datetime = field(default_factory=_now)
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "substance_id": self.substance_id,
            "location_key": self.location_key,
            "value": self.value,
            "measured_at": self.measured_at.isoformat(),
            "source": self.source,
        }
