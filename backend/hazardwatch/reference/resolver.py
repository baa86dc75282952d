"""
resolver.py — Threshold lookup through the jurisdiction fallback chain.

Reference data (substances, jurisdictions, thresholds) is loaded from an
external store into an immutable ReferenceSnapshot. A ReferenceData holder
owns the current snapshot and replaces it wholesale on refresh, so a
dispatch that already captured a snapshot keeps reading consistent data.

═══════════════════════════════════════════════════════════════════════════
FALLBACK CHAIN
═══════════════════════════════════════════════════════════════════════════

    resolve("nitrate", "US-NY")

        1. ("nitrate", "US-NY")   exact match          → return
        2. ("nitrate", "US")      parent jurisdiction  → return
        3. ("nitrate", "WHO")     global default       → return
        4. None                   caller decides (evaluates as danger)

A missing threshold is never an error. State-specific regulation
overrides federal, federal overrides global.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from backend.hazardwatch.core.config import settings
from backend.hazardwatch.core.errors import ValidationError
from backend.hazardwatch.reference.models import (
    DEFAULT_JURISDICTION,
    Jurisdiction,
    Substance,
    Threshold,
)

logger = logging.getLogger(__name__)


# States / provinces that publish their own limits.
STATE_JURISDICTIONS: Dict[str, str] = {
    # US
    "NY": "US-NY",
    "CA": "US-CA",
    "TX": "US-TX",
    "FL": "US-FL",
    "IL": "US-IL",
    "WA": "US-WA",
    "GA": "US-GA",
    "AZ": "US-AZ",
    "CO": "US-CO",
    "MA": "US-MA",
    # Canada
    "QC": "CA-QC",
    "ON": "CA-ON",
    "BC": "CA-BC",
    "AB": "CA-AB",
}

_FEDERAL_JURISDICTIONS = ("US", "CA", "EU")


def jurisdiction_for_region(state: Optional[str], country: Optional[str]) -> str:
    """
    Map a state/province and country to a threshold jurisdiction code.

    Examples
    --------
    >>> jurisdiction_for_region("NY", "US")
    'US-NY'
    >>> jurisdiction_for_region("OH", "US")
    'US'
    >>> jurisdiction_for_region(None, "JP")
    'WHO'
    """
    state_code = (state or "").strip().upper()
    country_code = (country or "").strip().upper()

    if state_code in STATE_JURISDICTIONS:
        return STATE_JURISDICTIONS[state_code]
    if country_code in _FEDERAL_JURISDICTIONS:
        return country_code
    return DEFAULT_JURISDICTION


# ═══════════════════════════════════════════════════════════════════════════
# Snapshot
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ReferenceSnapshot:
    """
    Read-only view of all reference data at one point in time.

    Build with ``from_records`` so the uniqueness and referential checks
    run; the mappings are wrapped in MappingProxyType and cannot be
    mutated after construction.
    """
    substances: Mapping[str, Substance] = field(default_factory=dict)
    jurisdictions: Mapping[str, Jurisdiction] = field(default_factory=dict)
    thresholds: Mapping[Tuple[str, str], Threshold] = field(default_factory=dict)

    @classmethod
    def from_records(
        cls,
        substances: Iterable[Substance],
        jurisdictions: Iterable[Jurisdiction],
        thresholds: Iterable[Threshold],
    ) -> "ReferenceSnapshot":
        """
        Validate and freeze a set of reference records.

        Raises
        ------
        ValidationError
            On a duplicate substance id, jurisdiction code or threshold key,
            or when a threshold / jurisdiction points at an unknown record.
        """
        substance_map: Dict[str, Substance] = {}
        for s in substances:
            if s.id in substance_map:
                raise ValidationError(f"Duplicate substance '{s.id}'", field="substances")
            substance_map[s.id] = s

        jurisdiction_map: Dict[str, Jurisdiction] = {}
        for j in jurisdictions:
            if j.code in jurisdiction_map:
                raise ValidationError(
                    f"Duplicate jurisdiction '{j.code}'", field="jurisdictions",
                )
            jurisdiction_map[j.code] = j

        for j in jurisdiction_map.values():
            if j.parent_code is not None and j.parent_code not in jurisdiction_map:
                raise ValidationError(
                    f"Jurisdiction '{j.code}' has unknown parent '{j.parent_code}'",
                    field="jurisdictions",
                )

        threshold_map: Dict[Tuple[str, str], Threshold] = {}
        for t in thresholds:
            if t.key in threshold_map:
                raise ValidationError(
                    f"Duplicate threshold for {t.substance_id} in {t.jurisdiction_code}",
                    field="thresholds",
                )
            if t.substance_id not in substance_map:
                raise ValidationError(
                    f"Threshold references unknown substance '{t.substance_id}'",
                    field="thresholds",
                )
            if t.jurisdiction_code not in jurisdiction_map:
                raise ValidationError(
                    f"Threshold references unknown jurisdiction '{t.jurisdiction_code}'",
                    field="thresholds",
                )
            threshold_map[t.key] = t

        return cls(
            substances=MappingProxyType(substance_map),
            jurisdictions=MappingProxyType(jurisdiction_map),
            thresholds=MappingProxyType(threshold_map),
        )

    @classmethod
    def empty(cls) -> "ReferenceSnapshot":
        return cls.from_records([], [], [])

    def substance(self, substance_id: str) -> Optional[Substance]:
        return self.substances.get(substance_id)

    def jurisdiction(self, code: str) -> Optional[Jurisdiction]:
        return self.jurisdictions.get(code)

    def summary(self) -> Dict[str, Any]:
        return {
            "substances": len(self.substances),
            "jurisdictions": len(self.jurisdictions),
            "thresholds": len(self.thresholds),
        }


class ReferenceData:
    """
    Holder for the current ReferenceSnapshot.

    ``swap`` replaces the whole snapshot in one assignment. Readers call
    ``snapshot`` once per unit of work and keep using that object.
    """

    def __init__(self, snapshot: Optional[ReferenceSnapshot] = None):
        self._snapshot = snapshot or ReferenceSnapshot.empty()
        self._lock = threading.Lock()
        self._version = 0

    @property
    def snapshot(self) -> ReferenceSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_loaded(self) -> bool:
        return bool(self._snapshot.thresholds)

    def swap(self, snapshot: ReferenceSnapshot) -> ReferenceSnapshot:
        """Install a new snapshot and return the one it replaced."""
        with self._lock:
            previous = self._snapshot
            self._snapshot = snapshot
            self._version += 1
        logger.info(
            "Reference data refreshed (v%d): %s", self._version, snapshot.summary(),
        )
        return previous


# ═══════════════════════════════════════════════════════════════════════════
# Resolver
# ═══════════════════════════════════════════════════════════════════════════

class ThresholdResolver:
    """Resolve the applicable Threshold for (substance, jurisdiction)."""

    def __init__(
        self,
        reference: ReferenceSnapshot,
        default_jurisdiction: Optional[str] = None,
    ):
        self.reference = reference
        self.default_jurisdiction = default_jurisdiction or settings.DEFAULT_JURISDICTION

    def resolve(self, substance_id: str, jurisdiction_code: str) -> Optional[Threshold]:
        """
        Walk exact → parent → global default.

        Returns
        -------
        Threshold or None
            None only when not even the global default has a threshold.
        """
        thresholds = self.reference.thresholds

        exact = thresholds.get((substance_id, jurisdiction_code))
        if exact is not None:
            return exact

        jurisdiction = self.reference.jurisdiction(jurisdiction_code)
        if jurisdiction is not None and jurisdiction.parent_code:
            parent = thresholds.get((substance_id, jurisdiction.parent_code))
            if parent is not None:
                return parent

        fallback = thresholds.get((substance_id, self.default_jurisdiction))
        if fallback is None:
            logger.debug(
                "No threshold for %s in %s (or fallbacks)",
                substance_id, jurisdiction_code,
            )
        return fallback
