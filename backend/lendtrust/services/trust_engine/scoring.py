"""Aggregation & scoring: turns active risk entries into a displayable verdict.

Pure functions only. The verdict is always re-derivable from the ledger's
active entries and is never stored as ground truth.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Protocol

from lendtrust.models.risk import RiskReason, RiskEntryStatus, SYSTEM_REPORTER

SEVERITY_WEIGHTS: dict[RiskReason, int] = {
    RiskReason.FRAUD: 40,
    RiskReason.REPEATED_DEFAULTS: 30,
    RiskReason.FALSE_INFORMATION: 20,
    RiskReason.HARASSMENT: 15,
    RiskReason.OTHER: 10,
}

MAX_SCORE = 100
HIGH_RISK_THRESHOLD = 40
EXTREME_LENDER_COUNT = 3

CATEGORY_NONE = "none"
CATEGORY_MODERATE = "moderate"
CATEGORY_HIGH = "high"
CATEGORY_EXTREME = "extreme"
CATEGORY_UNKNOWN = "unknown"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class Scorable(Protocol):
    reporter_key: str
    reason: RiskReason


@dataclass(frozen=True)
class RiskVerdict:
    risk_score: int
    risk_category: str
    reporting_lenders: int

    def to_dict(self) -> dict:
        return {
            "risk_score": self.risk_score,
            "risk_category": self.risk_category,
            "reporting_lenders": self.reporting_lenders,
        }


NO_RISK = RiskVerdict(risk_score=0, risk_category=CATEGORY_NONE, reporting_lenders=0)

# Returned on the display path when the ledger cannot be read
RISK_UNKNOWN = RiskVerdict(risk_score=0, risk_category=CATEGORY_UNKNOWN, reporting_lenders=0)


def severity_weight(reason: RiskReason | str) -> int:
    return SEVERITY_WEIGHTS[RiskReason(reason)]


def _timestamp(entry) -> datetime:
    value = getattr(entry, "created_at", None) or getattr(entry, "reported_at", None)
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        # SQLite hands back naive datetimes for timezone-aware columns
        return value.replace(tzinfo=timezone.utc)
    return value


def _in_order(entries: Iterable[Scorable]) -> list[Scorable]:
    """Oldest first by ``created_at`` (``reported_at`` on snapshots), then by id."""
    return sorted(entries, key=lambda e: (_timestamp(e), getattr(e, "id", None) or 0))


def weighted_total(entries: Iterable[Scorable]) -> float:
    """Sum severity weights; repeat entries from one reporter count half."""
    seen: set[str] = set()
    raw = 0.0
    for entry in _in_order(entries):
        weight = severity_weight(entry.reason)
        if entry.reporter_key in seen:
            raw += weight / 2
        else:
            raw += weight
            seen.add(entry.reporter_key)
    return raw


def capped_score(raw: float) -> int:
    return min(MAX_SCORE, int(math.floor(raw)))


def categorize(risk_score: int, reporting_lenders: int, has_active: bool) -> str:
    if not has_active:
        return CATEGORY_NONE
    if reporting_lenders >= EXTREME_LENDER_COUNT:
        return CATEGORY_EXTREME
    if risk_score >= HIGH_RISK_THRESHOLD:
        return CATEGORY_HIGH
    if risk_score > 0:
        return CATEGORY_MODERATE
    return CATEGORY_NONE


def score(entries: Iterable[Scorable]) -> RiskVerdict:
    """Score a borrower from their ledger entries.

    Entries that are not ``active`` are ignored, so callers may pass the
    full ledger or the output of ``list_active``.
    """
    active = [
        e for e in entries
        if getattr(e, "status", RiskEntryStatus.ACTIVE.value) == RiskEntryStatus.ACTIVE.value
    ]
    if not active:
        return NO_RISK

    lenders = {e.reporter_key for e in active if e.reporter_key != SYSTEM_REPORTER}
    risk_score = capped_score(weighted_total(active))
    return RiskVerdict(
        risk_score=risk_score,
        risk_category=categorize(risk_score, len(lenders), True),
        reporting_lenders=len(lenders),
    )


def score_snapshots(snapshots: Iterable[Scorable]) -> int:
    """Identity-level score: every report ever linked counts, resolved or not."""
    return capped_score(weighted_total(snapshots))
