"""Risk ledger: append/resolve store for risk entries and their history.

Every mutation writes its ``RiskHistoryEvent`` through the same session, so
the caller's commit (or rollback) always covers both.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence

from sqlalchemy import select, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lendtrust.models.risk import (
    RiskEntry,
    RiskEntryStatus,
    RiskHistoryEvent,
    RiskReason,
    RiskAction,
    reporter_key_for,
)
from lendtrust.services.trust_engine.errors import DuplicateActiveReport

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _record_event(
    db: AsyncSession,
    *,
    borrower_id: int,
    action: RiskAction,
    reason: str,
    performed_by: int | None,
    entry_id: int | None,
) -> RiskHistoryEvent:
    event = RiskHistoryEvent(
        borrower_id=borrower_id,
        risk_entry_id=entry_id,
        action=action.value,
        reason=reason or "",
        performed_by_id=performed_by,
        performed_at=_now(),
    )
    db.add(event)
    return event


async def _active_for(db: AsyncSession, borrower_id: int, reporter_key: str) -> RiskEntry | None:
    result = await db.execute(
        select(RiskEntry).where(
            RiskEntry.borrower_id == borrower_id,
            RiskEntry.reporter_key == reporter_key,
            RiskEntry.status == RiskEntryStatus.ACTIVE.value,
        )
    )
    return result.scalar_one_or_none()


async def append_entry(
    db: AsyncSession,
    borrower_id: int,
    reported_by: int | None,
    reason: RiskReason,
    amount_owed: Decimal | float | int = 0,
    evidence: str = "",
    is_system_generated: bool = False,
    loan_id: int | None = None,
) -> RiskEntry:
    """Append an active entry plus its ``marked_risky`` event.

    Raises ``DuplicateActiveReport`` (carrying the existing row) when the
    reporter already has an active entry for the borrower, including when a
    concurrent insert wins the race on the partial unique index.
    """
    amount = Decimal(str(amount_owed or 0))
    if amount < 0:
        raise ValueError("amount_owed must be non-negative")

    reporter_key = reporter_key_for(None if is_system_generated else reported_by)

    existing = await _active_for(db, borrower_id, reporter_key)
    if existing is not None:
        raise DuplicateActiveReport(existing)

    entry = RiskEntry(
        borrower_id=borrower_id,
        reported_by_id=None if is_system_generated else reported_by,
        reporter_key=reporter_key,
        reason=RiskReason(reason),
        amount_owed=amount,
        evidence=evidence or "",
        status=RiskEntryStatus.ACTIVE.value,
        is_system_generated=is_system_generated,
        loan_id=loan_id,
        created_at=_now(),
    )
    try:
        async with db.begin_nested():
            db.add(entry)
            await db.flush()
    except IntegrityError:
        winner = await _active_for(db, borrower_id, reporter_key)
        if winner is None:
            raise
        logger.info(
            "Concurrent report deduplicated: borrower=%s reporter=%s entry=%s",
            borrower_id, reporter_key, winner.id,
        )
        raise DuplicateActiveReport(winner)

    _record_event(
        db,
        borrower_id=borrower_id,
        action=RiskAction.MARKED_RISKY,
        reason=RiskReason(reason).value if not evidence else f"{RiskReason(reason).value}: {evidence}",
        performed_by=entry.reported_by_id,
        entry_id=entry.id,
    )
    await db.flush()
    return entry


async def resolve_entries(
    db: AsyncSession,
    borrower_id: int,
    predicate: Any | Sequence[Any] | None = None,
    *,
    reason: str,
    performed_by: int | None,
    action: RiskAction = RiskAction.MARKED_IMPROVED,
) -> int:
    """Move matching active entries to ``removed``; return how many moved.

    ``predicate`` is one SQLAlchemy criterion or a sequence of them, applied
    in the store on top of the borrower/active filter.
    """
    criteria = [
        RiskEntry.borrower_id == borrower_id,
        RiskEntry.status == RiskEntryStatus.ACTIVE.value,
    ]
    if predicate is not None:
        if isinstance(predicate, (list, tuple)):
            criteria.extend(predicate)
        else:
            criteria.append(predicate)

    result = await db.execute(
        select(RiskEntry).where(*criteria).order_by(RiskEntry.id).with_for_update()
    )
    entries = result.scalars().all()

    resolved_at = _now()
    for entry in entries:
        entry.status = RiskEntryStatus.REMOVED.value
        entry.resolved_by_id = performed_by
        entry.resolved_at = resolved_at
        entry.resolution_reason = reason
        _record_event(
            db,
            borrower_id=borrower_id,
            action=action,
            reason=reason,
            performed_by=performed_by,
            entry_id=entry.id,
        )
    if entries:
        await db.flush()
    return len(entries)


async def set_status(
    db: AsyncSession,
    entry: RiskEntry,
    new_status: RiskEntryStatus,
    *,
    action: RiskAction,
    reason: str,
    performed_by: int | None,
) -> RiskEntry:
    """Single-entry transition used by withdrawals and appeals."""
    entry.status = new_status.value
    if new_status == RiskEntryStatus.REMOVED:
        entry.resolved_by_id = performed_by
        entry.resolved_at = _now()
        entry.resolution_reason = reason
    elif new_status == RiskEntryStatus.ACTIVE:
        entry.resolved_by_id = None
        entry.resolved_at = None
        entry.resolution_reason = None
    _record_event(
        db,
        borrower_id=entry.borrower_id,
        action=action,
        reason=reason,
        performed_by=performed_by,
        entry_id=entry.id,
    )
    await db.flush()
    return entry


async def list_active(db: AsyncSession, borrower_id: int) -> list[RiskEntry]:
    result = await db.execute(
        select(RiskEntry)
        .where(
            RiskEntry.borrower_id == borrower_id,
            RiskEntry.status == RiskEntryStatus.ACTIVE.value,
        )
        .order_by(RiskEntry.id)
    )
    return list(result.scalars().all())


async def list_entries(
    db: AsyncSession,
    borrower_id: int,
    statuses: Iterable[RiskEntryStatus] | None = None,
) -> list[RiskEntry]:
    query = select(RiskEntry).where(RiskEntry.borrower_id == borrower_id)
    if statuses is not None:
        query = query.where(RiskEntry.status.in_([s.value for s in statuses]))
    result = await db.execute(query.order_by(RiskEntry.id))
    return list(result.scalars().all())


async def has_any_entry(db: AsyncSession, borrower_id: int) -> bool:
    result = await db.execute(
        select(exists().where(RiskEntry.borrower_id == borrower_id))
    )
    return bool(result.scalar())


async def get_entry(db: AsyncSession, entry_id: int, *, for_update: bool = False) -> RiskEntry | None:
    query = select(RiskEntry).where(RiskEntry.id == entry_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()
