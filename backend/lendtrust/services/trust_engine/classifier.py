"""Risk classifier: per-borrower risk state machine.

States
------
normal    no entry has ever existed for the borrower
risky     at least one entry is active
improved  entries existed, none is active now

``risk_state`` on the account is always written from ``derive_risk_state``
after a mutation, so it cannot drift from the ledger. Mutations lock the
borrower row first; concurrent commands on one borrower therefore run one
after the other and the last committer's view wins without losing entries.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from lendtrust.auth_utils import (
    authorize_risk_actor,
    MARK_RISKY,
    MARK_IMPROVED,
    WITHDRAW_REPORT,
    FILE_APPEAL,
    REVIEW_APPEAL,
)
from lendtrust.config import settings
from lendtrust.models.audit import AuditLog
from lendtrust.models.loan import Loan, LoanStatus, OUTSTANDING_STATUSES
from lendtrust.models.risk import (
    RiskEntry,
    RiskEntryStatus,
    RiskReason,
    RiskAction,
    reporter_key_for,
)
from lendtrust.models.user import User, UserRole, RiskState
from lendtrust.services.trust_engine import identity as identity_resolver
from lendtrust.services.trust_engine import ledger
from lendtrust.services.trust_engine.errors import (
    DuplicateActiveReport,
    InvalidTransition,
    NotFound,
    TransientStoreFailure,
)
from lendtrust.services.trust_engine.scoring import severity_weight

logger = logging.getLogger(__name__)

REPUTATION_MAX = 100
REPUTATION_RECOVERY = 10


@dataclass
class MarkRiskyResult:
    risk_state: RiskState
    entry: RiskEntry
    created: bool
    borrower: User


@dataclass
class TransitionResult:
    risk_state: RiskState
    resolved: int
    borrower: User


def store_mutation(fn):
    """Turn data-store failures on a mutation into ``TransientStoreFailure``.

    The session's transaction is left for the caller to roll back; nothing
    from the failed command is committed.
    """
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except (OperationalError, DBAPIError) as exc:
            logger.error("Store failure in %s: %s", fn.__name__, exc)
            raise TransientStoreFailure() from exc
    return wrapper


# ── Helpers ─────────────────────────────────────────────────


async def _lock_borrower(db: AsyncSession, borrower_id: int) -> User:
    result = await db.execute(
        select(User)
        .where(User.id == borrower_id, User.role == UserRole.BORROWER)
        .with_for_update()
    )
    borrower = result.scalar_one_or_none()
    if borrower is None:
        raise NotFound(f"Borrower {borrower_id} not found")
    return borrower


async def derive_risk_state(db: AsyncSession, borrower_id: int) -> RiskState:
    if await ledger.list_active(db, borrower_id):
        return RiskState.RISKY
    if await ledger.has_any_entry(db, borrower_id):
        return RiskState.IMPROVED
    return RiskState.NORMAL


async def _refresh_state(db: AsyncSession, borrower: User) -> RiskState:
    new_state = await derive_risk_state(db, borrower.id)
    if borrower.risk_state != new_state:
        logger.info(
            "Borrower %s risk state %s -> %s",
            borrower.id, borrower.risk_state.value, new_state.value,
        )
        borrower.risk_state = new_state
        await db.flush()
    return new_state


async def _adjust_reputation(db: AsyncSession, borrower: User, delta: int) -> None:
    """Clamp-add ``delta`` to the reputation score inside the store."""
    if delta == 0:
        return
    target = User.reputation_score + delta
    await db.flush()
    await db.execute(
        update(User)
        .where(User.id == borrower.id)
        .values(
            reputation_score=case(
                (target < 0, 0),
                (target > REPUTATION_MAX, REPUTATION_MAX),
                else_=target,
            )
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(borrower)


def _audit(
    db: AsyncSession,
    *,
    borrower_id: int,
    action: str,
    actor_id: int | None,
    old_state: RiskState,
    new_state: RiskState,
    details: str,
) -> None:
    db.add(AuditLog(
        entity_type="borrower_risk",
        entity_id=borrower_id,
        action=action,
        user_id=actor_id,
        old_values={"risk_state": old_state.value},
        new_values={"risk_state": new_state.value},
        details=details,
    ))


# ── Commands ────────────────────────────────────────────────


@store_mutation
async def mark_risky(
    db: AsyncSession,
    borrower_id: int,
    reason: RiskReason | str,
    actor: User | None,
    *,
    amount_owed: Decimal | float | int = 0,
    evidence: str = "",
) -> MarkRiskyResult:
    """Record the actor's report against the borrower.

    Re-reporting while the actor's previous report is still active returns
    that report unchanged (``created=False``): no new entry, no history
    event, no identity update.
    """
    authorize_risk_actor(actor, MARK_RISKY, borrower_id=borrower_id)
    borrower = await _lock_borrower(db, borrower_id)
    reason = RiskReason(reason)

    try:
        entry = await ledger.append_entry(
            db,
            borrower_id=borrower.id,
            reported_by=actor.id,
            reason=reason,
            amount_owed=amount_owed,
            evidence=evidence,
            is_system_generated=False,
        )
    except DuplicateActiveReport as dup:
        logger.info(
            "Duplicate report ignored: borrower=%s reporter=%s entry=%s",
            borrower.id, actor.id, dup.existing.id,
        )
        return MarkRiskyResult(
            risk_state=borrower.risk_state, entry=dup.existing, created=False, borrower=borrower,
        )

    return await _after_new_entry(db, borrower, entry, actor.id, f"Reported for {reason.value}")


async def _after_new_entry(
    db: AsyncSession, borrower: User, entry: RiskEntry, actor_id: int | None, details: str,
) -> MarkRiskyResult:
    old_state = borrower.risk_state
    await _adjust_reputation(db, borrower, -(severity_weight(entry.reason) // 2))
    new_state = await _refresh_state(db, borrower)

    identity = await identity_resolver.identity_for_account(db, borrower)
    if identity is not None:
        await identity_resolver.on_report(db, identity, entry)

    _audit(
        db, borrower_id=borrower.id, action=RiskAction.MARKED_RISKY.value, actor_id=actor_id,
        old_state=old_state, new_state=new_state, details=details,
    )
    await db.flush()
    return MarkRiskyResult(risk_state=new_state, entry=entry, created=True, borrower=borrower)


@store_mutation
async def mark_improved(
    db: AsyncSession,
    borrower_id: int,
    reason: str,
    actor: User | None,
) -> TransitionResult:
    """Resolve the borrower's active reports.

    With ``improve_scope="all"`` any lender or admin clears every lender's
    report. With ``"own"`` a lender clears only their own, admins still
    clear all.
    """
    authorize_risk_actor(actor, MARK_IMPROVED, borrower_id=borrower_id)
    borrower = await _lock_borrower(db, borrower_id)
    old_state = borrower.risk_state

    predicate = None
    if settings.improve_scope == "own" and actor.role != UserRole.ADMIN:
        predicate = RiskEntry.reporter_key == reporter_key_for(actor.id)

    resolved = await ledger.resolve_entries(
        db, borrower.id, predicate,
        reason=reason or "Marked as improved",
        performed_by=actor.id,
    )
    await _adjust_reputation(db, borrower, resolved * REPUTATION_RECOVERY)
    new_state = await _refresh_state(db, borrower)

    if resolved:
        _audit(
            db, borrower_id=borrower.id, action=RiskAction.MARKED_IMPROVED.value, actor_id=actor.id,
            old_state=old_state, new_state=new_state,
            details=f"Resolved {resolved} active report(s): {reason}",
        )
        await db.flush()
    return TransitionResult(risk_state=new_state, resolved=resolved, borrower=borrower)


@store_mutation
async def auto_resolve_on_repayment(db: AsyncSession, loan_id: int) -> TransitionResult | None:
    """Clear platform-generated flags once a loan is fully repaid.

    Only system entries are touched, and only when the borrower owes
    nothing on any other loan. Returns ``None`` when the preconditions do
    not hold.
    """
    loan = (await db.execute(select(Loan).where(Loan.id == loan_id))).scalar_one_or_none()
    if loan is None:
        raise NotFound(f"Loan {loan_id} not found")
    if not loan.is_fully_repaid:
        logger.info("Loan %s not fully repaid; auto-resolve skipped", loan_id)
        return None

    borrower = await _lock_borrower(db, loan.borrower_id)

    other_outstanding = await db.execute(
        select(func.count(Loan.id)).where(
            Loan.borrower_id == borrower.id,
            Loan.id != loan.id,
            Loan.status.in_(OUTSTANDING_STATUSES),
            Loan.amount_outstanding > 0,
        )
    )
    if other_outstanding.scalar():
        logger.info("Borrower %s still has outstanding loans; auto-resolve skipped", borrower.id)
        return None

    old_state = borrower.risk_state
    resolved = await ledger.resolve_entries(
        db, borrower.id, RiskEntry.is_system_generated.is_(True),
        reason=f"Loan {loan.id} fully repaid",
        performed_by=None,
    )
    if not resolved:
        return TransitionResult(risk_state=old_state, resolved=0, borrower=borrower)

    await _adjust_reputation(db, borrower, resolved * REPUTATION_RECOVERY)
    new_state = await _refresh_state(db, borrower)
    _audit(
        db, borrower_id=borrower.id, action=RiskAction.MARKED_IMPROVED.value, actor_id=None,
        old_state=old_state, new_state=new_state,
        details=f"Auto-resolved {resolved} system flag(s) on repayment of loan {loan.id}",
    )
    await db.flush()
    return TransitionResult(risk_state=new_state, resolved=resolved, borrower=borrower)


@store_mutation
async def flag_missed_payment(db: AsyncSession, loan_id: int, evidence: str = "") -> MarkRiskyResult:
    """System detector entry point: flag the borrower of a loan in arrears."""
    loan = (await db.execute(select(Loan).where(Loan.id == loan_id))).scalar_one_or_none()
    if loan is None:
        raise NotFound(f"Loan {loan_id} not found")
    borrower = await _lock_borrower(db, loan.borrower_id)

    try:
        entry = await ledger.append_entry(
            db,
            borrower_id=borrower.id,
            reported_by=None,
            reason=RiskReason.REPEATED_DEFAULTS,
            amount_owed=loan.amount_outstanding,
            evidence=evidence or f"Missed payment on loan {loan.id}",
            is_system_generated=True,
            loan_id=loan.id,
        )
    except DuplicateActiveReport as dup:
        return MarkRiskyResult(
            risk_state=borrower.risk_state, entry=dup.existing, created=False, borrower=borrower,
        )
    return await _after_new_entry(db, borrower, entry, None, f"Missed payment on loan {loan.id}")


# ── Report withdrawal and appeals ───────────────────────────


async def _load_entry(db: AsyncSession, entry_id: int) -> tuple[RiskEntry, User]:
    entry = await ledger.get_entry(db, entry_id)
    if entry is None:
        raise NotFound(f"Risk entry {entry_id} not found")
    borrower = await _lock_borrower(db, entry.borrower_id)
    # Re-read under the borrower lock
    entry = await ledger.get_entry(db, entry_id, for_update=True)
    await db.refresh(entry)
    return entry, borrower


@store_mutation
async def withdraw_report(
    db: AsyncSession, entry_id: int, reason: str, actor: User | None,
) -> TransitionResult:
    """The reporting lender (or an admin) takes back an active report."""
    authorize_risk_actor(actor, WITHDRAW_REPORT)
    entry, borrower = await _load_entry(db, entry_id)
    authorize_risk_actor(
        actor, WITHDRAW_REPORT, borrower_id=borrower.id, owner_id=entry.reported_by_id or 0,
    )
    if entry.status != RiskEntryStatus.ACTIVE.value:
        raise InvalidTransition(f"Entry {entry_id} is {entry.status}, only active reports can be withdrawn")

    old_state = borrower.risk_state
    await ledger.set_status(
        db, entry, RiskEntryStatus.REMOVED,
        action=RiskAction.REPORT_WITHDRAWN, reason=reason, performed_by=actor.id,
    )
    await _adjust_reputation(db, borrower, REPUTATION_RECOVERY)
    new_state = await _refresh_state(db, borrower)
    _audit(
        db, borrower_id=borrower.id, action=RiskAction.REPORT_WITHDRAWN.value, actor_id=actor.id,
        old_state=old_state, new_state=new_state, details=f"Entry {entry.id} withdrawn: {reason}",
    )
    await db.flush()
    return TransitionResult(risk_state=new_state, resolved=1, borrower=borrower)


@store_mutation
async def file_appeal(
    db: AsyncSession, entry_id: int, reason: str, actor: User | None,
) -> TransitionResult:
    """The flagged borrower contests one of their active entries."""
    authorize_risk_actor(actor, FILE_APPEAL)
    entry, borrower = await _load_entry(db, entry_id)
    authorize_risk_actor(actor, FILE_APPEAL, borrower_id=borrower.id, owner_id=borrower.id)
    if entry.status != RiskEntryStatus.ACTIVE.value:
        raise InvalidTransition(f"Entry {entry_id} is {entry.status}, only active reports can be appealed")

    old_state = borrower.risk_state
    await ledger.set_status(
        db, entry, RiskEntryStatus.APPEALED,
        action=RiskAction.APPEAL_FILED, reason=reason, performed_by=actor.id,
    )
    new_state = await _refresh_state(db, borrower)
    _audit(
        db, borrower_id=borrower.id, action=RiskAction.APPEAL_FILED.value, actor_id=actor.id,
        old_state=old_state, new_state=new_state, details=f"Appeal on entry {entry.id}: {reason}",
    )
    await db.flush()
    return TransitionResult(risk_state=new_state, resolved=0, borrower=borrower)


@store_mutation
async def review_appeal(
    db: AsyncSession, entry_id: int, grant: bool, reason: str, actor: User | None,
) -> TransitionResult:
    """Admin decision on an appeal.

    Granting removes the entry. Denying puts it back in force, unless the
    same reporter has filed a newer active report meanwhile, in which case
    the appealed entry is closed as superseded.
    """
    authorize_risk_actor(actor, REVIEW_APPEAL)
    entry, borrower = await _load_entry(db, entry_id)
    if entry.status != RiskEntryStatus.APPEALED.value:
        raise InvalidTransition(f"Entry {entry_id} is {entry.status}, no appeal to review")

    old_state = borrower.risk_state
    if grant:
        await ledger.set_status(
            db, entry, RiskEntryStatus.REMOVED,
            action=RiskAction.APPEAL_GRANTED, reason=reason, performed_by=actor.id,
        )
        await _adjust_reputation(db, borrower, REPUTATION_RECOVERY)
    else:
        newer = await db.execute(
            select(RiskEntry.id).where(
                RiskEntry.borrower_id == borrower.id,
                RiskEntry.reporter_key == entry.reporter_key,
                RiskEntry.status == RiskEntryStatus.ACTIVE.value,
            )
        )
        if newer.scalar_one_or_none() is not None:
            await ledger.set_status(
                db, entry, RiskEntryStatus.REMOVED,
                action=RiskAction.APPEAL_UPHELD,
                reason=f"{reason} (superseded by a newer report)",
                performed_by=actor.id,
            )
        else:
            await ledger.set_status(
                db, entry, RiskEntryStatus.ACTIVE,
                action=RiskAction.APPEAL_UPHELD, reason=reason, performed_by=actor.id,
            )

    new_state = await _refresh_state(db, borrower)
    action = RiskAction.APPEAL_GRANTED if grant else RiskAction.APPEAL_UPHELD
    _audit(
        db, borrower_id=borrower.id, action=action.value, actor_id=actor.id,
        old_state=old_state, new_state=new_state, details=f"Appeal on entry {entry.id}: {reason}",
    )
    await db.flush()
    return TransitionResult(risk_state=new_state, resolved=1 if grant else 0, borrower=borrower)
