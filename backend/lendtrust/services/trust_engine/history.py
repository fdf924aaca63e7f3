"""Read side: risk checks and the audit trail shown to lenders.

Both reads are a secondary trust signal, never a gate on loan issuance: a
store failure here is logged and answered with a "risk unknown" default
instead of failing the caller's workflow. Authorization still fails closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lendtrust.auth_utils import authorize_risk_actor, RISK_CHECK, VIEW_HISTORY
from lendtrust.models.audit import AuditLog
from lendtrust.models.error_log import ErrorSeverity
from lendtrust.models.risk import RiskEntry, RiskHistoryEvent
from lendtrust.models.user import User, UserRole
from lendtrust.services.error_logger import log_error
from lendtrust.services.trust_engine import ledger
from lendtrust.services.trust_engine.errors import NotFound
from lendtrust.services.trust_engine.scoring import RiskVerdict, RISK_UNKNOWN, score

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"


@dataclass
class RiskCheckReport:
    borrower_id: int | None
    verdict: RiskVerdict
    total_amount_owed: Decimal = Decimal("0")
    reports: list[dict] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "borrower_id": self.borrower_id,
            **self.verdict.to_dict(),
            "total_amount_owed": self.total_amount_owed,
            "reports": self.reports,
            "checked_at": self.checked_at,
        }


def _report_row(entry: RiskEntry, reporter: User | None) -> dict:
    return {
        "id": entry.id,
        "reason": entry.reason.value,
        "amount_owed": Decimal(entry.amount_owed or 0),
        "evidence": entry.evidence,
        "status": entry.status,
        "is_system_generated": entry.is_system_generated,
        "reported_by": SYSTEM_ACTOR if entry.is_system_generated or reporter is None
        else reporter.display_name,
        "created_at": entry.created_at,
    }


async def _find_borrower(db: AsyncSession, borrower_id: int | None, email: str | None) -> User:
    query = select(User).where(User.role == UserRole.BORROWER)
    if borrower_id is not None:
        query = query.where(User.id == borrower_id)
    elif email:
        query = query.where(func.lower(User.email) == email.strip().lower())
    else:
        raise ValueError("borrower_id or email is required")
    borrower = (await db.execute(query)).scalar_one_or_none()
    if borrower is None:
        raise NotFound("Borrower not found")
    return borrower


async def risk_check(
    db: AsyncSession,
    *,
    actor: User | None,
    borrower_id: int | None = None,
    email: str | None = None,
) -> RiskCheckReport:
    """Current verdict for one borrower plus the active reports behind it.

    Every check is written to the compliance audit log.
    """
    authorize_risk_actor(actor, RISK_CHECK, borrower_id=borrower_id)
    actor_id = actor.id
    try:
        borrower = await _find_borrower(db, borrower_id, email)
        active = await ledger.list_active(db, borrower.id)

        reporter_ids = {e.reported_by_id for e in active if e.reported_by_id is not None}
        reporters: dict[int, User] = {}
        if reporter_ids:
            rows = await db.execute(select(User).where(User.id.in_(reporter_ids)))
            reporters = {u.id: u for u in rows.scalars().all()}

        report = RiskCheckReport(
            borrower_id=borrower.id,
            verdict=score(active),
            total_amount_owed=sum((Decimal(e.amount_owed or 0) for e in active), Decimal("0")),
            reports=[_report_row(e, reporters.get(e.reported_by_id)) for e in reversed(active)],
        )
        db.add(AuditLog(
            entity_type="borrower_risk",
            entity_id=borrower.id,
            action="risk_check",
            user_id=actor_id,
            new_values=report.verdict.to_dict(),
            details=f"Risk check by user {actor_id}: {report.verdict.risk_category}",
        ))
        await db.flush()
        return report
    except SQLAlchemyError as exc:
        await db.rollback()
        await log_error(
            exc, db=db, severity=ErrorSeverity.WARNING,
            module="trust_engine.history", function_name="risk_check", user_id=actor_id,
        )
        logger.warning("Risk check for borrower=%s failed open", borrower_id or email)
        return RiskCheckReport(borrower_id=borrower_id, verdict=RISK_UNKNOWN)


async def risk_history(db: AsyncSession, borrower_id: int, *, actor: User | None) -> list[dict]:
    """Audit trail for one borrower, newest first.

    Events are kept after the account is deleted, so no existence check is
    made on the borrower.
    """
    authorize_risk_actor(actor, VIEW_HISTORY, borrower_id=borrower_id)
    actor_id = actor.id
    try:
        result = await db.execute(
            select(RiskHistoryEvent, User)
            .outerjoin(User, User.id == RiskHistoryEvent.performed_by_id)
            .where(RiskHistoryEvent.borrower_id == borrower_id)
            .order_by(RiskHistoryEvent.performed_at.desc(), RiskHistoryEvent.id.desc())
        )
        return [
            {
                "id": event.id,
                "borrower_id": event.borrower_id,
                "risk_entry_id": event.risk_entry_id,
                "action": event.action,
                "reason": event.reason,
                "performed_by_id": event.performed_by_id,
                "performed_by": SYSTEM_ACTOR if event.performed_by_id is None
                else (performer.display_name if performer else f"user:{event.performed_by_id}"),
                "performed_by_role": performer.role.value if performer else None,
                "performed_at": event.performed_at,
            }
            for event, performer in result.all()
        ]
    except SQLAlchemyError as exc:
        await db.rollback()
        await log_error(
            exc, db=db, severity=ErrorSeverity.WARNING,
            module="trust_engine.history", function_name="risk_history", user_id=actor_id,
        )
        return []
