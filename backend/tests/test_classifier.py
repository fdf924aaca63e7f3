"""Tests for the risk classifier state machine."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from lendtrust.config import settings
from lendtrust.models.audit import AuditLog
from lendtrust.models.identity import PersistentIdentity
from lendtrust.models.loan import LoanStatus
from lendtrust.models.risk import RiskEntryStatus, RiskHistoryEvent, RiskReason
from lendtrust.models.user import RiskState, User, UserRole
from lendtrust.services.trust_engine import classifier, ledger
from lendtrust.services.trust_engine.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    TransientStoreFailure,
    Unauthorized,
)


async def _count_events(db, borrower_id, action=None):
    query = select(func.count(RiskHistoryEvent.id)).where(RiskHistoryEvent.borrower_id == borrower_id)
    if action:
        query = query.where(RiskHistoryEvent.action == action)
    return (await db.execute(query)).scalar()


async def _assert_state_matches_ledger(db, borrower):
    await db.refresh(borrower)
    assert borrower.risk_state == await classifier.derive_risk_state(db, borrower.id)


# ── mark_risky ────────────────────────────────────

class TestMarkRisky:
    @pytest.mark.asyncio
    async def test_normal_to_risky(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)

        result = await classifier.mark_risky(db, borrower.id, "fraud", lender, amount_owed=500)

        assert result.created is True
        assert result.risk_state == RiskState.RISKY
        assert result.entry.amount_owed == Decimal("500")
        assert borrower.risk_state == RiskState.RISKY
        assert borrower.reputation_score == 80
        assert await _count_events(db, borrower.id, "marked_risky") == 1
        await _assert_state_matches_ledger(db, borrower)

    @pytest.mark.asyncio
    async def test_re_report_is_idempotent(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)

        first = await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender)
        second = await classifier.mark_risky(db, borrower.id, RiskReason.FRAUD, lender)

        assert second.created is False
        assert second.entry.id == first.entry.id
        assert len(await ledger.list_active(db, borrower.id)) == 1
        assert await _count_events(db, borrower.id) == 1
        identity = (await db.execute(select(PersistentIdentity))).scalar_one()
        assert identity.times_reported == 1
        await db.refresh(borrower)
        assert borrower.reputation_score == 95

    @pytest.mark.asyncio
    async def test_multiple_lenders_each_get_an_entry(self, db, make_user):
        borrower = await make_user()
        lenders = [await make_user(UserRole.LENDER) for _ in range(3)]
        for lender in lenders:
            await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender)

        assert len(await ledger.list_active(db, borrower.id)) == 3

    @pytest.mark.asyncio
    async def test_writes_audit_row(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)
        await classifier.mark_risky(db, borrower.id, RiskReason.HARASSMENT, lender)

        audit = (await db.execute(select(AuditLog).where(AuditLog.entity_id == borrower.id))).scalar_one()
        assert audit.action == "marked_risky"
        assert audit.old_values == {"risk_state": "normal"}
        assert audit.new_values == {"risk_state": "risky"}

    @pytest.mark.asyncio
    async def test_unauthenticated_rejected(self, db, make_user):
        borrower = await make_user()
        with pytest.raises(Unauthorized):
            await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, None)
        assert await _count_events(db, borrower.id) == 0

    @pytest.mark.asyncio
    async def test_inactive_lender_rejected(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER, is_active=False)
        with pytest.raises(Unauthorized):
            await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender)

    @pytest.mark.asyncio
    async def test_borrower_cannot_report(self, db, make_user):
        borrower = await make_user()
        other = await make_user()
        with pytest.raises(Forbidden):
            await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, other)
        await db.refresh(borrower)
        assert borrower.risk_state == RiskState.NORMAL

    @pytest.mark.asyncio
    async def test_target_must_be_a_borrower(self, db, make_user):
        lender = await make_user(UserRole.LENDER)
        other_lender = await make_user(UserRole.LENDER)
        with pytest.raises(NotFound):
            await classifier.mark_risky(db, other_lender.id, RiskReason.OTHER, lender)

    @pytest.mark.asyncio
    async def test_store_failure_is_transient(self):
        db = MagicMock()
        db.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("connection lost")))
        lender = User(id=7, email="l@lendtrust-test.com", role=UserRole.LENDER, is_active=True)

        with pytest.raises(TransientStoreFailure):
            await classifier.mark_risky(db, 1, RiskReason.OTHER, lender)


# ── mark_improved ─────────────────────────────────

class TestMarkImproved:
    @pytest.mark.asyncio
    async def test_any_lender_clears_all_reports(self, db, make_user):
        borrower = await make_user()
        lender_a = await make_user(UserRole.LENDER)
        lender_b = await make_user(UserRole.LENDER)
        await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender_a)
        await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender_b)

        result = await classifier.mark_improved(db, borrower.id, "repaid in full", lender_b)

        assert result.resolved == 2
        assert result.risk_state == RiskState.IMPROVED
        assert await ledger.list_active(db, borrower.id) == []
        assert await _count_events(db, borrower.id, "marked_improved") == 2
        await _assert_state_matches_ledger(db, borrower)

    @pytest.mark.asyncio
    async def test_admin_clears_another_lenders_report(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)
        admin = await make_user(UserRole.ADMIN)
        await classifier.mark_risky(db, borrower.id, RiskReason.FRAUD, lender)

        result = await classifier.mark_improved(db, borrower.id, "cleared on review", admin)

        assert result.risk_state == RiskState.IMPROVED
        assert result.borrower.reputation_score == 90

    @pytest.mark.asyncio
    async def test_own_scope_only_clears_own_report(self, db, make_user, monkeypatch):
        monkeypatch.setattr(settings, "improve_scope", "own")
        borrower = await make_user()
        lender_a = await make_user(UserRole.LENDER)
        lender_b = await make_user(UserRole.LENDER)
        admin = await make_user(UserRole.ADMIN)
        await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender_a)
        await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender_b)

        partial = await classifier.mark_improved(db, borrower.id, "settled with me", lender_a)
        assert partial.resolved == 1
        assert partial.risk_state == RiskState.RISKY

        rest = await classifier.mark_improved(db, borrower.id, "admin clearance", admin)
        assert rest.resolved == 1
        assert rest.risk_state == RiskState.IMPROVED

    @pytest.mark.asyncio
    async def test_improving_a_clean_borrower_is_a_no_op(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)

        result = await classifier.mark_improved(db, borrower.id, "", lender)

        assert result.resolved == 0
        assert result.risk_state == RiskState.NORMAL
        assert await _count_events(db, borrower.id) == 0

    @pytest.mark.asyncio
    async def test_borrower_cannot_improve_self(self, db, make_user):
        borrower = await make_user()
        with pytest.raises(Forbidden):
            await classifier.mark_improved(db, borrower.id, "", borrower)


# ── Repayment and system flags ────────────────────

class TestAutoResolve:
    @pytest.mark.asyncio
    async def test_repayment_clears_system_flag_only(self, db, make_user, make_loan):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)
        loan = await make_loan(borrower, lender, status=LoanStatus.DEFAULTED, outstanding=Decimal("300"))
        await classifier.flag_missed_payment(db, loan.id)
        await classifier.mark_risky(db, borrower.id, RiskReason.FRAUD, lender)

        loan.status = LoanStatus.REPAID
        loan.amount_outstanding = Decimal("0")
        await db.flush()
        result = await classifier.auto_resolve_on_repayment(db, loan.id)

        assert result.resolved == 1
        assert result.risk_state == RiskState.RISKY
        active = await ledger.list_active(db, borrower.id)
        assert [e.reporter_key for e in active] == [f"user:{lender.id}"]
        await _assert_state_matches_ledger(db, borrower)

    @pytest.mark.asyncio
    async def test_only_system_flag_moves_to_improved(self, db, make_user, make_loan):
        borrower = await make_user()
        loan = await make_loan(borrower, status=LoanStatus.DEFAULTED, outstanding=Decimal("300"))
        flagged = await classifier.flag_missed_payment(db, loan.id)
        assert flagged.entry.is_system_generated
        assert flagged.entry.amount_owed == Decimal("300")

        loan.status = LoanStatus.REPAID
        loan.amount_outstanding = Decimal("0")
        await db.flush()
        result = await classifier.auto_resolve_on_repayment(db, loan.id)

        assert result.risk_state == RiskState.IMPROVED
        events = (await db.execute(
            select(RiskHistoryEvent).where(RiskHistoryEvent.action == "marked_improved")
        )).scalars().all()
        assert len(events) == 1
        assert events[0].performed_by_id is None

    @pytest.mark.asyncio
    async def test_other_outstanding_loan_blocks_resolution(self, db, make_user, make_loan):
        borrower = await make_user()
        loan = await make_loan(borrower, status=LoanStatus.DEFAULTED, outstanding=Decimal("300"))
        await make_loan(borrower, status=LoanStatus.ACTIVE, outstanding=Decimal("50"))
        await classifier.flag_missed_payment(db, loan.id)

        loan.status = LoanStatus.REPAID
        loan.amount_outstanding = Decimal("0")
        await db.flush()

        assert await classifier.auto_resolve_on_repayment(db, loan.id) is None
        assert len(await ledger.list_active(db, borrower.id)) == 1

    @pytest.mark.asyncio
    async def test_unpaid_loan_is_skipped(self, db, make_user, make_loan):
        borrower = await make_user()
        loan = await make_loan(borrower, outstanding=Decimal("100"))
        assert await classifier.auto_resolve_on_repayment(db, loan.id) is None

    @pytest.mark.asyncio
    async def test_unknown_loan(self, db):
        with pytest.raises(NotFound):
            await classifier.auto_resolve_on_repayment(db, 9999)

    @pytest.mark.asyncio
    async def test_missed_payment_flag_is_idempotent(self, db, make_user, make_loan):
        borrower = await make_user()
        loan = await make_loan(borrower, status=LoanStatus.DEFAULTED)
        first = await classifier.flag_missed_payment(db, loan.id)
        second = await classifier.flag_missed_payment(db, loan.id)
        assert second.created is False
        assert second.entry.id == first.entry.id


# ── Withdrawal and appeals ────────────────────────

class TestWithdrawAndAppeal:
    @pytest.mark.asyncio
    async def test_reporter_withdraws(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)
        marked = await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender)

        result = await classifier.withdraw_report(db, marked.entry.id, "filed in error", lender)

        assert result.risk_state == RiskState.IMPROVED
        assert await _count_events(db, borrower.id, "report_withdrawn") == 1
        with pytest.raises(InvalidTransition):
            await classifier.withdraw_report(db, marked.entry.id, "again", lender)

    @pytest.mark.asyncio
    async def test_other_lender_cannot_withdraw(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)
        other = await make_user(UserRole.LENDER)
        marked = await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender)

        with pytest.raises(Forbidden):
            await classifier.withdraw_report(db, marked.entry.id, "not mine", other)
        assert (await ledger.get_entry(db, marked.entry.id)).status == "active"

    @pytest.mark.asyncio
    async def test_appeal_then_grant(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)
        admin = await make_user(UserRole.ADMIN)
        marked = await classifier.mark_risky(db, borrower.id, RiskReason.FALSE_INFORMATION, lender)

        appealed = await classifier.file_appeal(db, marked.entry.id, "documents were valid", borrower)
        assert appealed.risk_state == RiskState.IMPROVED
        assert (await ledger.get_entry(db, marked.entry.id)).status == RiskEntryStatus.APPEALED.value

        granted = await classifier.review_appeal(db, marked.entry.id, True, "verified", admin)
        assert granted.risk_state == RiskState.IMPROVED
        assert (await ledger.get_entry(db, marked.entry.id)).status == RiskEntryStatus.REMOVED.value
        await _assert_state_matches_ledger(db, borrower)

    @pytest.mark.asyncio
    async def test_denied_appeal_reinstates_entry(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)
        admin = await make_user(UserRole.ADMIN)
        marked = await classifier.mark_risky(db, borrower.id, RiskReason.FRAUD, lender)
        await classifier.file_appeal(db, marked.entry.id, "dispute", borrower)

        denied = await classifier.review_appeal(db, marked.entry.id, False, "evidence holds", admin)

        assert denied.risk_state == RiskState.RISKY
        assert [e.id for e in await ledger.list_active(db, borrower.id)] == [marked.entry.id]

    @pytest.mark.asyncio
    async def test_denied_appeal_superseded_by_newer_report(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)
        admin = await make_user(UserRole.ADMIN)
        marked = await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender)
        await classifier.file_appeal(db, marked.entry.id, "dispute", borrower)
        newer = await classifier.mark_risky(db, borrower.id, RiskReason.FRAUD, lender)
        assert newer.created is True

        await classifier.review_appeal(db, marked.entry.id, False, "upheld", admin)

        active = await ledger.list_active(db, borrower.id)
        assert [e.id for e in active] == [newer.entry.id]

    @pytest.mark.asyncio
    async def test_only_flagged_borrower_may_appeal(self, db, make_user):
        borrower = await make_user()
        stranger = await make_user()
        lender = await make_user(UserRole.LENDER)
        marked = await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender)

        with pytest.raises(Forbidden):
            await classifier.file_appeal(db, marked.entry.id, "not me", stranger)
        with pytest.raises(Forbidden):
            await classifier.file_appeal(db, marked.entry.id, "lenders cannot appeal", lender)

    @pytest.mark.asyncio
    async def test_review_requires_pending_appeal(self, db, make_user):
        borrower = await make_user()
        lender = await make_user(UserRole.LENDER)
        admin = await make_user(UserRole.ADMIN)
        marked = await classifier.mark_risky(db, borrower.id, RiskReason.OTHER, lender)

        with pytest.raises(InvalidTransition):
            await classifier.review_appeal(db, marked.entry.id, True, "no appeal", admin)
        with pytest.raises(Forbidden):
            await classifier.review_appeal(db, marked.entry.id, True, "lender", lender)

    @pytest.mark.asyncio
    async def test_unknown_entry(self, db, make_user):
        lender = await make_user(UserRole.LENDER)
        with pytest.raises(NotFound):
            await classifier.withdraw_report(db, 4242, "x", lender)
