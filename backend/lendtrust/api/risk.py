"""Risk API: lender reports, borrower risk checks and identity checks.

Provides:
- POST /mark-risky                  lender reports a borrower
- POST /mark-improved               clear active reports
- POST /check-auto-improve          payment settlement hook (internal)
- GET  /risk-check                  current verdict for one borrower
- POST /identity-check              registration-time identity lookup (public)
- GET  /history/{borrower_id}       audit trail
- POST /entries/{id}/withdraw       reporter takes back a report
- POST /entries/{id}/appeal         borrower contests a report
- POST /entries/{id}/appeal-review  admin decision on an appeal
- POST /accounts/registered         account management hook (internal)
- POST /accounts/deleting           account management hook (internal)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lendtrust.auth_utils import get_optional_user, require_internal_caller
from lendtrust.config import settings
from lendtrust.database import get_db
from lendtrust.models.user import User
from lendtrust.schemas import (
    AccountHookRequest,
    AppealReviewRequest,
    AutoImproveResponse,
    CheckAutoImproveRequest,
    EntryActionRequest,
    IdentityCheckRequest,
    IdentityCheckResponse,
    IdentityStatusResponse,
    MarkImprovedRequest,
    MarkRiskyRequest,
    MarkRiskyResponse,
    RiskCheckResponse,
    RiskEntryResponse,
    RiskHistoryItem,
    RiskStateResponse,
)
from lendtrust.services.error_logger import log_error
from lendtrust.services.trust_engine import classifier, history
from lendtrust.services.trust_engine import identity as identity_resolver
from lendtrust.services.trust_engine.errors import NotFound, TrustEngineError
from lendtrust.services.trust_engine.notifications import dispatch_status_change

logger = logging.getLogger(__name__)

router = APIRouter()
limiter = Limiter(key_func=get_remote_address)


async def _load_account(db: AsyncSession, account_id: int) -> User:
    account = (await db.execute(select(User).where(User.id == account_id))).scalar_one_or_none()
    if account is None:
        raise NotFound(f"Account {account_id} not found")
    return account


# ── Lender commands ──────────────────────────────────────────


@router.post("/mark-risky", response_model=MarkRiskyResponse)
async def mark_risky(
    data: MarkRiskyRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await classifier.mark_risky(
            db, data.borrower_id, data.reason, current_user,
            amount_owed=data.amount_owed, evidence=data.evidence,
        )
        await db.commit()
    except (TrustEngineError, HTTPException):
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.risk", function_name="mark_risky")
        raise

    if result.created:
        dispatch_status_change(result.borrower, data.reason.value)
    return MarkRiskyResponse(
        risk_state=result.risk_state.value,
        risk_entry=RiskEntryResponse.model_validate(result.entry),
        created=result.created,
    )


@router.post("/mark-improved", response_model=RiskStateResponse)
async def mark_improved(
    data: MarkImprovedRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await classifier.mark_improved(db, data.borrower_id, data.reason, current_user)
        await db.commit()
    except (TrustEngineError, HTTPException):
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.risk", function_name="mark_improved")
        raise

    if result.resolved:
        dispatch_status_change(result.borrower, data.reason)
    return RiskStateResponse(risk_state=result.risk_state.value, resolved=result.resolved)


@router.post(
    "/check-auto-improve",
    response_model=AutoImproveResponse,
    dependencies=[Depends(require_internal_caller)],
)
async def check_auto_improve(
    data: CheckAutoImproveRequest,
    db: AsyncSession = Depends(get_db),
):
    """Called by payment settlement after a repayment posts."""
    try:
        result = await classifier.auto_resolve_on_repayment(db, data.loan_id)
        await db.commit()
    except (TrustEngineError, HTTPException):
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.risk", function_name="check_auto_improve")
        raise

    improved = bool(result and result.resolved)
    if improved:
        dispatch_status_change(result.borrower, f"Loan {data.loan_id} fully repaid")
    return AutoImproveResponse(improved=improved)


# ── Reads ────────────────────────────────────────────────────


@router.get("/risk-check", response_model=RiskCheckResponse)
async def risk_check(
    borrower_id: Optional[int] = Query(default=None),
    email: Optional[str] = Query(default=None, max_length=200),
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        report = await history.risk_check(db, actor=current_user, borrower_id=borrower_id, email=email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return report.to_dict()


@router.get("/history/{borrower_id}", response_model=list[RiskHistoryItem])
async def risk_history(
    borrower_id: int,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    return await history.risk_history(db, borrower_id, actor=current_user)


@router.post("/identity-check", response_model=IdentityCheckResponse)
@limiter.limit(lambda: settings.identity_check_rate_limit)
async def identity_check(
    data: IdentityCheckRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Warn registration about a returning risky identity.

    Public endpoint: only aggregates are returned, never the underlying
    reports or the matched fingerprints.
    """
    try:
        result = await identity_resolver.check_at_registration(
            db, data.email, phone=data.phone, national_id=data.national_id,
        )
    except Exception as e:
        await log_error(e, db=db, module="api.risk", function_name="identity_check")
        raise
    if result.is_risky:
        logger.warning("Identity check matched a risky identity (blocked=%s)", result.blocked)
    return result.to_dict()


# ── Entry lifecycle ──────────────────────────────────────────


@router.post("/entries/{entry_id}/withdraw", response_model=RiskStateResponse)
async def withdraw_report(
    entry_id: int,
    data: EntryActionRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await classifier.withdraw_report(db, entry_id, data.reason, current_user)
        await db.commit()
    except (TrustEngineError, HTTPException):
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.risk", function_name="withdraw_report")
        raise

    dispatch_status_change(result.borrower, data.reason)
    return RiskStateResponse(risk_state=result.risk_state.value, resolved=result.resolved)


@router.post("/entries/{entry_id}/appeal", response_model=RiskStateResponse)
async def file_appeal(
    entry_id: int,
    data: EntryActionRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await classifier.file_appeal(db, entry_id, data.reason, current_user)
        await db.commit()
    except (TrustEngineError, HTTPException):
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.risk", function_name="file_appeal")
        raise

    dispatch_status_change(result.borrower, data.reason)
    return RiskStateResponse(risk_state=result.risk_state.value, resolved=result.resolved)


@router.post("/entries/{entry_id}/appeal-review", response_model=RiskStateResponse)
async def review_appeal(
    entry_id: int,
    data: AppealReviewRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await classifier.review_appeal(db, entry_id, data.grant, data.reason, current_user)
        await db.commit()
    except (TrustEngineError, HTTPException):
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.risk", function_name="review_appeal")
        raise

    dispatch_status_change(result.borrower, data.reason)
    return RiskStateResponse(risk_state=result.risk_state.value, resolved=result.resolved)


# ── Account management hooks ─────────────────────────────────


@router.post(
    "/accounts/registered",
    response_model=IdentityStatusResponse,
    dependencies=[Depends(require_internal_caller)],
)
async def account_registered(
    data: AccountHookRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        account = await _load_account(db, data.borrower_id)
        await identity_resolver.register_account(db, account)
        status = await identity_resolver.identity_status(db, account)
    except (TrustEngineError, HTTPException):
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.risk", function_name="account_registered")
        raise
    return status


@router.post(
    "/accounts/deleting",
    response_model=IdentityStatusResponse,
    dependencies=[Depends(require_internal_caller)],
)
async def account_deleting(
    data: AccountHookRequest,
    db: AsyncSession = Depends(get_db),
):
    """Must be called before the account row is removed."""
    try:
        account = await _load_account(db, data.borrower_id)
        await identity_resolver.record_account_deletion(db, account)
        status = await identity_resolver.identity_status(db, account)
    except (TrustEngineError, HTTPException):
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.risk", function_name="account_deleting")
        raise
    return status


@router.get("/health")
async def risk_health():
    return {"status": "healthy"}
