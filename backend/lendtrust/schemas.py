"""Pydantic schemas for request/response validation."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from lendtrust.models.risk import RiskReason


# ── Risk commands ─────────────────────────────────────

class MarkRiskyRequest(BaseModel):
    borrower_id: int
    reason: RiskReason
    amount_owed: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    evidence: str = Field(default="", max_length=5000)


class MarkImprovedRequest(BaseModel):
    borrower_id: int
    reason: str = Field(default="Full loan repayment completed", max_length=1000)


class CheckAutoImproveRequest(BaseModel):
    loan_id: int


class EntryActionRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class AppealReviewRequest(EntryActionRequest):
    grant: bool


class AccountHookRequest(BaseModel):
    borrower_id: int


class IdentityCheckRequest(BaseModel):
    email: EmailStr
    phone: Optional[str] = Field(default=None, max_length=30)
    national_id: Optional[str] = Field(default=None, max_length=50)


# ── Responses ─────────────────────────────────────────

class RiskEntryResponse(BaseModel):
    id: int
    borrower_id: int
    reported_by_id: Optional[int] = None
    reason: RiskReason
    amount_owed: Decimal
    evidence: str
    status: str
    is_system_generated: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class MarkRiskyResponse(BaseModel):
    risk_state: str
    risk_entry: RiskEntryResponse
    created: bool


class RiskStateResponse(BaseModel):
    risk_state: str
    resolved: int = 0


class AutoImproveResponse(BaseModel):
    improved: bool


class RiskReportItem(BaseModel):
    id: int
    reason: str
    amount_owed: Decimal
    evidence: str
    status: str
    is_system_generated: bool
    reported_by: str
    created_at: Optional[datetime] = None


class RiskCheckResponse(BaseModel):
    borrower_id: Optional[int] = None
    risk_score: int
    risk_category: str
    reporting_lenders: int
    total_amount_owed: Decimal
    reports: list[RiskReportItem] = []
    checked_at: datetime


class IdentityCheckResponse(BaseModel):
    is_risky: bool
    total_amount_owed: Decimal
    times_reported: int
    account_deletions: int
    last_account_deleted_at: Optional[datetime] = None
    blocked: bool = False


class IdentityStatusResponse(BaseModel):
    has_identity: bool
    is_risky: bool
    identity_id: Optional[int] = None
    risk_score: int = 0
    times_reported: int = 0
    total_amount_owed: Decimal = Decimal("0")
    account_deletions: int = 0
    reregistration_attempts: int = 0
    last_account_deleted_at: Optional[datetime] = None


class RiskHistoryItem(BaseModel):
    id: int
    borrower_id: int
    risk_entry_id: Optional[int] = None
    action: str
    reason: str
    performed_by_id: Optional[int] = None
    performed_by: str
    performed_by_role: Optional[str] = None
    performed_at: datetime
