"""Risk ledger models: lender/system reports and the immutable risk history."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String, Integer, Boolean, Numeric, Enum, DateTime, ForeignKey, Text, Index,
    CheckConstraint, func, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from lendtrust.database import Base


SYSTEM_REPORTER = "system"


class RiskReason(str, enum.Enum):
    REPEATED_DEFAULTS = "repeated_defaults"
    FRAUD = "fraud"
    FALSE_INFORMATION = "false_information"
    HARASSMENT = "harassment"
    OTHER = "other"


class RiskEntryStatus(str, enum.Enum):
    ACTIVE = "active"
    APPEALED = "appealed"
    REMOVED = "removed"


class RiskAction(str, enum.Enum):
    MARKED_RISKY = "marked_risky"
    MARKED_IMPROVED = "marked_improved"
    REPORT_WITHDRAWN = "report_withdrawn"
    APPEAL_FILED = "appeal_filed"
    APPEAL_UPHELD = "appeal_upheld"
    APPEAL_GRANTED = "appeal_granted"


def reporter_key_for(user_id: int | None) -> str:
    """Stable key identifying who filed an entry ("system" for platform flags)."""
    return SYSTEM_REPORTER if user_id is None else f"user:{user_id}"


class RiskEntry(Base):
    """One lender's (or the platform's) assertion about one borrower."""
    __tablename__ = "risk_entries"
    __table_args__ = (
        # At most one active report per reporter per borrower.
        Index(
            "uq_risk_entries_active_reporter",
            "borrower_id", "reporter_key",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        CheckConstraint("amount_owed >= 0", name="ck_risk_entries_amount_owed"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    borrower_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    reported_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    reporter_key: Mapped[str] = mapped_column(String(40), nullable=False)
    reason: Mapped[RiskReason] = mapped_column(Enum(RiskReason), nullable=False)
    amount_owed: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    evidence: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RiskEntryStatus.ACTIVE.value, index=True,
    )
    is_system_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    loan_id: Mapped[int | None] = mapped_column(
        ForeignKey("loans.id", ondelete="SET NULL"), nullable=True,
    )

    # Resolution
    resolved_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )

    @property
    def is_active(self) -> bool:
        return self.status == RiskEntryStatus.ACTIVE.value


class RiskHistoryEvent(Base):
    """Immutable audit record of a risk transition.

    ``borrower_id`` is deliberately not a foreign key: the trail must outlive
    the account it describes.
    """
    __tablename__ = "risk_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    borrower_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    risk_entry_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    performed_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)  # NULL = SYSTEM
    performed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True,
    )
