"""Loan model (owned by the loan/payment collaborator, read by the trust engine)."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Numeric, Enum, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column

from lendtrust.database import Base


class LoanStatus(str, enum.Enum):
    ACTIVE = "active"
    REPAID = "repaid"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


# Statuses in which a positive balance still counts as owed
OUTSTANDING_STATUSES = (LoanStatus.ACTIVE, LoanStatus.DEFAULTED)


class Loan(Base):
    __tablename__ = "loans"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    borrower_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    lender_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    principal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_outstanding: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0"),
    )
    status: Mapped[LoanStatus] = mapped_column(
        Enum(LoanStatus), default=LoanStatus.ACTIVE, nullable=False,
    )
    repaid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(),
    )

    @property
    def is_fully_repaid(self) -> bool:
        return self.status == LoanStatus.REPAID or (
            self.status == LoanStatus.ACTIVE and Decimal(self.amount_outstanding or 0) <= 0
        )
