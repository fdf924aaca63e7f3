"""Account model shared by borrowers, lenders and admins."""

import enum
from datetime import datetime

from sqlalchemy import String, Boolean, Enum, DateTime, Integer, CheckConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from lendtrust.database import Base


class UserRole(str, enum.Enum):
    BORROWER = "borrower"
    LENDER = "lender"
    ADMIN = "admin"


class RiskState(str, enum.Enum):
    NORMAL = "normal"
    RISKY = "risky"
    IMPROVED = "improved"


class User(Base):
    """A platform account.

    Owned by account management; the trust engine only writes
    ``risk_state`` and ``reputation_score`` on borrower rows.
    """
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "reputation_score >= 0 AND reputation_score <= 100",
            name="ck_users_reputation_score_range",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    national_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), default=UserRole.BORROWER, nullable=False, index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Trust fields (borrowers only)
    risk_state: Mapped[RiskState] = mapped_column(
        Enum(RiskState), default=RiskState.NORMAL, nullable=False,
    )
    reputation_score: Mapped[int] = mapped_column(Integer, default=100, nullable=False)

    # Loan counters (maintained by the loan collaborator)
    total_loans: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    loans_repaid: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    loans_defaulted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def display_name(self) -> str:
        return self.company_name or self.full_name or self.email
