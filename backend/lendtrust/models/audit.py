"""Compliance audit log: successful risk transitions and every risk check."""

from datetime import datetime
from sqlalchemy import String, Integer, DateTime, Index, JSON, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from lendtrust.database import Base


class AuditLog(Base):
    """One row per risk transition or risk check.

    Rows are keyed by borrower (``entity_id``) rather than by risk entry, so
    a borrower's compliance trail is one indexed range scan.
    """

    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_entity", "entity_type", "entity_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    # "borrower_risk" for everything the trust engine writes
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    # Borrower account id; no FK so the trail outlives the account
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # RiskAction value, or "risk_check"
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    # Acting lender/admin; NULL for platform-generated transitions
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # {"risk_state": ...}
    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # state or verdict
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
