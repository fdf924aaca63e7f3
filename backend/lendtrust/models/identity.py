"""Persistent borrower identity: trust aggregate that outlives any single account.

Keyed by fingerprints, never by a foreign key to ``users``: an identity keeps
its counters while the accounts it matched come and go.
"""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String, Integer, Numeric, Enum, DateTime, ForeignKey, UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lendtrust.database import Base
from lendtrust.models.risk import RiskReason


class FingerprintKind(str, enum.Enum):
    EMAIL = "email"
    PHONE = "phone"
    NATIONAL_ID = "national_id"


class PersistentIdentity(Base):
    __tablename__ = "persistent_identities"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Aggregates (updated incrementally, never recomputed from an account)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_reported: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount_owed: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0"),
    )
    account_deletions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reregistration_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_account_deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Set when this identity was folded into another one
    merged_into_id: Mapped[int | None] = mapped_column(
        ForeignKey("persistent_identities.id"), nullable=True, index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(),
    )

    fingerprints = relationship(
        "IdentityFingerprint", back_populates="identity", lazy="selectin",
        order_by="IdentityFingerprint.id",
    )

    def _first_fingerprint(self, kind: FingerprintKind) -> str | None:
        for fp in self.fingerprints:
            if fp.kind == kind:
                return fp.digest
        return None

    @property
    def email_fingerprint(self) -> str | None:
        return self._first_fingerprint(FingerprintKind.EMAIL)

    @property
    def phone_fingerprint(self) -> str | None:
        return self._first_fingerprint(FingerprintKind.PHONE)

    @property
    def national_id_fingerprint(self) -> str | None:
        return self._first_fingerprint(FingerprintKind.NATIONAL_ID)


class IdentityFingerprint(Base):
    """One hashed identifier belonging to an identity."""
    __tablename__ = "identity_fingerprints"
    __table_args__ = (
        UniqueConstraint("kind", "digest", name="uq_identity_fingerprints_kind_digest"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    identity_id: Mapped[int] = mapped_column(
        ForeignKey("persistent_identities.id"), nullable=False, index=True,
    )
    kind: Mapped[FingerprintKind] = mapped_column(Enum(FingerprintKind), nullable=False)
    digest: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(),
    )

    identity = relationship("PersistentIdentity", back_populates="fingerprints")


class IdentityReport(Base):
    """Snapshot of a risk entry attached to an identity.

    Survives deletion of the account's ledger rows (``risk_entry_id`` is
    nulled), so identity scoring always covers every report ever linked.
    """
    __tablename__ = "identity_reports"
    __table_args__ = (
        UniqueConstraint("identity_id", "risk_entry_id", name="uq_identity_reports_entry"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    identity_id: Mapped[int] = mapped_column(
        ForeignKey("persistent_identities.id"), nullable=False, index=True,
    )
    risk_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("risk_entries.id", ondelete="SET NULL"), nullable=True,
    )
    reporter_key: Mapped[str] = mapped_column(String(40), nullable=False)
    reason: Mapped[RiskReason] = mapped_column(Enum(RiskReason), nullable=False)
    amount_owed: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    reported_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
