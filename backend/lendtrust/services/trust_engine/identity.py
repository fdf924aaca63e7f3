"""Persistent identity resolver.

Keeps a borrower's risk trail alive across account deletion and
re-registration. Identities are matched on any one of their fingerprints
(email, phone, national ID); when a lookup hits several identities that
were tracked separately, they are merged into the oldest one, since a
person dodging a flag may reuse just one identifier per attempt.

Merging only happens on the account paths, where the fingerprints come
from a stored account. The registration check is a pure lookup.

Counters are always incremented in the store, so concurrent reports against
the same person cannot lose updates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lendtrust.config import settings
from lendtrust.models.identity import (
    IdentityFingerprint,
    IdentityReport,
    PersistentIdentity,
)
from lendtrust.models.risk import RiskEntry
from lendtrust.models.user import User
from lendtrust.services.trust_engine.fingerprints import FingerprintSet
from lendtrust.services.trust_engine.scoring import score_snapshots

logger = logging.getLogger(__name__)


@dataclass
class IdentityCheckResult:
    is_risky: bool
    total_amount_owed: Decimal
    times_reported: int
    account_deletions: int
    last_account_deleted_at: datetime | None = None
    blocked: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


CLEAN_CHECK = IdentityCheckResult(
    is_risky=False, total_amount_owed=Decimal("0"), times_reported=0, account_deletions=0,
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def _increment(db: AsyncSession, identity: PersistentIdentity, **deltas) -> None:
    """Apply ``column += delta`` for each keyword in one UPDATE, then reload."""
    values = {
        name: getattr(PersistentIdentity, name) + delta
        for name, delta in deltas.items()
        if delta
    }
    await db.flush()
    if values:
        await db.execute(
            update(PersistentIdentity)
            .where(PersistentIdentity.id == identity.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    await db.refresh(identity)


async def _recompute_score(db: AsyncSession, identity: PersistentIdentity) -> int:
    result = await db.execute(
        select(IdentityReport)
        .where(IdentityReport.identity_id == identity.id)
        .order_by(IdentityReport.id)
    )
    identity.risk_score = score_snapshots(result.scalars().all())
    await db.flush()
    return identity.risk_score


async def _matching_identities(
    db: AsyncSession, fingerprints: FingerprintSet, *, for_update: bool = True,
) -> list[PersistentIdentity]:
    conditions = [
        and_(IdentityFingerprint.kind == kind, IdentityFingerprint.digest == digest)
        for kind, digest in fingerprints.items()
    ]
    if not conditions:
        return []
    query = (
        select(PersistentIdentity)
        .join(IdentityFingerprint, IdentityFingerprint.identity_id == PersistentIdentity.id)
        .where(or_(*conditions), PersistentIdentity.merged_into_id.is_(None))
        .order_by(PersistentIdentity.id)
    )
    if for_update:
        query = query.with_for_update(of=PersistentIdentity)
    result = await db.execute(query)
    return list(result.scalars().unique().all())


async def _riskiest_match(db: AsyncSession, fingerprints: FingerprintSet) -> PersistentIdentity | None:
    """Read-only lookup: the highest-scoring identity among the matches.

    Never merges. Identifiers supplied by an unauthenticated caller must not
    be able to join two people's records.
    """
    matches = await _matching_identities(db, fingerprints, for_update=False)
    if not matches:
        return None
    return max(matches, key=lambda i: (i.risk_score, -i.id))


async def _merge(db: AsyncSession, identities: list[PersistentIdentity]) -> PersistentIdentity:
    """Fold every identity into the oldest one and return the survivor."""
    survivor, *absorbed = identities
    deltas = {
        "times_reported": 0,
        "total_amount_owed": Decimal("0"),
        "account_deletions": 0,
        "reregistration_attempts": 0,
    }
    last_deleted = _as_utc(survivor.last_account_deleted_at)

    for other in absorbed:
        deltas["times_reported"] += other.times_reported
        deltas["total_amount_owed"] += Decimal(other.total_amount_owed or 0)
        deltas["account_deletions"] += other.account_deletions
        deltas["reregistration_attempts"] += other.reregistration_attempts
        other_deleted = _as_utc(other.last_account_deleted_at)
        if other_deleted and (last_deleted is None or other_deleted > last_deleted):
            last_deleted = other_deleted

        for model in (IdentityFingerprint, IdentityReport):
            await db.execute(
                update(model)
                .where(model.identity_id == other.id)
                .values(identity_id=survivor.id)
                .execution_options(synchronize_session=False)
            )
        other.merged_into_id = survivor.id

    survivor.last_account_deleted_at = last_deleted
    await _increment(db, survivor, **deltas)
    for other in absorbed:
        await db.refresh(other)
    await _recompute_score(db, survivor)

    logger.warning(
        "Merged identities %s into %s",
        [other.id for other in absorbed], survivor.id,
    )
    return survivor


async def _attach_missing(db: AsyncSession, identity: PersistentIdentity, fingerprints: FingerprintSet) -> None:
    known = {(fp.kind, fp.digest) for fp in identity.fingerprints}
    added = False
    for kind, digest in fingerprints.items():
        if (kind, digest) not in known:
            identity.fingerprints.append(IdentityFingerprint(kind=kind, digest=digest))
            added = True
    if added:
        await db.flush()


# ── Resolution ──────────────────────────────────────────────


async def resolve(db: AsyncSession, fingerprints: FingerprintSet) -> PersistentIdentity | None:
    """Match on any supplied fingerprint; merge when several identities match."""
    matches = await _matching_identities(db, fingerprints)
    if not matches:
        return None
    if len(matches) == 1:
        return matches[0]
    return await _merge(db, matches)


async def resolve_or_create(
    db: AsyncSession, fingerprints: FingerprintSet,
) -> tuple[PersistentIdentity | None, bool]:
    """Resolve, creating the identity lazily on first sight.

    Returns ``(identity, created)``. New fingerprints are attached to the
    resolved identity so later lookups by any of them succeed.
    """
    if fingerprints.is_empty():
        return None, False

    identity = await resolve(db, fingerprints)
    created = False
    if identity is None:
        try:
            async with db.begin_nested():
                identity = PersistentIdentity(
                    risk_score=0,
                    times_reported=0,
                    total_amount_owed=Decimal("0"),
                    account_deletions=0,
                    reregistration_attempts=0,
                    last_account_deleted_at=None,
                    merged_into_id=None,
                )
                for kind, digest in fingerprints.items():
                    identity.fingerprints.append(IdentityFingerprint(kind=kind, digest=digest))
                db.add(identity)
                await db.flush()
            created = True
        except IntegrityError:
            # Another request created it first
            identity = await resolve(db, fingerprints)
            if identity is None:
                raise
    if not created:
        await _attach_missing(db, identity, fingerprints)
    return identity, created


async def identity_for_account(db: AsyncSession, account: User) -> PersistentIdentity | None:
    identity, _ = await resolve_or_create(db, FingerprintSet.for_account(account))
    return identity


# ── Lifecycle events ────────────────────────────────────────


async def on_report(db: AsyncSession, identity: PersistentIdentity, entry: RiskEntry) -> PersistentIdentity:
    """Attach a new risk entry to the identity and rescore over its whole trail."""
    db.add(IdentityReport(
        identity_id=identity.id,
        risk_entry_id=entry.id,
        reporter_key=entry.reporter_key,
        reason=entry.reason,
        amount_owed=Decimal(entry.amount_owed or 0),
        reported_at=datetime.now(timezone.utc),
    ))
    await _increment(
        db, identity,
        times_reported=1,
        total_amount_owed=Decimal(entry.amount_owed or 0),
    )
    await _recompute_score(db, identity)
    return identity


async def on_account_deleted(db: AsyncSession, identity: PersistentIdentity) -> PersistentIdentity:
    # Aggregates are already current; only the deletion itself is recorded.
    identity.last_account_deleted_at = datetime.now(timezone.utc)
    await _increment(db, identity, account_deletions=1)
    return identity


async def on_reregistration(db: AsyncSession, identity: PersistentIdentity) -> PersistentIdentity:
    if identity.account_deletions > 0:
        await _increment(db, identity, reregistration_attempts=1)
        logger.warning(
            "Re-registration matched identity %s (deletions=%s, risk_score=%s)",
            identity.id, identity.account_deletions, identity.risk_score,
        )
    return identity


async def register_account(db: AsyncSession, account: User) -> PersistentIdentity | None:
    """Hook for account management once a new account row exists."""
    identity, created = await resolve_or_create(db, FingerprintSet.for_account(account))
    if identity is not None and not created:
        await on_reregistration(db, identity)
    return identity


async def record_account_deletion(db: AsyncSession, account: User) -> PersistentIdentity | None:
    """Hook for account management, called before the account row is deleted."""
    identity, _ = await resolve_or_create(db, FingerprintSet.for_account(account))
    if identity is not None:
        await on_account_deleted(db, identity)
    return identity


# ── Queries ─────────────────────────────────────────────────


async def check_at_registration(
    db: AsyncSession,
    email: str | None,
    phone: str | None = None,
    national_id: str | None = None,
) -> IdentityCheckResult:
    """Warn the registration flow about a matching risky identity.

    Whether a match should also block sign-up is a policy switch
    (``block_risky_registration``); the default only warns.
    """
    identity = await _riskiest_match(db, FingerprintSet.from_raw(email, phone, national_id))
    if identity is None or identity.risk_score <= 0:
        return CLEAN_CHECK

    return IdentityCheckResult(
        is_risky=True,
        total_amount_owed=Decimal(identity.total_amount_owed or 0),
        times_reported=identity.times_reported,
        account_deletions=identity.account_deletions,
        last_account_deleted_at=_as_utc(identity.last_account_deleted_at),
        blocked=settings.block_risky_registration,
    )


async def identity_status(db: AsyncSession, account: User) -> dict:
    """Identity view for an existing account (read-only, never creates or merges)."""
    identity = await _riskiest_match(db, FingerprintSet.for_account(account))
    if identity is None:
        return {"has_identity": False, "is_risky": False}
    return {
        "has_identity": True,
        "identity_id": identity.id,
        "is_risky": identity.risk_score > 0,
        "risk_score": identity.risk_score,
        "times_reported": identity.times_reported,
        "total_amount_owed": Decimal(identity.total_amount_owed or 0),
        "account_deletions": identity.account_deletions,
        "reregistration_attempts": identity.reregistration_attempts,
        "last_account_deleted_at": _as_utc(identity.last_account_deleted_at),
    }
