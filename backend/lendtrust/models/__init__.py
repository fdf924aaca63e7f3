"""SQLAlchemy models for the LendTrust trust engine."""

from lendtrust.models.user import User, UserRole, RiskState
from lendtrust.models.loan import Loan, LoanStatus, OUTSTANDING_STATUSES
from lendtrust.models.risk import (
    RiskEntry,
    RiskEntryStatus,
    RiskHistoryEvent,
    RiskReason,
    RiskAction,
    SYSTEM_REPORTER,
    reporter_key_for,
)
from lendtrust.models.identity import (
    PersistentIdentity,
    IdentityFingerprint,
    IdentityReport,
    FingerprintKind,
)
from lendtrust.models.audit import AuditLog
from lendtrust.models.error_log import ErrorLog, ErrorSeverity

__all__ = [
    "User",
    "UserRole",
    "RiskState",
    "Loan",
    "LoanStatus",
    "OUTSTANDING_STATUSES",
    # Risk ledger
    "RiskEntry",
    "RiskEntryStatus",
    "RiskHistoryEvent",
    "RiskReason",
    "RiskAction",
    "SYSTEM_REPORTER",
    "reporter_key_for",
    # Persistent identity
    "PersistentIdentity",
    "IdentityFingerprint",
    "IdentityReport",
    "FingerprintKind",
    # Monitoring
    "AuditLog",
    "ErrorLog",
    "ErrorSeverity",
]
