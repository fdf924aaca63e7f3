"""Error taxonomy for the trust engine.

The API layer maps each class to an HTTP status via ``status_code``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lendtrust.models.risk import RiskEntry


class TrustEngineError(Exception):
    status_code = 500
    detail = "Trust engine error"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class Unauthorized(TrustEngineError):
    status_code = 401
    detail = "Authentication required"


class Forbidden(TrustEngineError):
    status_code = 403
    detail = "Insufficient permissions"


class NotFound(TrustEngineError):
    status_code = 404
    detail = "Not found"


class InvalidTransition(TrustEngineError):
    status_code = 409
    detail = "Transition not allowed from the entry's current status"


class DuplicateActiveReport(TrustEngineError):
    """The reporter already has an active entry for this borrower.

    Never surfaced to callers: the classifier returns ``existing`` instead.
    """
    status_code = 409
    detail = "An active report from this reporter already exists"

    def __init__(self, existing: RiskEntry):
        super().__init__()
        self.existing = existing


class TransientStoreFailure(TrustEngineError):
    """Data store failure on a mutation. Nothing was written; safe to retry."""
    status_code = 503
    detail = "Risk store temporarily unavailable, retry the request"
