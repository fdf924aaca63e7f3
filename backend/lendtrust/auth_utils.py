"""JWT token handling, caller resolution, and the central authorization predicate."""

import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lendtrust.config import settings
from lendtrust.database import get_db
from lendtrust.models.user import User, UserRole
from lendtrust.services.trust_engine.errors import Forbidden, Unauthorized

security_logger = logging.getLogger("lendtrust.security")

ALGORITHM = "HS256"

# ── Risk actions and who may perform them ────────────────────

MARK_RISKY = "mark_risky"
MARK_IMPROVED = "mark_improved"
RISK_CHECK = "risk_check"
VIEW_HISTORY = "view_history"
WITHDRAW_REPORT = "withdraw_report"
FILE_APPEAL = "file_appeal"
REVIEW_APPEAL = "review_appeal"

RISK_ACTION_ROLES: dict[str, frozenset[UserRole]] = {
    MARK_RISKY: frozenset({UserRole.LENDER, UserRole.ADMIN}),
    MARK_IMPROVED: frozenset({UserRole.LENDER, UserRole.ADMIN}),
    RISK_CHECK: frozenset({UserRole.LENDER, UserRole.ADMIN}),
    VIEW_HISTORY: frozenset({UserRole.LENDER, UserRole.ADMIN}),
    WITHDRAW_REPORT: frozenset({UserRole.LENDER, UserRole.ADMIN}),
    FILE_APPEAL: frozenset({UserRole.BORROWER}),
    REVIEW_APPEAL: frozenset({UserRole.ADMIN}),
}


def authorize_risk_actor(
    actor: User | None,
    action: str,
    *,
    borrower_id: int | None = None,
    owner_id: int | None = None,
) -> User:
    """Single authorization gate for every risk command. Fails closed.

    ``owner_id`` restricts the action to one account (the reporting lender
    for a withdrawal, the flagged borrower for an appeal); admins bypass it.
    Rejections are logged for security review; they never reach the risk
    history, which only records successful transitions.
    """
    if actor is None or not actor.is_active:
        security_logger.warning(
            "Rejected %s on borrower=%s: no authenticated session", action, borrower_id,
        )
        raise Unauthorized()

    allowed = RISK_ACTION_ROLES.get(action)
    if allowed is None or actor.role not in allowed:
        security_logger.warning(
            "Rejected %s on borrower=%s by user=%s role=%s",
            action, borrower_id, actor.id, getattr(actor.role, "value", actor.role),
        )
        raise Forbidden(f"Role '{getattr(actor.role, 'value', actor.role)}' may not perform {action}")

    if owner_id is not None and actor.role != UserRole.ADMIN and actor.id != owner_id:
        security_logger.warning(
            "Rejected %s on borrower=%s by user=%s: not the owner (owner=%s)",
            action, borrower_id, actor.id, owner_id,
        )
        raise Forbidden(f"Only the owning account may perform {action}")
    return actor


# ── Token helpers ────────────────────────────────────────────


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({
        "exp": expire,
        "type": "access",
        "jti": uuid.uuid4().hex,
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and return the JWT payload. Raises JWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])


# ── Caller dependencies ──────────────────────────────────────


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(HTTPBearer(auto_error=False)),
    db: AsyncSession = Depends(get_db),
) -> User | None:
    """Return the caller if a valid access token was sent, else None.

    Commands pass the result to ``authorize_risk_actor`` so a missing
    session and a wrong role are both decided in one place.
    """
    if credentials is None:
        return None
    try:
        payload = decode_token(credentials.credentials)
        user_id_raw = payload.get("sub")
        if user_id_raw is None or payload.get("type") != "access":
            return None
        user_id = int(user_id_raw)
    except (JWTError, ValueError, TypeError):
        return None
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        return None
    return user


async def require_internal_caller(x_internal_token: str | None = Header(default=None)) -> None:
    """Guard for collaborator-only endpoints (payment settlement, account management)."""
    expected = settings.internal_api_token
    if not expected or not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        security_logger.warning("Rejected internal call: missing or invalid X-Internal-Token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Internal token required",
        )
