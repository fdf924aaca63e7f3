"""Centralised error logging: captures exceptions to DB and Python logger.

Usage:
    from lendtrust.services.error_logger import log_error
    try:
        ...
    except SQLAlchemyError as e:
        await log_error(e, db=db, module="trust_engine.history", function_name="risk_check")

The middleware captures unhandled request errors through
``log_error_standalone``.
"""

from __future__ import annotations

import logging
import traceback as tb_module
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lendtrust.models.error_log import ErrorLog, ErrorSeverity

logger = logging.getLogger("lendtrust.errors")


def _sanitize_text(value: object, *, max_len: Optional[int] = None) -> str:
    """Strip control characters (except common whitespace) before persisting."""
    text = "".join(ch if (ch >= " " or ch in "\n\r\t") else " " for ch in str(value))
    return text[:max_len] if max_len is not None else text


async def log_error(
    exc: Exception,
    *,
    db: Optional[AsyncSession] = None,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    module: Optional[str] = None,
    function_name: Optional[str] = None,
    request_method: Optional[str] = None,
    request_path: Optional[str] = None,
    status_code: Optional[int] = None,
    response_time_ms: Optional[float] = None,
    user_id: Optional[int] = None,
) -> Optional[ErrorLog]:
    """Log an exception to the Python logger and, when a session is given, the DB.

    Returns the ErrorLog row, or None when no session was given or the
    write failed. Never raises.
    """
    error_type = type(exc).__name__
    message = _sanitize_text(exc, max_len=2000)

    log_msg = f"[{severity.value.upper()}] {error_type}: {message}"
    if request_path:
        log_msg = f"{request_method or '?'} {request_path} -> {log_msg}"
    logger.error(log_msg, exc_info=exc)

    if db is None:
        return None

    try:
        entry = ErrorLog(
            severity=severity,
            error_type=error_type,
            message=message,
            traceback=_sanitize_text(
                "".join(tb_module.format_exception(type(exc), exc, exc.__traceback__)),
                max_len=10000,
            ),
            module=module,
            function_name=function_name,
            request_method=request_method,
            request_path=_sanitize_text(request_path, max_len=500) if request_path else None,
            status_code=status_code,
            response_time_ms=response_time_ms,
            user_id=user_id,
        )
        # A failed insert rolls back only this savepoint
        async with db.begin_nested():
            db.add(entry)
        return entry
    except Exception as db_err:
        logger.warning("Failed to persist error log to DB: %s", db_err)
        return None


async def log_error_standalone(exc: Exception, **kwargs) -> Optional[ErrorLog]:
    """Log an error using its own DB session (for middleware use)."""
    from lendtrust.database import async_session

    try:
        async with async_session() as db:
            entry = await log_error(exc, db=db, **kwargs)
            await db.commit()
            return entry
    except Exception as db_err:
        logger.warning("Failed standalone error log: %s", db_err)
        return None
