"""Best-effort dispatch of borrower status notifications."""

import logging

from lendtrust.config import settings
from lendtrust.models.user import User

logger = logging.getLogger(__name__)


def dispatch_status_change(borrower: User, reason: str = "") -> bool:
    """Queue a notification; never raises.

    A broker outage must not undo a risk transition, so every failure is
    logged and reported as ``False``.
    """
    if not settings.notifications_enabled:
        return False
    try:
        from lendtrust.tasks.notifications import notify_risk_status_change

        notify_risk_status_change.delay(
            borrower.id,
            borrower.email,
            borrower.risk_state.value,
            reason,
        )
        return True
    except Exception as exc:
        logger.warning("Could not queue risk notification for borrower=%s: %s", borrower.id, exc)
        return False
