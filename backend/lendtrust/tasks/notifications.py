"""Borrower notifications for risk status changes.

Delivery is the email collaborator's job; this task only hands it the
event. Failures are logged and retried a few times, never propagated back
into the transaction that changed the status.
"""

import logging

import httpx

from lendtrust.config import settings
from lendtrust.tasks import celery_app

logger = logging.getLogger(__name__)

__all__ = ["notify_risk_status_change", "build_status_message"]

_SUBJECTS = {
    "risky": "Your account has been flagged by a lender",
    "improved": "Your risk status has improved",
    "normal": "Your risk status has been cleared",
}


def build_status_message(risk_state: str, reason: str) -> dict[str, str]:
    subject = _SUBJECTS.get(risk_state, "Your risk status has changed")
    body = f"Your borrower risk status is now '{risk_state}'."
    if reason:
        body += f" Reason: {reason}"
    return {"subject": subject, "body": body}


@celery_app.task(
    name="lendtrust.tasks.notifications.notify_risk_status_change",
    autoretry_for=(httpx.TransportError,),
    retry_backoff=True,
    max_retries=3,
)
def notify_risk_status_change(borrower_id: int, email: str, risk_state: str, reason: str = "") -> dict:
    """Post a status-change notification to the email service."""
    if not settings.email_service_url:
        logger.warning("EMAIL_SERVICE_URL not configured: skipping notification for borrower=%s", borrower_id)
        return {"sent": False, "error": "email service not configured"}

    payload = {
        "borrower_id": borrower_id,
        "to": email,
        "risk_state": risk_state,
        **build_status_message(risk_state, reason),
    }
    response = httpx.post(settings.email_service_url, json=payload, timeout=10.0)
    if response.status_code >= 400:
        logger.error(
            "Email service error %s for borrower=%s: %s",
            response.status_code, borrower_id, response.text[:500],
        )
        return {"sent": False, "error": f"HTTP {response.status_code}"}

    logger.info("Risk status notification queued for borrower=%s state=%s", borrower_id, risk_state)
    return {"sent": True}
