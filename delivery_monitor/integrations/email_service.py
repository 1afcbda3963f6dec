"""delivery_monitor/integrations/email_service.py — SendGrid email delivery.

send_notification_email() forwards the monitor's idempotency key in the
Idempotency-Key header so a retried send of the same message is collapsed
by the provider instead of reaching the recipient twice.
"""
import logging

import requests

from delivery_monitor.config import settings
from delivery_monitor.errors import EmailDeliveryError

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


def _with_signature(body: str) -> str:
    return f"{body}\n\nBest,\n{settings.COMPANY_NAME}"


def build_sendgrid_payload(to: str, subject: str, body: str) -> dict:
    """Return the v3/mail/send JSON document for a plain-text message."""
    payload = {
        "personalizations": [{"to": [{"email": to}]}],
        "from": {
            "email": settings.SENDGRID_FROM_EMAIL,
            "name": settings.SENDGRID_FROM_NAME or settings.COMPANY_NAME,
        },
        "subject": subject,
        "content": [{"type": "text/plain", "value": _with_signature(body)}],
    }
    if settings.SENDGRID_SANDBOX:
        payload["mail_settings"] = {"sandbox_mode": {"enable": True}}
    return payload


def send_notification_email(to: str, subject: str, body: str, idempotency_key: str) -> None:
    """Send one notification email.

    Raises:
        EmailDeliveryError: transport failure or non-2xx response.  The message
            may be retried later with the same idempotency_key.
    """
    if settings.USE_MOCK_EMAIL or not settings.SENDGRID_API_KEY:
        logger.info(
            "Email (mock): subject=%r key=%s body=%r",
            subject,
            idempotency_key,
            _with_signature(body),
        )
        return

    try:
        res = requests.post(
            SENDGRID_SEND_URL,
            headers={
                "Authorization": f"Bearer {settings.SENDGRID_API_KEY}",
                "Content-Type": "application/json",
                "Idempotency-Key": idempotency_key,
            },
            json=build_sendgrid_payload(to, subject, body),
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        raise EmailDeliveryError(f"SendGrid transport error: {exc}") from exc

    if not res.ok:
        raise EmailDeliveryError(f"SendGrid HTTP {res.status_code} {res.text}")

    logger.info(
        "Email sent: subject=%r key=%s%s",
        subject,
        idempotency_key,
        " (sandbox)" if settings.SENDGRID_SANDBOX else "",
    )
