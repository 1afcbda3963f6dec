"""delivery_monitor/integrations/messages.py — Customer-facing delay message text.

Uses OpenAI chat completions when OPENAI_API_KEY is configured and falls
back to a fixed template otherwise, or whenever the call fails.  This
collaborator therefore never raises: message text is not worth abandoning
a notification cycle over.
"""
import logging

import requests

from delivery_monitor.config import settings

logger = logging.getLogger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

_SYSTEM_PROMPT = (
    "You write short, friendly delivery delay notifications. "
    "Do NOT include any sign-off or company name; one short paragraph only."
)


def fallback_message(origin: str, destination: str, delay_minutes: int) -> str:
    return (
        f"Heads up! Your delivery from {origin} to {destination} is delayed by about "
        f"{delay_minutes} minutes due to traffic. We'll keep you posted."
    )


def generate_delay_message(origin: str, destination: str, delay_minutes: int) -> str:
    """Return one short paragraph telling the customer about the delay."""
    if settings.USE_MOCK_AI or not settings.OPENAI_API_KEY:
        logger.info("Message (mock): returning template")
        return fallback_message(origin, destination, delay_minutes)

    body = {
        "model": settings.OPENAI_MODEL,
        "messages": [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"A delivery from {origin} to {destination} is delayed by about "
                    f"{delay_minutes} minutes due to traffic. Write a brief, friendly "
                    f"message to the customer."
                ),
            },
        ],
    }

    try:
        res = requests.post(
            OPENAI_CHAT_URL,
            headers={
                "Authorization": f"Bearer {settings.OPENAI_API_KEY}",
                "Content-Type": "application/json",
            },
            json=body,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
        res.raise_for_status()
        choices = res.json().get("choices") or []
        text = ""
        if choices:
            text = ((choices[0].get("message") or {}).get("content") or "").strip()
        if not text:
            raise ValueError("OpenAI returned an empty message")
    except (requests.RequestException, ValueError) as exc:
        logger.error("Message generation failed, using fallback: %s", exc)
        return fallback_message(origin, destination, delay_minutes)

    logger.info("Message generated: model=%s chars=%d", settings.OPENAI_MODEL, len(text))
    return text
