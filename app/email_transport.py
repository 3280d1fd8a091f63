# Outbound email via Resend.
# The messaging core only sees send_email(); every non-success outcome becomes a TransportFailure.
from __future__ import annotations

import logging
import os
from typing import Any, Optional

import resend

from .errors import TransportFailure

logger = logging.getLogger("stayflow.email")

PROVIDER = "resend"


def _api_key() -> str:
    return os.getenv("RESEND_API_KEY", "").strip()


def _default_sender() -> str:
    return os.getenv("RESEND_FROM_EMAIL", "").strip()


def is_email_configured() -> bool:
    """True when both the API key and a default sender address are set."""
    return bool(_api_key() and _default_sender())


def _message_id(response: Any) -> Optional[str]:
    # The SDK returns a dict today; older releases returned an object with an `id` attribute
    if isinstance(response, dict):
        return response.get("id")
    return getattr(response, "id", None)


def send_email(to: str, subject: str, html: str, from_address: Optional[str] = None) -> str:
    """
    Send one email and return the provider's message id.

    Raises TransportFailure with a human-readable message when the service is not configured,
    the provider rejects the request, or the response carries no id.
    """
    api_key = _api_key()
    if not api_key:
        logger.error("email.not_configured", extra={"missing": "RESEND_API_KEY"})
        raise TransportFailure("Email service is not configured")

    sender = from_address or _default_sender()
    if not sender:
        logger.error("email.not_configured", extra={"missing": "RESEND_FROM_EMAIL"})
        raise TransportFailure("Email sender address is not configured")

    resend.api_key = api_key
    params = {
        "from": sender,
        "to": [to],
        "subject": subject,
        "html": html,
    }
    try:
        response = resend.Emails.send(params)
    except Exception as exc:
        logger.warning("email.provider_error", extra={"to": to, "error": str(exc)})
        raise TransportFailure(str(exc) or "Failed to send email") from exc

    message_id = _message_id(response)
    if not message_id:
        logger.error("email.empty_response", extra={"to": to})
        raise TransportFailure("No response from email service")
    return message_id
