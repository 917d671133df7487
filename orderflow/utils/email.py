"""Transactional mail through the Mailgun HTTP API."""

import logging
from typing import Optional

import requests

from orderflow.config import settings

logger = logging.getLogger(__name__)

MAILGUN_MESSAGES_URL = "https://api.mailgun.net/v3/{domain}/messages"


def mail_enabled() -> bool:
    return bool(settings.mailgun_api_key and settings.mailgun_domain and settings.email_from_address)


def send_email(to_email: str, subject: str, html_content: str, text_content: Optional[str] = None) -> bool:
    """
    Deliver one message. Returns False instead of raising so that a mail
    outage never reaches order or payment code.
    """
    if not mail_enabled():
        logger.debug("Mail disabled, dropping '%s' for %s", subject, to_email)
        return False

    form = {
        "from": f"{settings.email_from_name} <{settings.email_from_address}>",
        "to": to_email,
        "subject": subject,
        "html": html_content,
    }
    if text_content:
        form["text"] = text_content

    try:
        response = requests.post(
            MAILGUN_MESSAGES_URL.format(domain=settings.mailgun_domain),
            auth=("api", settings.mailgun_api_key),
            data=form,
            timeout=settings.mail_timeout,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error("Mail to %s failed | subject=%s error=%s", to_email, subject, e)
        return False

    logger.debug("Mail sent | to=%s subject=%s", to_email, subject)
    return True
