from typing import List, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log
import logging
import structlog

from crm_api.config import settings

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"

_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, connect=5.0),
        )
    return _http_client


class _BrevoRetryableError(Exception):
    """5xx or network failure; worth another attempt."""


@retry(
    retry=retry_if_exception_type(_BrevoRetryableError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    before_sleep=before_sleep_log(_std_logger, logging.WARNING),
    reraise=True,
)
async def _post_to_brevo(headers: dict, payload: dict, to_emails: List[str]) -> bool:
    client = get_http_client()
    try:
        response = await client.post(BREVO_API_URL, headers=headers, json=payload)
    except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
        logger.warning("email_network_error_retrying", error=str(exc), to=to_emails)
        raise _BrevoRetryableError(str(exc)) from exc

    if response.status_code in (201, 202):
        logger.info(
            "email_sent_brevo",
            to=to_emails,
            subject=payload["subject"],
            message_id=response.json().get("messageId"),
        )
        return True

    if response.status_code >= 500:
        logger.warning(
            "email_brevo_5xx_retrying",
            status_code=response.status_code,
            to=to_emails,
        )
        raise _BrevoRetryableError(f"Brevo returned {response.status_code}")

    # 4xx: retrying will not help
    logger.error(
        "email_failed_brevo",
        status_code=response.status_code,
        response=response.text[:500],
        to=to_emails,
        subject=payload["subject"],
    )
    return False


def build_payload(
    to_emails: List[str],
    subject: str,
    html_content: str,
    tags: Optional[List[str]] = None,
    sender_name: Optional[str] = None,
    sender_email: Optional[str] = None,
) -> dict:
    payload = {
        "sender": {
            "name": sender_name or settings.APP_NAME,
            "email": sender_email or settings.EMAIL_FROM_ADDRESS,
        },
        # An approver can hold several roles; send one copy per address
        "to": [{"email": email} for email in dict.fromkeys(to_emails)],
        "subject": subject,
        "htmlContent": html_content,
    }
    if tags:
        payload["tags"] = list(tags)
    return payload


async def send_email(
    to_emails: List[str],
    subject: str,
    html_content: str,
    *,
    tags: Optional[List[str]] = None,
    sender_name: Optional[str] = None,
    sender_email: Optional[str] = None,
) -> bool:
    """
    Send email through the Brevo transactional API.

    ``tags`` carries the notification template id so delivery stats can be
    split per approval event in the Brevo console. 5xx and network errors are
    retried up to 3 times with exponential back-off. Returns True if Brevo
    accepted the message. Never raises: this runs as a background task after
    the response has gone out.
    """
    if not settings.BREVO_API_KEY:
        logger.warning("brevo_api_key_missing", message="Email sending skipped")
        return False

    if not to_emails:
        logger.warning("email_no_recipients")
        return False

    headers = {
        "accept": "application/json",
        "api-key": settings.BREVO_API_KEY,
        "content-type": "application/json",
    }
    payload = build_payload(to_emails, subject, html_content, tags, sender_name, sender_email)

    try:
        return await _post_to_brevo(headers, payload, to_emails)
    except _BrevoRetryableError as exc:
        logger.error(
            "email_all_retries_exhausted",
            error=str(exc),
            to=to_emails,
            subject=subject,
            tags=tags,
        )
        return False
