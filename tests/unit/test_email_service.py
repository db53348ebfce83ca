"""
Unit tests for crm_api/services/email_service.py
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from tenacity import wait_none

from crm_api.config import settings
from crm_api.services import email_service
from crm_api.services.email_service import build_payload, send_email


def _response(status_code: int, body: dict = None) -> MagicMock:
    r = MagicMock()
    r.status_code = status_code
    r.json.return_value = body or {}
    r.text = str(body)
    return r


@pytest.fixture
def brevo(monkeypatch):
    """HTTP client stub; set ``.post`` behaviour per test."""
    monkeypatch.setattr(settings, "BREVO_API_KEY", "test-key")
    client = MagicMock()
    client.post = AsyncMock()
    with patch.object(email_service, "get_http_client", return_value=client):
        yield client


def test_payload_deduplicates_recipients_and_tags():
    payload = build_payload(
        ["a@example.com", "b@example.com", "a@example.com"],
        "Subject", "<p>x</p>", tags=["approval_escalated"],
    )
    assert payload["to"] == [{"email": "a@example.com"}, {"email": "b@example.com"}]
    assert payload["tags"] == ["approval_escalated"]
    assert payload["sender"]["email"] == settings.EMAIL_FROM_ADDRESS


@pytest.mark.asyncio
async def test_accepted_message(brevo):
    brevo.post.return_value = _response(201, {"messageId": "<m1@brevo>"})

    assert await send_email(["a@example.com"], "Hi", "<p>Hi</p>", tags=["approval_approved"]) is True
    sent = brevo.post.await_args.kwargs
    assert sent["headers"]["api-key"] == "test-key"
    assert sent["json"]["tags"] == ["approval_approved"]


@pytest.mark.asyncio
async def test_client_error_is_not_retried(brevo):
    brevo.post.return_value = _response(400, {"message": "invalid sender"})

    assert await send_email(["a@example.com"], "Hi", "<p>Hi</p>") is False
    assert brevo.post.await_count == 1


@pytest.mark.asyncio
async def test_server_errors_exhaust_retries(brevo):
    brevo.post.side_effect = httpx.ConnectError("refused")

    no_wait = email_service._post_to_brevo.retry_with(wait=wait_none())
    with patch.object(email_service, "_post_to_brevo", no_wait):
        assert await send_email(["a@example.com"], "Hi", "<p>Hi</p>") is False
    assert brevo.post.await_count == 3


@pytest.mark.asyncio
async def test_missing_api_key_skips_send(monkeypatch):
    monkeypatch.setattr(settings, "BREVO_API_KEY", None)
    with patch.object(email_service, "get_http_client") as client_factory:
        assert await send_email(["a@example.com"], "Hi", "<p>Hi</p>") is False
    client_factory.assert_not_called()
