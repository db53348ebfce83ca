"""
Idempotency-Key handling on approval mutations: a retried approve replays
the first response instead of hitting the service again.
"""

import json
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from crm_api.services.cache import cache


@pytest.fixture
def redis():
    with patch.object(cache, "get", AsyncMock(return_value=None)) as get, \
         patch.object(cache, "setnx", AsyncMock(return_value=True)) as setnx, \
         patch.object(cache, "set", AsyncMock()) as set_, \
         patch.object(cache, "delete", AsyncMock()) as delete:
        yield SimpleNamespace(get=get, setnx=setnx, set=set_, delete=delete)


@pytest.mark.asyncio
async def test_first_call_is_stored(client, auth_headers, make_request, redis):
    request = make_request(status="approved", current_approval_count=1)
    headers = {**auth_headers, "Idempotency-Key": "approve-1"}

    with patch("crm_api.routes.approvals.process_approval_action", AsyncMock(return_value=request)):
        resp = await client.post(f"/api/v1/approvals/{request.id}/approve", headers=headers)

    assert resp.status_code == 200
    key, stored, ttl = redis.set.await_args.args
    assert key.startswith("idempotency:") and key.endswith(":approve-1")
    assert json.loads(stored)["body"]["id"] == str(request.id)
    assert ttl == 86_400
    redis.delete.assert_awaited_once()


@pytest.mark.asyncio
async def test_replay_skips_the_handler(client, auth_headers, redis):
    redis.get.return_value = json.dumps({"status_code": 200, "body": {"status": "approved"}})
    headers = {**auth_headers, "Idempotency-Key": "approve-1"}

    with patch("crm_api.routes.approvals.process_approval_action", AsyncMock()) as act:
        resp = await client.post(f"/api/v1/approvals/{uuid.uuid4()}/approve", headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"status": "approved"}
    assert resp.headers["X-Idempotent-Replayed"] == "true"
    act.assert_not_awaited()


@pytest.mark.asyncio
async def test_in_flight_duplicate_is_409(client, auth_headers, redis):
    redis.setnx.return_value = False
    headers = {**auth_headers, "Idempotency-Key": "approve-2"}

    resp = await client.post(f"/api/v1/approvals/{uuid.uuid4()}/approve", headers=headers)

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "CONCURRENT_REQUEST"


@pytest.mark.asyncio
async def test_cache_outage_falls_through(client, auth_headers, make_request, redis):
    redis.get.side_effect = ConnectionError("upstash unreachable")
    request = make_request()
    headers = {**auth_headers, "Idempotency-Key": "cancel-1"}

    with patch("crm_api.routes.approvals.cancel_approval_request", AsyncMock(return_value=request)):
        resp = await client.post(f"/api/v1/approvals/{request.id}/cancel", headers=headers)

    assert resp.status_code == 200
    redis.set.assert_not_awaited()
