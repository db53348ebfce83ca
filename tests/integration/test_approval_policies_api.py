"""
HTTP contract of /api/v1/approval-policies. Restricted to the organization
owner and business head.
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from crm_api.exceptions import ApprovalNotFoundError, ApprovalStateConflictError

ROUTES = "crm_api.routes.approval_policies"
BASE = "/api/v1/approval-policies"


@pytest.fixture
def owner(current_user):
    current_user["role"] = "organization-owner"
    return current_user


@pytest.mark.asyncio
@pytest.mark.parametrize("role", ["sales-head", "finance-manager", "project-director"])
async def test_non_managers_are_forbidden(client, auth_headers, current_user, role):
    current_user["role"] = role

    with patch(f"{ROUTES}.list_policies", AsyncMock(return_value=[])) as lister:
        resp = await client.get(BASE, headers=auth_headers)

    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "INSUFFICIENT_PERMISSIONS"
    lister.assert_not_awaited()


@pytest.mark.asyncio
async def test_list_policies(client, auth_headers, owner, make_policy):
    policies = [make_policy(), make_policy("REFUND_APPROVAL", always_require=True)]

    with patch(f"{ROUTES}.list_policies", AsyncMock(return_value=policies)) as lister:
        resp = await client.get(BASE, params={"approval_type": "REFUND_APPROVAL"}, headers=auth_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert [p["approval_type"] for p in body] == ["DISCOUNT_APPROVAL", "REFUND_APPROVAL"]
    assert body[1]["always_require"] is True
    assert body[0]["level2_after_hours"] == 48
    assert lister.await_args.kwargs["approval_type"] == "REFUND_APPROVAL"


@pytest.mark.asyncio
async def test_create_policy_returns_201(client, auth_headers, owner, make_policy):
    created = make_policy("PRICE_OVERRIDE", price_override_threshold_percent=7.5)
    body = {
        "approval_type": "PRICE_OVERRIDE",
        "display_name": "Price override",
        "price_override_threshold_percent": 7.5,
        "approver_rules": [{"role_level": 2, "assignment_mode": "hierarchy"}],
    }

    with patch(f"{ROUTES}.create_policy", AsyncMock(return_value=created)) as create:
        resp = await client.post(BASE, json=body, headers=auth_headers)

    assert resp.status_code == 201
    assert resp.json()["price_override_threshold_percent"] == 7.5
    sent = create.await_args.args[2]
    assert sent.approver_rules[0].role_level == 2
    assert create.await_args.args[3] == owner["user_id"]


@pytest.mark.asyncio
async def test_create_rejects_unordered_escalation(client, auth_headers, owner):
    body = {
        "approval_type": "REFUND_APPROVAL",
        "display_name": "Refunds",
        "escalation": {"level1_after_hours": 48, "level2_after_hours": 24, "level3_after_hours": 72},
    }

    with patch(f"{ROUTES}.create_policy", AsyncMock()) as create:
        resp = await client.post(BASE, json=body, headers=auth_headers)

    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
    create.assert_not_awaited()


@pytest.mark.asyncio
async def test_duplicate_policy_is_409(client, auth_headers, owner):
    conflict = ApprovalStateConflictError(
        "A INVOICE_APPROVAL policy already exists for this scope", code="POLICY_EXISTS"
    )
    with patch(f"{ROUTES}.create_policy", AsyncMock(side_effect=conflict)):
        resp = await client.post(
            BASE,
            json={"approval_type": "INVOICE_APPROVAL", "display_name": "Invoices"},
            headers=auth_headers,
        )

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "POLICY_EXISTS"


@pytest.mark.asyncio
async def test_update_and_missing_policy(client, auth_headers, current_user, make_policy):
    current_user["role"] = "business-head"
    policy = make_policy(sla_hours=36)

    with patch(f"{ROUTES}.update_policy", AsyncMock(return_value=policy)) as update:
        resp = await client.put(f"{BASE}/{policy.id}", json={"sla_hours": 36}, headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["sla_hours"] == 36
    assert update.await_args.args[3].model_dump(exclude_unset=True) == {"sla_hours": 36}

    missing = ApprovalNotFoundError("Approval policy not found", code="POLICY_NOT_FOUND")
    with patch(f"{ROUTES}.get_policy", AsyncMock(side_effect=missing)):
        resp = await client.get(f"{BASE}/{uuid.uuid4()}", headers=auth_headers)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "POLICY_NOT_FOUND"


@pytest.mark.asyncio
async def test_seed_defaults(client, auth_headers, owner, make_policy):
    seeded = [make_policy(), make_policy("SALE_CANCELLATION")]

    with patch(f"{ROUTES}.seed_default_policies", AsyncMock(return_value=seeded)) as seed:
        resp = await client.post(f"{BASE}/seed-defaults", headers=auth_headers)

    assert resp.status_code == 200
    assert len(resp.json()) == 2
    assert seed.await_args.kwargs["created_by"] == owner["user_id"]
