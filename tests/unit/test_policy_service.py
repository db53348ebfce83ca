"""
Unit tests for crm_api/services/policy_service.py
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from crm_api.exceptions import ApprovalNotFoundError, ApprovalStateConflictError
from crm_api.models.approval_policy import ApprovalPolicy, ApprovalType
from crm_api.schemas.approval_policy import ApprovalPolicyCreate, ApprovalPolicyUpdate
from crm_api.services.policy_service import (
    DEFAULT_POLICIES,
    create_policy,
    get_active_policy,
    seed_default_policies,
    update_policy,
)

POLICIES = "crm_api.services.policy_service"


@pytest.fixture
def audit():
    with patch(f"{POLICIES}.create_audit_log", AsyncMock()) as create_audit_log:
        yield create_audit_log


# ---------------------------------------------------------------------------
# Active policy precedence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_project_policy_wins_over_org_default(mock_session, org_id, make_policy, result_of):
    project_policy = make_policy(project_id=uuid.uuid4())
    mock_session.execute.return_value = result_of(project_policy)

    policy = await get_active_policy(
        mock_session, org_id, ApprovalType.DISCOUNT_APPROVAL, project_policy.project_id
    )

    assert policy is project_policy
    assert mock_session.execute.await_count == 1


@pytest.mark.asyncio
async def test_falls_back_to_org_policy(mock_session, org_id, make_policy, result_of):
    org_policy = make_policy()
    mock_session.execute.side_effect = [result_of(None), result_of(org_policy)]

    policy = await get_active_policy(
        mock_session, org_id, "DISCOUNT_APPROVAL", uuid.uuid4()
    )

    assert policy is org_policy
    assert mock_session.execute.await_count == 2


@pytest.mark.asyncio
async def test_without_project_only_org_scope_is_queried(mock_session, org_id, result_of):
    mock_session.execute.return_value = result_of(None)

    assert await get_active_policy(mock_session, org_id, ApprovalType.REFUND_APPROVAL) is None
    assert mock_session.execute.await_count == 1


@pytest.mark.asyncio
async def test_unknown_type_is_rejected(mock_session, org_id):
    with pytest.raises(ValueError):
        await get_active_policy(mock_session, org_id, "BONUS_APPROVAL")


# ---------------------------------------------------------------------------
# Create / update
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_policy_flattens_escalation(mock_session, org_id, result_of, audit):
    mock_session.execute.return_value = result_of(None)
    user_id = uuid.uuid4()
    body = ApprovalPolicyCreate(
        approval_type="REFUND_APPROVAL",
        display_name="Refunds",
        amount_thresholds=[{"min_amount": 0, "max_amount": 1000, "approver_role_level": 4}],
        escalation={"enabled": False, "level1_after_hours": 12,
                    "level2_after_hours": 24, "level3_after_hours": 36},
    )

    policy = await create_policy(mock_session, org_id, body, user_id)

    mock_session.add.assert_called_once_with(policy)
    assert policy.approval_type == "REFUND_APPROVAL"
    assert policy.escalation_enabled is False
    assert policy.escalation_thresholds == (12, 24, 36)
    assert policy.amount_thresholds[0]["approver_role_level"] == 4
    assert policy.created_by == user_id
    assert audit.await_args.kwargs["action"] == "policy_created"


@pytest.mark.asyncio
async def test_duplicate_scope_is_a_conflict(mock_session, org_id, make_policy, result_of, audit):
    existing = make_policy(ApprovalType.INVOICE_APPROVAL)
    mock_session.execute.return_value = result_of(existing)
    body = ApprovalPolicyCreate(approval_type="INVOICE_APPROVAL", display_name="Invoices")

    with pytest.raises(ApprovalStateConflictError) as exc_info:
        await create_policy(mock_session, org_id, body, uuid.uuid4())

    error = exc_info.value.detail["error"]
    assert exc_info.value.status_code == 409
    assert error["code"] == "POLICY_EXISTS"
    assert error["details"]["policy_id"] == str(existing.id)
    mock_session.add.assert_not_called()


@pytest.mark.asyncio
async def test_update_applies_only_sent_fields(mock_session, org_id, make_policy, result_of, audit):
    policy = make_policy(description="Old text", sla_hours=24)
    mock_session.execute.return_value = result_of(policy)
    user_id = uuid.uuid4()
    body = ApprovalPolicyUpdate(
        sla_hours=48,
        description=None,
        escalation={"enabled": True, "level1_after_hours": 48,
                    "level2_after_hours": 96, "level3_after_hours": 120},
    )

    updated = await update_policy(mock_session, policy.id, org_id, body, user_id)

    assert updated is policy
    assert policy.sla_hours == 48
    assert policy.description is None
    assert policy.display_name == "Test policy"
    assert policy.escalation_thresholds == (48, 96, 120)
    assert policy.last_modified_by == user_id

    audit_kwargs = audit.await_args.kwargs
    assert audit_kwargs["before_state"]["sla_hours"] == 24
    assert audit_kwargs["after_state"]["sla_hours"] == 48


@pytest.mark.asyncio
async def test_update_unknown_policy(mock_session, org_id, result_of, audit):
    mock_session.execute.return_value = result_of(None)

    with pytest.raises(ApprovalNotFoundError) as exc_info:
        await update_policy(
            mock_session, uuid.uuid4(), org_id, ApprovalPolicyUpdate(sla_hours=4), uuid.uuid4()
        )

    assert exc_info.value.code == "POLICY_NOT_FOUND"
    audit.assert_not_awaited()


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


def test_default_set_covers_every_approval_type():
    assert {ApprovalType(p["approval_type"]) for p in DEFAULT_POLICIES} == set(ApprovalType)
    for template in DEFAULT_POLICIES:
        ApprovalPolicyCreate.model_validate(template)


@pytest.mark.asyncio
async def test_seed_creates_missing_and_keeps_existing(
    mock_session, org_id, make_policy, result_of
):
    existing = make_policy(ApprovalType.DISCOUNT_APPROVAL, display_name="Customised")
    mock_session.execute.side_effect = [result_of(existing)] + [
        result_of(None) for _ in DEFAULT_POLICIES[1:]
    ]

    policies = await seed_default_policies(mock_session, org_id)

    assert len(policies) == len(DEFAULT_POLICIES)
    assert policies[0] is existing
    assert existing.display_name == "Customised"
    assert mock_session.add.call_count == len(DEFAULT_POLICIES) - 1

    created = {p.approval_type: p for p in policies[1:]}
    assert all(isinstance(p, ApprovalPolicy) for p in created.values())
    assert created["COMMISSION_PAYOUT"].is_enabled is False
    assert created["SALE_CANCELLATION"].always_require is True
    assert created["SALE_CANCELLATION"].escalation_thresholds == (48, 72, 96)


@pytest.mark.asyncio
async def test_seed_is_idempotent(mock_session, org_id, make_policy, result_of):
    mock_session.execute.side_effect = [
        result_of(make_policy(p["approval_type"])) for p in DEFAULT_POLICIES
    ]

    await seed_default_policies(mock_session, org_id)

    mock_session.add.assert_not_called()
