import uuid
from datetime import datetime, timedelta
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

import crm_api.models  # noqa: F401  (configure every mapper before building instances)
from crm_api.models.approval import ApprovalRequest, ApproverAction
from crm_api.models.approval_policy import ApprovalPolicy, ApprovalType


class _Savepoint:
    """Stands in for AsyncSession.begin_nested(): commits on clean exit."""

    def __init__(self):
        self.rolled_back = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.rolled_back = exc_type is not None
        return False


def _result_of(value=None, *, scalars: Optional[list] = None, scalar=None, rows=None):
    """MagicMock shaped like an AsyncSession.execute() result."""
    r = MagicMock()
    r.scalar_one_or_none.return_value = value
    r.scalar.return_value = scalar
    r.scalars.return_value.all.return_value = scalars or []
    r.scalars.return_value.first.return_value = (scalars or [None])[0]
    r.all.return_value = rows or []
    return r


@pytest.fixture
def result_of():
    return _result_of


@pytest.fixture
def mock_session() -> AsyncMock:
    session = AsyncMock()
    session.flush = AsyncMock()
    session.add = MagicMock()
    session.begin_nested = MagicMock(side_effect=lambda: _Savepoint())
    return session


@pytest.fixture
def org_id() -> uuid.UUID:
    return uuid.UUID("a0000000-0000-0000-0000-000000000001")


@pytest.fixture
def make_policy(org_id):
    def _make(approval_type=ApprovalType.DISCOUNT_APPROVAL, **overrides) -> ApprovalPolicy:
        values = dict(
            id=uuid.uuid4(),
            organization_id=org_id,
            project_id=None,
            approval_type=ApprovalType(approval_type).value,
            is_enabled=True,
            display_name="Test policy",
            discount_thresholds=[],
            price_override_threshold_percent=10.0,
            amount_thresholds=[],
            always_require=False,
            approver_rules=[],
            required_approvals=1,
            sla_hours=24,
            escalation_enabled=True,
            level1_after_hours=24,
            level2_after_hours=48,
            level3_after_hours=72,
        )
        values.update(overrides)
        return ApprovalPolicy(**values)

    return _make


@pytest.fixture
def make_request(org_id, make_policy):
    def _make(
        approvers: Optional[list] = None,
        approval_type=ApprovalType.DISCOUNT_APPROVAL,
        required_approvals: int = 1,
        requested_by: Optional[uuid.UUID] = None,
        created_hours_ago: float = 0,
        policy: Optional[ApprovalPolicy] = None,
        **overrides,
    ) -> ApprovalRequest:
        approvers = approvers if approvers is not None else [uuid.uuid4()]
        created_at = datetime.utcnow() - timedelta(hours=created_hours_ago)
        policy = policy or make_policy(approval_type)
        values = dict(
            id=uuid.uuid4(),
            organization_id=org_id,
            request_number="APR-0001",
            sequence_number=1,
            approval_type=ApprovalType(approval_type).value,
            status="pending",
            priority="medium",
            entity_type="Sale",
            entity_id=uuid.uuid4(),
            policy_id=policy.id,
            policy=policy,
            title="Discount approval for Sale",
            requested_by=requested_by or uuid.uuid4(),
            request_data={},
            required_approvals=required_approvals,
            current_approval_count=0,
            sla_deadline=created_at + timedelta(hours=policy.sla_hours),
            current_escalation_level=0,
            created_at=created_at,
            updated_at=created_at,
            approver_actions=[
                ApproverAction(approver_id=a, position=i, action="pending")
                for i, a in enumerate(approvers)
            ],
            escalation_history=[],
        )
        values.update(overrides)
        return ApprovalRequest(**values)

    return _make
