"""
Unit tests for crm_api/services/approval_escalation.py
"""

import uuid
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from crm_api.services.approval_escalation import (
    check_approval_escalations,
    escalate_request,
    target_escalation_level,
)

ESCALATION = "crm_api.services.approval_escalation"


@pytest.fixture
def collaborators():
    mocks = SimpleNamespace(
        create_audit_log=AsyncMock(),
        escalate_linked_task=AsyncMock(),
        notify_approval_escalated=AsyncMock(),
    )
    with patch.multiple(ESCALATION, **vars(mocks)):
        yield mocks


def _senior_user():
    user = MagicMock()
    user.id = uuid.uuid4()
    return user


@pytest.mark.parametrize(
    "hours,level",
    [(0, 0), (23.9, 0), (24, 1), (47.5, 1), (48, 2), (71, 2), (72, 3), (500, 3)],
)
def test_target_level_by_elapsed_hours(hours, level):
    assert target_escalation_level(hours, (24, 48, 72)) == level


def test_target_level_is_monotonic():
    levels = [target_escalation_level(h, (24, 48, 72)) for h in range(0, 100)]
    assert levels == sorted(levels)


# ---------------------------------------------------------------------------
# escalate_request
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_escalation_adds_approver_without_touching_status(
    mock_session, make_request, result_of, collaborators
):
    target = _senior_user()
    request = make_request(created_hours_ago=50)
    mock_session.execute.return_value = result_of(scalars=[target])

    escalated = await escalate_request(mock_session, None, request, datetime.utcnow())

    assert escalated is True
    assert request.status == "pending"
    assert request.current_escalation_level == 2
    assert request.approver_actions[-1].approver_id == target.id
    assert request.approver_actions[-1].action == "pending"
    assert request.approver_actions[-1].position == 1
    assert len(request.escalation_history) == 1
    assert request.escalation_history[0].level == 2
    assert request.escalation_history[0].reason == "SLA breached: 50 hours since creation"

    audit = collaborators.create_audit_log.await_args.kwargs
    assert audit["action"] == "escalated"
    assert audit["actor_id"] is None
    assert audit["after_state"] == {"current_escalation_level": 2}
    collaborators.escalate_linked_task.assert_awaited_once()
    assert collaborators.notify_approval_escalated.await_args.args[2:] == (request, target.id, 2)


@pytest.mark.asyncio
async def test_level_already_reached_is_not_repeated(mock_session, make_request, collaborators):
    request = make_request(created_hours_ago=50, current_escalation_level=2)

    assert await escalate_request(mock_session, None, request, datetime.utcnow()) is False
    mock_session.execute.assert_not_awaited()
    assert request.escalation_history == []


@pytest.mark.asyncio
async def test_disabled_policy_never_escalates(
    mock_session, make_request, make_policy, collaborators
):
    request = make_request(created_hours_ago=100, policy=make_policy(escalation_enabled=False))

    assert await escalate_request(mock_session, None, request, datetime.utcnow()) is False
    assert request.current_escalation_level == 0


@pytest.mark.asyncio
async def test_no_eligible_target_leaves_request_alone(
    mock_session, make_request, result_of, collaborators
):
    request = make_request(created_hours_ago=30)
    mock_session.execute.return_value = result_of(scalars=[])

    assert await escalate_request(mock_session, None, request, datetime.utcnow()) is False
    assert request.current_escalation_level == 0
    assert len(request.approver_actions) == 1
    collaborators.create_audit_log.assert_not_awaited()


@pytest.mark.asyncio
async def test_notification_failure_keeps_escalation(
    mock_session, make_request, result_of, collaborators
):
    collaborators.notify_approval_escalated.side_effect = RuntimeError("smtp down")
    request = make_request(created_hours_ago=80)
    mock_session.execute.return_value = result_of(scalars=[_senior_user()])

    assert await escalate_request(mock_session, None, request, datetime.utcnow()) is True
    assert request.current_escalation_level == 3


# ---------------------------------------------------------------------------
# check_approval_escalations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_batch_counts_escalations_and_failures(mock_session, make_request, result_of):
    stalled = [make_request(created_hours_ago=h) for h in (30, 60, 90)]
    mock_session.execute.return_value = result_of(scalars=stalled)

    with patch(
        f"{ESCALATION}.escalate_request",
        AsyncMock(side_effect=[True, RuntimeError("deadlock"), False]),
    ) as escalate:
        stats = await check_approval_escalations(mock_session)

    assert stats == {"checked": 3, "escalated": 1, "failed": 1}
    assert escalate.await_count == 3
    assert mock_session.begin_nested.call_count == 3


@pytest.mark.asyncio
async def test_empty_batch(mock_session, result_of):
    mock_session.execute.return_value = result_of(scalars=[])
    stats = await check_approval_escalations(mock_session)
    assert stats == {"checked": 0, "escalated": 0, "failed": 0}
