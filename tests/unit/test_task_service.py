"""
Unit tests for crm_api/services/task_service.py
"""

import uuid

import pytest
from sqlalchemy.exc import OperationalError

from crm_api.config import settings
from crm_api.exceptions import DependencyFailureError
from crm_api.models.task import Task
from crm_api.services.task_service import (
    complete_linked_task,
    create_approval_task,
    escalate_linked_task,
)


def _open_task(org_id, **overrides):
    values = dict(
        id=uuid.uuid4(),
        organization_id=org_id,
        title="Approval: Discount approval for Sale",
        status="open",
        priority="medium",
        assigned_to=uuid.uuid4(),
        escalations=[],
        activity_log=[],
    )
    values.update(overrides)
    return Task(**values)


@pytest.mark.asyncio
async def test_task_assigned_to_first_approver(mock_session, make_request, result_of):
    system_user = uuid.uuid4()
    first, second = uuid.uuid4(), uuid.uuid4()
    request = make_request(approvers=[first, second], request_number="APR-0042", priority="high")
    mock_session.execute.return_value = result_of(system_user)

    task = await create_approval_task(mock_session, request, [str(first), str(second)], 24)

    mock_session.add.assert_called_once_with(task)
    assert task.assigned_to == first
    assert task.watchers == [str(second)]
    assert task.assigned_by == system_user
    assert task.priority == "high"
    assert task.due_date == request.sla_deadline
    assert task.deduplication_key == f"pending_approval_{request.id}"
    assert task.linked_entity_label == "APR-0042"
    assert task.sla_warning_hours == int(24 * settings.APPROVAL_TASK_WARNING_RATIO)
    assert task.activity_log[0]["action"] == "created"


@pytest.mark.asyncio
async def test_no_approver_is_a_dependency_failure(mock_session, make_request):
    with pytest.raises(DependencyFailureError) as exc_info:
        await create_approval_task(mock_session, make_request(), [], 24)
    assert exc_info.value.dependency == "task_tracker"


@pytest.mark.asyncio
async def test_database_error_is_wrapped(mock_session, make_request, result_of):
    mock_session.execute.return_value = result_of(None)
    mock_session.flush.side_effect = OperationalError("INSERT", {}, Exception("conn reset"))
    request = make_request()

    with pytest.raises(DependencyFailureError):
        await create_approval_task(mock_session, request, [str(uuid.uuid4())], 24)
    assert request.linked_task_id is None


@pytest.mark.asyncio
async def test_complete_closes_linked_task(mock_session, org_id, make_request):
    task = _open_task(org_id)
    mock_session.get.return_value = task
    user_id = uuid.uuid4()
    request = make_request(linked_task_id=task.id, resolution_comment="Within budget")

    closed = await complete_linked_task(mock_session, request, user_id, "approved")

    assert closed is task
    assert task.status == "completed"
    assert task.completed_at is not None
    assert task.resolution["summary"] == "Approval approved: Within budget"
    assert task.resolution["resolved_by"] == str(user_id)
    assert task.activity_log[-1]["details"]["new_value"] == "completed"


@pytest.mark.asyncio
async def test_complete_skips_closed_or_unlinked_task(mock_session, org_id, make_request):
    assert await complete_linked_task(mock_session, make_request(), uuid.uuid4(), "approved") is None
    mock_session.get.assert_not_awaited()

    mock_session.get.return_value = _open_task(org_id, status="cancelled")
    request = make_request(linked_task_id=uuid.uuid4())
    assert await complete_linked_task(mock_session, request, uuid.uuid4(), "rejected") is None
    mock_session.flush.assert_not_awaited()


@pytest.mark.asyncio
async def test_escalate_reassigns_and_raises_priority(mock_session, org_id, make_request):
    task = _open_task(org_id)
    mock_session.get.return_value = task
    target = uuid.uuid4()
    request = make_request(linked_task_id=task.id)

    await escalate_linked_task(mock_session, request, target, 2, "SLA breached")

    assert task.assigned_to == target
    assert task.priority == "critical"
    assert task.escalations[-1]["level"] == 2
    assert task.escalations[-1]["escalated_to"] == str(target)
    assert task.activity_log[-1]["action"] == "escalated"
