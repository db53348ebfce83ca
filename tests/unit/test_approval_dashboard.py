"""
Unit tests for crm_api/services/approval_dashboard.py
"""

import uuid

import pytest

from crm_api.services.approval_dashboard import get_approval_dashboard


@pytest.mark.asyncio
async def test_dashboard_sections(mock_session, org_id, make_request, result_of):
    user_id = uuid.uuid4()
    waiting = make_request(approvers=[user_id])
    mine = make_request(requested_by=user_id)
    resolved = make_request(status="approved")
    mock_session.execute.side_effect = [
        result_of(scalars=[waiting]),
        result_of(scalars=[mine]),
        result_of(scalars=[resolved]),
        result_of(rows=[("DISCOUNT_APPROVAL", "approved", 4), ("DISCOUNT_APPROVAL", "pending", 2)]),
    ]

    dashboard = await get_approval_dashboard(mock_session, user_id, org_id)

    assert dashboard["pending_for_me"] == [waiting]
    assert dashboard["my_requests"] == [mine]
    assert dashboard["recently_resolved"] == [resolved]
    assert dashboard["stats"] == [
        {"approval_type": "DISCOUNT_APPROVAL", "status": "approved", "count": 4},
        {"approval_type": "DISCOUNT_APPROVAL", "status": "pending", "count": 2},
    ]
    assert mock_session.execute.await_count == 4


@pytest.mark.asyncio
async def test_empty_dashboard(mock_session, org_id, result_of):
    mock_session.execute.return_value = result_of()

    dashboard = await get_approval_dashboard(mock_session, uuid.uuid4(), org_id)

    assert dashboard == {
        "pending_for_me": [],
        "my_requests": [],
        "recently_resolved": [],
        "stats": [],
    }
