"""Read-only approval dashboard for one user."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crm_api.config import settings
from crm_api.models.approval import (
    ApprovalRequest,
    ApprovalStatus,
    ApproverAction,
    ApproverDecision,
)


async def get_approval_dashboard(session: AsyncSession, user_id, organization_id) -> dict:
    """
    pending_for_me     pending requests where the user's own entry is pending
    my_requests        requests the user submitted, newest first
    recently_resolved  approved/rejected org-wide, by resolution time
    stats              request counts per (approval_type, status)

    Queries run one after another: an AsyncSession is not safe for
    concurrent use.
    """
    base = select(ApprovalRequest).where(ApprovalRequest.organization_id == organization_id)

    pending_for_me = await session.execute(
        base.join(ApproverAction, ApproverAction.approval_request_id == ApprovalRequest.id)
        .where(
            ApprovalRequest.status == ApprovalStatus.PENDING.value,
            ApproverAction.approver_id == user_id,
            ApproverAction.action == ApproverDecision.PENDING.value,
        )
        .order_by(ApprovalRequest.created_at.desc())
        .limit(settings.APPROVAL_DASHBOARD_LIMIT)
    )
    my_requests = await session.execute(
        base.where(ApprovalRequest.requested_by == user_id)
        .order_by(ApprovalRequest.created_at.desc())
        .limit(settings.APPROVAL_DASHBOARD_LIMIT)
    )
    recently_resolved = await session.execute(
        base.where(
            ApprovalRequest.status.in_(
                [ApprovalStatus.APPROVED.value, ApprovalStatus.REJECTED.value]
            )
        )
        .order_by(ApprovalRequest.resolved_at.desc().nulls_last())
        .limit(settings.APPROVAL_RECENT_LIMIT)
    )
    stats = await session.execute(
        select(
            ApprovalRequest.approval_type,
            ApprovalRequest.status,
            func.count(ApprovalRequest.id),
        )
        .where(ApprovalRequest.organization_id == organization_id)
        .group_by(ApprovalRequest.approval_type, ApprovalRequest.status)
        .order_by(ApprovalRequest.approval_type, ApprovalRequest.status)
    )

    return {
        "pending_for_me": list(pending_for_me.scalars().all()),
        "my_requests": list(my_requests.scalars().all()),
        "recently_resolved": list(recently_resolved.scalars().all()),
        "stats": [
            {"approval_type": approval_type, "status": status, "count": count}
            for approval_type, status, count in stats.all()
        ],
    }
