"""
SLA escalation for stalled approval requests.

Invoked by the external scheduler through /internal/jobs. Escalation only
adds an approver and raises current_escalation_level; it never changes a
request's status, so it can run alongside live approve/reject calls.

Level by hours since creation, using the policy's thresholds:
  >= level3_after_hours -> 3
  >= level2_after_hours -> 2
  >= level1_after_hours -> 1
"""

from datetime import datetime
from typing import Optional

from fastapi import BackgroundTasks
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.models.approval import (
    ApprovalEscalation,
    ApprovalRequest,
    ApprovalStatus,
    ApproverAction,
    ApproverDecision,
)
from crm_api.models.user import Role, User
from crm_api.services.approval_service import AUDIT_ENTITY_TYPE, best_effort
from crm_api.services.audit_service import create_audit_log
from crm_api.services.notification_service import notify_approval_escalated
from crm_api.services.task_service import escalate_linked_task

logger = structlog.get_logger()


def target_escalation_level(elapsed_hours: float, thresholds: tuple[int, int, int]) -> int:
    level = 0
    for candidate, after_hours in enumerate(thresholds, start=1):
        if elapsed_hours >= after_hours:
            level = candidate
    return level


async def find_escalation_target(
    session: AsyncSession, request: ApprovalRequest
) -> Optional[User]:
    """Most senior active user who is neither an approver nor the requester."""
    excluded = {a.approver_id for a in request.approver_actions}
    excluded.add(request.requested_by)
    result = await session.execute(
        select(User)
        .join(Role, User.role_id == Role.id)
        .where(
            User.organization_id == request.organization_id,
            User.is_active == True,  # noqa: E712
            User.id.notin_(excluded),
        )
        .order_by(Role.level.asc(), User.created_at)
        .limit(1)
    )
    return result.scalars().first()


async def escalate_request(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    request: ApprovalRequest,
    now: datetime,
) -> bool:
    """Escalate one request if its elapsed time has reached a new level."""
    policy = request.policy
    if policy is None or not policy.escalation_enabled:
        return False

    elapsed_hours = (now - request.created_at).total_seconds() / 3600
    level = target_escalation_level(elapsed_hours, policy.escalation_thresholds)
    if level <= request.current_escalation_level:
        return False

    target = await find_escalation_target(session, request)
    if target is None:
        logger.warning(
            "approval_escalation_no_target",
            approval_request_id=str(request.id),
            level=level,
        )
        return False

    hours = round(elapsed_hours)
    reason = f"SLA breached: {hours} hours since creation"
    previous_level = request.current_escalation_level

    request.approver_actions.append(ApproverAction(
        approver_id=target.id,
        position=len(request.approver_actions),
        action=ApproverDecision.PENDING.value,
    ))
    request.escalation_history.append(ApprovalEscalation(
        level=level,
        escalated_to=target.id,
        reason=reason,
        escalated_at=now,
    ))
    request.current_escalation_level = level
    request.updated_at = now
    await session.flush()

    await create_audit_log(
        session,
        organization_id=request.organization_id,
        actor_id=None,
        action="escalated",
        entity_type=AUDIT_ENTITY_TYPE,
        entity_id=request.id,
        before_state={"current_escalation_level": previous_level},
        after_state={"current_escalation_level": level},
        details={
            "level": level,
            "escalated_to": str(target.id),
            "hours_since_creation": hours,
        },
    )
    logger.info(
        "approval_request_escalated",
        approval_request_id=str(request.id),
        level=level,
        escalated_to=str(target.id),
        hours_since_creation=hours,
    )

    await best_effort(
        session, "approval_task_escalate_failed", request,
        escalate_linked_task, request, target.id, level,
        f"SLA breached: auto-escalated after {hours} hours",
    )
    await best_effort(
        session, "approval_notification_failed", request,
        notify_approval_escalated, background_tasks, request, target.id, level,
    )
    return True


async def check_approval_escalations(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Escalate every pending request past its SLA deadline.

    Rows locked by a concurrent approve/reject are skipped and picked up on
    the next run. Each request runs in its own savepoint so one failure does
    not abort the batch.
    """
    now = now or datetime.utcnow()
    result = await session.execute(
        select(ApprovalRequest)
        .where(
            ApprovalRequest.status == ApprovalStatus.PENDING.value,
            ApprovalRequest.sla_deadline < now,
        )
        .order_by(ApprovalRequest.sla_deadline)
        .with_for_update(skip_locked=True, of=ApprovalRequest)
    )
    requests = list(result.scalars().all())

    stats = {"checked": 0, "escalated": 0, "failed": 0}
    for request in requests:
        stats["checked"] += 1
        try:
            async with session.begin_nested():
                escalated = await escalate_request(session, background_tasks, request, now)
        except Exception as exc:
            stats["failed"] += 1
            logger.error(
                "approval_escalation_failed",
                approval_request_id=str(request.id),
                error=str(exc),
                exc_info=True,
            )
            continue
        if escalated:
            stats["escalated"] += 1

    logger.info("approval_escalation_check_complete", **stats)
    return stats
