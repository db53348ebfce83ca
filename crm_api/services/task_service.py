"""
Task tracker integration for approval requests.

Every pending approval request mirrors onto one Task assigned to its first
approver. Callers treat all of this as best-effort: database errors surface
as DependencyFailureError so the lifecycle can log and move on.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.config import settings
from crm_api.exceptions import DependencyFailureError
from crm_api.models.approval import ApprovalRequest, Priority
from crm_api.models.task import Task, TaskStatus
from crm_api.models.user import Role, User

logger = structlog.get_logger()


def _activity(action: str, performed_by, **details) -> dict:
    return {
        "action": action,
        "performed_by": str(performed_by) if performed_by else None,
        "timestamp": datetime.utcnow().isoformat(),
        "details": details,
    }


async def get_system_user_id(session: AsyncSession, organization_id) -> Optional[uuid.UUID]:
    """Most senior active user in the organization; assigns system tasks."""
    result = await session.execute(
        select(User.id)
        .join(Role, User.role_id == Role.id)
        .where(
            User.organization_id == organization_id,
            User.is_active == True,  # noqa: E712
        )
        .order_by(Role.level.asc(), User.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_approval_task(
    session: AsyncSession,
    request: ApprovalRequest,
    approver_ids: list[str],
    sla_hours: int,
) -> Task:
    if not approver_ids:
        raise DependencyFailureError("task_tracker", "no approver to assign")

    try:
        system_user = await get_system_user_id(session, request.organization_id)
        primary = uuid.UUID(approver_ids[0])
        task = Task(
            organization_id=request.organization_id,
            title=f"Approval: {request.title}"[:300],
            description=(
                f"{request.description or ''}\n\n"
                f"Request #: {request.request_number}\n"
                f"Type: {request.approval_type}\n"
                f"Priority: {request.priority}"
            ),
            category="approval",
            priority=request.priority,
            status=TaskStatus.OPEN.value,
            assigned_to=primary,
            assigned_by=system_user,
            assignment_type="system",
            watchers=list(approver_ids[1:]),
            due_date=request.sla_deadline,
            linked_entity_type=request.entity_type,
            linked_entity_id=request.entity_id,
            linked_entity_label=request.request_number,
            trigger_type="pending_approval",
            deduplication_key=f"pending_approval_{request.id}",
            sla_target_hours=sla_hours,
            sla_warning_hours=int(sla_hours * settings.APPROVAL_TASK_WARNING_RATIO),
            escalations=[],
            activity_log=[_activity("created", system_user, source="approval_request")],
            created_by=system_user or request.requested_by,
        )
        session.add(task)
        await session.flush()
    except SQLAlchemyError as exc:
        raise DependencyFailureError("task_tracker", str(exc)) from exc

    request.linked_task_id = task.id
    logger.info(
        "approval_task_created",
        approval_request_id=str(request.id),
        task_id=str(task.id),
        assigned_to=str(primary),
    )
    return task


async def _load_open_task(session: AsyncSession, request: ApprovalRequest) -> Optional[Task]:
    if not request.linked_task_id:
        return None
    try:
        task = await session.get(Task, request.linked_task_id)
    except SQLAlchemyError as exc:
        raise DependencyFailureError("task_tracker", str(exc)) from exc
    if task is None or task.is_closed:
        return None
    return task


async def complete_linked_task(
    session: AsyncSession,
    request: ApprovalRequest,
    user_id,
    resolution: str,
) -> Optional[Task]:
    """Close the mirror task once the request reaches a terminal status."""
    task = await _load_open_task(session, request)
    if task is None:
        return None

    now = datetime.utcnow()
    old_status = task.status
    task.status = TaskStatus.COMPLETED.value
    task.completed_at = now
    task.resolution = {
        "summary": f"Approval {resolution}: {request.resolution_comment or 'No comment'}",
        "resolved_by": str(user_id),
        "resolved_at": now.isoformat(),
    }
    task.activity_log = [
        *(task.activity_log or []),
        _activity(
            "status_changed",
            user_id,
            field="status",
            old_value=old_status,
            new_value=TaskStatus.COMPLETED.value,
            note=f"Approval {resolution}",
        ),
    ]
    try:
        await session.flush()
    except SQLAlchemyError as exc:
        raise DependencyFailureError("task_tracker", str(exc)) from exc

    logger.info("approval_task_completed", task_id=str(task.id), resolution=resolution)
    return task


async def escalate_linked_task(
    session: AsyncSession,
    request: ApprovalRequest,
    escalated_to,
    level: int,
    reason: str,
) -> Optional[Task]:
    """Reassign to the escalation target and raise priority to critical."""
    task = await _load_open_task(session, request)
    if task is None:
        return None

    now = datetime.utcnow()
    task.assigned_to = escalated_to
    task.priority = Priority.CRITICAL.value
    task.escalations = [
        *(task.escalations or []),
        {
            "level": level,
            "escalated_to": str(escalated_to),
            "escalated_at": now.isoformat(),
            "reason": reason,
        },
    ]
    task.activity_log = [
        *(task.activity_log or []),
        _activity("escalated", None, level=level, escalated_to=str(escalated_to)),
    ]
    try:
        await session.flush()
    except SQLAlchemyError as exc:
        raise DependencyFailureError("task_tracker", str(exc)) from exc

    logger.info(
        "approval_task_escalated",
        task_id=str(task.id),
        level=level,
        escalated_to=str(escalated_to),
    )
    return task
