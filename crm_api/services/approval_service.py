"""
Approval service: request lifecycle.

  check_approval_required   threshold evaluation + approver resolution
  create_approval_request   persist a pending request (or auto-approve)
  process_approval_action   approve / reject by an assigned approver
  cancel_approval_request   withdraw by the requester

Any single rejection rejects the whole request. Approval completes once
current_approval_count reaches required_approvals.

Transitions load the request row FOR UPDATE and write it under the
version_id check, and the decision is flushed before any side effect runs.
Side effects (task mirror, notifications, entity propagation) each run in a
savepoint: their failures are logged and never undo the decision.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from fastapi import BackgroundTasks
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
import structlog

from crm_api.exceptions import (
    ApprovalAuthorizationError,
    ApprovalNotFoundError,
    ApprovalStateConflictError,
    ApprovalValidationError,
)
from crm_api.models.approval import (
    ApprovalRequest,
    ApprovalStatus,
    ApproverAction,
    ApproverDecision,
    Priority,
)
from crm_api.models.approval_policy import ApprovalPolicy, ApprovalType
from crm_api.models.audit_log import AuditLog
from crm_api.models.task import Task
from crm_api.services import audit_service
from crm_api.services.approval_propagation import propagate_approval, propagate_rejection
from crm_api.services.approval_strategies import get_strategy
from crm_api.services.approval_thresholds import is_approval_required
from crm_api.services.approver_resolver import resolve_approvers
from crm_api.services.audit_service import create_audit_log
from crm_api.services.notification_service import (
    notify_approval_approved,
    notify_approval_cancelled,
    notify_approval_rejected,
    notify_approval_requested,
)
from crm_api.services.task_service import complete_linked_task, create_approval_task

logger = structlog.get_logger()

AUDIT_ENTITY_TYPE = "ApprovalRequest"
REQUEST_NUMBER_PREFIX = "APR"
DEFAULT_CANCEL_REASON = "Cancelled by requester"

_PRIORITY_ORDER = case(
    {
        Priority.CRITICAL.value: 0,
        Priority.HIGH.value: 1,
        Priority.MEDIUM.value: 2,
        Priority.LOW.value: 3,
    },
    value=ApprovalRequest.priority,
    else_=4,
)


@dataclass
class ApprovalCheck:
    required: bool
    policy: Optional[ApprovalPolicy] = None
    approvers: list[str] = field(default_factory=list)
    override_approver_level: Optional[int] = None
    # Set instead of raising when the context could not be evaluated
    errors: list[dict] = field(default_factory=list)


@dataclass
class ApprovalCreationResult:
    approved: bool
    auto_approved: bool = False
    approval_request: Optional[ApprovalRequest] = None
    task: Optional[Task] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _snapshot(request: ApprovalRequest) -> dict:
    return {
        "status": request.status,
        "current_approval_count": request.current_approval_count,
        "required_approvals": request.required_approvals,
        "current_escalation_level": request.current_escalation_level,
    }


async def best_effort(session: AsyncSession, event: str, request: ApprovalRequest, fn, *args):
    """Run ``fn(session, *args)`` in a savepoint; log and swallow failures."""
    try:
        async with session.begin_nested():
            return await fn(session, *args)
    except Exception as exc:
        logger.error(
            event,
            approval_request_id=str(request.id),
            dependency=getattr(exc, "dependency", None),
            error=str(exc),
            exc_info=True,
        )
        return None


async def _flush_decision(session: AsyncSession) -> None:
    try:
        await session.flush()
    except StaleDataError as exc:
        raise ApprovalStateConflictError(
            "Approval request was modified concurrently; reload and retry"
        ) from exc


async def _next_request_number(session: AsyncSession, organization_id) -> tuple[int, str]:
    result = await session.execute(
        select(func.max(ApprovalRequest.sequence_number)).where(
            ApprovalRequest.organization_id == organization_id
        )
    )
    sequence = (result.scalar() or 0) + 1
    return sequence, f"{REQUEST_NUMBER_PREFIX}-{sequence:04d}"


async def _load_for_update(
    session: AsyncSession, request_id, organization_id=None
) -> ApprovalRequest:
    q = (
        select(ApprovalRequest)
        .where(ApprovalRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if organization_id is not None:
        q = q.where(ApprovalRequest.organization_id == organization_id)
    result = await session.execute(q)
    request = result.scalar_one_or_none()
    if request is None:
        raise ApprovalNotFoundError("Approval request not found")
    return request


def _resolve(request: ApprovalRequest, status: ApprovalStatus, user_id, comment, now) -> None:
    request.status = status.value
    request.resolved_by = user_id
    request.resolved_at = now
    request.resolution_comment = comment


# ---------------------------------------------------------------------------
# Check / create
# ---------------------------------------------------------------------------

async def check_approval_required(
    session: AsyncSession,
    organization_id,
    approval_type,
    context: Optional[dict] = None,
    project_id=None,
) -> ApprovalCheck:
    """
    Read-only. A context that cannot be evaluated (unknown type, missing or
    malformed fields) yields ``required=False`` with ``errors`` filled in.
    """
    try:
        return await _evaluate_check(
            session, organization_id, approval_type, context, project_id
        )
    except ApprovalValidationError as exc:
        errors = exc.detail["error"].get("details", {}).get("errors") or [
            {"field": None, "message": exc.message}
        ]
        logger.warning(
            "approval_check_invalid_context",
            approval_type=getattr(approval_type, "value", approval_type),
            error=exc.message,
            errors=errors,
        )
        return ApprovalCheck(required=False, errors=errors)


async def _evaluate_check(
    session: AsyncSession,
    organization_id,
    approval_type,
    context: Optional[dict],
    project_id,
) -> ApprovalCheck:
    decision = await is_approval_required(
        session, organization_id, approval_type, context, project_id
    )
    if not decision.required:
        return ApprovalCheck(required=False, policy=decision.policy)

    approvers = await resolve_approvers(
        session,
        decision.policy,
        organization_id,
        context,
        override_level=decision.override_approver_level,
    )
    return ApprovalCheck(
        required=True,
        policy=decision.policy,
        approvers=approvers,
        override_approver_level=decision.override_approver_level,
    )


async def create_approval_request(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    *,
    organization_id,
    project_id=None,
    approval_type,
    entity_type: str,
    entity_id,
    requested_by,
    request_data: Optional[dict] = None,
    priority="medium",
    title: Optional[str] = None,
    description: Optional[str] = None,
) -> ApprovalCreationResult:
    """
    Open an approval request for an action on ``entity_type``/``entity_id``.

    Returns ``approved=True, auto_approved=True`` and persists nothing when no
    approval is required or no approver resolves. Raises
    ApprovalValidationError for a malformed context, or for request data the
    final decision could not be applied with.
    """
    request_data = dict(request_data or {})
    context = {**request_data, "requested_by": str(requested_by)}
    check = await _evaluate_check(
        session, organization_id, approval_type, context, project_id
    )
    type_value = ApprovalType(approval_type).value

    if not check.required or not check.approvers:
        logger.info(
            "approval_auto_approved",
            approval_type=type_value,
            entity_type=entity_type,
            entity_id=str(entity_id),
            reason="not_required" if not check.required else "no_approvers",
        )
        return ApprovalCreationResult(approved=True, auto_approved=True)

    get_strategy(type_value).validate_request_data(request_data)

    policy = check.policy
    if policy.required_approvals > len(check.approvers):
        # Can never complete by approval alone; escalation may widen the pool
        logger.warning(
            "approval_required_exceeds_approvers",
            policy_id=str(policy.id),
            required_approvals=policy.required_approvals,
            approvers=len(check.approvers),
        )

    sequence, request_number = await _next_request_number(session, organization_id)
    now = datetime.utcnow()
    try:
        priority_value = Priority(priority).value
    except ValueError:
        raise ApprovalValidationError(f"Unknown priority: {priority}")

    request = ApprovalRequest(
        organization_id=organization_id,
        project_id=project_id,
        request_number=request_number,
        sequence_number=sequence,
        approval_type=type_value,
        status=ApprovalStatus.PENDING.value,
        priority=priority_value,
        entity_type=entity_type,
        entity_id=uuid.UUID(str(entity_id)),
        policy_id=policy.id,
        title=title or f"{type_value.replace('_', ' ').title()} for {entity_type}",
        description=description or f"Approval required for {entity_type} {entity_id}",
        requested_by=requested_by,
        request_data=request_data,
        required_approvals=policy.required_approvals,
        current_approval_count=0,
        sla_deadline=now + timedelta(hours=policy.sla_hours),
        current_escalation_level=0,
        created_at=now,
        updated_at=now,
        approver_actions=[
            ApproverAction(
                approver_id=uuid.UUID(approver_id),
                position=position,
                action=ApproverDecision.PENDING.value,
            )
            for position, approver_id in enumerate(check.approvers)
        ],
        escalation_history=[],
    )
    try:
        async with session.begin_nested():
            session.add(request)
            await session.flush()
    except IntegrityError as exc:
        # A concurrent submission took the same request number
        logger.warning(
            "approval_request_number_conflict",
            organization_id=str(organization_id),
            request_number=request_number,
        )
        raise ApprovalStateConflictError(
            "Another approval request was submitted at the same time; retry",
            request_number=request_number,
        ) from exc

    await create_audit_log(
        session,
        organization_id=organization_id,
        actor_id=requested_by,
        action="created",
        entity_type=AUDIT_ENTITY_TYPE,
        entity_id=request.id,
        after_state=_snapshot(request),
        details={
            "approval_type": type_value,
            "approvers": check.approvers,
            "override_approver_level": check.override_approver_level,
        },
    )
    logger.info(
        "approval_request_created",
        approval_request_id=str(request.id),
        request_number=request_number,
        approval_type=type_value,
        approvers=len(check.approvers),
        required_approvals=request.required_approvals,
    )

    task = await best_effort(
        session, "approval_task_create_failed", request,
        create_approval_task, request, check.approvers, policy.sla_hours,
    )
    await best_effort(
        session, "approval_notification_failed", request,
        notify_approval_requested, background_tasks, request, check.approvers,
    )

    return ApprovalCreationResult(approved=False, approval_request=request, task=task)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

async def process_approval_action(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    *,
    request_id,
    user_id,
    action,
    comment: Optional[str] = None,
    organization_id=None,
) -> ApprovalRequest:
    """
    Record ``user_id``'s decision.

    Raises:
        ApprovalNotFoundError       request absent (or in another organization)
        ApprovalStateConflictError  request not pending, or user already acted
        ApprovalAuthorizationError  user is not an assigned approver
    """
    try:
        decision = ApproverDecision(action)
    except ValueError:
        decision = None
    if decision not in (ApproverDecision.APPROVED, ApproverDecision.REJECTED):
        raise ApprovalValidationError(f"Unsupported approval action: {action}")

    request = await _load_for_update(session, request_id, organization_id)

    if request.is_terminal:
        raise ApprovalStateConflictError(
            f"Cannot act on a request with status '{request.status}'"
        )
    entry = request.action_for(user_id)
    if entry is None:
        raise ApprovalAuthorizationError("You are not an assigned approver for this request")
    if entry.action != ApproverDecision.PENDING.value:
        raise ApprovalStateConflictError(
            "You have already acted on this request", code="APPROVAL_ALREADY_ACTED"
        )

    before = _snapshot(request)
    now = datetime.utcnow()
    entry.action = decision.value
    entry.comment = comment
    entry.acted_at = now

    if decision == ApproverDecision.APPROVED:
        request.current_approval_count += 1
        if request.current_approval_count >= request.required_approvals:
            _resolve(request, ApprovalStatus.APPROVED, user_id, comment, now)
    else:
        _resolve(request, ApprovalStatus.REJECTED, user_id, comment, now)
    request.updated_at = now

    await _flush_decision(session)

    await create_audit_log(
        session,
        organization_id=request.organization_id,
        actor_id=user_id,
        action=decision.value,
        entity_type=AUDIT_ENTITY_TYPE,
        entity_id=request.id,
        before_state=before,
        after_state=_snapshot(request),
        comment=comment,
        details={"approval_type": request.approval_type, "position": entry.position},
    )
    logger.info(
        "approval_action_recorded",
        approval_request_id=str(request.id),
        approver_id=str(user_id),
        action=decision.value,
        approvals=f"{request.current_approval_count}/{request.required_approvals}",
    )

    if not request.is_terminal:
        return request

    logger.info(
        "approval_request_resolved",
        approval_request_id=str(request.id),
        status=request.status,
        resolved_by=str(user_id),
    )
    if request.status == ApprovalStatus.APPROVED.value:
        await propagate_approval(session, request)
    else:
        await propagate_rejection(session, request)

    await best_effort(
        session, "approval_task_complete_failed", request,
        complete_linked_task, request, user_id, request.status,
    )
    if request.status == ApprovalStatus.APPROVED.value:
        await best_effort(
            session, "approval_notification_failed", request,
            notify_approval_approved, background_tasks, request, user_id,
        )
    else:
        await best_effort(
            session, "approval_notification_failed", request,
            notify_approval_rejected, background_tasks, request, user_id, comment,
        )
    return request


async def cancel_approval_request(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    request_id,
    user_id,
    reason: Optional[str] = None,
    organization_id=None,
) -> ApprovalRequest:
    """Withdraw a pending request. Only the original requester may cancel."""
    request = await _load_for_update(session, request_id, organization_id)

    if request.is_terminal:
        raise ApprovalStateConflictError("Only pending requests can be cancelled")
    if str(request.requested_by) != str(user_id):
        raise ApprovalAuthorizationError("Only the requester can cancel this request")

    reason = reason or DEFAULT_CANCEL_REASON
    before = _snapshot(request)
    now = datetime.utcnow()
    _resolve(request, ApprovalStatus.CANCELLED, user_id, reason, now)
    request.updated_at = now

    await _flush_decision(session)

    await create_audit_log(
        session,
        organization_id=request.organization_id,
        actor_id=user_id,
        action="cancelled",
        entity_type=AUDIT_ENTITY_TYPE,
        entity_id=request.id,
        before_state=before,
        after_state=_snapshot(request),
        comment=reason,
    )
    logger.info(
        "approval_request_cancelled",
        approval_request_id=str(request.id),
        cancelled_by=str(user_id),
    )

    # Cancellation reverts provisional entity state the same way a rejection does
    await propagate_rejection(session, request)
    await best_effort(
        session, "approval_task_complete_failed", request,
        complete_linked_task, request, user_id, request.status,
    )
    pending_approvers = [
        a.approver_id for a in request.approver_actions
        if a.action == ApproverDecision.PENDING.value
    ]
    await best_effort(
        session, "approval_notification_failed", request,
        notify_approval_cancelled, background_tasks, request, pending_approvers, reason,
    )
    return request


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_approval_request(
    session: AsyncSession, request_id, organization_id
) -> ApprovalRequest:
    result = await session.execute(
        select(ApprovalRequest).where(
            ApprovalRequest.id == request_id,
            ApprovalRequest.organization_id == organization_id,
        )
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise ApprovalNotFoundError("Approval request not found")
    return request


async def get_audit_trail(session: AsyncSession, request: ApprovalRequest) -> list[AuditLog]:
    return await audit_service.get_audit_trail(session, AUDIT_ENTITY_TYPE, request.id)


async def _paginate(session: AsyncSession, q, page: int, limit: int, *order_by):
    total = (
        await session.execute(select(func.count()).select_from(q.subquery()))
    ).scalar() or 0
    result = await session.execute(
        q.order_by(*order_by).offset((page - 1) * limit).limit(limit)
    )
    return list(result.scalars().all()), total


async def list_pending_approvals(
    session: AsyncSession,
    user_id,
    organization_id,
    approval_type: Optional[str] = None,
    priority: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[ApprovalRequest], int]:
    """Pending requests awaiting ``user_id``. Most urgent first, then oldest."""
    q = (
        select(ApprovalRequest)
        .join(ApproverAction, ApproverAction.approval_request_id == ApprovalRequest.id)
        .where(
            ApprovalRequest.organization_id == organization_id,
            ApprovalRequest.status == ApprovalStatus.PENDING.value,
            ApproverAction.approver_id == user_id,
            ApproverAction.action == ApproverDecision.PENDING.value,
        )
    )
    if approval_type:
        q = q.where(ApprovalRequest.approval_type == ApprovalType(approval_type).value)
    if priority:
        q = q.where(ApprovalRequest.priority == priority)
    return await _paginate(
        session, q, page, limit, _PRIORITY_ORDER, ApprovalRequest.created_at.asc()
    )


async def list_approval_requests(
    session: AsyncSession,
    organization_id,
    status: Optional[str] = None,
    approval_type: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id=None,
    requested_by=None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[ApprovalRequest], int]:
    q = select(ApprovalRequest).where(ApprovalRequest.organization_id == organization_id)
    if status:
        q = q.where(ApprovalRequest.status == status)
    if approval_type:
        q = q.where(ApprovalRequest.approval_type == ApprovalType(approval_type).value)
    if entity_type:
        q = q.where(ApprovalRequest.entity_type == entity_type)
    if entity_id:
        q = q.where(ApprovalRequest.entity_id == entity_id)
    if requested_by:
        q = q.where(ApprovalRequest.requested_by == requested_by)
    return await _paginate(session, q, page, limit, ApprovalRequest.created_at.desc())
