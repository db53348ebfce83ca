"""
Approvals API routes: submit and check approval requests, act on them
as an assigned approver, cancel as the requester, and read the dashboard.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.middleware.auth import get_current_user
from crm_api.middleware.authorization import require_authority, role_level
from crm_api.middleware.tenant import get_db_with_tenant
from crm_api.models.approval import ApprovalStatus, ApproverDecision, Priority
from crm_api.models.approval_policy import ApprovalType
from crm_api.schemas.approval import (
    ApprovalCheckRequest,
    ApprovalCheckResponse,
    ApprovalCreateResponse,
    ApprovalDashboardResponse,
    ApprovalRequestCreate,
    ApprovalRequestDetail,
    ApprovalRequestResponse,
    AuditEntryResponse,
    ApproveBody,
    CancelBody,
    DashboardStat,
    RejectBody,
)
from crm_api.schemas.common import PaginatedResponse, build_pagination
from crm_api.services.approval_dashboard import get_approval_dashboard
from crm_api.services.approval_service import (
    cancel_approval_request,
    check_approval_required,
    create_approval_request,
    get_approval_request,
    get_audit_trail,
    list_approval_requests,
    list_pending_approvals,
    process_approval_action,
)

logger = structlog.get_logger()
router = APIRouter()


def _with_requester_claims(data: dict, current_user: dict) -> dict:
    """Fill the requester's role from the token unless the caller supplied one."""
    data = dict(data)
    data.setdefault("user_role_slug", current_user["role"])
    level = role_level(current_user)
    if level is not None:
        data.setdefault("user_role_level", level)
    return data


@router.get("/dashboard", response_model=ApprovalDashboardResponse)
async def approval_dashboard(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    data = await get_approval_dashboard(
        db, current_user["user_id"], current_user["organization_id"]
    )
    return ApprovalDashboardResponse(
        pending_for_me=[ApprovalRequestResponse.model_validate(r) for r in data["pending_for_me"]],
        my_requests=[ApprovalRequestResponse.model_validate(r) for r in data["my_requests"]],
        recently_resolved=[
            ApprovalRequestResponse.model_validate(r) for r in data["recently_resolved"]
        ],
        stats=[DashboardStat(**s) for s in data["stats"]],
    )


@router.get("/pending", response_model=PaginatedResponse[ApprovalRequestResponse])
async def list_my_pending(
    approval_type: Optional[ApprovalType] = Query(None),
    priority: Optional[Priority] = Query(None),
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    """Requests waiting on the current user, most urgent first."""
    items, total = await list_pending_approvals(
        db,
        current_user["user_id"],
        current_user["organization_id"],
        approval_type=approval_type.value if approval_type else None,
        priority=priority.value if priority else None,
        page=page,
        limit=limit,
    )
    return PaginatedResponse(
        data=[ApprovalRequestResponse.model_validate(r) for r in items],
        pagination=build_pagination(page, limit, total),
    )


@router.get("", response_model=PaginatedResponse[ApprovalRequestResponse])
async def list_requests(
    status_filter: Optional[ApprovalStatus] = Query(None, alias="status"),
    approval_type: Optional[ApprovalType] = Query(None),
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[UUID] = Query(None),
    requested_by: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
    _auth: None = Depends(require_authority(3)),
):
    """Organization-wide listing for department heads and above."""
    items, total = await list_approval_requests(
        db,
        current_user["organization_id"],
        status=status_filter.value if status_filter else None,
        approval_type=approval_type.value if approval_type else None,
        entity_type=entity_type,
        entity_id=entity_id,
        requested_by=requested_by,
        page=page,
        limit=limit,
    )
    return PaginatedResponse(
        data=[ApprovalRequestResponse.model_validate(r) for r in items],
        pagination=build_pagination(page, limit, total),
    )


@router.post("/check", response_model=ApprovalCheckResponse)
async def check_required(
    body: ApprovalCheckRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    """Dry run: would this action need approval, and from whom."""
    context = _with_requester_claims(body.context, current_user)
    context["requested_by"] = current_user["user_id"]
    check = await check_approval_required(
        db,
        current_user["organization_id"],
        body.approval_type,
        context,
        project_id=body.project_id,
    )
    return ApprovalCheckResponse(
        required=check.required,
        policy_id=check.policy.id if check.policy else None,
        approvers=check.approvers,
        errors=check.errors,
    )


@router.post("", response_model=ApprovalCreateResponse)
async def submit_request(
    body: ApprovalRequestCreate,
    response: Response,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    """
    Open an approval request. Responds 201 with the pending request, or 200
    with ``auto_approved`` when the action needs no approval.
    """
    result = await create_approval_request(
        db,
        background_tasks,
        organization_id=current_user["organization_id"],
        project_id=body.project_id,
        approval_type=body.approval_type,
        entity_type=body.entity_type,
        entity_id=body.entity_id,
        requested_by=current_user["user_id"],
        request_data=_with_requester_claims(body.request_data, current_user),
        priority=body.priority.value,
        title=body.title,
        description=body.description,
    )
    if result.approval_request is None:
        return ApprovalCreateResponse(approved=result.approved, auto_approved=result.auto_approved)

    response.status_code = status.HTTP_201_CREATED
    return ApprovalCreateResponse(
        approved=False,
        approval_request=ApprovalRequestResponse.model_validate(result.approval_request),
        task_id=result.task.id if result.task else None,
    )


@router.get("/{request_id}", response_model=ApprovalRequestDetail)
async def get_request(
    request_id: UUID,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    request = await get_approval_request(db, request_id, current_user["organization_id"])
    trail = await get_audit_trail(db, request)
    detail = ApprovalRequestDetail.model_validate(request)
    detail.audit_trail = [AuditEntryResponse.model_validate(entry) for entry in trail]
    return detail


@router.post("/{request_id}/approve", response_model=ApprovalRequestResponse)
async def approve_request(
    request_id: UUID,
    background_tasks: BackgroundTasks,
    body: Optional[ApproveBody] = None,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    request = await process_approval_action(
        db,
        background_tasks,
        request_id=request_id,
        user_id=current_user["user_id"],
        action=ApproverDecision.APPROVED,
        comment=body.comment if body else None,
        organization_id=current_user["organization_id"],
    )
    return ApprovalRequestResponse.model_validate(request)


@router.post("/{request_id}/reject", response_model=ApprovalRequestResponse)
async def reject_request(
    request_id: UUID,
    body: RejectBody,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    """Reject. A single rejection rejects the whole request."""
    request = await process_approval_action(
        db,
        background_tasks,
        request_id=request_id,
        user_id=current_user["user_id"],
        action=ApproverDecision.REJECTED,
        comment=body.comment,
        organization_id=current_user["organization_id"],
    )
    return ApprovalRequestResponse.model_validate(request)


@router.post("/{request_id}/cancel", response_model=ApprovalRequestResponse)
async def cancel_request(
    request_id: UUID,
    background_tasks: BackgroundTasks,
    body: Optional[CancelBody] = None,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    request = await cancel_approval_request(
        db,
        background_tasks,
        request_id,
        current_user["user_id"],
        reason=body.reason if body else None,
        organization_id=current_user["organization_id"],
    )
    return ApprovalRequestResponse.model_validate(request)
