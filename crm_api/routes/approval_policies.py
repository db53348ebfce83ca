"""Approval policy administration. Owner and business head only."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm_api.middleware.auth import get_current_user
from crm_api.middleware.authorization import POLICY_MANAGER_ROLES, require_roles
from crm_api.middleware.tenant import get_db_with_tenant
from crm_api.models.approval_policy import ApprovalType
from crm_api.schemas.approval_policy import (
    ApprovalPolicyCreate,
    ApprovalPolicyResponse,
    ApprovalPolicyUpdate,
)
from crm_api.services.policy_service import (
    create_policy,
    get_policy,
    list_policies,
    seed_default_policies,
    update_policy,
)

router = APIRouter(dependencies=[Depends(require_roles(*POLICY_MANAGER_ROLES))])


@router.get("", response_model=list[ApprovalPolicyResponse])
async def list_approval_policies(
    project_id: Optional[UUID] = Query(None),
    approval_type: Optional[ApprovalType] = Query(None),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    policies = await list_policies(
        db,
        current_user["organization_id"],
        project_id=project_id,
        approval_type=approval_type.value if approval_type else None,
    )
    return [ApprovalPolicyResponse.model_validate(p) for p in policies]


@router.post("", response_model=ApprovalPolicyResponse, status_code=status.HTTP_201_CREATED)
async def create_approval_policy(
    body: ApprovalPolicyCreate,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    policy = await create_policy(
        db, current_user["organization_id"], body, current_user["user_id"]
    )
    return ApprovalPolicyResponse.model_validate(policy)


@router.post("/seed-defaults", response_model=list[ApprovalPolicyResponse])
async def seed_defaults(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    """Create any missing org-wide default policies. Safe to call repeatedly."""
    policies = await seed_default_policies(
        db, current_user["organization_id"], created_by=current_user["user_id"]
    )
    return [ApprovalPolicyResponse.model_validate(p) for p in policies]


@router.get("/{policy_id}", response_model=ApprovalPolicyResponse)
async def get_approval_policy(
    policy_id: UUID,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    policy = await get_policy(db, policy_id, current_user["organization_id"])
    return ApprovalPolicyResponse.model_validate(policy)


@router.put("/{policy_id}", response_model=ApprovalPolicyResponse)
async def update_approval_policy(
    policy_id: UUID,
    body: ApprovalPolicyUpdate,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    policy = await update_policy(
        db, policy_id, current_user["organization_id"], body, current_user["user_id"]
    )
    return ApprovalPolicyResponse.model_validate(policy)
