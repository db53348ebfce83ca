from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from crm_api.models.approval import Priority
from crm_api.models.approval_policy import ApprovalType


class ApproverActionResponse(BaseModel):
    approver_id: UUID
    action: str
    comment: Optional[str] = None
    acted_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class EscalationResponse(BaseModel):
    level: int
    escalated_to: UUID
    reason: Optional[str] = None
    escalated_at: datetime

    model_config = {"from_attributes": True}


class ApprovalRequestResponse(BaseModel):
    id: UUID
    organization_id: UUID
    project_id: Optional[UUID] = None
    request_number: str
    approval_type: str
    status: str
    priority: str
    entity_type: str
    entity_id: UUID
    policy_id: UUID
    title: str
    description: Optional[str] = None
    requested_by: UUID
    request_data: dict[str, Any] = Field(default_factory=dict)
    required_approvals: int
    current_approval_count: int
    linked_task_id: Optional[UUID] = None
    sla_deadline: Optional[datetime] = None
    current_escalation_level: int
    resolved_by: Optional[UUID] = None
    resolved_at: Optional[datetime] = None
    resolution_comment: Optional[str] = None
    approver_actions: list[ApproverActionResponse] = Field(default_factory=list)
    escalation_history: list[EscalationResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AuditEntryResponse(BaseModel):
    action: str
    actor_id: Optional[UUID] = None
    comment: Optional[str] = None
    before_state: Optional[dict] = None
    after_state: Optional[dict] = None
    details: Optional[dict] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ApprovalRequestDetail(ApprovalRequestResponse):
    audit_trail: list[AuditEntryResponse] = Field(default_factory=list)


class ApprovalRequestCreate(BaseModel):
    approval_type: ApprovalType
    project_id: Optional[UUID] = None
    entity_type: str = Field(..., min_length=1, max_length=50)
    entity_id: UUID
    request_data: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    title: Optional[str] = Field(None, max_length=300)
    description: Optional[str] = None


class ApprovalCreateResponse(BaseModel):
    approved: bool
    auto_approved: bool = False
    approval_request: Optional[ApprovalRequestResponse] = None
    task_id: Optional[UUID] = None


class ApprovalCheckRequest(BaseModel):
    approval_type: ApprovalType
    project_id: Optional[UUID] = None
    context: dict[str, Any] = Field(default_factory=dict)


class ApprovalCheckResponse(BaseModel):
    required: bool
    policy_id: Optional[UUID] = None
    approvers: list[UUID] = Field(default_factory=list)
    # Context problems that kept the check from being evaluated
    errors: list[dict[str, Any]] = Field(default_factory=list)


class ApproveBody(BaseModel):
    comment: Optional[str] = None


class RejectBody(BaseModel):
    comment: str = Field(..., min_length=1)


class CancelBody(BaseModel):
    reason: Optional[str] = None


class DashboardStat(BaseModel):
    approval_type: str
    status: str
    count: int


class ApprovalDashboardResponse(BaseModel):
    pending_for_me: list[ApprovalRequestResponse] = Field(default_factory=list)
    my_requests: list[ApprovalRequestResponse] = Field(default_factory=list)
    recently_resolved: list[ApprovalRequestResponse] = Field(default_factory=list)
    stats: list[DashboardStat] = Field(default_factory=list)
