from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from crm_api.models.approval_policy import ApprovalType, AssignmentMode


class DiscountThreshold(BaseModel):
    role_slug: str
    role_level: int = Field(..., ge=0)
    max_discount_percentage: float = Field(..., ge=0, le=100)


class AmountThreshold(BaseModel):
    min_amount: float = Field(0, ge=0)
    max_amount: Optional[float] = None  # None = unbounded
    approver_role_slug: Optional[str] = None
    approver_role_level: int = Field(..., ge=0)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.max_amount is not None and self.max_amount < self.min_amount:
            raise ValueError("max_amount must be >= min_amount")
        return self

    def covers(self, amount: float) -> bool:
        return amount >= self.min_amount and (
            self.max_amount is None or amount <= self.max_amount
        )


class ApproverRule(BaseModel):
    role_slug: Optional[str] = None
    role_level: Optional[int] = Field(None, ge=0)
    specific_users: list[UUID] = Field(default_factory=list)
    assignment_mode: AssignmentMode = AssignmentMode.ROLE


class EscalationConfig(BaseModel):
    enabled: bool = True
    level1_after_hours: int = Field(24, ge=1)
    level2_after_hours: int = Field(48, ge=1)
    level3_after_hours: int = Field(72, ge=1)

    @model_validator(mode="after")
    def _check_order(self):
        if not (
            self.level1_after_hours
            <= self.level2_after_hours
            <= self.level3_after_hours
        ):
            raise ValueError("Escalation thresholds must be non-decreasing")
        return self


class ApprovalPolicyCreate(BaseModel):
    approval_type: ApprovalType
    project_id: Optional[UUID] = None
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_enabled: bool = True
    discount_thresholds: list[DiscountThreshold] = Field(default_factory=list)
    price_override_threshold_percent: float = Field(10.0, ge=0, le=100)
    amount_thresholds: list[AmountThreshold] = Field(default_factory=list)
    always_require: bool = False
    approver_rules: list[ApproverRule] = Field(default_factory=list)
    required_approvals: int = Field(1, ge=1, le=5)
    sla_hours: int = Field(24, ge=1)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)


class ApprovalPolicyUpdate(BaseModel):
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    is_enabled: Optional[bool] = None
    discount_thresholds: Optional[list[DiscountThreshold]] = None
    price_override_threshold_percent: Optional[float] = Field(None, ge=0, le=100)
    amount_thresholds: Optional[list[AmountThreshold]] = None
    always_require: Optional[bool] = None
    approver_rules: Optional[list[ApproverRule]] = None
    required_approvals: Optional[int] = Field(None, ge=1, le=5)
    sla_hours: Optional[int] = Field(None, ge=1)
    escalation: Optional[EscalationConfig] = None


class ApprovalPolicyResponse(BaseModel):
    id: UUID
    organization_id: UUID
    project_id: Optional[UUID] = None
    approval_type: str
    display_name: str
    description: Optional[str] = None
    is_enabled: bool
    discount_thresholds: list[DiscountThreshold] = Field(default_factory=list)
    price_override_threshold_percent: float
    amount_thresholds: list[AmountThreshold] = Field(default_factory=list)
    always_require: bool
    approver_rules: list[ApproverRule] = Field(default_factory=list)
    required_approvals: int
    sla_hours: int
    escalation_enabled: bool
    level1_after_hours: int
    level2_after_hours: int
    level3_after_hours: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
