import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Float,
    DateTime,
    Text,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from crm_api.database import Base


class ApprovalType(str, enum.Enum):
    DISCOUNT_APPROVAL = "DISCOUNT_APPROVAL"
    SALE_CANCELLATION = "SALE_CANCELLATION"
    PRICE_OVERRIDE = "PRICE_OVERRIDE"
    REFUND_APPROVAL = "REFUND_APPROVAL"
    INSTALLMENT_MODIFICATION = "INSTALLMENT_MODIFICATION"
    COMMISSION_PAYOUT = "COMMISSION_PAYOUT"  # handled by the commission workflow
    INVOICE_APPROVAL = "INVOICE_APPROVAL"


class AssignmentMode(str, enum.Enum):
    ROLE = "role"            # every active user holding the exact role slug
    SPECIFIC = "specific"    # only the listed users
    HIERARCHY = "hierarchy"  # every active user at or above the role level


class ApprovalPolicy(Base):
    """
    Per-organization (optionally per-project) approval configuration.

    JSONB columns hold lists of plain dicts; their shapes are the pydantic
    models in crm_api.schemas.approval_policy:
      discount_thresholds  -> DiscountThreshold
      amount_thresholds    -> AmountThreshold
      approver_rules       -> ApproverRule
    """

    __tablename__ = "approval_policies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    # NULL = org-wide fallback
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id")
    )
    approval_type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    discount_thresholds: Mapped[list] = mapped_column(JSONB, default=list)
    price_override_threshold_percent: Mapped[float] = mapped_column(
        Float, default=10.0
    )
    amount_thresholds: Mapped[list] = mapped_column(JSONB, default=list)
    always_require: Mapped[bool] = mapped_column(Boolean, default=False)

    approver_rules: Mapped[list] = mapped_column(JSONB, default=list)
    required_approvals: Mapped[int] = mapped_column(Integer, default=1)

    sla_hours: Mapped[int] = mapped_column(Integer, default=24)
    escalation_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    level1_after_hours: Mapped[int] = mapped_column(Integer, default=24)
    level2_after_hours: Mapped[int] = mapped_column(Integer, default=48)
    level3_after_hours: Mapped[int] = mapped_column(Integer, default=72)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    last_modified_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        # NULLS NOT DISTINCT keeps a single org-wide row per type (PG 15+)
        UniqueConstraint(
            "organization_id",
            "approval_type",
            "project_id",
            name="uq_approval_policy_scope",
            postgresql_nulls_not_distinct=True,
        ),
        CheckConstraint(
            "required_approvals BETWEEN 1 AND 5",
            name="chk_policy_required_approvals",
        ),
        CheckConstraint("sla_hours >= 1", name="chk_policy_sla_hours"),
        CheckConstraint(
            "price_override_threshold_percent BETWEEN 0 AND 100",
            name="chk_policy_price_override_pct",
        ),
        Index("idx_policies_org_enabled", "organization_id", "is_enabled"),
    )

    @property
    def escalation_thresholds(self) -> tuple[int, int, int]:
        return (
            self.level1_after_hours,
            self.level2_after_hours,
            self.level3_after_hours,
        )
