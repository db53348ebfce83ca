import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Text,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm_api.database import Base
from crm_api.models.approval_policy import ApprovalPolicy


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Column values, compared against what the database returns
TERMINAL_STATUSES = frozenset(
    s.value
    for s in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.CANCELLED)
)


class ApproverDecision(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Priority(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id")
    )
    request_number: Mapped[str] = mapped_column(String(20), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)

    approval_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ApprovalStatus.PENDING.value
    )
    priority: Mapped[str] = mapped_column(
        String(20), default=Priority.MEDIUM.value
    )

    # Subject entity, opaque to the engine except in propagation
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )

    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("approval_policies.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    requested_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    request_data: Mapped[dict] = mapped_column(JSONB, default=dict)

    required_approvals: Mapped[int] = mapped_column(Integer, default=1)
    current_approval_count: Mapped[int] = mapped_column(Integer, default=0)

    linked_task_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tasks.id")
    )

    sla_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime)
    current_escalation_level: Mapped[int] = mapped_column(Integer, default=0)

    resolved_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolution_comment: Mapped[Optional[str]] = mapped_column(Text)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    approver_actions: Mapped[list["ApproverAction"]] = relationship(
        back_populates="approval_request",
        cascade="all, delete-orphan",
        order_by="ApproverAction.position",
        lazy="selectin",
    )
    escalation_history: Mapped[list["ApprovalEscalation"]] = relationship(
        back_populates="approval_request",
        cascade="all, delete-orphan",
        order_by="ApprovalEscalation.escalated_at",
        lazy="selectin",
    )
    policy: Mapped[ApprovalPolicy] = relationship(lazy="selectin")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "request_number", name="uq_approval_request_number"
        ),
        CheckConstraint(
            "status IN ('pending','approved','rejected','cancelled')",
            name="chk_approval_request_status",
        ),
        CheckConstraint(
            "current_escalation_level BETWEEN 0 AND 3",
            name="chk_approval_escalation_level",
        ),
        CheckConstraint(
            "required_approvals >= 1", name="chk_approval_required_positive"
        ),
        Index("idx_approval_requests_org_status", "organization_id", "status", "created_at"),
        Index("idx_approval_requests_org_type", "organization_id", "approval_type", "status"),
        Index("idx_approval_requests_entity", "entity_type", "entity_id"),
        Index("idx_approval_requests_requester", "requested_by", "status"),
        Index("idx_approval_requests_sla", "sla_deadline", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def approver_ids(self) -> list[str]:
        return [str(a.approver_id) for a in self.approver_actions]

    def action_for(self, user_id) -> Optional["ApproverAction"]:
        for entry in self.approver_actions:
            if str(entry.approver_id) == str(user_id):
                return entry
        return None

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if self.status != ApprovalStatus.PENDING or not self.sla_deadline:
            return False
        return (now or datetime.utcnow()) > self.sla_deadline


class ApproverAction(Base):
    __tablename__ = "approval_approver_actions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    approval_request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("approval_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    approver_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(
        String(20), default=ApproverDecision.PENDING.value
    )
    comment: Mapped[Optional[str]] = mapped_column(Text)
    acted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    approval_request: Mapped[ApprovalRequest] = relationship(
        back_populates="approver_actions"
    )

    __table_args__ = (
        UniqueConstraint(
            "approval_request_id", "approver_id", name="uq_approver_per_request"
        ),
        CheckConstraint(
            "action IN ('pending','approved','rejected')",
            name="chk_approver_action",
        ),
        Index("idx_approver_actions_approver", "approver_id", "action"),
    )


class ApprovalEscalation(Base):
    __tablename__ = "approval_escalations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    approval_request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("approval_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    escalated_to: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    reason: Mapped[Optional[str]] = mapped_column(Text)
    escalated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    approval_request: Mapped[ApprovalRequest] = relationship(
        back_populates="escalation_history"
    )

    __table_args__ = (
        CheckConstraint("level BETWEEN 1 AND 3", name="chk_escalation_level"),
        Index("idx_escalations_request", "approval_request_id"),
    )
