import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, DateTime, Text, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from crm_api.database import Base


class TaskStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


CLOSED_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED.value, TaskStatus.CANCELLED.value}
)


class Task(Base):
    """Human-facing to-do item. Approval tasks mirror an ApprovalRequest."""

    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(50), default="general")
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    status: Mapped[str] = mapped_column(String(20), default=TaskStatus.OPEN.value)

    assigned_to: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    assigned_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    assignment_type: Mapped[str] = mapped_column(String(20), default="manual")
    watchers: Mapped[list] = mapped_column(JSONB, default=list)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    linked_entity_type: Mapped[Optional[str]] = mapped_column(String(50))
    linked_entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    linked_entity_label: Mapped[Optional[str]] = mapped_column(String(100))

    # Dedup key for system-generated tasks, e.g. "pending_approval_<request id>"
    trigger_type: Mapped[Optional[str]] = mapped_column(String(50))
    deduplication_key: Mapped[Optional[str]] = mapped_column(String(120), unique=True)

    sla_target_hours: Mapped[Optional[int]] = mapped_column(Integer)
    sla_warning_hours: Mapped[Optional[int]] = mapped_column(Integer)

    resolution: Mapped[Optional[dict]] = mapped_column(JSONB)
    escalations: Mapped[list] = mapped_column(JSONB, default=list)
    activity_log: Mapped[list] = mapped_column(JSONB, default=list)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("idx_tasks_org_status", "organization_id", "status"),
        Index("idx_tasks_assignee", "assigned_to", "status", "due_date"),
        Index("idx_tasks_linked_entity", "linked_entity_type", "linked_entity_id"),
    )

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_TASK_STATUSES
