"""Audit logging service: records entity state changes."""

from typing import Optional
from datetime import datetime
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.models.audit_log import AuditLog

logger = structlog.get_logger()


def _to_uuid(value, field_name: str, required: bool = False) -> Optional[uuid.UUID]:
    if value is None:
        if required:
            raise ValueError(f"{field_name} is required")
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        if required:
            raise ValueError(f"{field_name} must be a valid UUID")
        logger.warning("audit_invalid_uuid", field=field_name, value=str(value))
        return None


def _compute_changed_fields(
    before: Optional[dict], after: Optional[dict]
) -> Optional[list[str]]:
    """Diff two state dicts and return list of changed field names."""
    if not before or not after:
        return None
    changed = []
    for key in sorted(set(before.keys()) | set(after.keys())):
        if before.get(key) != after.get(key):
            changed.append(key)
    return changed or None


async def create_audit_log(
    session: AsyncSession,
    organization_id,
    actor_id,
    action: str,
    entity_type: str,
    entity_id,
    before_state: Optional[dict] = None,
    after_state: Optional[dict] = None,
    comment: Optional[str] = None,
    details: Optional[dict] = None,
) -> AuditLog:
    """
    Create an audit log entry.

    Uses session.flush(); caller owns the transaction. ``actor_id=None``
    records a system action (the escalation scheduler).
    """
    audit = AuditLog(
        organization_id=_to_uuid(organization_id, "organization_id", required=True),
        actor_id=_to_uuid(actor_id, "actor_id"),
        action=action,
        entity_type=entity_type,
        entity_id=_to_uuid(entity_id, "entity_id", required=True),
        comment=comment,
        before_state=before_state,
        after_state=after_state,
        changed_fields=_compute_changed_fields(before_state, after_state),
        details=details or {},
        request_id=structlog.contextvars.get_contextvars().get("request_id"),
        created_at=datetime.utcnow(),
    )
    session.add(audit)
    await session.flush()

    logger.info(
        "audit_log_created",
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        actor_id=str(actor_id) if actor_id else None,
    )
    return audit


async def get_audit_trail(
    session: AsyncSession, entity_type: str, entity_id
) -> list[AuditLog]:
    """Oldest first."""
    result = await session.execute(
        select(AuditLog)
        .where(
            AuditLog.entity_type == entity_type,
            AuditLog.entity_id == _to_uuid(entity_id, "entity_id", required=True),
        )
        .order_by(AuditLog.created_at.asc())
    )
    return list(result.scalars().all())
