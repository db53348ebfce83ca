"""
Propagation of final approval decisions onto the subject entity.

The decision is already flushed when these run. Each hook executes inside a
savepoint; a failure rolls back only the entity mutation, is logged, and
leaves the approval request in its terminal status.
"""

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.models.approval import ApprovalRequest
from crm_api.services.approval_strategies import get_strategy

logger = structlog.get_logger()


async def _propagate(session: AsyncSession, request: ApprovalRequest, path: str) -> bool:
    strategy = get_strategy(request.approval_type)
    if strategy.entity_model is None:
        return False

    log = logger.bind(
        approval_request_id=str(request.id),
        approval_type=request.approval_type,
        entity_type=request.entity_type,
        entity_id=str(request.entity_id),
        path=path,
    )
    hook = strategy.on_approve if path == "approve" else strategy.on_reject

    try:
        async with session.begin_nested():
            entity = await session.get(strategy.entity_model, request.entity_id)
            if entity is None:
                log.warning("approval_propagation_entity_missing")
                return False
            await hook(session, request, entity)
    except Exception as exc:
        log.error("approval_propagation_failed", error=str(exc), exc_info=True)
        return False

    log.info("approval_propagated")
    return True


async def propagate_approval(session: AsyncSession, request: ApprovalRequest) -> bool:
    """Apply the approve-path effect. Returns False when nothing was applied."""
    return await _propagate(session, request, "approve")


async def propagate_rejection(session: AsyncSession, request: ApprovalRequest) -> bool:
    """Apply the reject-path effect (also used on cancellation)."""
    return await _propagate(session, request, "reject")
