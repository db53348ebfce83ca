"""Threshold evaluation: does this action need approval under the active policy?"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.exceptions import ApprovalValidationError
from crm_api.models.approval_policy import ApprovalPolicy
from crm_api.services.approval_strategies import get_strategy
from crm_api.services.policy_service import get_active_policy

logger = structlog.get_logger()


@dataclass
class ThresholdDecision:
    required: bool
    policy: Optional[ApprovalPolicy] = None
    # Replaces the policy's approver rules when set
    override_approver_level: Optional[int] = None


async def is_approval_required(
    session: AsyncSession,
    organization_id,
    approval_type,
    context: Optional[dict] = None,
    project_id=None,
) -> ThresholdDecision:
    """
    Evaluate ``context`` against the active policy for ``approval_type``.

    No policy (or only disabled ones) means no approval. Raises
    ApprovalValidationError for an unknown type or a malformed context.
    """
    try:
        strategy = get_strategy(approval_type)
    except ValueError:
        raise ApprovalValidationError(f"Unknown approval type: {approval_type}")

    if strategy.delegated:
        return ThresholdDecision(required=False)

    policy = await get_active_policy(session, organization_id, approval_type, project_id)
    if policy is None:
        return ThresholdDecision(required=False)

    ctx = await strategy.prepare(session, organization_id, context)
    if not strategy.evaluate(policy, ctx):
        return ThresholdDecision(required=False, policy=policy)

    override = strategy.resolve_override(policy, ctx)
    logger.debug(
        "approval_threshold_exceeded",
        approval_type=strategy.approval_type.value,
        policy_id=str(policy.id),
        override_approver_level=override,
    )
    return ThresholdDecision(required=True, policy=policy, override_approver_level=override)
