"""
Approver resolution against the organization directory.

Role levels: lower number = more authority (0 = organization owner), so
"at or above level N" means ``Role.level <= N``. Directory queries hit the
database on every call; nothing is cached between resolutions.

Ordering: qualifying users come back most-junior-authority first. The first
approver receives the linked task, so it goes to the closest qualified
person rather than straight to the owner.
"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.models.approval_policy import ApprovalPolicy, AssignmentMode
from crm_api.models.user import Role, User
from crm_api.schemas.approval_policy import ApproverRule

logger = structlog.get_logger()


async def users_by_level(
    session: AsyncSession, organization_id, max_level: int
) -> list[User]:
    """Active users whose role level is <= max_level."""
    result = await session.execute(
        select(User)
        .join(Role, User.role_id == Role.id)
        .where(
            User.organization_id == organization_id,
            User.is_active == True,  # noqa: E712
            Role.level <= max_level,
        )
        .order_by(Role.level.desc(), User.created_at)
    )
    return list(result.scalars().all())


async def users_by_role_slug(
    session: AsyncSession, organization_id, role_slug: str
) -> list[User]:
    """Active users holding exactly this role."""
    result = await session.execute(
        select(User)
        .join(Role, User.role_id == Role.id)
        .where(
            User.organization_id == organization_id,
            User.is_active == True,  # noqa: E712
            Role.slug == role_slug,
        )
        .order_by(User.created_at)
    )
    return list(result.scalars().all())


async def get_user_role_level(session: AsyncSession, user_id) -> Optional[int]:
    result = await session.execute(
        select(Role.level)
        .join(User, User.role_id == Role.id)
        .where(User.id == user_id)
    )
    return result.scalar_one_or_none()


async def _users_for_rule(
    session: AsyncSession, organization_id, rule: ApproverRule
) -> list[str]:
    if rule.assignment_mode == AssignmentMode.SPECIFIC:
        return [str(uid) for uid in rule.specific_users]

    if rule.assignment_mode == AssignmentMode.ROLE:
        if not rule.role_slug:
            logger.warning("approver_rule_missing_role_slug", rule=rule.model_dump(mode="json"))
            return []
        users = await users_by_role_slug(session, organization_id, rule.role_slug)
        return [str(u.id) for u in users]

    if rule.role_level is None:
        logger.warning("approver_rule_missing_role_level", rule=rule.model_dump(mode="json"))
        return []
    users = await users_by_level(session, organization_id, rule.role_level)
    return [str(u.id) for u in users]


async def resolve_approvers(
    session: AsyncSession,
    policy: ApprovalPolicy,
    organization_id,
    context: Optional[dict] = None,
    override_level: Optional[int] = None,
) -> list[str]:
    """
    Distinct approver user ids (as strings), requester excluded.

    With ``override_level`` every active user at or above that level
    qualifies and the policy's approver rules are ignored. Otherwise the
    rules are unioned in order. An empty list means nobody can approve; the
    caller auto-approves.
    """
    context = context or {}
    candidates: list[str] = []

    if override_level is not None:
        users = await users_by_level(session, organization_id, override_level)
        candidates = [str(u.id) for u in users]
    else:
        for raw_rule in policy.approver_rules or []:
            rule = ApproverRule.model_validate(raw_rule)
            candidates.extend(await _users_for_rule(session, organization_id, rule))

    requester = context.get("requested_by")
    requester = str(uuid.UUID(str(requester))) if requester else None

    # dict.fromkeys keeps first occurrence order
    approvers = [uid for uid in dict.fromkeys(candidates) if uid != requester]

    logger.debug(
        "approvers_resolved",
        policy_id=str(policy.id),
        override_level=override_level,
        count=len(approvers),
    )
    return approvers
