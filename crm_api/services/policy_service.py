"""
Approval policy store.

One policy per (organization, approval type, project). A project policy, when
enabled, takes precedence over the organization-wide one (project_id NULL).
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.exceptions import ApprovalNotFoundError, ApprovalStateConflictError
from crm_api.models.approval_policy import ApprovalPolicy, ApprovalType
from crm_api.schemas.approval_policy import (
    ApprovalPolicyCreate,
    ApprovalPolicyUpdate,
)
from crm_api.services.audit_service import create_audit_log

logger = structlog.get_logger()

_STANDARD_ESCALATION = {
    "enabled": True,
    "level1_after_hours": 24,
    "level2_after_hours": 48,
    "level3_after_hours": 72,
}

DEFAULT_POLICIES: list[dict] = [
    {
        "approval_type": ApprovalType.DISCOUNT_APPROVAL,
        "display_name": "Discount Approval",
        "description": (
            "Controls discount limits per role. A discount above the user's "
            "role limit needs approval from a higher authority."
        ),
        "discount_thresholds": [
            {"role_slug": "channel-partner-agent", "role_level": 6, "max_discount_percentage": 0},
            {"role_slug": "sales-executive", "role_level": 5, "max_discount_percentage": 2},
            {"role_slug": "channel-partner-admin", "role_level": 5, "max_discount_percentage": 2},
            {"role_slug": "sales-manager", "role_level": 4, "max_discount_percentage": 5},
            {"role_slug": "channel-partner-manager", "role_level": 4, "max_discount_percentage": 5},
            {"role_slug": "finance-manager", "role_level": 4, "max_discount_percentage": 5},
            {"role_slug": "sales-head", "role_level": 3, "max_discount_percentage": 10},
            {"role_slug": "finance-head", "role_level": 3, "max_discount_percentage": 10},
            {"role_slug": "marketing-head", "role_level": 3, "max_discount_percentage": 10},
            {"role_slug": "project-director", "role_level": 2, "max_discount_percentage": 15},
            {"role_slug": "business-head", "role_level": 1, "max_discount_percentage": 25},
            {"role_slug": "organization-owner", "role_level": 0, "max_discount_percentage": 100},
        ],
        "approver_rules": [
            {"role_slug": "sales-head", "role_level": 3, "assignment_mode": "hierarchy"},
        ],
        "sla_hours": 24,
        "escalation": _STANDARD_ESCALATION,
    },
    {
        "approval_type": ApprovalType.SALE_CANCELLATION,
        "display_name": "Sale Cancellation Approval",
        "description": "Management sign-off before a booked sale is cancelled.",
        "always_require": True,
        "approver_rules": [
            {"role_slug": "sales-head", "role_level": 3, "assignment_mode": "hierarchy"},
        ],
        "sla_hours": 48,
        "escalation": {
            "enabled": True,
            "level1_after_hours": 48,
            "level2_after_hours": 72,
            "level3_after_hours": 96,
        },
    },
    {
        "approval_type": ApprovalType.PRICE_OVERRIDE,
        "display_name": "Price Override Approval",
        "description": (
            "Triggers when a unit price moves further from its base price "
            "than the configured percentage."
        ),
        "price_override_threshold_percent": 10,
        "approver_rules": [
            {"role_slug": "project-director", "role_level": 2, "assignment_mode": "hierarchy"},
        ],
        "sla_hours": 24,
        "escalation": _STANDARD_ESCALATION,
    },
    {
        "approval_type": ApprovalType.REFUND_APPROVAL,
        "display_name": "Refund Approval",
        "description": "Finance approval for payment refunds, tiered by amount.",
        "amount_thresholds": [
            {"min_amount": 0, "max_amount": 100000, "approver_role_slug": "finance-manager", "approver_role_level": 4},
            {"min_amount": 100001, "max_amount": 500000, "approver_role_slug": "finance-head", "approver_role_level": 3},
            {"min_amount": 500001, "max_amount": None, "approver_role_slug": "business-head", "approver_role_level": 1},
        ],
        "approver_rules": [
            {"role_slug": "finance-manager", "role_level": 4, "assignment_mode": "hierarchy"},
        ],
        "sla_hours": 24,
        "escalation": _STANDARD_ESCALATION,
    },
    {
        "approval_type": ApprovalType.INSTALLMENT_MODIFICATION,
        "display_name": "Installment Modification Approval",
        "description": (
            "Finance approval for changes to installment amounts or due "
            "dates, and for waivers."
        ),
        "always_require": True,
        "approver_rules": [
            {"role_slug": "finance-manager", "role_level": 4, "assignment_mode": "hierarchy"},
        ],
        "sla_hours": 24,
        "escalation": _STANDARD_ESCALATION,
    },
    {
        # Handled by the commission workflow; kept for reference only
        "approval_type": ApprovalType.COMMISSION_PAYOUT,
        "display_name": "Commission Payout Approval",
        "description": "Commission approvals run in the commission workflow.",
        "is_enabled": False,
        "approver_rules": [
            {"role_slug": "sales-head", "role_level": 3, "assignment_mode": "hierarchy"},
        ],
        "sla_hours": 48,
        "escalation": {
            "enabled": False,
            "level1_after_hours": 48,
            "level2_after_hours": 72,
            "level3_after_hours": 96,
        },
    },
    {
        "approval_type": ApprovalType.INVOICE_APPROVAL,
        "display_name": "Invoice Approval",
        "description": "Finance approval before an invoice is sent to the customer.",
        "always_require": True,
        "approver_rules": [
            {"role_slug": "finance-head", "role_level": 3, "assignment_mode": "hierarchy"},
        ],
        "sla_hours": 24,
        "escalation": _STANDARD_ESCALATION,
    },
]


def _policy_snapshot(policy: ApprovalPolicy) -> dict:
    return {
        "is_enabled": policy.is_enabled,
        "display_name": policy.display_name,
        "description": policy.description,
        "discount_thresholds": policy.discount_thresholds,
        "price_override_threshold_percent": policy.price_override_threshold_percent,
        "amount_thresholds": policy.amount_thresholds,
        "always_require": policy.always_require,
        "approver_rules": policy.approver_rules,
        "required_approvals": policy.required_approvals,
        "sla_hours": policy.sla_hours,
        "escalation_enabled": policy.escalation_enabled,
        "level1_after_hours": policy.level1_after_hours,
        "level2_after_hours": policy.level2_after_hours,
        "level3_after_hours": policy.level3_after_hours,
    }


def _column_values(data: dict) -> dict:
    """Flatten validated schema output into column values."""
    values = dict(data)
    escalation = values.pop("escalation", None)
    if escalation is not None:
        values["escalation_enabled"] = escalation["enabled"]
        values["level1_after_hours"] = escalation["level1_after_hours"]
        values["level2_after_hours"] = escalation["level2_after_hours"]
        values["level3_after_hours"] = escalation["level3_after_hours"]
    if "approval_type" in values:
        values["approval_type"] = ApprovalType(values["approval_type"]).value
    return values


async def get_active_policy(
    session: AsyncSession,
    organization_id,
    approval_type,
    project_id=None,
) -> Optional[ApprovalPolicy]:
    """Enabled project policy if one exists, else the enabled org-wide one."""
    type_value = ApprovalType(approval_type).value
    if project_id:
        result = await session.execute(
            select(ApprovalPolicy).where(
                ApprovalPolicy.organization_id == organization_id,
                ApprovalPolicy.approval_type == type_value,
                ApprovalPolicy.project_id == project_id,
                ApprovalPolicy.is_enabled == True,  # noqa: E712
            )
        )
        policy = result.scalar_one_or_none()
        if policy is not None:
            return policy

    result = await session.execute(
        select(ApprovalPolicy).where(
            ApprovalPolicy.organization_id == organization_id,
            ApprovalPolicy.approval_type == type_value,
            ApprovalPolicy.project_id.is_(None),
            ApprovalPolicy.is_enabled == True,  # noqa: E712
        )
    )
    return result.scalar_one_or_none()


async def get_policy(
    session: AsyncSession, policy_id, organization_id
) -> ApprovalPolicy:
    result = await session.execute(
        select(ApprovalPolicy).where(
            ApprovalPolicy.id == policy_id,
            ApprovalPolicy.organization_id == organization_id,
        )
    )
    policy = result.scalar_one_or_none()
    if policy is None:
        raise ApprovalNotFoundError("Approval policy not found", code="POLICY_NOT_FOUND")
    return policy


async def list_policies(
    session: AsyncSession,
    organization_id,
    project_id=None,
    approval_type: Optional[str] = None,
) -> list[ApprovalPolicy]:
    q = select(ApprovalPolicy).where(ApprovalPolicy.organization_id == organization_id)
    if project_id:
        q = q.where(ApprovalPolicy.project_id == project_id)
    if approval_type:
        q = q.where(ApprovalPolicy.approval_type == ApprovalType(approval_type).value)
    result = await session.execute(
        q.order_by(ApprovalPolicy.approval_type, ApprovalPolicy.project_id.nulls_first())
    )
    return list(result.scalars().all())


async def _find_scoped(
    session: AsyncSession, organization_id, approval_type: str, project_id
) -> Optional[ApprovalPolicy]:
    q = select(ApprovalPolicy).where(
        ApprovalPolicy.organization_id == organization_id,
        ApprovalPolicy.approval_type == approval_type,
    )
    if project_id:
        q = q.where(ApprovalPolicy.project_id == project_id)
    else:
        q = q.where(ApprovalPolicy.project_id.is_(None))
    result = await session.execute(q)
    return result.scalar_one_or_none()


async def create_policy(
    session: AsyncSession,
    organization_id,
    body: ApprovalPolicyCreate,
    user_id,
) -> ApprovalPolicy:
    values = _column_values(body.model_dump(mode="json"))
    existing = await _find_scoped(
        session, organization_id, values["approval_type"], body.project_id
    )
    if existing is not None:
        raise ApprovalStateConflictError(
            f"A {values['approval_type']} policy already exists for this scope",
            code="POLICY_EXISTS",
            policy_id=str(existing.id),
        )

    values["project_id"] = body.project_id
    policy = ApprovalPolicy(
        organization_id=organization_id,
        created_by=user_id,
        last_modified_by=user_id,
        **values,
    )
    session.add(policy)
    await session.flush()

    await create_audit_log(
        session,
        organization_id=organization_id,
        actor_id=user_id,
        action="policy_created",
        entity_type="ApprovalPolicy",
        entity_id=policy.id,
        after_state=_policy_snapshot(policy),
    )
    logger.info(
        "approval_policy_created",
        policy_id=str(policy.id),
        approval_type=policy.approval_type,
    )
    return policy


async def update_policy(
    session: AsyncSession,
    policy_id,
    organization_id,
    body: ApprovalPolicyUpdate,
    user_id,
) -> ApprovalPolicy:
    """Apply the fields present in ``body``. Type and scope are immutable."""
    policy = await get_policy(session, policy_id, organization_id)
    before = _policy_snapshot(policy)

    changes = _column_values(body.model_dump(mode="json", exclude_unset=True))
    for field, value in changes.items():
        if value is None and field not in ("description",):
            continue
        setattr(policy, field, value)
    policy.last_modified_by = user_id
    await session.flush()

    after = _policy_snapshot(policy)
    await create_audit_log(
        session,
        organization_id=organization_id,
        actor_id=user_id,
        action="policy_updated",
        entity_type="ApprovalPolicy",
        entity_id=policy.id,
        before_state=before,
        after_state=after,
    )
    logger.info("approval_policy_updated", policy_id=str(policy.id))
    return policy


async def seed_default_policies(
    session: AsyncSession, organization_id, created_by=None
) -> list[ApprovalPolicy]:
    """Create the org-wide default policy set. Existing rows are left alone."""
    policies = []
    created = 0
    for template in DEFAULT_POLICIES:
        body = ApprovalPolicyCreate.model_validate(template)
        values = _column_values(body.model_dump(mode="json"))
        existing = await _find_scoped(
            session, organization_id, values["approval_type"], None
        )
        if existing is not None:
            policies.append(existing)
            continue

        values["project_id"] = None
        policy = ApprovalPolicy(
            organization_id=organization_id,
            created_by=created_by,
            last_modified_by=created_by,
            **values,
        )
        session.add(policy)
        policies.append(policy)
        created += 1

    await session.flush()
    logger.info(
        "approval_policies_seeded",
        organization_id=str(organization_id),
        created=created,
        existing=len(policies) - created,
    )
    return policies
