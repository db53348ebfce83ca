"""Draft payment plan creation for a booked sale. Installment generation
happens in the collections module once the plan is confirmed."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.models.sale import PaymentPlan, Sale

logger = structlog.get_logger()


async def create_payment_plan(session: AsyncSession, sale: Sale) -> PaymentPlan:
    """Create the sale's draft plan, or return the existing one."""
    if sale.payment_plan_id is not None:
        existing = await session.get(PaymentPlan, sale.payment_plan_id)
        if existing is not None:
            return existing

    result = await session.execute(
        select(PaymentPlan).where(PaymentPlan.sale_id == sale.id)
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        sale.payment_plan_id = existing.id
        return existing

    plan = PaymentPlan(
        organization_id=sale.organization_id,
        sale_id=sale.id,
        total_cents=sale.sale_price_cents,
        discount_cents=sale.discount_amount_cents or 0,
        schedule_template=sale.payment_plan_snapshot,
        status="DRAFT",
    )
    session.add(plan)
    await session.flush()
    sale.payment_plan_id = plan.id

    logger.info(
        "payment_plan_created",
        sale_id=str(sale.id),
        payment_plan_id=str(plan.id),
        total_cents=plan.total_cents,
    )
    return plan
