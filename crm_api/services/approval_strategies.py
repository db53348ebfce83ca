"""
Approval strategy registry.

One strategy per ApprovalType. Each strategy owns the type-specific pieces of
the engine:

    prepare / evaluate    is approval required for this context?
    resolve_override      approver level that replaces the policy's rules
    on_approve/on_reject  effect of the final decision on the subject entity

The registry is built at import time and refuses to load if any ApprovalType
member has no strategy, so adding an enum member without its strategy fails
on startup rather than at the first request of that type.

Context and request_data amounts are in major currency units; entity columns
store cents.
"""

import uuid
from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.exceptions import ApprovalValidationError
from crm_api.models.approval import ApprovalRequest
from crm_api.models.approval_policy import ApprovalPolicy, ApprovalType
from crm_api.models.installment import Installment
from crm_api.models.invoice import Invoice
from crm_api.models.lead import Lead
from crm_api.models.payment import PaymentTransaction
from crm_api.models.sale import Sale
from crm_api.models.unit import Unit
from crm_api.schemas.approval_policy import AmountThreshold, DiscountThreshold
from crm_api.services.approver_resolver import get_user_role_level
from crm_api.services.payment_plan_service import create_payment_plan

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Threshold contexts
# ---------------------------------------------------------------------------

class ApprovalContext(BaseModel):
    model_config = ConfigDict(extra="allow")

    requested_by: Optional[uuid.UUID] = None


class DiscountContext(ApprovalContext):
    discount_percentage: Optional[float] = None
    user_role_slug: Optional[str] = None
    user_role_level: Optional[int] = None


class PriceOverrideContext(ApprovalContext):
    deviation_percent: Optional[float] = None
    proposed_price: Optional[float] = Field(None, ge=0)
    base_price: Optional[float] = Field(None, gt=0)

    @model_validator(mode="after")
    def _derive_deviation(self):
        if self.deviation_percent is None:
            if self.proposed_price is None or self.base_price is None:
                raise ValueError(
                    "deviation_percent, or proposed_price and base_price, is required"
                )
            self.deviation_percent = (
                abs(self.proposed_price - self.base_price) / self.base_price * 100
            )
        return self


class RefundContext(ApprovalContext):
    refund_amount: float = Field(..., ge=0)


# ---------------------------------------------------------------------------
# Request data read back when the decision is applied
# ---------------------------------------------------------------------------

class PriceOverrideData(BaseModel):
    model_config = ConfigDict(extra="allow")

    proposed_price: float = Field(..., ge=0)


class InstallmentModification(BaseModel):
    model_config = ConfigDict(extra="allow")

    modification_type: Literal["amount_change", "date_change", "waiver"]
    proposed_value: Optional[Any] = None

    @model_validator(mode="after")
    def _check_proposed_value(self):
        value = self.proposed_value
        if self.modification_type == "amount_change":
            if isinstance(value, bool) or not isinstance(value, (int, float, str)):
                raise ValueError("amount_change needs a numeric proposed_value")
            try:
                float(value)
            except ValueError:
                raise ValueError("amount_change needs a numeric proposed_value")
        elif self.modification_type == "date_change":
            try:
                date.fromisoformat(str(value or "")[:10])
            except ValueError:
                raise ValueError("date_change needs an ISO date proposed_value")
        return self


def _validate(model: type[BaseModel], data: Optional[dict], label: str) -> BaseModel:
    try:
        return model.model_validate(data or {})
    except ValidationError as exc:
        raise ApprovalValidationError(
            label,
            errors=[
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ],
        ) from exc


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _to_cents(amount) -> int:
    return int(round(float(amount) * 100))


# ---------------------------------------------------------------------------
# Base strategy
# ---------------------------------------------------------------------------

class ApprovalStrategy:
    approval_type: ApprovalType
    context_model: type[ApprovalContext] = ApprovalContext
    # ORM class loaded by the propagation dispatcher; None = nothing to mutate
    entity_model: Optional[type] = None
    # Decided outside this engine; no policy lookup, never required
    delegated: bool = False
    # Shape of request_data that on_approve/on_reject read back; None = unchecked
    request_data_model: Optional[type[BaseModel]] = None

    def parse_context(self, context: Optional[dict]) -> ApprovalContext:
        return _validate(
            self.context_model, context, f"Invalid context for {self.approval_type.value}"
        )

    def validate_request_data(self, request_data: Optional[dict]) -> None:
        """Reject a request whose approval could never be applied to its entity."""
        if self.request_data_model is not None:
            _validate(
                self.request_data_model,
                request_data,
                f"Invalid request data for {self.approval_type.value}",
            )

    async def prepare(
        self, session: AsyncSession, organization_id, context: Optional[dict]
    ) -> ApprovalContext:
        return self.parse_context(context)

    def evaluate(self, policy: ApprovalPolicy, ctx: ApprovalContext) -> bool:
        raise NotImplementedError

    def resolve_override(
        self, policy: ApprovalPolicy, ctx: ApprovalContext
    ) -> Optional[int]:
        return None

    async def on_approve(
        self, session: AsyncSession, request: ApprovalRequest, entity
    ) -> None:
        return None

    async def on_reject(
        self, session: AsyncSession, request: ApprovalRequest, entity
    ) -> None:
        return None


class AlwaysRequiredStrategy(ApprovalStrategy):
    """Types without a numeric threshold: required whenever the policy is on."""

    def evaluate(self, policy: ApprovalPolicy, ctx: ApprovalContext) -> bool:
        return True


# ---------------------------------------------------------------------------
# Concrete strategies
# ---------------------------------------------------------------------------

class DiscountApprovalStrategy(ApprovalStrategy):
    approval_type = ApprovalType.DISCOUNT_APPROVAL
    context_model = DiscountContext
    entity_model = Sale

    async def prepare(self, session, organization_id, context):
        ctx = self.parse_context(context)
        if (
            ctx.discount_percentage
            and ctx.user_role_level is None
            and ctx.requested_by is not None
        ):
            ctx.user_role_level = await get_user_role_level(session, ctx.requested_by)
        return ctx

    @staticmethod
    def _thresholds(policy: ApprovalPolicy) -> list[DiscountThreshold]:
        return [DiscountThreshold.model_validate(t) for t in policy.discount_thresholds or []]

    def ceiling_for(self, policy: ApprovalPolicy, ctx: DiscountContext) -> float:
        """Requester's own limit; 0 when their role is not in the table."""
        thresholds = self._thresholds(policy)
        if ctx.user_role_slug:
            for t in thresholds:
                if t.role_slug == ctx.user_role_slug:
                    return t.max_discount_percentage
        if ctx.user_role_level is not None:
            for t in thresholds:
                if t.role_level == ctx.user_role_level:
                    return t.max_discount_percentage
        return 0.0

    def evaluate(self, policy, ctx) -> bool:
        if not ctx.discount_percentage or ctx.discount_percentage <= 0:
            return False
        return ctx.discount_percentage > self.ceiling_for(policy, ctx)

    def resolve_override(self, policy, ctx) -> Optional[int]:
        # Most junior role whose ceiling still covers the discount
        for t in sorted(self._thresholds(policy), key=lambda t: t.role_level, reverse=True):
            if t.max_discount_percentage >= ctx.discount_percentage:
                return t.role_level
        return 0

    @staticmethod
    def _unit_id(request: ApprovalRequest, sale: Sale) -> Optional[uuid.UUID]:
        return _as_uuid((request.request_data or {}).get("unit_id")) or sale.unit_id

    async def on_approve(self, session, request, sale: Sale) -> None:
        sale.status = "booked"
        sale.booked_at = datetime.utcnow()

        unit_id = self._unit_id(request, sale)
        if unit_id:
            unit = await session.get(Unit, unit_id)
            if unit is not None:
                unit.status = "sold"

        if sale.lead_id:
            lead = await session.get(Lead, sale.lead_id)
            if lead is not None:
                lead.status = "booked"

        if sale.payment_plan_id is None:
            try:
                async with session.begin_nested():
                    await create_payment_plan(session, sale)
            except Exception as exc:
                # Booking stands; finance can create the plan by hand
                logger.error(
                    "approval_payment_plan_failed",
                    approval_request_id=str(request.id),
                    sale_id=str(sale.id),
                    error=str(exc),
                    exc_info=True,
                )

    async def on_reject(self, session, request, sale: Sale) -> None:
        unit_id = self._unit_id(request, sale)
        await session.delete(sale)
        if unit_id:
            unit = await session.get(Unit, unit_id)
            if unit is not None:
                unit.status = "available"


class SaleCancellationStrategy(AlwaysRequiredStrategy):
    approval_type = ApprovalType.SALE_CANCELLATION
    entity_model = Sale

    async def on_approve(self, session, request, sale: Sale) -> None:
        sale.status = "cancelled"
        sale.cancellation_reason = (
            (request.request_data or {}).get("cancellation_reason")
            or request.resolution_comment
        )
        sale.cancelled_by = request.resolved_by
        sale.cancelled_at = datetime.utcnow()

        unit = await session.get(Unit, sale.unit_id)
        if unit is not None:
            unit.status = "available"
        if sale.lead_id:
            lead = await session.get(Lead, sale.lead_id)
            if lead is not None:
                lead.status = "active"


class PriceOverrideStrategy(ApprovalStrategy):
    approval_type = ApprovalType.PRICE_OVERRIDE
    context_model = PriceOverrideContext
    entity_model = Unit
    request_data_model = PriceOverrideData

    def evaluate(self, policy, ctx) -> bool:
        return abs(ctx.deviation_percent) > policy.price_override_threshold_percent

    async def on_approve(self, session, request, unit: Unit) -> None:
        proposed = (request.request_data or {}).get("proposed_price")
        if proposed is None:
            logger.warning(
                "price_override_missing_proposed_price",
                approval_request_id=str(request.id),
            )
            return
        unit.current_price_cents = _to_cents(proposed)
        unit.price_updated_by = request.resolved_by


class RefundApprovalStrategy(ApprovalStrategy):
    approval_type = ApprovalType.REFUND_APPROVAL
    context_model = RefundContext
    entity_model = PaymentTransaction

    @staticmethod
    def bracket_for(policy: ApprovalPolicy, amount: float) -> Optional[AmountThreshold]:
        for raw in policy.amount_thresholds or []:
            bracket = AmountThreshold.model_validate(raw)
            if bracket.covers(amount):
                return bracket
        return None

    def evaluate(self, policy, ctx) -> bool:
        if ctx.refund_amount == 0:
            return False
        # Brackets only pick the approver level; an uncovered amount still needs
        # sign-off under the policy's own approver rules
        if policy.amount_thresholds:
            return True
        return bool(policy.always_require)

    def resolve_override(self, policy, ctx) -> Optional[int]:
        bracket = self.bracket_for(policy, ctx.refund_amount)
        return bracket.approver_role_level if bracket else None

    async def on_approve(self, session, request, txn: PaymentTransaction) -> None:
        # Money movement is the payments module's job
        txn.requires_approval = False


class InstallmentModificationStrategy(AlwaysRequiredStrategy):
    approval_type = ApprovalType.INSTALLMENT_MODIFICATION
    entity_model = Installment
    request_data_model = InstallmentModification

    async def on_approve(self, session, request, installment: Installment) -> None:
        change = InstallmentModification.model_validate(request.request_data or {})

        if change.modification_type == "amount_change" and change.proposed_value is not None:
            installment.current_amount_cents = _to_cents(change.proposed_value)
            installment.pending_amount_cents = (
                installment.current_amount_cents - (installment.paid_amount_cents or 0)
            )
        elif change.modification_type == "date_change" and change.proposed_value:
            installment.current_due_date = date.fromisoformat(str(change.proposed_value)[:10])
        elif change.modification_type == "waiver":
            installment.status = "waived"

        if installment.adjustments:
            adjustments = [dict(a) for a in installment.adjustments]
            adjustments[-1]["approved_by"] = str(request.resolved_by)
            installment.adjustments = adjustments


class CommissionPayoutStrategy(ApprovalStrategy):
    approval_type = ApprovalType.COMMISSION_PAYOUT
    delegated = True

    def evaluate(self, policy, ctx) -> bool:
        return False


class InvoiceApprovalStrategy(AlwaysRequiredStrategy):
    approval_type = ApprovalType.INVOICE_APPROVAL
    entity_model = Invoice

    async def on_approve(self, session, request, invoice: Invoice) -> None:
        invoice.approval_status = "approved"
        invoice.approved_by = request.resolved_by
        invoice.approved_at = datetime.utcnow()

    async def on_reject(self, session, request, invoice: Invoice) -> None:
        invoice.approval_status = "rejected"
        invoice.rejection_reason = request.resolution_comment or "Rejected by approver"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class StrategyRegistry:
    def __init__(self):
        self._strategies: dict[str, ApprovalStrategy] = {}

    def register(self, strategy: ApprovalStrategy) -> None:
        key = strategy.approval_type.value
        if key in self._strategies:
            raise ValueError(f"Strategy already registered for {key}")
        self._strategies[key] = strategy

    def get(self, approval_type) -> ApprovalStrategy:
        """Raises ValueError for a value outside ApprovalType."""
        return self._strategies[ApprovalType(approval_type).value]

    def missing(self) -> set[str]:
        return {t.value for t in ApprovalType} - set(self._strategies)


registry = StrategyRegistry()
for _strategy in (
    DiscountApprovalStrategy(),
    SaleCancellationStrategy(),
    PriceOverrideStrategy(),
    RefundApprovalStrategy(),
    InstallmentModificationStrategy(),
    CommissionPayoutStrategy(),
    InvoiceApprovalStrategy(),
):
    registry.register(_strategy)

_missing = registry.missing()
if _missing:
    raise RuntimeError(f"No approval strategy registered for: {sorted(_missing)}")


def get_strategy(approval_type) -> ApprovalStrategy:
    return registry.get(approval_type)
