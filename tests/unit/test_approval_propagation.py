"""
Unit tests for crm_api/services/approval_propagation.py

Each approval type's effect on its subject entity once the request is
decided, and the guarantee that a failed effect never raises.
"""

import uuid
from datetime import date
from unittest.mock import AsyncMock, patch

import pytest

from crm_api.models.approval_policy import ApprovalType
from crm_api.models.installment import Installment
from crm_api.models.invoice import Invoice
from crm_api.models.lead import Lead
from crm_api.models.payment import PaymentTransaction
from crm_api.models.sale import Sale
from crm_api.models.unit import Unit
from crm_api.services.approval_propagation import propagate_approval, propagate_rejection

STRATEGIES = "crm_api.services.approval_strategies"


def _serve(session, *entities):
    """session.get(Model, id) returns whichever entity has that id."""
    by_key = {(type(e), e.id): e for e in entities}

    async def _get(model, entity_id):
        return by_key.get((model, entity_id))

    session.get = AsyncMock(side_effect=_get)


def _sale_setup(org_id):
    unit = Unit(id=uuid.uuid4(), organization_id=org_id, status="blocked",
                base_price_cents=10_000_000, current_price_cents=10_000_000)
    lead = Lead(id=uuid.uuid4(), organization_id=org_id, full_name="Asha Rao", status="negotiation")
    sale = Sale(id=uuid.uuid4(), organization_id=org_id, unit_id=unit.id, lead_id=lead.id,
                status="pending_approval", sale_price_cents=9_000_000,
                discount_amount_cents=1_000_000, payment_plan_id=None)
    return sale, unit, lead


def _decided(make_request, approval_type, entity, status="approved", **overrides):
    resolver = uuid.uuid4()
    return make_request(
        approval_type=approval_type,
        entity_type=type(entity).__name__,
        entity_id=entity.id,
        status=status,
        resolved_by=resolver,
        **overrides,
    )


# ---------------------------------------------------------------------------
# Discount
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_discount_approval_books_the_sale(mock_session, org_id, make_request):
    sale, unit, lead = _sale_setup(org_id)
    _serve(mock_session, sale, unit, lead)
    request = _decided(make_request, ApprovalType.DISCOUNT_APPROVAL, sale)

    with patch(f"{STRATEGIES}.create_payment_plan", AsyncMock()) as plan:
        applied = await propagate_approval(mock_session, request)

    assert applied is True
    assert sale.status == "booked"
    assert sale.booked_at is not None
    assert unit.status == "sold"
    assert lead.status == "booked"
    plan.assert_awaited_once_with(mock_session, sale)


@pytest.mark.asyncio
async def test_payment_plan_failure_keeps_the_booking(mock_session, org_id, make_request):
    sale, unit, lead = _sale_setup(org_id)
    _serve(mock_session, sale, unit, lead)
    request = _decided(make_request, ApprovalType.DISCOUNT_APPROVAL, sale)

    with patch(f"{STRATEGIES}.create_payment_plan",
               AsyncMock(side_effect=RuntimeError("plan template missing"))):
        applied = await propagate_approval(mock_session, request)

    assert applied is True
    assert sale.status == "booked"
    assert unit.status == "sold"


@pytest.mark.asyncio
async def test_discount_rejection_removes_sale_and_frees_unit(mock_session, org_id, make_request):
    sale, unit, lead = _sale_setup(org_id)
    _serve(mock_session, sale, unit, lead)
    request = _decided(
        make_request, ApprovalType.DISCOUNT_APPROVAL, sale, status="rejected",
        request_data={"unit_id": str(unit.id)},
    )

    applied = await propagate_rejection(mock_session, request)

    assert applied is True
    mock_session.delete.assert_awaited_once_with(sale)
    assert unit.status == "available"


# ---------------------------------------------------------------------------
# Other types
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sale_cancellation_releases_unit_and_lead(mock_session, org_id, make_request):
    sale, unit, lead = _sale_setup(org_id)
    sale.status = "booked"
    unit.status = "sold"
    lead.status = "booked"
    _serve(mock_session, sale, unit, lead)
    request = _decided(
        make_request, ApprovalType.SALE_CANCELLATION, sale,
        request_data={"cancellation_reason": "Buyer relocated"},
    )

    await propagate_approval(mock_session, request)

    assert sale.status == "cancelled"
    assert sale.cancellation_reason == "Buyer relocated"
    assert sale.cancelled_by == request.resolved_by
    assert sale.cancelled_at is not None
    assert unit.status == "available"
    assert lead.status == "active"


@pytest.mark.asyncio
async def test_price_override_sets_unit_price_in_cents(mock_session, org_id, make_request):
    unit = Unit(id=uuid.uuid4(), organization_id=org_id, status="available",
                base_price_cents=10_000_000, current_price_cents=10_000_000)
    _serve(mock_session, unit)
    request = _decided(
        make_request, ApprovalType.PRICE_OVERRIDE, unit,
        request_data={"proposed_price": 85000.5, "base_price": 100000},
    )

    await propagate_approval(mock_session, request)

    assert unit.current_price_cents == 8_500_050
    assert unit.price_updated_by == request.resolved_by


@pytest.mark.asyncio
async def test_refund_approval_clears_the_hold(mock_session, org_id, make_request):
    txn = PaymentTransaction(id=uuid.uuid4(), organization_id=org_id, amount_cents=5_000_000,
                             status="PENDING", requires_approval=True)
    _serve(mock_session, txn)
    request = _decided(make_request, ApprovalType.REFUND_APPROVAL, txn)

    await propagate_approval(mock_session, request)

    assert txn.requires_approval is False
    assert txn.status == "PENDING"


@pytest.mark.asyncio
async def test_installment_amount_change(mock_session, org_id, make_request):
    installment = Installment(
        id=uuid.uuid4(), organization_id=org_id, installment_number=3,
        current_amount_cents=600_000, paid_amount_cents=100_000, pending_amount_cents=500_000,
        current_due_date=date(2026, 12, 1), status="pending",
        adjustments=[{"type": "amount_change", "from": 6000, "to": 5000}],
    )
    _serve(mock_session, installment)
    request = _decided(
        make_request, ApprovalType.INSTALLMENT_MODIFICATION, installment,
        request_data={"modification_type": "amount_change", "proposed_value": 5000},
    )

    await propagate_approval(mock_session, request)

    assert installment.current_amount_cents == 500_000
    assert installment.pending_amount_cents == 400_000
    assert installment.adjustments[-1]["approved_by"] == str(request.resolved_by)


@pytest.mark.asyncio
async def test_installment_date_change_and_waiver(mock_session, org_id, make_request):
    installment = Installment(
        id=uuid.uuid4(), organization_id=org_id, installment_number=1,
        current_amount_cents=100_000, paid_amount_cents=0, pending_amount_cents=100_000,
        current_due_date=date(2026, 11, 1), status="pending", adjustments=[],
    )
    _serve(mock_session, installment)

    await propagate_approval(mock_session, _decided(
        make_request, ApprovalType.INSTALLMENT_MODIFICATION, installment,
        request_data={"modification_type": "date_change", "proposed_value": "2027-01-15"},
    ))
    assert installment.current_due_date == date(2027, 1, 15)

    await propagate_approval(mock_session, _decided(
        make_request, ApprovalType.INSTALLMENT_MODIFICATION, installment,
        request_data={"modification_type": "waiver"},
    ))
    assert installment.status == "waived"


@pytest.mark.asyncio
async def test_invoice_approve_and_reject(mock_session, org_id, make_request):
    approved = Invoice(id=uuid.uuid4(), organization_id=org_id, invoice_number="INV-1",
                       invoice_date=date(2026, 10, 1), total_cents=100, approval_status="pending")
    rejected = Invoice(id=uuid.uuid4(), organization_id=org_id, invoice_number="INV-2",
                       invoice_date=date(2026, 10, 1), total_cents=100, approval_status="pending")
    _serve(mock_session, approved, rejected)

    approve_request = _decided(make_request, ApprovalType.INVOICE_APPROVAL, approved)
    await propagate_approval(mock_session, approve_request)
    await propagate_rejection(mock_session, _decided(
        make_request, ApprovalType.INVOICE_APPROVAL, rejected, status="rejected",
        resolution_comment="Wrong GST rate",
    ))

    assert approved.approval_status == "approved"
    assert approved.approved_by == approve_request.resolved_by
    assert approved.approved_at is not None
    assert rejected.approval_status == "rejected"
    assert rejected.rejection_reason == "Wrong GST rate"


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_entity_is_skipped(mock_session, org_id, make_request):
    sale, _, _ = _sale_setup(org_id)
    _serve(mock_session)  # nothing resolves
    request = _decided(make_request, ApprovalType.DISCOUNT_APPROVAL, sale)

    assert await propagate_approval(mock_session, request) is False
    assert request.status == "approved"


@pytest.mark.asyncio
async def test_failing_effect_is_swallowed(mock_session, org_id, make_request):
    sale, unit, lead = _sale_setup(org_id)
    _serve(mock_session, sale, unit, lead)
    mock_session.delete.side_effect = RuntimeError("FK violation")
    request = _decided(make_request, ApprovalType.DISCOUNT_APPROVAL, sale, status="rejected")

    applied = await propagate_rejection(mock_session, request)

    assert applied is False
    assert request.status == "rejected"


@pytest.mark.asyncio
async def test_delegated_type_has_nothing_to_propagate(mock_session, org_id, make_request):
    sale, _, _ = _sale_setup(org_id)
    request = _decided(make_request, ApprovalType.COMMISSION_PAYOUT, sale)

    assert await propagate_approval(mock_session, request) is False
    mock_session.get.assert_not_awaited()
