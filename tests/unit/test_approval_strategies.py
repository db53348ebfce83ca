"""
Unit tests for the strategy registry in crm_api/services/approval_strategies.py
"""

import pytest

from crm_api.models.approval_policy import ApprovalType
from crm_api.services.approval_strategies import (
    CommissionPayoutStrategy,
    DiscountApprovalStrategy,
    StrategyRegistry,
    get_strategy,
    registry,
)


def test_every_type_has_a_strategy():
    assert registry.missing() == set()
    for approval_type in ApprovalType:
        assert get_strategy(approval_type).approval_type is approval_type


def test_lookup_accepts_plain_strings():
    assert isinstance(get_strategy("DISCOUNT_APPROVAL"), DiscountApprovalStrategy)


def test_unknown_type_raises():
    with pytest.raises(ValueError):
        get_strategy("LAND_ACQUISITION")


def test_double_registration_is_refused():
    local = StrategyRegistry()
    local.register(CommissionPayoutStrategy())
    with pytest.raises(ValueError):
        local.register(CommissionPayoutStrategy())
    assert ApprovalType.COMMISSION_PAYOUT.value not in local.missing()


def test_only_commission_is_delegated():
    delegated = {t for t in ApprovalType if get_strategy(t).delegated}
    assert delegated == {ApprovalType.COMMISSION_PAYOUT}
