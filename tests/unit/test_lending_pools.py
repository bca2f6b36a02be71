"""
test_lending_pools.py - Unit tests for lending adapters and the loan basket

Tests:
- StaticLendingAdapter status timeline: active, late within grace, late, expired
- Principal repayment and positions
- AdapterRegistry registration and lookup
- Basket management errors
- assess_state ordering and NOT_SUPPORTED for unknown loans
- can_buy_protection: purchase window, renewal exemption, principal limit
"""

import pytest
from decimal import Decimal

from credit_protection import (
    AdapterRegistry,
    LoanStatus,
    ReferenceLendingPools,
    StaticLendingAdapter,
    LendingPoolAlreadyAdded,
    LendingPoolNotActive,
    LendingPoolNotSupported,
    LendingProtocolNotSupported,
    NotOwner,
    ValidationError,
)
from tests.builders import START, DAY, OWNER, purchase


class TestStaticLendingAdapter:
    """Payment-driven loan status."""

    def test_active_until_period_elapsed(self, adapter, clock):
        clock.advance_days(30)
        assert not adapter.is_lending_pool_late("loan-1")

    def test_late_within_grace(self, adapter, clock):
        clock.advance(30 * DAY + 1)
        assert adapter.is_lending_pool_late("loan-1")
        assert adapter.is_lending_pool_late_within_grace_period("loan-1", 1)

    def test_late_after_grace(self, adapter, clock):
        clock.advance(31 * DAY + 1)
        assert adapter.is_lending_pool_late("loan-1")
        assert not adapter.is_lending_pool_late_within_grace_period("loan-1", 1)

    def test_payment_cures_late(self, adapter, clock):
        clock.advance_days(40)
        adapter.make_payment("loan-1")
        assert not adapter.is_lending_pool_late("loan-1")
        assert adapter.get_latest_payment_timestamp("loan-1") == clock.now

    def test_expired_at_term_end(self, adapter, clock):
        clock.set_time(START + 365 * DAY)
        assert adapter.is_lending_pool_expired("loan-1")

    def test_repaid_in_full_is_expired(self, adapter):
        adapter.repay_in_full("loan-1")
        assert adapter.is_lending_pool_expired("loan-1")
        assert adapter.calculate_remaining_principal("loan-1", "bob", 1) == Decimal("0")

    def test_partial_principal_repayment(self, adapter):
        adapter.repay_principal("loan-1", "bob", 1, Decimal("100000"))
        assert adapter.calculate_remaining_principal("loan-1", "bob", 1) == Decimal("200000")

    def test_position_of_another_lender_is_zero(self, adapter):
        assert adapter.calculate_remaining_principal("loan-1", "carol", 1) == Decimal("0")

    def test_unknown_loan(self, adapter):
        with pytest.raises(ValidationError, match="Unknown lending pool"):
            adapter.get_payment_period_in_days("loan-x")

    def test_duplicate_loan(self, adapter):
        with pytest.raises(ValueError, match="already exists"):
            adapter.add_loan("loan-1", apr=Decimal("0.1"), payment_period_days=30,
                             term_end_timestamp=START + DAY)


class TestAdapterRegistry:
    """Tests for AdapterRegistry."""

    def test_lookup(self, registry, adapter):
        assert registry.get("static") is adapter
        assert "fake" in registry

    def test_unknown_protocol(self, registry):
        with pytest.raises(LendingProtocolNotSupported, match="maple"):
            registry.get("maple")

    def test_duplicate_tag(self, registry, clock):
        with pytest.raises(ValueError, match="already registered"):
            registry.register("static", StaticLendingAdapter(clock))

    def test_rejects_non_adapter(self):
        with pytest.raises(ValidationError, match="not a LendingProtocolAdapter"):
            AdapterRegistry().register("x", object())


class TestBasketManagement:
    """Tests for add_reference_lending_pool."""

    def test_initial_loans_in_order(self, basket):
        assert basket.get_lending_pools() == ["loan-1", "loan-2", "loan-f"]
        info = basket.get_reference_lending_pool_info("loan-1")
        assert info.protocol == "static"
        assert info.added_timestamp == START
        assert info.protection_purchase_limit_timestamp == START + 90 * DAY

    def test_not_owner(self, basket):
        with pytest.raises(NotOwner):
            basket.add_reference_lending_pool("mallory", "loan-3", "static", 90)

    def test_already_added(self, basket):
        with pytest.raises(LendingPoolAlreadyAdded):
            basket.add_reference_lending_pool(OWNER, "loan-1", "static", 90)

    def test_unknown_protocol(self, basket, adapter):
        adapter.add_loan("loan-3", apr=Decimal("0.1"), payment_period_days=30,
                         term_end_timestamp=START + 365 * DAY)
        with pytest.raises(LendingProtocolNotSupported):
            basket.add_reference_lending_pool(OWNER, "loan-3", "maple", 90)

    def test_late_loan_not_added(self, basket, adapter, clock):
        adapter.add_loan("loan-3", apr=Decimal("0.1"), payment_period_days=30,
                         term_end_timestamp=START + 365 * DAY, last_payment_timestamp=START)
        clock.advance_days(40)
        with pytest.raises(LendingPoolNotActive, match="late"):
            basket.add_reference_lending_pool(OWNER, "loan-3", "static", 90)
        assert not basket.is_supported("loan-3")

    def test_rejected_add_leaves_basket_unchanged(self, basket, adapter):
        adapter.add_loan("loan-3", apr=Decimal("0.1"), payment_period_days=30,
                         term_end_timestamp=START + 365 * DAY)
        with pytest.raises(LendingProtocolNotSupported):
            basket.add_reference_lending_pool(OWNER, "loan-3", "maple", 90)
        assert basket.get_lending_pools() == ["loan-1", "loan-2", "loan-f"]
        assert not basket.is_supported("loan-3")

    def test_basket_not_rolled_back_with_pool(self, basket, pool):
        assert not hasattr(basket, "checkpoint")
        assert all(participant is not basket for participant in pool.participants())

    def test_empty_id(self, basket):
        with pytest.raises(ValidationError):
            basket.add_reference_lending_pool(OWNER, " ", "static", 90)

    def test_negative_limit(self, basket):
        with pytest.raises(ValidationError, match="protection_purchase_limit_days"):
            basket.add_reference_lending_pool(OWNER, "loan-3", "static", -1)


class TestAssessState:
    """Tests for assess_state and get_lending_pool_status."""

    def test_all_active(self, basket):
        loans, statuses = basket.assess_state()
        assert loans == ["loan-1", "loan-2", "loan-f"]
        assert statuses == [LoanStatus.ACTIVE] * 3

    def test_mixed_statuses(self, basket, adapter, fake_adapter, clock):
        clock.advance(30 * DAY + 1)
        adapter.make_payment("loan-2")
        fake_adapter.set_status("loan-f", LoanStatus.EXPIRED)
        _, statuses = basket.assess_state()
        assert statuses == [LoanStatus.LATE_WITHIN_GRACE_PERIOD, LoanStatus.ACTIVE, LoanStatus.EXPIRED]

    def test_expired_takes_precedence_over_late(self, basket, clock):
        clock.set_time(START + 365 * DAY)
        assert basket.get_lending_pool_status("loan-1") is LoanStatus.EXPIRED

    def test_unknown_loan_not_supported(self, basket):
        assert basket.get_lending_pool_status("loan-x") is LoanStatus.NOT_SUPPORTED


class TestCanBuyProtection:
    """Tests for can_buy_protection."""

    def test_within_principal(self, basket):
        assert basket.can_buy_protection("bob", purchase(amount="300000"), False)

    def test_above_principal(self, basket):
        assert not basket.can_buy_protection("bob", purchase(amount="300000.000001"), False)

    def test_position_owned_by_someone_else(self, basket):
        assert not basket.can_buy_protection("carol", purchase(position_id=1), False)

    def test_purchase_window_closed(self, basket, clock):
        clock.advance(90 * DAY + 1)
        assert not basket.can_buy_protection("bob", purchase(), False)

    def test_renewal_ignores_purchase_window(self, basket, clock):
        clock.advance(90 * DAY + 1)
        assert basket.can_buy_protection("bob", purchase(), True)

    def test_unknown_loan(self, basket):
        with pytest.raises(LendingPoolNotSupported):
            basket.can_buy_protection("bob", purchase(lending_pool="loan-x"), False)

    def test_pass_throughs(self, basket):
        assert basket.calculate_protection_buyer_apr("loan-2") == Decimal("0.10")
        assert basket.get_payment_period_in_days("loan-f") == 30
        assert basket.get_lending_pool_term_end_timestamp("loan-1") == START + 365 * DAY
        with pytest.raises(LendingPoolNotSupported):
            basket.get_latest_payment_timestamp("loan-x")
