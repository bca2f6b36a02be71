"""
test_protection.py - Unit tests for protection purchases, renewals and accrual

Tests:
- Purchases charge the quoted premium and fit the accrual curve to it
- Purchase rejections: phase, duration, loan status, position, leverage, premium cap
- Failed purchases leave no trace
- Premium accrual up to the latest loan payment and expiry
- Renewal inside and outside the grace period
- Minimum premium pricing when the pool is under-capitalised
- Locked amount per loan and the daily accrual schedule
"""

import pytest
from decimal import Decimal

from credit_protection import (
    ProtectionPurchaseParams,
    calculate_premium,
    calculate_k_and_lambda,
    calculate_accrued_premium,
    round_down_to,
    CanNotRenewProtectionAfterGracePeriod,
    LendingPoolNotSupported,
    NoExpiredProtectionToRenew,
    PoolInOpenToSellersPhase,
    PoolLeverageRatioTooLow,
    PremiumExceedsMaxPremiumAmount,
    ProtectionAlreadyExistsForLendingPosition,
    ProtectionDurationTooLong,
    ProtectionDurationTooShort,
    ProtectionPurchaseNotAllowed,
    ValidationError,
)
from tests.builders import START, DAY, OWNER, POOL_ID, purchase, standard_pool_params


MAX_PREMIUM = Decimal("10000")


class TestBuyProtection:
    """Successful purchases."""

    def test_premium_matches_quote(self, funded_pool, tokens):
        quote = funded_pool.calculate_protection_premium(purchase())
        protection_id = funded_pool.buy_protection("bob", purchase(), MAX_PREMIUM)

        protection = funded_pool.get_all_protections()[protection_id]
        assert protection_id == 0
        assert protection.premium == quote.premium
        assert quote.is_min_premium is False
        assert tokens.get_balance("bob", "USDC") == Decimal("100000") - quote.premium
        assert tokens.get_balance(POOL_ID, "USDC") == Decimal("100000") + quote.premium

    def test_premium_priced_at_leverage_including_purchase(self, funded_pool):
        funded_pool.buy_protection("bob", purchase(), MAX_PREMIUM)
        expected = calculate_premium(
            40 * DAY, Decimal("100000"), Decimal("0.17"), Decimal("1"), Decimal("100000"),
            standard_pool_params(),
        )
        assert funded_pool.get_all_protections()[0].premium == round_down_to(expected.premium, 6)

    def test_curve_fitted_to_paid_premium(self, funded_pool):
        funded_pool.buy_protection("bob", purchase(), MAX_PREMIUM)
        protection = funded_pool.get_all_protections()[0]
        k, lam = calculate_k_and_lambda(
            protection.premium, Decimal(40), Decimal("1"),
            Decimal("0.5"), Decimal("1"), Decimal("0.05"), Decimal("0.05"),
        )
        assert (protection.k, protection.lam) == (k, lam)
        assert protection.start_timestamp == START
        assert protection.expiration_timestamp == START + 40 * DAY

    def test_totals_updated(self, funded_pool):
        funded_pool.buy_protection("bob", purchase(), MAX_PREMIUM)
        premium = funded_pool.get_all_protections()[0].premium
        details = funded_pool.get_pool_details()
        assert details.total_protection == Decimal("100000")
        assert details.total_premium == premium
        assert details.total_capital == Decimal("100000")
        assert funded_pool.calculate_leverage_ratio() == Decimal("1")
        assert funded_pool.get_total_premium_paid_for_lending_pool("bob", "loan-1") == premium
        assert funded_pool.get_lending_pool_detail("loan-1").active_protection_ids == {0}
        assert len(funded_pool.get_active_protections("bob")) == 1

    def test_duration_up_to_next_cycle_end(self, funded_pool):
        funded_pool.buy_protection("bob", purchase(days=60), MAX_PREMIUM)
        assert funded_pool.calculate_max_allowed_protection_duration() == 60 * DAY


class TestBuyProtectionRejected:
    """Purchases the pool refuses."""

    def test_open_to_sellers(self, pool):
        with pytest.raises(PoolInOpenToSellersPhase):
            pool.buy_protection("bob", purchase(), MAX_PREMIUM)

    def test_too_short(self, funded_pool):
        with pytest.raises(ProtectionDurationTooShort):
            funded_pool.buy_protection("bob", purchase(days=9), MAX_PREMIUM)

    def test_ends_after_next_cycle(self, funded_pool):
        params = ProtectionPurchaseParams("loan-1", 1, Decimal("100000"), 60 * DAY + 1)
        with pytest.raises(ProtectionDurationTooLong):
            funded_pool.buy_protection("bob", params, MAX_PREMIUM)

    def test_loan_not_in_basket(self, funded_pool):
        with pytest.raises(LendingPoolNotSupported):
            funded_pool.buy_protection("bob", purchase(lending_pool="loan-x"), MAX_PREMIUM)

    def test_amount_above_remaining_principal(self, funded_pool):
        with pytest.raises(ProtectionPurchaseNotAllowed):
            funded_pool.buy_protection("carol", purchase(position_id=2, amount="60000"), MAX_PREMIUM)

    def test_position_of_another_lender(self, funded_pool):
        with pytest.raises(ProtectionPurchaseNotAllowed):
            funded_pool.buy_protection("carol", purchase(position_id=1, amount="10000"), MAX_PREMIUM)

    def test_purchase_window_closed(self, funded_pool, clock):
        clock.advance(90 * DAY + 1)
        with pytest.raises(ProtectionPurchaseNotAllowed):
            funded_pool.buy_protection("bob", purchase(), MAX_PREMIUM)

    def test_second_protection_on_position(self, funded_pool):
        funded_pool.buy_protection("bob", purchase(amount="60000"), MAX_PREMIUM)
        with pytest.raises(ProtectionAlreadyExistsForLendingPosition):
            funded_pool.buy_protection("bob", purchase(amount="10000"), MAX_PREMIUM)

    def test_leverage_below_floor(self, open_pool):
        with pytest.raises(PoolLeverageRatioTooLow):
            open_pool.buy_protection("bob", purchase("loan-2", 3, "150000"), MAX_PREMIUM)
        assert open_pool.get_pool_details().total_protection == Decimal("100000")

    def test_premium_above_maximum_rolls_back(self, funded_pool, tokens):
        with pytest.raises(PremiumExceedsMaxPremiumAmount):
            funded_pool.buy_protection("bob", purchase(), Decimal("1"))
        assert funded_pool.get_pool_details().total_protection == Decimal("0")
        assert funded_pool.get_all_protections() == []
        assert funded_pool.get_lending_pool_detail("loan-1") is None
        assert tokens.get_balance("bob", "USDC") == Decimal("100000")


class TestAccrual:
    """Tests for accrue_premium_and_expire_protections."""

    def test_accrues_up_to_latest_payment(self, open_pool, adapter, clock):
        protection = open_pool.get_all_protections()[0]
        clock.set_time(START + 30 * DAY)
        adapter.make_payment("loan-1")

        result = open_pool.accrue_premium_and_expire_protections()

        expected = calculate_accrued_premium(0, 30 * DAY, protection.k, protection.lam)
        assert result.total_premium_accrued == expected
        assert result.expired_protection_ids == ()
        details = open_pool.get_pool_details()
        assert details.total_premium_accrued == expected
        assert details.total_capital == Decimal("100000") + expected
        assert open_pool.get_lending_pool_detail("loan-1").last_premium_accrual_timestamp == START + 30 * DAY

    def test_second_call_accrues_nothing(self, open_pool, adapter, clock):
        clock.set_time(START + 30 * DAY)
        adapter.make_payment("loan-1")
        open_pool.accrue_premium_and_expire_protections()
        result = open_pool.accrue_premium_and_expire_protections()
        assert result.total_premium_accrued == Decimal("0")

    def test_full_premium_earned_by_expiry(self, open_pool, adapter, clock):
        premium = open_pool.get_all_protections()[0].premium
        clock.set_time(START + 30 * DAY)
        adapter.make_payment("loan-1")
        open_pool.accrue_premium_and_expire_protections()
        clock.set_time(START + 41 * DAY)
        adapter.make_payment("loan-1")

        result = open_pool.accrue_premium_and_expire_protections(["loan-1"])

        assert result.expired_protection_ids == (0,)
        assert result.total_protection_removed == Decimal("100000")
        details = open_pool.get_pool_details()
        assert abs(details.total_premium_accrued - premium) < Decimal("1e-15")
        assert details.total_protection == Decimal("0")
        assert open_pool.get_active_protections("bob") == []
        assert open_pool.get_all_protections()[0].expired is True

    def test_expires_without_payment(self, open_pool, clock):
        clock.set_time(START + 45 * DAY)
        result = open_pool.accrue_premium_and_expire_protections()
        assert result.total_premium_accrued == Decimal("0")
        assert result.expired_protection_ids == (0,)

    def test_no_payment_since_start(self, funded_pool, clock):
        """A protection whose loan has not paid since it started is left alone."""
        clock.advance_days(5)
        funded_pool.buy_protection("bob", purchase(), MAX_PREMIUM)
        clock.set_time(START + 50 * DAY)
        result = funded_pool.accrue_premium_and_expire_protections()
        assert result.expired_protection_ids == ()
        assert len(funded_pool.get_active_protections("bob")) == 1

    def test_unprotected_loans_ignored(self, open_pool, clock):
        clock.advance_days(1)
        result = open_pool.accrue_premium_and_expire_protections(["loan-2", "loan-f"])
        assert result.total_premium_accrued == Decimal("0")
        assert result.expired_protection_ids == ()


class TestRenewal:
    """Tests for renew_protection."""

    @pytest.fixture
    def expired_pool(self, open_pool, adapter, clock):
        """open_pool after bob's protection expired on day 41 with payments on days 30 and 41."""
        clock.set_time(START + 30 * DAY)
        adapter.make_payment("loan-1")
        open_pool.accrue_premium_and_expire_protections()
        clock.set_time(START + 41 * DAY)
        adapter.make_payment("loan-1")
        open_pool.accrue_premium_and_expire_protections()
        return open_pool

    def test_renew_within_grace_period(self, expired_pool):
        assert expired_pool.protections.get_expired_protection_id("bob", "loan-1", 1) == 0
        protection_id = expired_pool.renew_protection("bob", purchase(days=30), MAX_PREMIUM)

        assert protection_id == 1
        assert expired_pool.protections.get_expired_protection_id("bob", "loan-1", 1) is None
        assert expired_pool.get_all_protections()[1].start_timestamp == START + 41 * DAY

    def test_renewal_priced_at_min_premium_above_ceiling(self, expired_pool):
        """Accrued premium lifts leverage above the ceiling."""
        quote = expired_pool.calculate_protection_premium(purchase(days=30))
        assert quote.is_min_premium is True
        expired_pool.renew_protection("bob", purchase(days=30), MAX_PREMIUM)
        assert expired_pool.get_all_protections()[1].premium == quote.premium

    def test_renewal_may_be_one_day(self, expired_pool):
        protection_id = expired_pool.renew_protection("bob", purchase(days=1), MAX_PREMIUM)
        assert expired_pool.get_all_protections()[protection_id].expiration_timestamp == START + 42 * DAY

    def test_renewal_shorter_than_a_day(self, expired_pool):
        params = ProtectionPurchaseParams("loan-1", 1, Decimal("100000"), DAY - 1)
        with pytest.raises(ProtectionDurationTooShort):
            expired_pool.renew_protection("bob", params, MAX_PREMIUM)

    def test_after_grace_period(self, expired_pool, clock):
        clock.set_time(START + 54 * DAY + 1)
        with pytest.raises(CanNotRenewProtectionAfterGracePeriod):
            expired_pool.renew_protection("bob", purchase(days=30), MAX_PREMIUM)

    def test_nothing_to_renew(self, open_pool):
        with pytest.raises(NoExpiredProtectionToRenew):
            open_pool.renew_protection("bob", purchase(), MAX_PREMIUM)

    def test_renewal_while_position_already_protected(self, expired_pool):
        """A fresh purchase on the position blocks renewing the expired one."""
        expired_pool.buy_protection("bob", purchase(days=30), MAX_PREMIUM)
        with pytest.raises(ProtectionAlreadyExistsForLendingPosition):
            expired_pool.renew_protection("bob", purchase(days=30), MAX_PREMIUM)

        assert len(expired_pool.get_all_protections()) == 2
        assert len(expired_pool.protections.get_active_protections("bob")) == 1
        assert expired_pool.protections.get_expired_protection_id("bob", "loan-1", 1) == 0

    def test_other_buyer_cannot_renew(self, expired_pool):
        with pytest.raises(NoExpiredProtectionToRenew):
            expired_pool.renew_protection("carol", purchase(position_id=2, amount="1000"), MAX_PREMIUM)


class TestMinPremium:
    """Pricing when the pool is below its minimum capital."""

    def test_min_premium_curve(self, funded_pool):
        funded_pool.update_min_required_capital(OWNER, Decimal("200000"))
        quote = funded_pool.calculate_protection_premium(purchase())
        assert quote.is_min_premium is True

        funded_pool.buy_protection("bob", purchase(), MAX_PREMIUM)

        protection = funded_pool.get_all_protections()[0]
        assert protection.premium == quote.premium
        k, lam = calculate_k_and_lambda(
            protection.premium, Decimal(40), Decimal("1"),
            Decimal("0.5"), Decimal("1"), Decimal("0.05"), Decimal("0.05"), Decimal("0.02"),
        )
        assert (protection.k, protection.lam) == (k, lam)


class TestLockedAmountAndSchedule:
    """Tests for calculate_locked_amount and get_premium_accrual_schedule."""

    def test_locked_amount_is_protection_amount(self, open_pool):
        assert open_pool.protections.calculate_locked_amount("loan-1") == Decimal("100000")
        assert open_pool.protections.calculate_locked_amount("loan-2") == Decimal("0")

    def test_locked_amount_capped_by_remaining_principal(self, open_pool, adapter):
        adapter.repay_principal("loan-1", "bob", 1, Decimal("250000"))
        assert open_pool.protections.calculate_locked_amount("loan-1") == Decimal("50000")

    def test_accrual_schedule(self, open_pool):
        premium = open_pool.get_all_protections()[0].premium
        schedule = open_pool.get_premium_accrual_schedule(0)
        assert schedule.shape == (40,)
        assert schedule.sum() == pytest.approx(float(premium), rel=1e-9)

    def test_unknown_protection(self, open_pool):
        with pytest.raises(ValidationError, match="Unknown protection id"):
            open_pool.get_premium_accrual_schedule(5)
