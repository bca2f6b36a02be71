"""
test_premium_curve.py - Unit tests for vectorized premium curve analytics

Tests:
- Float risk factor curve agrees with the Decimal implementation
- Premium rate curve falls with leverage
- Accrual curve and daily schedule agree with the Decimal accrual
- Implied leverage ratio recovers the input leverage
- Validation and domain errors
"""

import pytest
import numpy as np
from decimal import Decimal

from credit_protection import (
    risk_factor_curve,
    premium_rate_curve,
    accrual_curve,
    daily_accrual_schedule,
    implied_leverage_ratio,
    calculate_risk_factor,
    calculate_k_and_lambda,
    calculate_accrued_premium,
    RiskFactorDomainError,
    ValidationError,
    SECONDS_PER_DAY,
)
from tests.builders import standard_pool_params


DAY = SECONDS_PER_DAY


@pytest.fixture
def params():
    return standard_pool_params()


@pytest.fixture
def curve():
    k, lam = calculate_k_and_lambda(
        Decimal("19726.027397260274"), Decimal(180), Decimal("0.14"),
        Decimal("0.1"), Decimal("0.2"), Decimal("0.05"), Decimal("0.05"),
    )
    return k, lam


class TestRiskFactorCurve:
    """Tests for risk_factor_curve."""

    def test_matches_decimal_implementation(self):
        ratios = np.array([0.1, 0.12, 0.14, 0.17, 0.2])
        curve = risk_factor_curve(ratios, 0.1, 0.2, 0.05, 0.05)
        for lr, rf in zip(ratios, curve):
            expected = calculate_risk_factor(
                Decimal(str(lr)), Decimal("0.1"), Decimal("0.2"), Decimal("0.05"), Decimal("0.05")
            )
            assert rf == pytest.approx(float(expected), rel=1e-12)

    def test_strictly_decreasing(self):
        curve = risk_factor_curve(np.linspace(0.1, 0.2, 50), 0.1, 0.2, 0.05, 0.05)
        assert np.all(np.diff(curve) < 0)

    def test_domain_error(self):
        with pytest.raises(RiskFactorDomainError):
            risk_factor_curve(np.array([0.2, 0.01]), 0.1, 0.2, 0.05, 0.05)


class TestPremiumRateCurve:
    """Tests for premium_rate_curve."""

    def test_decreasing_in_leverage(self, params):
        rates = premium_rate_curve(np.linspace(0.5, 1.0, 11), 90 * DAY, 0.17, params)
        assert np.all(np.diff(rates) < 0)

    def test_rate_includes_underlying_premium(self, params):
        """At ceiling + buffer the carapace part vanishes."""
        rate = premium_rate_curve(1.05, 365.24 * DAY, 0.17, params)
        assert float(rate) == pytest.approx(0.1 * 0.17, rel=1e-12)

    def test_zero_duration_rejected(self, params):
        with pytest.raises(ValidationError, match="duration_seconds"):
            premium_rate_curve(0.7, 0, 0.17, params)


class TestAccrualCurve:
    """Tests for accrual_curve and daily_accrual_schedule."""

    def test_full_duration_equals_premium(self, curve):
        k, lam = curve
        total = accrual_curve(float(k), float(lam), 180 * DAY)
        assert float(total) == pytest.approx(19726.027397260274, rel=1e-12)

    def test_matches_decimal_accrual(self, curve):
        k, lam = curve
        offsets = np.array([0, DAY, 8 * DAY, 10 * DAY, 100 * DAY])
        cumulative = accrual_curve(float(k), float(lam), offsets)
        for offset, value in zip(offsets, cumulative):
            expected = calculate_accrued_premium(0, int(offset), k, lam)
            assert value == pytest.approx(float(expected), rel=1e-10, abs=1e-12)

    def test_negative_offset_rejected(self, curve):
        k, lam = curve
        with pytest.raises(ValidationError):
            accrual_curve(float(k), float(lam), np.array([-1.0]))

    def test_daily_schedule_sums_to_premium(self, curve):
        k, lam = curve
        schedule = daily_accrual_schedule(float(k), float(lam), 180)
        assert schedule.shape == (180,)
        assert schedule.sum() == pytest.approx(19726.027397260274, rel=1e-10)

    def test_daily_schedule_front_loaded(self, curve):
        k, lam = curve
        schedule = daily_accrual_schedule(float(k), float(lam), 180)
        assert np.all(schedule > 0)
        assert np.all(np.diff(schedule) < 0)
        assert schedule[0] == pytest.approx(111.2382745, abs=1e-6)

    def test_daily_schedule_requires_days(self, curve):
        k, lam = curve
        with pytest.raises(ValidationError, match="duration_days"):
            daily_accrual_schedule(float(k), float(lam), 0)


class TestImpliedLeverageRatio:
    """Tests for implied_leverage_ratio."""

    def test_recovers_leverage_ratio(self, params):
        rate = premium_rate_curve(0.7, 90 * DAY, 0.17, params)
        implied = implied_leverage_ratio(Decimal(str(float(rate))), 90 * DAY, Decimal("0.17"), params)
        assert abs(implied - Decimal("0.7")) < Decimal("0.000001")

    def test_band_edges(self, params):
        rate = premium_rate_curve(1.0, 90 * DAY, 0.17, params)
        implied = implied_leverage_ratio(Decimal(str(float(rate))), 90 * DAY, Decimal("0.17"), params)
        assert abs(implied - Decimal("1")) < Decimal("0.000001")

    def test_unreachable_rate(self, params):
        with pytest.raises(ValidationError, match="not reachable"):
            implied_leverage_ratio(Decimal("0.9"), 90 * DAY, Decimal("0.17"), params)

    def test_zero_duration_rejected(self, params):
        with pytest.raises(ValidationError):
            implied_leverage_ratio(Decimal("0.01"), 0, Decimal("0.17"), params)
