"""
accrued_premium.py - Continuous Premium Accrual Curve

A protection's premium is earned by sellers along an exponential curve fixed
at purchase time:

    accrued(t) = K * (1 - exp(-lambda * t_days))

with lambda = risk_factor / 365.24 and K chosen so that accrued over the full
duration equals the premium paid:

    K = premium / (1 - exp(-lambda * duration_days))

Accrual between two offsets (seconds since protection start) is therefore

    accrued(from, to) = K * (exp(-lambda * from / 86400) - exp(-lambda * to / 86400))

which is additive over adjacent intervals and monotone in ``to``.

Precision: K and lambda are kept at 18 fractional digits, the curve is
evaluated with the 50-digit context and the result quantized half-even to 18
digits. accrued(0, duration) reproduces the premium exactly for any premium
with at most 18 fractional digits.
"""

from __future__ import annotations
import logging
from decimal import Decimal
from typing import Tuple

from .core import (
    DAYS_PER_YEAR, ONE, SECONDS_PER_DAY, ZERO,
    NegativeAccruedPremium, RiskFactorDomainError, ValidationError, to_fixed,
)
from .risk_factor import calculate_risk_factor, calculate_risk_factor_using_min_premium

logger = logging.getLogger("CreditProtection.AccruedPremium")

_SECONDS_PER_DAY = Decimal(SECONDS_PER_DAY)


def calculate_k_and_lambda(
    protection_premium: Decimal,
    protection_duration_in_days: Decimal,
    leverage_ratio: Decimal,
    leverage_ratio_floor: Decimal,
    leverage_ratio_ceiling: Decimal,
    leverage_ratio_buffer: Decimal,
    curvature: Decimal,
    min_premium_percent: Decimal = ZERO,
) -> Tuple[Decimal, Decimal]:
    """
    Fit the accrual curve to a premium.

    PURE FUNCTION - All inputs explicit, no hidden state.

    Args:
        protection_premium: Premium to spread over the protection's life.
        protection_duration_in_days: Duration in (possibly fractional) days.
        leverage_ratio: Leverage ratio used when the premium was priced.
        leverage_ratio_floor / ceiling / buffer, curvature: Pool parameters.
        min_premium_percent: Non-zero when the premium was charged at the
            minimum rate; the curve then uses the min-premium risk factor.

    Returns:
        (K, lambda), each with 18 fractional digits.

    Raises:
        RiskFactorDomainError: if the risk factor inputs are out of domain or
            the fitted curve is degenerate.

    Example:
        >>> k, lam = calculate_k_and_lambda(premium, Decimal(180), Decimal("0.14"),
        ...     Decimal("0.1"), Decimal("0.2"), Decimal("0.05"), Decimal("0.05"))
    """
    if protection_duration_in_days <= ZERO:
        raise RiskFactorDomainError(
            f"protection duration must be positive, got {protection_duration_in_days}"
        )
    if min_premium_percent > ZERO:
        risk_factor = calculate_risk_factor_using_min_premium(
            min_premium_percent, protection_duration_in_days
        )
    else:
        risk_factor = calculate_risk_factor(
            leverage_ratio,
            leverage_ratio_floor,
            leverage_ratio_ceiling,
            leverage_ratio_buffer,
            curvature,
        )

    lam = to_fixed(risk_factor / DAYS_PER_YEAR)
    if lam <= ZERO:
        raise RiskFactorDomainError(
            f"Accrual rate must be positive, got {lam} (risk factor {risk_factor})"
        )
    k = to_fixed(protection_premium / (ONE - (-protection_duration_in_days * lam).exp()))
    logger.debug(
        "fitted accrual curve K=%s lambda=%s for premium %s over %s days",
        k, lam, protection_premium, protection_duration_in_days,
    )
    return k, lam


def calculate_accrued_premium(
    from_second: int,
    to_second: int,
    k: Decimal,
    lam: Decimal,
) -> Decimal:
    """
    Premium earned between two offsets from protection start.

    Args:
        from_second: Start offset in seconds (inclusive).
        to_second: End offset in seconds; must be >= from_second.
        k: Curve scale from calculate_k_and_lambda.
        lam: Daily rate from calculate_k_and_lambda.

    Returns:
        Accrued premium with 18 fractional digits.

    Raises:
        ValidationError: if from_second > to_second or either is negative.
        NegativeAccruedPremium: if the curve yields a negative amount.
    """
    if from_second < 0 or to_second < 0:
        raise ValidationError(
            f"Accrual offsets must be non-negative, got {from_second}..{to_second}"
        )
    if from_second > to_second:
        raise ValidationError(
            f"from_second ({from_second}) must not exceed to_second ({to_second})"
        )
    if from_second == to_second:
        return to_fixed(ZERO)

    from_exponent = -lam * Decimal(from_second) / _SECONDS_PER_DAY
    to_exponent = -lam * Decimal(to_second) / _SECONDS_PER_DAY
    accrued = to_fixed(k * (from_exponent.exp() - to_exponent.exp()))
    if accrued < ZERO:
        raise NegativeAccruedPremium(
            f"Accrued premium {accrued} is negative for K={k} lambda={lam} "
            f"from={from_second} to={to_second}"
        )
    return accrued
