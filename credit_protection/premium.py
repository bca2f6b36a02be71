"""
premium.py - Protection Premium Quotes

Prices a protection from the pool's state at purchase time.

Key Formulas:
    years = duration_seconds / (86400 * 365.24)

    carapace_rate = 1 - exp(-years * risk_factor)     if the risk factor can be used
                  = min_premium_percent                otherwise (is_min_premium)

    underlying_rate = underlying_risk_premium_percent * buyer_apr * years

    premium = protection_amount * (carapace_rate + underlying_rate)
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from decimal import Decimal

from .config import PoolParams
from .core import ONE, SECONDS_PER_YEAR, ZERO, ValidationError, to_fixed
from .risk_factor import calculate_risk_factor, can_calculate_risk_factor

logger = logging.getLogger("CreditProtection.Premium")


@dataclass(frozen=True, slots=True)
class PremiumQuote:
    """
    Result of pricing one protection.

    Attributes:
        premium: Premium amount with 18 fractional digits.
        is_min_premium: True when the minimum carapace rate was charged.
        premium_rate: carapace_rate + underlying_rate.
    """
    premium: Decimal
    is_min_premium: bool
    premium_rate: Decimal


def duration_in_years(duration_seconds: int) -> Decimal:
    return Decimal(duration_seconds) / SECONDS_PER_YEAR


def calculate_carapace_premium_rate(duration_seconds: int, risk_factor: Decimal) -> Decimal:
    """Base premium rate for a protection of the given length."""
    years = duration_in_years(duration_seconds)
    return to_fixed(ONE - (-years * risk_factor).exp())


def calculate_premium(
    duration_seconds: int,
    protection_amount: Decimal,
    buyer_apr: Decimal,
    leverage_ratio: Decimal,
    total_capital: Decimal,
    params: PoolParams,
) -> PremiumQuote:
    """
    Quote the premium for a protection.

    PURE FUNCTION - All inputs explicit, no hidden state.

    Args:
        duration_seconds: Protection length in seconds.
        protection_amount: Notional protected.
        buyer_apr: APR the buyer earns on the referenced loan.
        leverage_ratio: Pool leverage ratio including this protection.
        total_capital: Pool's total capital.
        params: Pool parameters.

    Returns:
        PremiumQuote with the premium and whether the minimum rate applied.

    Raises:
        ValidationError: if duration or amount is not positive or APR negative.

    Example:
        >>> quote = calculate_premium(180 * 86400, Decimal(100000), Decimal("0.17"),
        ...                           Decimal("0.15"), Decimal(15000), params)
        >>> quote.premium  # ~3271.83
    """
    if duration_seconds <= 0:
        raise ValidationError(f"duration_seconds must be positive, got {duration_seconds}")
    if protection_amount <= ZERO:
        raise ValidationError(f"protection_amount must be positive, got {protection_amount}")
    if buyer_apr < ZERO:
        raise ValidationError(f"buyer_apr must be non-negative, got {buyer_apr}")

    is_min_premium = not can_calculate_risk_factor(
        total_capital,
        leverage_ratio,
        params.leverage_ratio_floor,
        params.leverage_ratio_ceiling,
        params.min_required_capital,
    )
    if is_min_premium:
        carapace_rate = params.min_premium_percent
    else:
        risk_factor = calculate_risk_factor(
            leverage_ratio,
            params.leverage_ratio_floor,
            params.leverage_ratio_ceiling,
            params.leverage_ratio_buffer,
            params.curvature,
        )
        carapace_rate = calculate_carapace_premium_rate(duration_seconds, risk_factor)

    underlying_rate = to_fixed(
        params.underlying_risk_premium_percent * buyer_apr * duration_in_years(duration_seconds)
    )
    premium_rate = carapace_rate + underlying_rate
    premium = to_fixed(protection_amount * premium_rate)
    logger.debug(
        "premium %s for %s over %ss (rate %s, min premium %s)",
        premium, protection_amount, duration_seconds, premium_rate, is_min_premium,
    )
    return PremiumQuote(premium=premium, is_min_premium=is_min_premium, premium_rate=premium_rate)
