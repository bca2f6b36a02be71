"""
risk_factor.py - Risk Factor Math for Protection Pricing

Pure functions that turn a pool's leverage ratio into a risk factor, the
exponent rate of the premium curve.

Key Formulas:
    risk_factor = curvature * ((ceiling + buffer) - LR) / (LR - (floor - buffer))

    min-premium path:
        lambda = -ln(1 - min_premium) / duration_days
        risk_factor = lambda * 365.24

    can_calculate_risk_factor:
        total_capital >= min_required_capital and floor <= LR <= ceiling

All results are quantized to 18 fractional digits. Inputs outside the
formula's domain are modelling bugs and raise RiskFactorDomainError.
"""

from __future__ import annotations
import logging
from decimal import Decimal

from .core import (
    DAYS_PER_YEAR, ONE, ZERO,
    RiskFactorDomainError, to_fixed,
)

logger = logging.getLogger("CreditProtection.RiskFactor")


def calculate_risk_factor(
    leverage_ratio: Decimal,
    leverage_ratio_floor: Decimal,
    leverage_ratio_ceiling: Decimal,
    leverage_ratio_buffer: Decimal,
    curvature: Decimal,
) -> Decimal:
    """
    Risk factor from the pool's current leverage ratio.

    PURE FUNCTION - All inputs explicit, no hidden state.

    The curve falls as the leverage ratio rises: a well-capitalised pool
    charges less per unit of risk.

    Args:
        leverage_ratio: Current total capital / total protection.
        leverage_ratio_floor: Pool's lower leverage bound.
        leverage_ratio_ceiling: Pool's upper leverage bound.
        leverage_ratio_buffer: Widens the band on both sides.
        curvature: Scale factor.

    Returns:
        Risk factor with 18 fractional digits.

    Raises:
        RiskFactorDomainError: if LR <= floor - buffer.

    Example:
        >>> calculate_risk_factor(Decimal("0.14"), Decimal("0.1"), Decimal("0.2"),
        ...                       Decimal("0.05"), Decimal("0.05"))
        Decimal('0.061111111111111111')
    """
    denominator = leverage_ratio - (leverage_ratio_floor - leverage_ratio_buffer)
    if denominator <= ZERO:
        raise RiskFactorDomainError(
            f"Leverage ratio {leverage_ratio} is at or below floor - buffer "
            f"({leverage_ratio_floor - leverage_ratio_buffer})"
        )
    numerator = (leverage_ratio_ceiling + leverage_ratio_buffer) - leverage_ratio
    risk_factor = to_fixed(curvature * numerator / denominator)
    logger.debug("risk factor %s at leverage ratio %s", risk_factor, leverage_ratio)
    return risk_factor


def calculate_risk_factor_using_min_premium(
    min_premium_percent: Decimal,
    duration_in_days: Decimal,
) -> Decimal:
    """
    Risk factor implied by charging exactly the minimum premium.

    Solves 1 - exp(-lambda * days) = min_premium for lambda and annualises it.

    Raises:
        RiskFactorDomainError: if min_premium is outside [0, 1) or days <= 0.

    Example:
        >>> calculate_risk_factor_using_min_premium(Decimal("0.02"), Decimal("30.5"))
        Decimal('0.24192...')
    """
    if not (ZERO <= min_premium_percent < ONE):
        raise RiskFactorDomainError(
            f"min_premium_percent must be in [0, 1), got {min_premium_percent}"
        )
    if duration_in_days <= ZERO:
        raise RiskFactorDomainError(
            f"duration_in_days must be positive, got {duration_in_days}"
        )
    lam = -(ONE - min_premium_percent).ln() / duration_in_days
    return to_fixed(lam * DAYS_PER_YEAR)


def can_calculate_risk_factor(
    total_capital: Decimal,
    leverage_ratio: Decimal,
    leverage_ratio_floor: Decimal,
    leverage_ratio_ceiling: Decimal,
    min_required_capital: Decimal,
) -> bool:
    """True when the pool is capitalised and inside its leverage band."""
    if total_capital < min_required_capital:
        return False
    return leverage_ratio_floor <= leverage_ratio <= leverage_ratio_ceiling
