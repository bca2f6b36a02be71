"""
premium_curve.py - Vectorized Premium Curve Analytics

Float (numpy) renditions of the risk factor and accrual curves for reporting
and what-if analysis. Ledger math stays in Decimal (risk_factor.py,
accrued_premium.py); this module is for schedules, curves and solving.

Provides:
- risk_factor_curve: risk factor over an array of leverage ratios
- premium_rate_curve: premium rate over an array of leverage ratios
- accrual_curve: cumulative accrued premium at arbitrary offsets
- daily_accrual_schedule: premium earned on each day of a protection
- implied_leverage_ratio: leverage ratio that produces a target premium rate
"""

import numpy as np
from typing import Union
from scipy.optimize import brentq
from decimal import Decimal, ROUND_HALF_EVEN

from .config import PoolParams
from .core import SECONDS_PER_DAY, RiskFactorDomainError, ValidationError


# Type alias for scalar or array inputs
Numeric = Union[float, np.ndarray]

# Constants
DAYS_PER_YEAR = 365.24
RATE_QUANTUM = Decimal("0.00000001")


# ============================================================================
# RISK FACTOR AND PREMIUM RATE
# ============================================================================

def risk_factor_curve(
    leverage_ratios: Numeric,
    floor: float,
    ceiling: float,
    buffer: float,
    curvature: float,
) -> Numeric:
    """
    Risk factor at each leverage ratio.

    rf = curvature * ((ceiling + buffer) - LR) / (LR - (floor - buffer))

    Raises:
        RiskFactorDomainError: If any LR is at or below floor - buffer.
    """
    lr = np.asarray(leverage_ratios, dtype=float)
    denominator = lr - (floor - buffer)
    if np.any(denominator <= 0):
        raise RiskFactorDomainError("leverage ratio at or below floor - buffer")
    return curvature * ((ceiling + buffer) - lr) / denominator


def _premium_rate_float(
    leverage_ratios: Numeric,
    duration_seconds: float,
    buyer_apr: float,
    params: PoolParams,
) -> Numeric:
    years = duration_seconds / (SECONDS_PER_DAY * DAYS_PER_YEAR)
    rf = risk_factor_curve(
        leverage_ratios,
        float(params.leverage_ratio_floor),
        float(params.leverage_ratio_ceiling),
        float(params.leverage_ratio_buffer),
        float(params.curvature),
    )
    carapace = -np.expm1(-years * rf)
    underlying = float(params.underlying_risk_premium_percent) * buyer_apr * years
    return carapace + underlying


def premium_rate_curve(
    leverage_ratios: Numeric,
    duration_seconds: float,
    buyer_apr: float,
    params: PoolParams,
) -> Numeric:
    """Premium rate (carapace + underlying) at each leverage ratio, risk-factor path only."""
    if duration_seconds <= 0:
        raise ValidationError("duration_seconds must be positive")
    return _premium_rate_float(leverage_ratios, duration_seconds, buyer_apr, params)


# ============================================================================
# ACCRUAL
# ============================================================================

def accrual_curve(k: float, lam: float, seconds: Numeric) -> Numeric:
    """
    Cumulative premium accrued at each offset (seconds since start).

    accrued(t) = K * (1 - exp(-lambda * t / 86400))
    """
    t = np.asarray(seconds, dtype=float)
    if np.any(t < 0):
        raise ValidationError("accrual offsets must be non-negative")
    return -k * np.expm1(-lam * t / SECONDS_PER_DAY)


def daily_accrual_schedule(k: float, lam: float, duration_days: int) -> np.ndarray:
    """
    Premium earned on each day of a protection.

    Returns an array of length ``duration_days`` whose sum equals the
    cumulative accrual over the full duration.
    """
    if duration_days <= 0:
        raise ValidationError("duration_days must be positive")
    offsets = np.arange(duration_days + 1, dtype=float) * SECONDS_PER_DAY
    return np.diff(accrual_curve(k, lam, offsets))


# ============================================================================
# IMPLIED LEVERAGE RATIO
# ============================================================================

def implied_leverage_ratio(
    premium_rate: Decimal,
    duration_seconds: int,
    buyer_apr: Decimal,
    params: PoolParams,
) -> Decimal:
    """
    Leverage ratio at which the pool would quote ``premium_rate``.

    The premium rate falls monotonically across [floor, ceiling], so the root
    is bracketed by the band and found with Brent's method.

    Raises:
        ValidationError: If the target rate is outside the band's range.
    """
    if duration_seconds <= 0:
        raise ValidationError("duration_seconds must be positive")
    target = float(premium_rate)
    apr = float(buyer_apr)
    lo = float(params.leverage_ratio_floor)
    hi = float(params.leverage_ratio_ceiling)

    def objective(lr: float) -> float:
        return float(_premium_rate_float(lr, float(duration_seconds), apr, params)) - target

    f_lo = objective(lo)
    f_hi = objective(hi)
    if f_lo == 0.0:
        result = lo
    elif f_hi == 0.0:
        result = hi
    elif np.sign(f_lo) == np.sign(f_hi):
        raise ValidationError(
            f"premium rate {premium_rate} is not reachable between leverage ratios "
            f"{params.leverage_ratio_floor} and {params.leverage_ratio_ceiling}"
        )
    else:
        result = brentq(objective, lo, hi, xtol=1e-14, rtol=1e-12, maxiter=200)
    return Decimal(str(result)).quantize(RATE_QUANTUM, rounding=ROUND_HALF_EVEN)
