"""
Pool configuration and logging setup.

Pool economics are described by two frozen value types:

- ``PoolParams``: leverage ratio band, capital requirement, premium curve
  parameters and protection duration limits.
- ``PoolCycleParams``: open period and total length of a pool cycle.

``PoolConfig`` bundles both with the underlying asset's precision and the
share token symbol, and can be built from keyword arguments, a mapping or a
JSON file.

Environment Variables
---------------------
CREDIT_PROTECTION_LOG_LEVEL : str
    Logging level (DEBUG, INFO, WARNING, ERROR). Default INFO.
CREDIT_PROTECTION_LOG_FORMAT : str
    Format string passed to ``logging.basicConfig``.

Example
-------
    >>> from credit_protection.config import load_pool_config
    >>> config = load_pool_config({
    ...     "pool_params": {"leverage_ratio_floor": "0.1", ...},
    ...     "cycle_params": {"open_cycle_duration": 864000, "cycle_duration": 2592000},
    ... })
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Union

from .core import (
    SECONDS_PER_DAY, ONE, ZERO,
    InvalidCycleDuration, ValidationError, to_decimal,
)

_ENV_PREFIX = "CREDIT_PROTECTION_"
_DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _get_env(key: str, default: str) -> str:
    """Read an environment variable with the package prefix."""
    return os.environ.get(f"{_ENV_PREFIX}{key.upper()}", default)


def configure_logging(level: Union[str, int, None] = None) -> int:
    """
    Configure the ``CreditProtection`` logger hierarchy.

    Args:
        level: Explicit level; falls back to CREDIT_PROTECTION_LOG_LEVEL.

    Returns:
        The numeric level applied.
    """
    if level is None:
        level = _get_env("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        numeric = getattr(logging, level.upper(), None)
        if not isinstance(numeric, int):
            raise ValidationError(f"Unknown log level: {level}")
    else:
        numeric = level
    logging.basicConfig(level=numeric, format=_get_env("LOG_FORMAT", _DEFAULT_LOG_FORMAT))
    logging.getLogger("CreditProtection").setLevel(numeric)
    return numeric


# ============================================================================
# POOL PARAMETERS
# ============================================================================

_DECIMAL_POOL_FIELDS = (
    'leverage_ratio_floor', 'leverage_ratio_ceiling', 'leverage_ratio_buffer',
    'min_required_capital', 'curvature', 'min_premium_percent',
    'underlying_risk_premium_percent',
)


@dataclass(frozen=True, slots=True)
class PoolParams:
    """
    Economic parameters of one protection pool.

    Attributes:
        leverage_ratio_floor: Lowest capital/protection ratio at which protection is sold.
        leverage_ratio_ceiling: Highest ratio at which deposits are accepted.
        leverage_ratio_buffer: Widens the band in the risk factor formula.
        min_required_capital: Capital below which the pool charges the minimum premium.
        curvature: Scale of the risk factor curve.
        min_premium_percent: Premium rate charged when the risk factor cannot be used.
        underlying_risk_premium_percent: Share of the buyer's APR added to the premium.
        min_protection_duration: Shortest protection a buyer may purchase (seconds).
        protection_renewal_grace_period: Window after expiry during which renewal is allowed (seconds).
    """
    leverage_ratio_floor: Decimal
    leverage_ratio_ceiling: Decimal
    leverage_ratio_buffer: Decimal
    min_required_capital: Decimal
    curvature: Decimal
    min_premium_percent: Decimal
    underlying_risk_premium_percent: Decimal
    min_protection_duration: int = 90 * SECONDS_PER_DAY
    protection_renewal_grace_period: int = 14 * SECONDS_PER_DAY

    def __post_init__(self):
        for name in _DECIMAL_POOL_FIELDS:
            object.__setattr__(self, name, to_decimal(getattr(self, name), name))

        if self.leverage_ratio_floor <= ZERO:
            raise ValidationError(
                f"leverage_ratio_floor must be positive, got {self.leverage_ratio_floor}"
            )
        if self.leverage_ratio_ceiling < self.leverage_ratio_floor:
            raise ValidationError(
                f"leverage_ratio_ceiling ({self.leverage_ratio_ceiling}) must not be "
                f"below leverage_ratio_floor ({self.leverage_ratio_floor})"
            )
        if self.leverage_ratio_buffer < ZERO or self.leverage_ratio_buffer >= self.leverage_ratio_floor:
            raise ValidationError(
                f"leverage_ratio_buffer must be in [0, floor), got {self.leverage_ratio_buffer}"
            )
        if self.min_required_capital < ZERO:
            raise ValidationError(
                f"min_required_capital must be non-negative, got {self.min_required_capital}"
            )
        if self.curvature <= ZERO:
            raise ValidationError(f"curvature must be positive, got {self.curvature}")
        if not (ZERO < self.min_premium_percent < ONE):
            raise ValidationError(
                f"min_premium_percent must be in (0, 1), got {self.min_premium_percent}"
            )
        if not (ZERO <= self.underlying_risk_premium_percent < ONE):
            raise ValidationError(
                f"underlying_risk_premium_percent must be in [0, 1), "
                f"got {self.underlying_risk_premium_percent}"
            )
        if self.min_protection_duration <= 0:
            raise ValidationError(
                f"min_protection_duration must be positive, got {self.min_protection_duration}"
            )
        if self.protection_renewal_grace_period < 0:
            raise ValidationError(
                f"protection_renewal_grace_period must be non-negative, "
                f"got {self.protection_renewal_grace_period}"
            )

    def with_leverage_ratio_params(
        self, floor: Decimal, ceiling: Decimal, buffer: Decimal
    ) -> PoolParams:
        return replace(
            self,
            leverage_ratio_floor=floor,
            leverage_ratio_ceiling=ceiling,
            leverage_ratio_buffer=buffer,
        )

    def with_risk_premium_params(
        self,
        curvature: Decimal,
        min_premium_percent: Decimal,
        underlying_risk_premium_percent: Decimal,
    ) -> PoolParams:
        return replace(
            self,
            curvature=curvature,
            min_premium_percent=min_premium_percent,
            underlying_risk_premium_percent=underlying_risk_premium_percent,
        )

    def with_min_required_capital(self, min_required_capital: Decimal) -> PoolParams:
        return replace(self, min_required_capital=min_required_capital)


@dataclass(frozen=True, slots=True)
class PoolCycleParams:
    """Open period and total length of a pool cycle, both in seconds."""
    open_cycle_duration: int
    cycle_duration: int

    def __post_init__(self):
        if self.open_cycle_duration < 0 or self.cycle_duration <= 0:
            raise InvalidCycleDuration(
                f"Cycle durations must be positive, got open={self.open_cycle_duration} "
                f"cycle={self.cycle_duration}"
            )
        if self.open_cycle_duration > self.cycle_duration:
            raise InvalidCycleDuration(
                f"open_cycle_duration ({self.open_cycle_duration}) exceeds "
                f"cycle_duration ({self.cycle_duration})"
            )


@dataclass(frozen=True, slots=True)
class PoolConfig:
    """Everything needed to stand up one protection pool."""
    pool_params: PoolParams
    cycle_params: PoolCycleParams
    underlying_decimals: int = 6
    underlying_symbol: str = "USDC"
    share_symbol: str = "sToken"
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not 0 <= self.underlying_decimals <= 18:
            raise ValidationError(
                f"underlying_decimals must be between 0 and 18, got {self.underlying_decimals}"
            )
        if not self.share_symbol or not self.underlying_symbol:
            raise ValidationError("Token symbols cannot be empty")
        if self.share_symbol == self.underlying_symbol:
            raise ValidationError("Share and underlying symbols must differ")


_POOL_PARAM_NAMES = frozenset(f.name for f in fields(PoolParams))
_CYCLE_PARAM_NAMES = frozenset(f.name for f in fields(PoolCycleParams))


def load_pool_params(data: Mapping[str, Any]) -> PoolParams:
    """
    Build PoolParams from a mapping of field names to values.

    Decimal fields accept strings, ints or Decimals. Unknown keys are rejected.

    Raises:
        ValidationError: On unknown or missing keys and out-of-range values.
    """
    unknown = set(data) - _POOL_PARAM_NAMES
    if unknown:
        raise ValidationError(f"Unknown pool params: {sorted(unknown)}")
    try:
        return PoolParams(**data)
    except TypeError as exc:
        raise ValidationError(f"Invalid pool params: {exc}") from exc


def load_cycle_params(data: Mapping[str, Any]) -> PoolCycleParams:
    unknown = set(data) - _CYCLE_PARAM_NAMES
    if unknown:
        raise ValidationError(f"Unknown cycle params: {sorted(unknown)}")
    try:
        return PoolCycleParams(
            open_cycle_duration=int(data["open_cycle_duration"]),
            cycle_duration=int(data["cycle_duration"]),
        )
    except KeyError as exc:
        raise ValidationError(f"Missing cycle param: {exc.args[0]}") from exc


def load_pool_config(source: Union[Mapping[str, Any], str, Path]) -> PoolConfig:
    """
    Load a PoolConfig from a mapping or a JSON file path.

    The document has ``pool_params`` and ``cycle_params`` sections plus the
    optional top-level keys ``underlying_decimals``, ``underlying_symbol`` and
    ``share_symbol``. Remaining keys are kept in ``extra``.

    Raises:
        ValidationError: If the document is malformed.
    """
    if isinstance(source, (str, Path)):
        path = Path(source)
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid JSON in {path}: {exc}") from exc
    else:
        data = dict(source)

    if not isinstance(data, Mapping):
        raise ValidationError("Pool config must be a JSON object")
    try:
        pool_section = data["pool_params"]
        cycle_section = data["cycle_params"]
    except KeyError as exc:
        raise ValidationError(f"Pool config is missing section {exc.args[0]!r}") from exc

    known = {"pool_params", "cycle_params", "underlying_decimals", "underlying_symbol", "share_symbol"}
    return PoolConfig(
        pool_params=load_pool_params(pool_section),
        cycle_params=load_cycle_params(cycle_section),
        underlying_decimals=int(data.get("underlying_decimals", 6)),
        underlying_symbol=str(data.get("underlying_symbol", "USDC")),
        share_symbol=str(data.get("share_symbol", "sToken")),
        extra={k: v for k, v in data.items() if k not in known},
    )
