"""
Mutable pool-wide records shared by the capital and protection ledgers.

PoolInfo carries the pool's identity, parameters and launch phase.
PoolTotals carries the running totals both ledgers read and update, and
derives the leverage ratio from them.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN

from .config import PoolParams
from .core import PoolPhase, TransactionalState, ZERO, to_fixed


class PoolInfo(TransactionalState):
    """Identity, parameters, phase and pause flag of one pool."""

    _state_fields = ('params', 'phase', 'paused')

    def __init__(self, pool_id: str, owner: str, params: PoolParams, underlying_decimals: int):
        self.pool_id = pool_id
        self.owner = owner
        self.underlying_decimals = underlying_decimals
        self.params = params
        self.phase = PoolPhase.OPEN_TO_SELLERS
        self.paused = False


class PoolTotals(TransactionalState):
    """
    Running totals of one pool.

    Attributes:
        total_capital: Underlying backing the share token (deposits plus
            accrued premium, minus withdrawals and locked capital).
        total_protection: Notional of all active protections.
        total_premium: Premium paid by all buyers.
        total_premium_accrued: Premium earned by sellers so far.
    """

    _state_fields = ('total_capital', 'total_protection', 'total_premium', 'total_premium_accrued')

    def __init__(self):
        self.total_capital = ZERO
        self.total_protection = ZERO
        self.total_premium = ZERO
        self.total_premium_accrued = ZERO

    def leverage_ratio(self) -> Decimal:
        """total_capital / total_protection; zero while nothing is protected."""
        if self.total_protection == ZERO:
            return ZERO
        return to_fixed(self.total_capital / self.total_protection, ROUND_DOWN)

    def has_min_required_capital(self, params: PoolParams) -> bool:
        return self.total_capital >= params.min_required_capital
