"""
capital_ledger.py - Seller Capital Accounting

Sellers deposit the underlying asset and receive pool shares. Shares are
redeemed through a two-step withdrawal: a request made in cycle N becomes
executable during the open period of cycle N + 2.

Key Formulas:
    exchange_rate = total_capital / total_share_supply
    shares        = amount                              (first deposit)
                  = amount / exchange_rate              (otherwise, rounded down)
    underlying    = shares * exchange_rate              (rounded down to asset decimals)
    leverage      = total_capital / total_protection    (0 when nothing is protected)
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Dict

from .core import (
    PoolCycleState, PoolPhase, ShareToken, TransactionalState, UnderlyingToken,
    WITHDRAWAL_CYCLE_OFFSET, ZERO,
    InsufficientShareBalance, NoWithdrawalRequested, PoolInOpenToBuyersPhase,
    PoolIsNotOpen, PoolLeverageRatioTooHigh, StateError, ValidationError,
    WithdrawalHigherThanRequested, round_down_to, to_decimal, to_fixed,
)
from .cycle_manager import PoolCycleManager
from .pool_state import PoolInfo, PoolTotals

logger = logging.getLogger("CreditProtection.CapitalLedger")


@dataclass(slots=True)
class WithdrawalCycleDetail:
    """Withdrawal requests executable in one cycle."""
    total_requested: Decimal = ZERO
    requests: Dict[str, Decimal] = field(default_factory=dict)


class CapitalLedger(TransactionalState):
    """
    Deposits, withdrawal requests and withdrawals for one pool.

    The ledger does not check pause state or re-entrancy; ProtectionPool
    wraps every call.
    """

    _state_fields = ('withdrawal_cycles',)

    def __init__(
        self,
        info: PoolInfo,
        totals: PoolTotals,
        share_token: ShareToken,
        underlying: UnderlyingToken,
        cycle_manager: PoolCycleManager,
    ):
        self.info = info
        self.totals = totals
        self.share_token = share_token
        self.underlying = underlying
        self.cycle_manager = cycle_manager
        self.withdrawal_cycles: Dict[int, WithdrawalCycleDetail] = {}

    # ========================================================================
    # CONVERSIONS
    # ========================================================================

    def exchange_rate(self) -> Decimal:
        """Underlying per share; one before the first deposit."""
        supply = self.share_token.total_supply()
        if supply == ZERO:
            return Decimal("1")
        return to_fixed(self.totals.total_capital / supply, ROUND_DOWN)

    def convert_to_shares(self, underlying_amount: Decimal) -> Decimal:
        if self.share_token.total_supply() == ZERO:
            return to_fixed(underlying_amount, ROUND_DOWN)
        rate = self.exchange_rate()
        if rate == ZERO:
            raise StateError("Pool has outstanding shares but no capital backing them")
        return to_fixed(underlying_amount / rate, ROUND_DOWN)

    def convert_to_underlying(self, shares: Decimal) -> Decimal:
        return round_down_to(shares * self.exchange_rate(), self.info.underlying_decimals)

    def leverage_ratio(self) -> Decimal:
        return self.totals.leverage_ratio()

    def get_underlying_balance(self, seller: str) -> Decimal:
        return self.convert_to_underlying(self.share_token.balance_of(seller))

    # ========================================================================
    # DEPOSIT
    # ========================================================================

    def deposit(self, depositor: str, underlying_amount: Decimal, receiver: str) -> Decimal:
        """
        Accept capital and mint shares to the receiver.

        Returns:
            Shares minted.

        Raises:
            PoolInOpenToBuyersPhase: While the pool only accepts buyers.
            ValidationError: If the amount is not positive.
            PoolLeverageRatioTooHigh: If, once the pool meets its minimum
                capital, the deposit pushes leverage above the ceiling.
        """
        if self.info.phase is PoolPhase.OPEN_TO_BUYERS:
            raise PoolInOpenToBuyersPhase(f"Pool {self.info.pool_id} is open to buyers only")
        amount = round_down_to(to_decimal(underlying_amount, "underlying_amount"), self.info.underlying_decimals)
        if amount <= ZERO:
            raise ValidationError(f"Deposit amount must be positive, got {underlying_amount}")

        shares = self.convert_to_shares(amount)
        self.totals.total_capital += amount
        self.share_token.mint(receiver, shares)
        self.underlying.transfer(depositor, self.info.pool_id, amount)

        if self.totals.has_min_required_capital(self.info.params):
            leverage_ratio = self.leverage_ratio()
            if leverage_ratio > self.info.params.leverage_ratio_ceiling:
                raise PoolLeverageRatioTooHigh(
                    f"Leverage ratio {leverage_ratio} exceeds ceiling "
                    f"{self.info.params.leverage_ratio_ceiling}"
                )

        logger.info("%s deposited %s into %s for %s shares", depositor, amount, self.info.pool_id, shares)
        return shares

    # ========================================================================
    # WITHDRAWAL
    # ========================================================================

    def request_withdrawal(self, seller: str, shares: Decimal) -> int:
        """
        Record a request to withdraw shares two cycles from now.

        A later request for the same cycle replaces the earlier one.

        Returns:
            The cycle index in which the withdrawal becomes executable.

        Raises:
            ValidationError: If shares is not positive.
            InsufficientShareBalance: If shares exceed the seller's balance.
        """
        shares = to_decimal(shares, "shares")
        if shares <= ZERO:
            raise ValidationError(f"Withdrawal request must be positive, got {shares}")
        balance = self.share_token.balance_of(seller)
        if shares > balance:
            raise InsufficientShareBalance(f"{seller} holds {balance} shares, requested {shares}")

        cycle_index = self.cycle_manager.get_current_cycle_index(self.info.pool_id) + WITHDRAWAL_CYCLE_OFFSET
        cycle = self.withdrawal_cycles.setdefault(cycle_index, WithdrawalCycleDetail())
        previous = cycle.requests.get(seller, ZERO)
        cycle.requests[seller] = shares
        cycle.total_requested += shares - previous

        logger.info("%s requested withdrawal of %s shares in cycle %d", seller, shares, cycle_index)
        return cycle_index

    def withdraw(self, seller: str, shares: Decimal, receiver: str) -> Decimal:
        """
        Burn requested shares and pay out the underlying.

        Returns:
            Underlying paid to the receiver.

        Raises:
            PoolIsNotOpen: Outside the open period of the current cycle.
            NoWithdrawalRequested: If the seller has no request for this cycle.
            WithdrawalHigherThanRequested: If shares exceed the request.
        """
        pool_id = self.info.pool_id
        if self.cycle_manager.get_current_cycle_state(pool_id) is not PoolCycleState.OPEN:
            raise PoolIsNotOpen(f"Pool {pool_id} cycle is not open")
        shares = to_decimal(shares, "shares")
        if shares <= ZERO:
            raise ValidationError(f"Withdrawal amount must be positive, got {shares}")

        cycle_index = self.cycle_manager.get_current_cycle_index(pool_id)
        cycle = self.withdrawal_cycles.get(cycle_index)
        requested = ZERO if cycle is None else cycle.requests.get(seller, ZERO)
        if requested == ZERO:
            raise NoWithdrawalRequested(f"{seller} has no withdrawal request in cycle {cycle_index}")
        if shares > requested:
            raise WithdrawalHigherThanRequested(
                f"{seller} requested {requested} shares in cycle {cycle_index}, tried {shares}"
            )

        underlying_amount = self.convert_to_underlying(shares)
        self.share_token.burn(seller, shares)
        self.totals.total_capital -= underlying_amount
        cycle.requests[seller] = requested - shares
        cycle.total_requested -= shares
        self.underlying.transfer(pool_id, receiver, underlying_amount)

        logger.info("%s withdrew %s shares for %s underlying", seller, shares, underlying_amount)
        return underlying_amount

    # ========================================================================
    # LOCKING
    # ========================================================================

    def lock_capital(self, amount: Decimal) -> Decimal:
        """Remove capital from the share backing; all of it if amount exceeds capital."""
        locked = min(amount, self.totals.total_capital)
        self.totals.total_capital -= locked
        return locked

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_total_requested_withdrawal_amount(self, cycle_index: int) -> Decimal:
        cycle = self.withdrawal_cycles.get(cycle_index)
        return ZERO if cycle is None else cycle.total_requested

    def get_requested_withdrawal_amount(self, seller: str, cycle_index: int) -> Decimal:
        cycle = self.withdrawal_cycles.get(cycle_index)
        return ZERO if cycle is None else cycle.requests.get(seller, ZERO)
