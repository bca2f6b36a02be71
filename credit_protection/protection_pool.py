"""
protection_pool.py - Protection Pool

The ProtectionPool is the entry point for sellers and buyers of one pool. It
owns the pool's CapitalLedger and ProtectionLedger and is the only place that
mutates them.

Key responsibilities:
    - Runs every mutating call as one atomic step behind a re-entrancy guard
    - Refreshes the pool cycle before each operation
    - Enforces pause state, launch phases and owner-only administration
    - Locks capital on request of the default state manager
    - Pays out unlocked capital claims computed by the default state manager

Example:
    pool = ProtectionPool("pool-1", "owner", config, clock, basket,
                          cycle_manager, default_state_manager, token_ledger)
    default_state_manager.register_protection_pool(pool)
    pool.deposit("alice", Decimal("40000"))
    pool.move_pool_phase("owner")
"""

from __future__ import annotations
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .capital_ledger import CapitalLedger
from .config import PoolConfig, PoolParams
from .core import (
    Clock, PoolCycleState, PoolPhase, ProtectionPurchaseParams, TransactionalState,
    ReentrancyGuard, SECONDS_PER_DAY, ZERO,
    CallerNotDefaultStateManager, NotOwner, PoolNotPaused, PoolPaused,
    ValidationError, atomic, round_down_to,
)
from .cycle_manager import PoolCycleManager
from .lending_pools import ReferenceLendingPools
from .pool_state import PoolInfo, PoolTotals
from .premium import PremiumQuote
from .premium_curve import daily_accrual_schedule
from .protection_ledger import (
    AccrualResult, LendingPoolDetail, Protection, ProtectionLedger,
)
from .token_ledger import PoolShareToken, TokenLedger, TokenUnit, UnderlyingAsset

if TYPE_CHECKING:
    from .default_state_manager import DefaultStateManager

logger = logging.getLogger("CreditProtection.Pool")


@dataclass(frozen=True, slots=True)
class PoolInfoView:
    """Read-only view of a pool's identity and configuration."""
    pool_id: str
    owner: str
    params: PoolParams
    phase: PoolPhase
    paused: bool
    underlying_symbol: str
    share_symbol: str


@dataclass(frozen=True, slots=True)
class PoolDetails:
    """Headline totals of a pool."""
    total_capital: Decimal
    total_protection: Decimal
    total_premium: Decimal
    total_premium_accrued: Decimal


class ProtectionPool:
    """
    One protection pool: seller capital on one side, bought protections on the other.

    Thread Safety:
        Not thread-safe. Operations are serialized by the caller.
    """

    def __init__(
        self,
        pool_id: str,
        owner: str,
        config: PoolConfig,
        clock: Clock,
        basket: ReferenceLendingPools,
        cycle_manager: PoolCycleManager,
        default_state_manager: DefaultStateManager,
        token_ledger: TokenLedger,
    ):
        """
        Create a pool and start its first cycle.

        The underlying token is registered with the token ledger if it is not
        known yet; the share token must be new.

        Raises:
            ValidationError: If the underlying is registered with other decimals.
            ValueError: If the share symbol is already registered.
            PoolAlreadyRegistered: If the cycle manager already knows the pool.
        """
        if not pool_id or not pool_id.strip():
            raise ValidationError("pool_id cannot be empty")
        self.pool_id = pool_id
        self.clock = clock
        self.basket = basket
        self.cycle_manager = cycle_manager
        self.default_state_manager = default_state_manager
        self.token_ledger = token_ledger

        if config.underlying_symbol in token_ledger.units:
            known = token_ledger.get_unit(config.underlying_symbol)
            if known.decimals != config.underlying_decimals:
                raise ValidationError(
                    f"{config.underlying_symbol} is registered with {known.decimals} decimals, "
                    f"config says {config.underlying_decimals}"
                )
        else:
            token_ledger.register_unit(TokenUnit(
                config.underlying_symbol, config.underlying_symbol, config.underlying_decimals
            ))
        token_ledger.register_unit(TokenUnit(config.share_symbol, f"{pool_id} shares", 18))

        self.share_token = PoolShareToken(token_ledger, config.share_symbol)
        self.underlying = UnderlyingAsset(token_ledger, config.underlying_symbol)
        self.info = PoolInfo(pool_id, owner, config.pool_params, config.underlying_decimals)
        self.totals = PoolTotals()
        self.capital = CapitalLedger(
            self.info, self.totals, self.share_token, self.underlying, cycle_manager
        )
        self.protections = ProtectionLedger(
            self.info, self.totals, clock, basket, cycle_manager, self.underlying,
            loan_status=lambda loan: default_state_manager.get_lending_pool_status(pool_id, loan),
        )
        self._guard = ReentrancyGuard(f"ProtectionPool {pool_id}")

        cycle_manager.register_pool(pool_id, config.cycle_params)
        logger.info("Created protection pool %s owned by %s", pool_id, owner)

    # ========================================================================
    # OPERATION PLUMBING
    # ========================================================================

    @property
    def owner(self) -> str:
        return self.info.owner

    @property
    def params(self) -> PoolParams:
        return self.info.params

    @property
    def phase(self) -> PoolPhase:
        return self.info.phase

    @property
    def paused(self) -> bool:
        return self.info.paused

    def participants(self) -> Tuple[TransactionalState, ...]:
        """Every component whose state one pool operation may change."""
        return (
            self.info,
            self.totals,
            self.capital,
            self.protections,
            self.token_ledger,
            self.cycle_manager,
            self.default_state_manager.pool_state_participant(self.pool_id),
        )

    @contextmanager
    def _operation(self, allow_paused: bool = False) -> Iterator[None]:
        with self._guard.enter():
            if self.info.paused and not allow_paused:
                raise PoolPaused(f"Pool {self.pool_id} is paused")
            with atomic(*self.participants()):
                self.cycle_manager.calculate_and_set_pool_cycle_state(self.pool_id)
                yield

    def _only_owner(self, caller: str) -> None:
        if caller != self.info.owner:
            raise NotOwner(f"{caller} is not the owner of pool {self.pool_id}")

    # ========================================================================
    # SELLERS
    # ========================================================================

    def deposit(self, caller: str, underlying_amount: Decimal, receiver: Optional[str] = None) -> Decimal:
        """Deposit underlying and mint shares to the receiver (default: caller)."""
        with self._operation():
            return self.capital.deposit(caller, underlying_amount, receiver or caller)

    def request_withdrawal(self, caller: str, shares: Decimal) -> int:
        """Request a withdrawal executable two cycles from now; returns that cycle index."""
        with self._operation():
            return self.capital.request_withdrawal(caller, shares)

    def deposit_and_request_withdrawal(
        self, caller: str, underlying_amount: Decimal, shares_to_withdraw: Decimal
    ) -> int:
        with self._operation():
            self.capital.deposit(caller, underlying_amount, caller)
            return self.capital.request_withdrawal(caller, shares_to_withdraw)

    def withdraw(self, caller: str, shares: Decimal, receiver: Optional[str] = None) -> Decimal:
        """Redeem requested shares during the open period; returns underlying paid."""
        with self._operation():
            return self.capital.withdraw(caller, shares, receiver or caller)

    def claim_unlocked_capital(self, caller: str, receiver: Optional[str] = None) -> Decimal:
        """
        Pay out the caller's share of all capital unlocked since their last claim.

        Returns:
            Underlying transferred to the receiver.
        """
        with self._operation():
            claimable = self.default_state_manager.calculate_and_claim_unlocked_capital(self, caller)
            payout = round_down_to(claimable, self.info.underlying_decimals)
            if payout > ZERO:
                self.underlying.transfer(self.pool_id, receiver or caller, payout)
                logger.info("%s claimed %s unlocked capital from %s", caller, payout, self.pool_id)
            return payout

    # ========================================================================
    # BUYERS
    # ========================================================================

    def buy_protection(
        self, caller: str, params: ProtectionPurchaseParams, max_premium: Decimal
    ) -> int:
        with self._operation():
            return self.protections.buy_protection(caller, params, max_premium)

    def renew_protection(
        self, caller: str, params: ProtectionPurchaseParams, max_premium: Decimal
    ) -> int:
        with self._operation():
            return self.protections.renew_protection(caller, params, max_premium)

    def accrue_premium_and_expire_protections(
        self, lending_pools: Sequence[str] = ()
    ) -> AccrualResult:
        """Accrue premium and expire protections; any caller may run it."""
        with self._operation():
            return self.protections.accrue_premium_and_expire_protections(lending_pools)

    # ========================================================================
    # DEFAULT STATE MANAGER HOOK
    # ========================================================================

    def lock_capital(self, caller: object, lending_pool: str) -> Tuple[Decimal, int]:
        """
        Snapshot the shares and set aside capital covering a late loan.

        Returns:
            (locked amount, snapshot id)

        Raises:
            CallerNotDefaultStateManager: Unless called by this pool's manager.
        """
        if caller is not self.default_state_manager:
            raise CallerNotDefaultStateManager(
                f"Only the default state manager may lock capital of {self.pool_id}"
            )
        with self._operation():
            snapshot_id = self.share_token.snapshot()
            required = self.protections.calculate_locked_amount(lending_pool)
            locked = self.capital.lock_capital(required)
            logger.info(
                "Locked %s of %s required capital in %s for %s (snapshot %d)",
                locked, required, self.pool_id, lending_pool, snapshot_id,
            )
            return locked, snapshot_id

    # ========================================================================
    # ADMINISTRATION (owner only)
    # ========================================================================

    def move_pool_phase(self, caller: str) -> PoolPhase:
        """
        Advance the launch phase when its condition holds.

        OPEN_TO_SELLERS -> OPEN_TO_BUYERS once the minimum capital is met;
        OPEN_TO_BUYERS -> OPEN once leverage is at or below the ceiling.
        Otherwise the phase is unchanged.
        """
        self._only_owner(caller)
        with self._operation():
            phase = self.info.phase
            if (phase is PoolPhase.OPEN_TO_SELLERS
                    and self.totals.has_min_required_capital(self.info.params)):
                self.info.phase = PoolPhase.OPEN_TO_BUYERS
            elif (phase is PoolPhase.OPEN_TO_BUYERS
                    and self.totals.leverage_ratio() <= self.info.params.leverage_ratio_ceiling):
                self.info.phase = PoolPhase.OPEN
            if self.info.phase is not phase:
                logger.info("Pool %s moved to phase %s", self.pool_id, self.info.phase.value)
            return self.info.phase

    def pause(self, caller: str) -> None:
        self._only_owner(caller)
        with self._operation():
            self.info.paused = True
            logger.info("Pool %s paused", self.pool_id)

    def unpause(self, caller: str) -> None:
        self._only_owner(caller)
        if not self.info.paused:
            raise PoolNotPaused(f"Pool {self.pool_id} is not paused")
        with self._operation(allow_paused=True):
            self.info.paused = False
            logger.info("Pool %s unpaused", self.pool_id)

    def update_leverage_ratio_params(
        self, caller: str, floor: Decimal, ceiling: Decimal, buffer: Decimal
    ) -> PoolParams:
        self._only_owner(caller)
        with self._operation(allow_paused=True):
            self.info.params = self.info.params.with_leverage_ratio_params(floor, ceiling, buffer)
            return self.info.params

    def update_risk_premium_params(
        self,
        caller: str,
        curvature: Decimal,
        min_premium_percent: Decimal,
        underlying_risk_premium_percent: Decimal,
    ) -> PoolParams:
        self._only_owner(caller)
        with self._operation(allow_paused=True):
            self.info.params = self.info.params.with_risk_premium_params(
                curvature, min_premium_percent, underlying_risk_premium_percent
            )
            return self.info.params

    def update_min_required_capital(self, caller: str, min_required_capital: Decimal) -> PoolParams:
        self._only_owner(caller)
        with self._operation(allow_paused=True):
            self.info.params = self.info.params.with_min_required_capital(min_required_capital)
            return self.info.params

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_pool_details(self) -> PoolDetails:
        return PoolDetails(
            total_capital=self.totals.total_capital,
            total_protection=self.totals.total_protection,
            total_premium=self.totals.total_premium,
            total_premium_accrued=self.totals.total_premium_accrued,
        )

    def get_pool_info(self) -> PoolInfoView:
        return PoolInfoView(
            pool_id=self.pool_id,
            owner=self.info.owner,
            params=self.info.params,
            phase=self.info.phase,
            paused=self.info.paused,
            underlying_symbol=self.underlying.symbol,
            share_symbol=self.share_token.symbol,
        )

    def get_cycle_state(self) -> PoolCycleState:
        return self.cycle_manager.get_current_cycle_state(self.pool_id)

    def calculate_leverage_ratio(self) -> Decimal:
        return self.totals.leverage_ratio()

    def convert_to_shares(self, underlying_amount: Decimal) -> Decimal:
        return self.capital.convert_to_shares(underlying_amount)

    def convert_to_underlying(self, shares: Decimal) -> Decimal:
        return self.capital.convert_to_underlying(shares)

    def get_underlying_balance(self, seller: str) -> Decimal:
        return self.capital.get_underlying_balance(seller)

    def get_total_requested_withdrawal_amount(self, cycle_index: int) -> Decimal:
        return self.capital.get_total_requested_withdrawal_amount(cycle_index)

    def get_requested_withdrawal_amount(self, seller: str, cycle_index: int) -> Decimal:
        return self.capital.get_requested_withdrawal_amount(seller, cycle_index)

    def get_all_protections(self) -> List[Protection]:
        return self.protections.get_all_protections()

    def get_active_protections(self, buyer: str) -> List[Protection]:
        return self.protections.get_active_protections(buyer)

    def get_total_premium_paid_for_lending_pool(self, buyer: str, lending_pool: str) -> Decimal:
        return self.protections.get_total_premium_paid_for_lending_pool(buyer, lending_pool)

    def get_lending_pool_detail(self, lending_pool: str) -> Optional[LendingPoolDetail]:
        return self.protections.get_lending_pool_detail(lending_pool)

    def calculate_protection_premium(self, params: ProtectionPurchaseParams) -> PremiumQuote:
        return self.protections.calculate_protection_premium(params)

    def calculate_max_allowed_protection_amount(
        self, buyer: str, lending_pool: str, position_id: int
    ) -> Decimal:
        return self.basket.calculate_remaining_principal(lending_pool, buyer, position_id)

    def calculate_max_allowed_protection_duration(self) -> int:
        """Seconds from now until the end of the next cycle."""
        end = self.cycle_manager.get_next_cycle_end_timestamp(self.pool_id)
        return max(0, end - self.clock.now)

    def get_premium_accrual_schedule(self, protection_id: int) -> np.ndarray:
        """Premium earned on each day of a protection, as floats."""
        protection = self.protections.get_protection(protection_id)
        duration = protection.purchase_params.protection_duration
        days = max(1, -(-duration // SECONDS_PER_DAY))
        return daily_accrual_schedule(float(protection.k), float(protection.lam), days)
