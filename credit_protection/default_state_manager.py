"""
default_state_manager.py - Loan Default State Tracking

Tracks the repayment status of every referenced loan, per protection pool,
and moves pool capital in and out of lockup as loans go late and recover.

State machine (polled on every assessment):

    ACTIVE / LATE_WITHIN_GRACE_PERIOD --oracle LATE--> LATE      (lock capital)
    LATE --within two payment periods--> LATE                     (no-op)
    LATE --oracle ACTIVE, after window--> ACTIVE                  (unlock capital)
    LATE --oracle LATE, after window--> DEFAULTED                 (stays locked)
    DEFAULTED, EXPIRED                                            (terminal)
    anything else --> oracle value

Unlocked capital is claimed pro rata to the share balances recorded in the
snapshot taken when it was locked. Each seller keeps a per-loan high-water
mark so a snapshot is never paid out twice.
"""

from __future__ import annotations
import copy
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_DOWN
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

from .core import (
    Clock, LoanStatus, LockedCapital, ReentrancyGuard, TransactionalState,
    SECONDS_PER_DAY, ZERO,
    BatchAssessmentError, LockedCapitalInvariantError, PoolAlreadyRegistered,
    PoolNotRegistered, ProtectionPoolError, atomic, to_fixed,
)

if TYPE_CHECKING:
    from .protection_pool import ProtectionPool

logger = logging.getLogger("CreditProtection.DefaultStateManager")

# A late loan is declared defaulted after this many missed payment periods.
_DEFAULT_PERIODS = 2


@dataclass(slots=True)
class LoanStatusDetail:
    current_status: LoanStatus = LoanStatus.NOT_SUPPORTED
    late_timestamp: int = 0


@dataclass(slots=True)
class PoolState:
    """
    Default-tracking state of one protection pool.

    Attributes:
        updated_timestamp: Time of the last assessment.
        loan_status_details: Status and late timestamp per loan.
        locked_capitals: Locked capital instances per loan, oldest first.
        last_claimed_snapshot_ids: Highest snapshot claimed, per loan and seller.
    """
    updated_timestamp: int = 0
    loan_status_details: Dict[str, LoanStatusDetail] = field(default_factory=dict)
    locked_capitals: Dict[str, List[LockedCapital]] = field(default_factory=dict)
    last_claimed_snapshot_ids: Dict[str, Dict[str, int]] = field(default_factory=dict)


class PoolStateCheckpoint(TransactionalState):
    """
    Checkpoints the tracker state of a single pool. The state of every
    other pool is neither copied nor restored.
    """

    def __init__(self, pool_states: Dict[str, PoolState], pool_id: str):
        self._pool_states = pool_states
        self.pool_id = pool_id

    def checkpoint(self) -> Dict[str, Any]:
        return {'state': copy.deepcopy(self._pool_states.get(self.pool_id))}

    def restore(self, saved: Dict[str, Any]) -> None:
        state = saved['state']
        if state is None:
            self._pool_states.pop(self.pool_id, None)
        else:
            self._pool_states[self.pool_id] = copy.deepcopy(state)


class DefaultStateManager:
    """
    Default state tracker shared by all protection pools.

    Assessments are pull-based: nothing changes until assess_states,
    assess_state_batch or register_protection_pool is called.
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._pools: Dict[str, ProtectionPool] = {}
        self._pool_states: Dict[str, PoolState] = {}
        self._guard = ReentrancyGuard("DefaultStateManager")
        self._checkpoints: Dict[str, PoolStateCheckpoint] = {}

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register_protection_pool(self, pool: ProtectionPool) -> None:
        """
        Start tracking a pool and assess its loans immediately.

        Raises:
            PoolAlreadyRegistered: If a pool with the same id is tracked.
        """
        if pool.pool_id in self._pools:
            raise PoolAlreadyRegistered(f"Pool {pool.pool_id} is already registered")
        with self._guard.enter():
            self._pools[pool.pool_id] = pool
            try:
                with atomic(*pool.participants()):
                    self._pool_states[pool.pool_id] = PoolState()
                    self._assess_state(pool)
            except BaseException:
                del self._pools[pool.pool_id]
                raise
        logger.info("Registered protection pool %s", pool.pool_id)

    def pool_state_participant(self, pool_id: str) -> PoolStateCheckpoint:
        """Atomic participant covering only this pool's tracker state."""
        if pool_id not in self._checkpoints:
            self._checkpoints[pool_id] = PoolStateCheckpoint(self._pool_states, pool_id)
        return self._checkpoints[pool_id]

    def is_registered(self, pool_id: str) -> bool:
        return pool_id in self._pools

    def get_pools(self) -> List[str]:
        return list(self._pools)

    # ========================================================================
    # ASSESSMENT
    # ========================================================================

    def assess_states(self) -> None:
        """Assess every registered pool."""
        self.assess_state_batch(list(self._pools))

    def assess_state_batch(self, pool_ids: Iterable[str]) -> None:
        """
        Assess the given pools one after another.

        Each pool is assessed atomically. A pool that fails with an ordinary
        error is rolled back and the batch continues; failures are reported
        together afterwards. Invariant violations stop the batch at once.

        Raises:
            BatchAssessmentError: If one or more pools failed.
        """
        failures: Dict[str, ProtectionPoolError] = {}
        with self._guard.enter():
            for pool_id in pool_ids:
                pool = self._pools.get(pool_id)
                if pool is None:
                    logger.warning("Skipping unregistered pool %s", pool_id)
                    continue
                try:
                    with atomic(*pool.participants()):
                        self._assess_state(pool)
                except ProtectionPoolError as exc:
                    logger.error("State assessment failed for pool %s: %s", pool_id, exc)
                    failures[pool_id] = exc
        if failures:
            raise BatchAssessmentError(failures)

    def _assess_state(self, pool: ProtectionPool) -> None:
        now = self.clock.now
        state = self._pool_states[pool.pool_id]
        state.updated_timestamp = now

        lending_pools, statuses = pool.basket.assess_state()
        for lending_pool, oracle_status in zip(lending_pools, statuses):
            detail = state.loan_status_details.setdefault(lending_pool, LoanStatusDetail())
            current = detail.current_status

            if current in (LoanStatus.DEFAULTED, LoanStatus.EXPIRED):
                continue

            if current is LoanStatus.LATE:
                period = pool.basket.get_payment_period_in_days(lending_pool) * SECONDS_PER_DAY
                if now <= detail.late_timestamp + _DEFAULT_PERIODS * period:
                    continue
                if oracle_status is LoanStatus.ACTIVE:
                    detail.current_status = LoanStatus.ACTIVE
                    self._unlock_capital(state, pool.pool_id, lending_pool)
                elif oracle_status is LoanStatus.LATE:
                    detail.current_status = LoanStatus.DEFAULTED
                    logger.info("Loan %s defaulted in pool %s", lending_pool, pool.pool_id)
                continue

            if oracle_status is LoanStatus.LATE:
                if current in (LoanStatus.ACTIVE, LoanStatus.LATE_WITHIN_GRACE_PERIOD):
                    self._lock_capital(state, pool, lending_pool)
                detail.late_timestamp = now
                detail.current_status = LoanStatus.LATE
                logger.info("Loan %s is late in pool %s", lending_pool, pool.pool_id)
                continue

            if oracle_status is not current:
                logger.debug(
                    "Loan %s in pool %s: %s -> %s",
                    lending_pool, pool.pool_id, current.value, oracle_status.value,
                )
            detail.current_status = oracle_status

    def _lock_capital(self, state: PoolState, pool: ProtectionPool, lending_pool: str) -> None:
        instances = state.locked_capitals.setdefault(lending_pool, [])
        if any(instance.locked for instance in instances):
            raise LockedCapitalInvariantError(
                f"Pool {pool.pool_id} already has locked capital for {lending_pool}"
            )
        amount, snapshot_id = pool.lock_capital(self, lending_pool)
        instances.append(LockedCapital(snapshot_id=snapshot_id, amount=amount, locked=True))

    def _unlock_capital(self, state: PoolState, pool_id: str, lending_pool: str) -> None:
        instances = state.locked_capitals.get(lending_pool)
        if not instances or not instances[-1].locked:
            logger.debug("No locked capital to release for %s in pool %s", lending_pool, pool_id)
            return
        instances[-1] = replace(instances[-1], locked=False)
        logger.info(
            "Unlocked %s capital for %s in pool %s", instances[-1].amount, lending_pool, pool_id
        )

    # ========================================================================
    # CLAIMS
    # ========================================================================

    def calculate_claimable_unlocked_amount(self, pool_id: str, seller: str) -> Decimal:
        """Unlocked capital the seller could claim now; changes nothing."""
        pool = self._pools.get(pool_id)
        if pool is None:
            return ZERO
        total = ZERO
        state = self._pool_states[pool_id]
        for lending_pool, instances in state.locked_capitals.items():
            claimed = state.last_claimed_snapshot_ids.get(lending_pool, {}).get(seller, 0)
            amount, _ = self._claimable(pool, instances, seller, claimed)
            total += amount
        return total

    def calculate_and_claim_unlocked_capital(self, pool: ProtectionPool, seller: str) -> Decimal:
        """
        Mark the seller's unlocked capital as claimed and return its amount.

        Only the pool itself may call this; it pays out the returned amount.

        Raises:
            PoolNotRegistered: If the caller is not a registered pool.
        """
        if self._pools.get(getattr(pool, "pool_id", None)) is not pool:
            raise PoolNotRegistered("Caller is not a registered protection pool")
        total = ZERO
        state = self._pool_states[pool.pool_id]
        for lending_pool, instances in state.locked_capitals.items():
            claimed_ids = state.last_claimed_snapshot_ids.setdefault(lending_pool, {})
            amount, highest = self._claimable(pool, instances, seller, claimed_ids.get(seller, 0))
            if highest > claimed_ids.get(seller, 0):
                claimed_ids[seller] = highest
            total += amount
        if total > ZERO:
            logger.info("%s claimed %s unlocked capital in pool %s", seller, total, pool.pool_id)
        return total

    @staticmethod
    def _claimable(
        pool: ProtectionPool, instances: List[LockedCapital], seller: str, last_claimed: int
    ) -> Tuple[Decimal, int]:
        total = ZERO
        highest = last_claimed
        for instance in instances:
            if instance.locked or instance.snapshot_id <= last_claimed:
                continue
            highest = max(highest, instance.snapshot_id)
            supply = pool.share_token.total_supply_at(instance.snapshot_id)
            if supply == ZERO:
                continue
            balance = pool.share_token.balance_of_at(seller, instance.snapshot_id)
            total += to_fixed(balance * instance.amount / supply, ROUND_DOWN)
        return total, highest

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_lending_pool_status(self, pool_id: str, lending_pool: str) -> LoanStatus:
        state = self._pool_states.get(pool_id)
        if state is None:
            return LoanStatus.NOT_SUPPORTED
        detail = state.loan_status_details.get(lending_pool)
        return LoanStatus.NOT_SUPPORTED if detail is None else detail.current_status

    def get_late_timestamp(self, pool_id: str, lending_pool: str) -> Optional[int]:
        state = self._pool_states.get(pool_id)
        detail = None if state is None else state.loan_status_details.get(lending_pool)
        return None if detail is None else detail.late_timestamp

    def get_locked_capitals(self, pool_id: str, lending_pool: str) -> List[LockedCapital]:
        state = self._pool_states.get(pool_id)
        if state is None:
            return []
        return list(state.locked_capitals.get(lending_pool, ()))

    def get_pool_state_updated_timestamp(self, pool_id: str) -> int:
        state = self._pool_states.get(pool_id)
        return 0 if state is None else state.updated_timestamp
