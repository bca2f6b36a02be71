"""
Core types and shared helpers for the credit protection engine.

This module provides the foundational pieces every other module builds on:
1. Decimal context and fixed-point helpers (18 fractional digits)
2. Enums: LoanStatus, PoolCycleState, PoolPhase
3. Exceptions: ProtectionPoolError hierarchy and the fatal InvariantViolation family
4. Protocols: Clock, LendingProtocolAdapter, ShareToken, UnderlyingToken
5. Immutable data structures: ProtectionPurchaseParams, LockedCapital, Move
6. ManualClock: logical time source that only moves forward
7. Atomicity: TransactionalState mixin and the atomic() context manager

Everything here is free of pool-specific state.
"""

from __future__ import annotations
import copy
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
from typing import (
    Any, Dict, Iterator, List, Protocol, Tuple, runtime_checkable
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All pool math runs on Decimal with 50 significant digits and banker's
# rounding. Results are stored with 18 fractional digits, the same scale the
# share token uses.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_PROTECTION_DECIMAL_CONTEXT = getcontext()
_PROTECTION_DECIMAL_CONTEXT.prec = 50
_PROTECTION_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

FIXED_DECIMALS = 18
FIXED_QUANTUM = Decimal(1).scaleb(-FIXED_DECIMALS)

SECONDS_PER_DAY = 86400
DAYS_PER_YEAR = Decimal("365.24")
SECONDS_PER_YEAR = Decimal(SECONDS_PER_DAY) * DAYS_PER_YEAR

# Grace period the loan basket allows before a missed payment counts as Late.
LATE_PAYMENT_GRACE_PERIOD_DAYS = 1

# Withdrawals requested in cycle N become executable in cycle N + 2.
WITHDRAWAL_CYCLE_OFFSET = 2

# Renewals only need to cover a single day.
MIN_RENEWAL_DURATION = SECONDS_PER_DAY

ZERO = Decimal("0")
ONE = Decimal("1")


# ============================================================================
# FIXED-POINT HELPERS
# ============================================================================

def to_decimal(value: Any, name: str = "value") -> Decimal:
    """
    Coerce an int, str or Decimal to a finite Decimal.

    Floats are rejected so binary rounding never leaks into pool math.

    Raises:
        ValidationError: If the value is a float, NaN, infinite or unparsable.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{name} must be Decimal, int or str, got {type(value).__name__}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(value)
    except (ArithmeticError, TypeError, ValueError) as exc:
        raise ValidationError(f"{name} is not a valid decimal: {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"{name} must be finite, got {result}")
    return result


def to_fixed(value: Decimal, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    """Quantize to 18 fractional digits."""
    return value.quantize(FIXED_QUANTUM, rounding=rounding)


def round_down_to(value: Decimal, decimals: int) -> Decimal:
    """Truncate toward zero at the given number of fractional digits."""
    return value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)


# ============================================================================
# ENUMS
# ============================================================================

class LoanStatus(Enum):
    """
    Repayment status of a referenced loan as tracked per protection pool.

    NOT_SUPPORTED: Loan is not in the pool's basket (or not yet assessed).
    ACTIVE: Loan is current on payments.
    LATE_WITHIN_GRACE_PERIOD: Payment is overdue but within the grace window.
    LATE: Payment is overdue past the grace window; pool capital is locked.
    DEFAULTED: Late for two payment periods; capital stays locked.
    EXPIRED: Loan reached its term end or was fully repaid.
    """
    NOT_SUPPORTED = "not_supported"
    ACTIVE = "active"
    LATE_WITHIN_GRACE_PERIOD = "late_within_grace_period"
    LATE = "late"
    DEFAULTED = "defaulted"
    EXPIRED = "expired"


class PoolCycleState(Enum):
    """Phase of a pool's current cycle; NONE means the pool is unregistered."""
    NONE = "none"
    OPEN = "open"
    LOCKED = "locked"


class PoolPhase(Enum):
    """
    Launch phase of a protection pool.

    OPEN_TO_SELLERS: Only deposits are accepted.
    OPEN_TO_BUYERS: Only protection purchases are accepted.
    OPEN: Both sides are open.
    """
    OPEN_TO_SELLERS = "open_to_sellers"
    OPEN_TO_BUYERS = "open_to_buyers"
    OPEN = "open"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class ProtectionPoolError(Exception):
    """Base exception for all rejected protection pool operations."""
    pass


class ValidationError(ProtectionPoolError, ValueError):
    """Raised when an argument or parameter is out of its allowed range."""
    pass


class AuthorizationError(ProtectionPoolError):
    """Raised when the caller is not allowed to perform the operation."""
    pass


class StateError(ProtectionPoolError):
    """Raised when the operation is not allowed in the current state."""
    pass


class InsufficientFunds(StateError):
    """Raised when a transfer or burn exceeds the wallet's token balance."""
    pass


class UnitNotRegistered(StateError):
    """Raised when a token symbol has not been registered with the token ledger."""
    pass


class NotOwner(AuthorizationError):
    """Raised when a non-owner calls an owner-only pool operation."""
    pass


class CallerNotDefaultStateManager(AuthorizationError):
    """Raised when capital locking is requested by anyone but the default state manager."""
    pass


class PoolNotRegistered(AuthorizationError):
    """Raised when an unregistered pool asks the default state manager to claim capital."""
    pass


class PoolAlreadyRegistered(StateError):
    """Raised when a pool is registered twice with the cycle or default state manager."""
    pass


class InvalidCycleDuration(ValidationError):
    """Raised when the open period of a cycle is longer than the cycle itself."""
    pass


class ReentrantCall(StateError):
    """Raised when a pool operation is entered while another one is in progress."""
    pass


class PoolPaused(StateError):
    """Raised when a mutating operation is called on a paused pool."""
    pass


class PoolNotPaused(StateError):
    """Raised when unpause is called on a pool that is not paused."""
    pass


class PoolInOpenToSellersPhase(StateError):
    """Raised when protection is bought before the pool opens to buyers."""
    pass


class PoolInOpenToBuyersPhase(StateError):
    """Raised when a deposit is made while the pool only accepts buyers."""
    pass


class PoolIsNotOpen(StateError):
    """Raised when a withdrawal is attempted outside the open period of a cycle."""
    pass


class PoolLeverageRatioTooLow(StateError):
    """Raised when a purchase would push the leverage ratio below the floor."""
    pass


class PoolLeverageRatioTooHigh(StateError):
    """Raised when a deposit would push the leverage ratio above the ceiling."""
    pass


class ProtectionDurationTooShort(ValidationError):
    """Raised when a protection is shorter than the minimum duration."""
    pass


class ProtectionDurationTooLong(ValidationError):
    """Raised when a protection would end after the next cycle's end."""
    pass


class PremiumExceedsMaxPremiumAmount(ValidationError):
    """Raised when the quoted premium is above the buyer's maximum."""
    pass


class ProtectionPurchaseNotAllowed(StateError):
    """Raised when the loan basket rejects a purchase for the buyer's position."""
    pass


class ProtectionAlreadyExistsForLendingPosition(StateError):
    """Raised when a buyer already holds active protection on the same position."""
    pass


class LendingPoolNotSupported(StateError):
    """Raised when protection is requested on a loan the pool does not cover."""
    pass


class LendingPoolHasLatePayment(StateError):
    """Raised when protection is requested on a loan with an overdue payment."""
    pass


class LendingPoolExpired(StateError):
    """Raised when protection is requested on an expired loan."""
    pass


class LendingPoolDefaulted(StateError):
    """Raised when protection is requested on a defaulted loan."""
    pass


class NoExpiredProtectionToRenew(StateError):
    """Raised when renewal is requested without a matching expired protection."""
    pass


class CanNotRenewProtectionAfterGracePeriod(StateError):
    """Raised when renewal is requested after the renewal grace period ended."""
    pass


class NoWithdrawalRequested(StateError):
    """Raised when a seller withdraws without a request for the current cycle."""
    pass


class WithdrawalHigherThanRequested(ValidationError):
    """Raised when a withdrawal exceeds the seller's request for the cycle."""
    pass


class InsufficientShareBalance(ValidationError):
    """Raised when a withdrawal request exceeds the seller's share balance."""
    pass


class LendingPoolAlreadyAdded(StateError):
    """Raised when a loan is added to a basket twice."""
    pass


class LendingPoolNotActive(StateError):
    """Raised when a loan that is not active is added to a basket."""
    pass


class LendingProtocolNotSupported(ValidationError):
    """Raised when no adapter is registered for a loan's protocol tag."""
    pass


class BatchAssessmentError(ProtectionPoolError):
    """
    Raised after a batch assessment when one or more pools failed.

    Pools that succeeded keep their new state. ``failures`` maps pool id to
    the exception that rolled that pool back.
    """

    def __init__(self, failures: Dict[str, ProtectionPoolError]):
        self.failures = dict(failures)
        names = ", ".join(sorted(self.failures))
        super().__init__(f"State assessment failed for pools: {names}")


class InvariantViolation(Exception):
    """
    Fatal modelling error. Not a ProtectionPoolError: callers must not treat
    it as an ordinary rejection.
    """
    pass


class RiskFactorDomainError(InvariantViolation):
    """Raised when risk factor inputs fall outside the formula's domain."""
    pass


class NegativeAccruedPremium(InvariantViolation):
    """Raised when the accrual curve yields a negative amount."""
    pass


class LockedCapitalInvariantError(InvariantViolation):
    """Raised when a second locked instance would exist for the same pool and loan."""
    pass


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class Clock(Protocol):
    """Source of logical time in integer seconds."""

    @property
    def now(self) -> int:
        ...


@runtime_checkable
class LendingProtocolAdapter(Protocol):
    """
    Read-only view of a lending protocol.

    One adapter serves every loan of its protocol. Loans are identified by an
    opaque string id; lender positions by (lender, position_id).
    """

    def is_lending_pool_expired(self, lending_pool: str) -> bool:
        ...

    def is_lending_pool_late(self, lending_pool: str) -> bool:
        ...

    def is_lending_pool_late_within_grace_period(
        self, lending_pool: str, grace_period_days: int
    ) -> bool:
        ...

    def get_lending_pool_term_end_timestamp(self, lending_pool: str) -> int:
        ...

    def calculate_protection_buyer_apr(self, lending_pool: str) -> Decimal:
        ...

    def calculate_remaining_principal(
        self, lending_pool: str, lender: str, position_id: int
    ) -> Decimal:
        ...

    def get_latest_payment_timestamp(self, lending_pool: str) -> int:
        ...

    def get_payment_period_in_days(self, lending_pool: str) -> int:
        ...


@runtime_checkable
class ShareToken(Protocol):
    """Fungible share token with balance snapshots."""

    def balance_of(self, holder: str) -> Decimal:
        ...

    def total_supply(self) -> Decimal:
        ...

    def mint(self, holder: str, amount: Decimal) -> None:
        ...

    def burn(self, holder: str, amount: Decimal) -> None:
        ...

    def snapshot(self) -> int:
        ...

    def balance_of_at(self, holder: str, snapshot_id: int) -> Decimal:
        ...

    def total_supply_at(self, snapshot_id: int) -> Decimal:
        ...


@runtime_checkable
class UnderlyingToken(Protocol):
    """Asset the pool holds in custody."""

    @property
    def decimals(self) -> int:
        ...

    def balance_of(self, holder: str) -> Decimal:
        ...

    def transfer(self, source: str, dest: str, amount: Decimal) -> None:
        ...


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class ProtectionPurchaseParams:
    """
    What a buyer asks to protect.

    Attributes:
        lending_pool: Id of the referenced loan.
        position_id: Lender's position in the loan (e.g. an LP token id).
        protection_amount: Notional covered, in underlying units.
        protection_duration: Length of coverage in seconds.
    """
    lending_pool: str
    position_id: int
    protection_amount: Decimal
    protection_duration: int

    def __post_init__(self):
        if not self.lending_pool or not self.lending_pool.strip():
            raise ValidationError("lending_pool cannot be empty")
        if self.position_id < 0:
            raise ValidationError(f"position_id must be non-negative, got {self.position_id}")
        amount = to_decimal(self.protection_amount, "protection_amount")
        if amount <= 0:
            raise ValidationError(f"protection_amount must be positive, got {amount}")
        object.__setattr__(self, 'protection_amount', amount)
        if int(self.protection_duration) != self.protection_duration or self.protection_duration <= 0:
            raise ValidationError(
                f"protection_duration must be a positive whole number of seconds, "
                f"got {self.protection_duration}"
            )
        object.__setattr__(self, 'protection_duration', int(self.protection_duration))


@dataclass(frozen=True, slots=True)
class LockedCapital:
    """
    Capital set aside for one late loan.

    Attributes:
        snapshot_id: Share token snapshot taken when the capital was locked.
        amount: Underlying locked.
        locked: False once the loan recovered and the capital became claimable.
    """
    snapshot_id: int
    amount: Decimal
    locked: bool


@dataclass(frozen=True, slots=True)
class Move:
    """
    A single token transfer, mint or burn recorded by the token ledger.

    Mints use MINT_WALLET as the source and burns use it as the dest.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    memo: str = ""

    def __post_init__(self):
        if not self.source or not self.dest:
            raise ValueError("Move source and dest cannot be empty")
        if not self.unit_symbol:
            raise ValueError("Move unit_symbol cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


# ============================================================================
# LOGICAL CLOCK
# ============================================================================

class ManualClock:
    """
    Clock driven explicitly by the caller.

    Time only moves forward, mirroring how a block timestamp behaves.
    """

    def __init__(self, start: int = 0):
        if start < 0:
            raise ValueError(f"start must be non-negative, got {start}")
        self._now = int(start)

    @property
    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("Cannot move time backwards")
        self._now += int(seconds)
        return self._now

    def advance_days(self, days: int) -> int:
        return self.advance(days * SECONDS_PER_DAY)

    def set_time(self, timestamp: int) -> int:
        if timestamp < self._now:
            raise ValueError(
                f"Cannot move time backwards: {timestamp} < {self._now}"
            )
        self._now = int(timestamp)
        return self._now


# ============================================================================
# ATOMICITY
# ============================================================================

class TransactionalState:
    """
    Mixin for components whose mutable state can be checkpointed.

    Subclasses list the attribute names holding their mutable state in
    ``_state_fields``. Collaborator references are never listed.

    The default checkpoint deep-copies every listed field. Components with
    append-only history override checkpoint and restore to record lengths
    and truncate back instead.
    """

    _state_fields: Tuple[str, ...] = ()

    def checkpoint(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._state_fields}

    def restore(self, saved: Dict[str, Any]) -> None:
        for name, value in saved.items():
            setattr(self, name, value)


@contextmanager
def atomic(*participants: TransactionalState) -> Iterator[None]:
    """
    Run a block as a single all-or-nothing step.

    Every participant is checkpointed on entry. If any exception escapes the
    block all participants are restored in reverse order and the exception
    propagates unchanged.

    Example:
        >>> with atomic(capital, protections, tokens):
        ...     capital.deposit(...)
    """
    seen: List[int] = []
    saved: List[Tuple[TransactionalState, Dict[str, Any]]] = []
    for participant in participants:
        if id(participant) in seen:
            continue
        seen.append(id(participant))
        saved.append((participant, participant.checkpoint()))
    try:
        yield
    except BaseException:
        for participant, state in reversed(saved):
            participant.restore(state)
        raise


class ReentrancyGuard:
    """Rejects nested entry into the same component."""

    def __init__(self, name: str):
        self.name = name
        self._entered = False

    @property
    def entered(self) -> bool:
        return self._entered

    @contextmanager
    def enter(self) -> Iterator[None]:
        if self._entered:
            raise ReentrantCall(f"Reentrant call into {self.name}")
        self._entered = True
        try:
            yield
        finally:
            self._entered = False
