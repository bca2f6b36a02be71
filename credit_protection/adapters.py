"""
adapters.py - Lending Protocol Adapters

A lending protocol adapter answers repayment questions about the loans of one
protocol (is the loan late, what is the buyer's APR, how much principal does a
lender still have at risk). The engine only depends on the
LendingProtocolAdapter protocol from core.py.

Provides:
- StaticLendingAdapter: in-memory lending protocol whose loans, payments and
  lender positions are driven explicitly. Used for simulation and tests.
- AdapterRegistry: maps a protocol tag (e.g. "goldfinch") to its adapter.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, Optional, Tuple

from .core import (
    Clock, LendingProtocolAdapter, SECONDS_PER_DAY, ZERO,
    LendingProtocolNotSupported, ValidationError, to_decimal,
)

logger = logging.getLogger("CreditProtection.Adapters")


# Type alias: (lender, position_id) -> principal
PositionBook = Dict[Tuple[str, int], Decimal]


@dataclass(frozen=True, slots=True)
class LoanRecord:
    """
    One loan as seen by StaticLendingAdapter.

    Attributes:
        apr: Interest rate the lenders (protection buyers) earn.
        payment_period_days: Days between scheduled payments.
        term_end_timestamp: Loan maturity.
        last_payment_timestamp: Time of the latest full payment.
        fully_repaid: Set once the borrower repaid everything.
        positions: Principal outstanding per (lender, position_id).
    """
    apr: Decimal
    payment_period_days: int
    term_end_timestamp: int
    last_payment_timestamp: int
    fully_repaid: bool = False
    positions: PositionBook = field(default_factory=dict)


class StaticLendingAdapter:
    """
    Lending protocol simulation driven by explicit calls.

    A loan is late once more than one payment period has elapsed since its
    last payment, and late within the grace period while the overdue time is
    no longer than the grace period. It is expired at maturity or once fully
    repaid.

    Example:
        adapter = StaticLendingAdapter(clock)
        adapter.add_loan("loan-1", apr=Decimal("0.17"), payment_period_days=30,
                         term_end_timestamp=clock.now + 365 * 86400)
        adapter.set_position("loan-1", "alice", 1, Decimal("100000"))
        adapter.make_payment("loan-1")
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._loans: Dict[str, LoanRecord] = {}

    def _loan(self, lending_pool: str) -> LoanRecord:
        try:
            return self._loans[lending_pool]
        except KeyError:
            raise ValidationError(f"Unknown lending pool {lending_pool}") from None

    # ========================================================================
    # SIMULATION CONTROLS
    # ========================================================================

    def add_loan(
        self,
        lending_pool: str,
        apr: Decimal,
        payment_period_days: int,
        term_end_timestamp: int,
        last_payment_timestamp: Optional[int] = None,
    ) -> LoanRecord:
        if lending_pool in self._loans:
            raise ValueError(f"Loan {lending_pool} already exists")
        if payment_period_days <= 0:
            raise ValidationError(f"payment_period_days must be positive, got {payment_period_days}")
        record = LoanRecord(
            apr=to_decimal(apr, "apr"),
            payment_period_days=payment_period_days,
            term_end_timestamp=term_end_timestamp,
            last_payment_timestamp=self.clock.now if last_payment_timestamp is None else last_payment_timestamp,
        )
        self._loans[lending_pool] = record
        return record

    def set_position(self, lending_pool: str, lender: str, position_id: int, principal: Decimal) -> None:
        loan = self._loan(lending_pool)
        positions = dict(loan.positions)
        positions[(lender, position_id)] = to_decimal(principal, "principal")
        self._loans[lending_pool] = replace(loan, positions=positions)

    def make_payment(self, lending_pool: str, timestamp: Optional[int] = None) -> None:
        """Record a full scheduled payment (defaults to now)."""
        loan = self._loan(lending_pool)
        paid_at = self.clock.now if timestamp is None else timestamp
        self._loans[lending_pool] = replace(loan, last_payment_timestamp=paid_at)
        logger.debug("Payment on %s at %s", lending_pool, paid_at)

    def repay_principal(self, lending_pool: str, lender: str, position_id: int, amount: Decimal) -> None:
        loan = self._loan(lending_pool)
        key = (lender, position_id)
        outstanding = loan.positions.get(key, ZERO)
        positions = dict(loan.positions)
        positions[key] = max(ZERO, outstanding - to_decimal(amount, "amount"))
        self._loans[lending_pool] = replace(loan, positions=positions)

    def repay_in_full(self, lending_pool: str) -> None:
        loan = self._loan(lending_pool)
        self._loans[lending_pool] = replace(
            loan,
            fully_repaid=True,
            positions={key: ZERO for key in loan.positions},
            last_payment_timestamp=self.clock.now,
        )

    # ========================================================================
    # LendingProtocolAdapter
    # ========================================================================

    def is_lending_pool_expired(self, lending_pool: str) -> bool:
        loan = self._loan(lending_pool)
        return loan.fully_repaid or self.clock.now >= loan.term_end_timestamp

    def is_lending_pool_late(self, lending_pool: str) -> bool:
        loan = self._loan(lending_pool)
        next_due = loan.last_payment_timestamp + loan.payment_period_days * SECONDS_PER_DAY
        return self.clock.now > next_due

    def is_lending_pool_late_within_grace_period(
        self, lending_pool: str, grace_period_days: int
    ) -> bool:
        loan = self._loan(lending_pool)
        grace_end = (
            loan.last_payment_timestamp
            + (loan.payment_period_days + grace_period_days) * SECONDS_PER_DAY
        )
        return self.is_lending_pool_late(lending_pool) and self.clock.now <= grace_end

    def get_lending_pool_term_end_timestamp(self, lending_pool: str) -> int:
        return self._loan(lending_pool).term_end_timestamp

    def calculate_protection_buyer_apr(self, lending_pool: str) -> Decimal:
        return self._loan(lending_pool).apr

    def calculate_remaining_principal(
        self, lending_pool: str, lender: str, position_id: int
    ) -> Decimal:
        """Principal still owed on the lender's position; zero if the lender does not own it."""
        return self._loan(lending_pool).positions.get((lender, position_id), ZERO)

    def get_latest_payment_timestamp(self, lending_pool: str) -> int:
        return self._loan(lending_pool).last_payment_timestamp

    def get_payment_period_in_days(self, lending_pool: str) -> int:
        return self._loan(lending_pool).payment_period_days


class AdapterRegistry:
    """Lending protocol adapters keyed by protocol tag."""

    def __init__(self):
        self._adapters: Dict[str, LendingProtocolAdapter] = {}

    def register(self, protocol: str, adapter: LendingProtocolAdapter) -> None:
        """
        Raises:
            ValueError: If the tag is taken.
            ValidationError: If the adapter does not implement the protocol.
        """
        if not protocol:
            raise ValidationError("Protocol tag cannot be empty")
        if protocol in self._adapters:
            raise ValueError(f"Adapter for {protocol} already registered")
        if not isinstance(adapter, LendingProtocolAdapter):
            raise ValidationError(f"{type(adapter).__name__} is not a LendingProtocolAdapter")
        self._adapters[protocol] = adapter
        logger.info("Registered lending adapter for %s", protocol)

    def get(self, protocol: str) -> LendingProtocolAdapter:
        try:
            return self._adapters[protocol]
        except KeyError:
            raise LendingProtocolNotSupported(f"No adapter registered for {protocol}") from None

    def __contains__(self, protocol: str) -> bool:
        return protocol in self._adapters
