"""
protection_ledger.py - Protection Purchases, Renewals and Premium Accrual

Buyers pay a premium up front for protection on a lending position. The
premium is earned by sellers along the accrual curve captured at purchase
(K, lambda), and only as the referenced loan keeps paying: accrual runs up to
the loan's latest payment, never past the protection's expiry.

ARCHITECTURE:
=============

1. FROZEN RECORDS:
   - Protection: immutable purchase record; only ``expired`` ever flips,
     by replacing the record at the same id.

2. MUTABLE INDEXES (checkpointed with the ledger):
   - LendingPoolDetail: per-loan totals and active protection ids
   - BuyerAccount: per-buyer premium, active ids and renewable protections

3. OPERATIONS:
   - buy_protection / renew_protection
   - accrue_premium_and_expire_protections
   - calculate_locked_amount (for the default state manager)
"""

from __future__ import annotations
import copy
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .accrued_premium import calculate_accrued_premium, calculate_k_and_lambda
from .core import (
    Clock, LoanStatus, PoolPhase, ProtectionPurchaseParams, TransactionalState,
    UnderlyingToken, MIN_RENEWAL_DURATION, SECONDS_PER_DAY, ZERO,
    CanNotRenewProtectionAfterGracePeriod, LendingPoolDefaulted, LendingPoolExpired,
    LendingPoolHasLatePayment, LendingPoolNotSupported, NoExpiredProtectionToRenew,
    PoolInOpenToSellersPhase, PoolLeverageRatioTooLow, PremiumExceedsMaxPremiumAmount,
    ProtectionAlreadyExistsForLendingPosition, ProtectionDurationTooLong,
    ProtectionDurationTooShort, ProtectionPurchaseNotAllowed,
    ValidationError, round_down_to, to_decimal,
)
from .cycle_manager import PoolCycleManager
from .lending_pools import ReferenceLendingPools
from .pool_state import PoolInfo, PoolTotals
from .premium import PremiumQuote, calculate_premium

logger = logging.getLogger("CreditProtection.ProtectionLedger")

# Position key: (lending_pool, position_id)
PositionKey = Tuple[str, int]

_STATUS_ERRORS = {
    LoanStatus.NOT_SUPPORTED: LendingPoolNotSupported,
    LoanStatus.LATE_WITHIN_GRACE_PERIOD: LendingPoolHasLatePayment,
    LoanStatus.LATE: LendingPoolHasLatePayment,
    LoanStatus.EXPIRED: LendingPoolExpired,
    LoanStatus.DEFAULTED: LendingPoolDefaulted,
}


@dataclass(frozen=True, slots=True)
class Protection:
    """
    One purchased protection.

    Attributes:
        buyer: Wallet that paid the premium.
        premium: Premium paid, in underlying units.
        start_timestamp: When coverage began.
        k: Accrual curve scale.
        lam: Accrual curve daily rate.
        expired: True once the protection has been expired by accrual.
        purchase_params: What was protected.
    """
    buyer: str
    premium: Decimal
    start_timestamp: int
    k: Decimal
    lam: Decimal
    expired: bool
    purchase_params: ProtectionPurchaseParams

    @property
    def expiration_timestamp(self) -> int:
        return self.start_timestamp + self.purchase_params.protection_duration


@dataclass(slots=True)
class LendingPoolDetail:
    """Per-loan protection totals."""
    last_premium_accrual_timestamp: int = 0
    total_premium: Decimal = ZERO
    total_protection: Decimal = ZERO
    active_protection_ids: Set[int] = field(default_factory=set)


@dataclass(slots=True)
class BuyerAccount:
    """Per-buyer protection bookkeeping."""
    premium_by_lending_pool: Dict[str, Decimal] = field(default_factory=dict)
    active_protection_ids: Set[int] = field(default_factory=set)
    expired_protection_by_position: Dict[PositionKey, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AccrualResult:
    """Outcome of one accrue_premium_and_expire_protections call."""
    total_premium_accrued: Decimal
    total_protection_removed: Decimal
    expired_protection_ids: Tuple[int, ...]


class ProtectionLedger(TransactionalState):
    """
    Protections bought from one pool.

    The ledger does not check pause state or re-entrancy; ProtectionPool
    wraps every call.
    """

    def __init__(
        self,
        info: PoolInfo,
        totals: PoolTotals,
        clock: Clock,
        basket: ReferenceLendingPools,
        cycle_manager: PoolCycleManager,
        underlying: UnderlyingToken,
        loan_status: Callable[[str], LoanStatus],
    ):
        """
        Args:
            loan_status: Tracked status of a loan for this pool, as held by
                the default state manager.
        """
        self.info = info
        self.totals = totals
        self.clock = clock
        self.basket = basket
        self.cycle_manager = cycle_manager
        self.underlying = underlying
        self.loan_status = loan_status
        self.protections: List[Protection] = []
        self.lending_pool_details: Dict[str, LendingPoolDetail] = {}
        self.buyer_accounts: Dict[str, BuyerAccount] = {}

    def checkpoint(self) -> Dict[str, Any]:
        # Protection records are frozen; only the list itself is copied.
        return {
            'protections': list(self.protections),
            'lending_pool_details': copy.deepcopy(self.lending_pool_details),
            'buyer_accounts': copy.deepcopy(self.buyer_accounts),
        }

    # ========================================================================
    # PURCHASE
    # ========================================================================

    def buy_protection(
        self, buyer: str, params: ProtectionPurchaseParams, max_premium: Decimal
    ) -> int:
        """
        Create a new protection and collect its premium.

        Returns:
            Id of the new protection.

        Raises:
            PoolInOpenToSellersPhase, ProtectionDurationTooShort,
            ProtectionDurationTooLong, LendingPoolNotSupported,
            LendingPoolHasLatePayment, LendingPoolExpired, LendingPoolDefaulted,
            ProtectionPurchaseNotAllowed, ProtectionAlreadyExistsForLendingPosition,
            PoolLeverageRatioTooLow, PremiumExceedsMaxPremiumAmount.
        """
        return self._verify_and_create_protection(buyer, params, max_premium, is_renewal=False)

    def renew_protection(
        self, buyer: str, params: ProtectionPurchaseParams, max_premium: Decimal
    ) -> int:
        """
        Renew an expired protection on the same position.

        Renewal skips the purchase window and needs to cover only one day.

        Raises:
            NoExpiredProtectionToRenew: If the buyer has no expired protection
                on the position.
            CanNotRenewProtectionAfterGracePeriod: If the renewal window closed.
            Plus everything buy_protection raises.
        """
        account = self.buyer_accounts.get(buyer)
        key = (params.lending_pool, params.position_id)
        protection_id = None if account is None else account.expired_protection_by_position.get(key)
        if protection_id is None:
            raise NoExpiredProtectionToRenew(
                f"{buyer} has no expired protection on {params.lending_pool}/{params.position_id}"
            )
        expired = self.protections[protection_id]
        expired_params = expired.purchase_params
        if (expired_params.lending_pool != params.lending_pool
                or expired_params.position_id != params.position_id):
            raise ProtectionPurchaseNotAllowed(f"Renewal does not match protection {protection_id}")
        grace_end = expired.expiration_timestamp + self.info.params.protection_renewal_grace_period
        if self.clock.now > grace_end:
            raise CanNotRenewProtectionAfterGracePeriod(
                f"Renewal window for protection {protection_id} closed at {grace_end}"
            )

        new_id = self._verify_and_create_protection(buyer, params, max_premium, is_renewal=True)
        del self.buyer_accounts[buyer].expired_protection_by_position[key]
        return new_id

    def _verify_and_create_protection(
        self,
        buyer: str,
        params: ProtectionPurchaseParams,
        max_premium: Decimal,
        is_renewal: bool,
    ) -> int:
        pool_params = self.info.params
        now = self.clock.now
        loan = params.lending_pool
        max_premium = to_decimal(max_premium, "max_premium")

        if self.info.phase is PoolPhase.OPEN_TO_SELLERS:
            raise PoolInOpenToSellersPhase(f"Pool {self.info.pool_id} is open to sellers only")

        min_duration = MIN_RENEWAL_DURATION if is_renewal else pool_params.min_protection_duration
        if params.protection_duration < min_duration:
            raise ProtectionDurationTooShort(
                f"Protection duration {params.protection_duration}s is below {min_duration}s"
            )
        next_cycle_end = self.cycle_manager.get_next_cycle_end_timestamp(self.info.pool_id)
        if now + params.protection_duration > next_cycle_end:
            raise ProtectionDurationTooLong(
                f"Protection would end at {now + params.protection_duration}, "
                f"after the next cycle ends at {next_cycle_end}"
            )

        status = self.loan_status(loan)
        if status in _STATUS_ERRORS:
            raise _STATUS_ERRORS[status](f"Lending pool {loan} is {status.value}")

        if not self.basket.can_buy_protection(buyer, params, is_renewal):
            raise ProtectionPurchaseNotAllowed(
                f"{buyer} may not buy {params.protection_amount} of protection on "
                f"{loan}/{params.position_id}"
            )
        if self._has_active_protection(buyer, loan, params.position_id):
            raise ProtectionAlreadyExistsForLendingPosition(
                f"{buyer} already holds active protection on {loan}/{params.position_id}"
            )

        detail = self.lending_pool_details.setdefault(loan, LendingPoolDetail())
        detail.total_protection += params.protection_amount
        self.totals.total_protection += params.protection_amount

        leverage_ratio = self.totals.leverage_ratio()
        if leverage_ratio < pool_params.leverage_ratio_floor:
            raise PoolLeverageRatioTooLow(
                f"Leverage ratio {leverage_ratio} is below floor {pool_params.leverage_ratio_floor}"
            )

        quote = self._quote(params, leverage_ratio)
        premium = round_down_to(quote.premium, self.info.underlying_decimals)
        if premium > max_premium:
            raise PremiumExceedsMaxPremiumAmount(f"Premium {premium} exceeds maximum {max_premium}")

        k, lam = calculate_k_and_lambda(
            premium,
            Decimal(params.protection_duration) / Decimal(SECONDS_PER_DAY),
            leverage_ratio,
            pool_params.leverage_ratio_floor,
            pool_params.leverage_ratio_ceiling,
            pool_params.leverage_ratio_buffer,
            pool_params.curvature,
            pool_params.min_premium_percent if quote.is_min_premium else ZERO,
        )

        self.totals.total_premium += premium
        detail.total_premium += premium
        account = self.buyer_accounts.setdefault(buyer, BuyerAccount())
        account.premium_by_lending_pool[loan] = account.premium_by_lending_pool.get(loan, ZERO) + premium

        protection_id = len(self.protections)
        self.protections.append(Protection(
            buyer=buyer,
            premium=premium,
            start_timestamp=now,
            k=k,
            lam=lam,
            expired=False,
            purchase_params=params,
        ))
        detail.active_protection_ids.add(protection_id)
        account.active_protection_ids.add(protection_id)

        self.underlying.transfer(buyer, self.info.pool_id, premium)
        logger.info(
            "%s %s protection %d: %s on %s/%s for %ss, premium %s%s",
            buyer, "renewed" if is_renewal else "bought", protection_id,
            params.protection_amount, loan, params.position_id,
            params.protection_duration, premium,
            " (min premium)" if quote.is_min_premium else "",
        )
        return protection_id

    def _has_active_protection(self, buyer: str, lending_pool: str, position_id: int) -> bool:
        account = self.buyer_accounts.get(buyer)
        if account is None:
            return False
        for protection_id in account.active_protection_ids:
            purchase = self.protections[protection_id].purchase_params
            if purchase.lending_pool == lending_pool and purchase.position_id == position_id:
                return True
        return False

    def _quote(self, params: ProtectionPurchaseParams, leverage_ratio: Decimal) -> PremiumQuote:
        return calculate_premium(
            params.protection_duration,
            params.protection_amount,
            self.basket.calculate_protection_buyer_apr(params.lending_pool),
            leverage_ratio,
            self.totals.total_capital,
            self.info.params,
        )

    # ========================================================================
    # ACCRUAL AND EXPIRY
    # ========================================================================

    def accrue_premium_and_expire_protections(
        self, lending_pools: Sequence[str] = ()
    ) -> AccrualResult:
        """
        Earn premium up to each loan's latest payment and expire protections.

        Args:
            lending_pools: Loans to process; every basket loan when empty.

        Returns:
            AccrualResult with the premium accrued, the protection notional
            removed and the ids that expired.
        """
        if not lending_pools:
            lending_pools = self.basket.get_lending_pools()

        total_accrued = ZERO
        total_removed = ZERO
        expired_ids: List[int] = []
        for loan in lending_pools:
            detail = self.lending_pool_details.get(loan)
            if detail is None:
                continue
            last_accrual = detail.last_premium_accrual_timestamp
            latest_payment = self.basket.get_latest_payment_timestamp(loan)

            accrued_for_loan = ZERO
            for protection_id in sorted(detail.active_protection_ids):
                protection = self.protections[protection_id]
                accrued, expired = self._accrue_protection(protection, last_accrual, latest_payment)
                accrued_for_loan += accrued
                if expired:
                    total_removed += self._expire_protection(protection_id)
                    expired_ids.append(protection_id)

            if accrued_for_loan > ZERO:
                detail.last_premium_accrual_timestamp = latest_payment
                logger.info("Accrued %s premium on %s up to %s", accrued_for_loan, loan, latest_payment)
            total_accrued += accrued_for_loan

        if total_accrued > ZERO:
            self.totals.total_premium_accrued += total_accrued
            self.totals.total_capital += total_accrued

        return AccrualResult(
            total_premium_accrued=total_accrued,
            total_protection_removed=total_removed,
            expired_protection_ids=tuple(expired_ids),
        )

    def _accrue_protection(
        self, protection: Protection, last_accrual: int, latest_payment: int
    ) -> Tuple[Decimal, bool]:
        now = self.clock.now
        start = protection.start_timestamp
        expiration = protection.expiration_timestamp
        # No payment since the protection started, or it has not started yet.
        # Such a protection is neither accrued nor expired.
        if latest_payment < start or start > now:
            return ZERO, False

        expired = now > expiration

        from_second = max(0, last_accrual - start)
        to_second = min(latest_payment, expiration) - start
        if to_second <= from_second:
            return ZERO, expired
        accrued = calculate_accrued_premium(from_second, to_second, protection.k, protection.lam)
        return accrued, expired

    def _expire_protection(self, protection_id: int) -> Decimal:
        protection = self.protections[protection_id]
        purchase = protection.purchase_params
        self.protections[protection_id] = replace(protection, expired=True)

        detail = self.lending_pool_details[purchase.lending_pool]
        detail.active_protection_ids.discard(protection_id)
        detail.total_protection -= purchase.protection_amount
        self.totals.total_protection -= purchase.protection_amount

        account = self.buyer_accounts[protection.buyer]
        account.active_protection_ids.discard(protection_id)
        account.expired_protection_by_position[(purchase.lending_pool, purchase.position_id)] = protection_id

        logger.info("Protection %d on %s expired", protection_id, purchase.lending_pool)
        return purchase.protection_amount

    # ========================================================================
    # LOCKING SUPPORT
    # ========================================================================

    def calculate_locked_amount(self, lending_pool: str) -> Decimal:
        """Sum over active protections of min(protection amount, remaining principal)."""
        detail = self.lending_pool_details.get(lending_pool)
        if detail is None:
            return ZERO
        locked = ZERO
        for protection_id in sorted(detail.active_protection_ids):
            protection = self.protections[protection_id]
            purchase = protection.purchase_params
            remaining = self.basket.calculate_remaining_principal(
                lending_pool, protection.buyer, purchase.position_id
            )
            locked += min(purchase.protection_amount, remaining)
        return locked

    # ========================================================================
    # QUERIES
    # ========================================================================

    def calculate_protection_premium(self, params: ProtectionPurchaseParams) -> PremiumQuote:
        """Quote a purchase as if it were added to the pool now. No state changes."""
        total_protection = self.totals.total_protection + params.protection_amount
        leverage_ratio = round_down_to(self.totals.total_capital / total_protection, 18)
        quote = self._quote(params, leverage_ratio)
        return replace(quote, premium=round_down_to(quote.premium, self.info.underlying_decimals))

    def get_all_protections(self) -> List[Protection]:
        return list(self.protections)

    def get_protection(self, protection_id: int) -> Protection:
        if not 0 <= protection_id < len(self.protections):
            raise ValidationError(f"Unknown protection id {protection_id}")
        return self.protections[protection_id]

    def get_active_protections(self, buyer: str) -> List[Protection]:
        account = self.buyer_accounts.get(buyer)
        if account is None:
            return []
        return [self.protections[i] for i in sorted(account.active_protection_ids)]

    def get_total_premium_paid_for_lending_pool(self, buyer: str, lending_pool: str) -> Decimal:
        account = self.buyer_accounts.get(buyer)
        if account is None:
            return ZERO
        return account.premium_by_lending_pool.get(lending_pool, ZERO)

    def get_lending_pool_detail(self, lending_pool: str) -> Optional[LendingPoolDetail]:
        return self.lending_pool_details.get(lending_pool)

    def get_expired_protection_id(self, buyer: str, lending_pool: str, position_id: int) -> Optional[int]:
        account = self.buyer_accounts.get(buyer)
        if account is None:
            return None
        return account.expired_protection_by_position.get((lending_pool, position_id))
