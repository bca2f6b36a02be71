"""
lending_pools.py - Reference Lending Pool Basket

The basket is the set of loans a protection pool is willing to cover. Each
loan is served by the adapter registered for its protocol tag. The basket
decides whether a buyer may purchase protection on a position and reports the
oracle status of every loan it holds.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from .adapters import AdapterRegistry
from .core import (
    Clock, LendingProtocolAdapter, LoanStatus, ProtectionPurchaseParams,
    LATE_PAYMENT_GRACE_PERIOD_DAYS, SECONDS_PER_DAY,
    LendingPoolAlreadyAdded, LendingPoolNotActive, LendingPoolNotSupported,
    NotOwner, ValidationError,
)

logger = logging.getLogger("CreditProtection.LendingPools")


@dataclass(frozen=True, slots=True)
class ReferenceLendingPoolInfo:
    """
    Basket entry for one loan.

    Attributes:
        protocol: Tag of the adapter serving the loan.
        added_timestamp: When the loan joined the basket.
        protection_purchase_limit_timestamp: New (non-renewal) purchases are
            accepted until this time.
    """
    protocol: str
    added_timestamp: int
    protection_purchase_limit_timestamp: int


class ReferenceLendingPools:
    """
    Owner-managed basket of covered loans.

    Example:
        basket = ReferenceLendingPools(clock, registry, owner="admin")
        basket.add_reference_lending_pool("admin", "loan-1", "static", 90)
        basket.assess_state()
    """

    def __init__(
        self,
        clock: Clock,
        registry: AdapterRegistry,
        owner: str,
        lending_pools: Sequence[Tuple[str, str, int]] = (),
    ):
        """
        Args:
            clock: Time source.
            registry: Adapters by protocol tag.
            owner: Only this caller may add loans.
            lending_pools: Initial (loan, protocol, purchase limit days) entries.
        """
        self.clock = clock
        self.registry = registry
        self.owner = owner
        self._pools: Dict[str, ReferenceLendingPoolInfo] = {}
        self._order: List[str] = []
        for lending_pool, protocol, limit_days in lending_pools:
            self.add_reference_lending_pool(owner, lending_pool, protocol, limit_days)

    # ========================================================================
    # BASKET MANAGEMENT
    # ========================================================================

    def add_reference_lending_pool(
        self,
        caller: str,
        lending_pool: str,
        protocol: str,
        protection_purchase_limit_days: int,
    ) -> ReferenceLendingPoolInfo:
        """
        Add a loan to the basket.

        Raises:
            NotOwner: If the caller is not the basket owner.
            ValidationError: If the loan id is empty.
            LendingPoolAlreadyAdded: If the loan is already in the basket.
            LendingProtocolNotSupported: If no adapter serves the protocol.
            LendingPoolNotActive: If the loan is expired or late.
        """
        if caller != self.owner:
            raise NotOwner(f"{caller} is not the owner of the lending pool basket")
        if not lending_pool or not lending_pool.strip():
            raise ValidationError("Reference lending pool id cannot be empty")
        if protection_purchase_limit_days < 0:
            raise ValidationError(
                f"protection_purchase_limit_days must be non-negative, got {protection_purchase_limit_days}"
            )
        if lending_pool in self._pools:
            raise LendingPoolAlreadyAdded(f"Lending pool {lending_pool} already added")

        adapter = self.registry.get(protocol)
        status = self._status_from_adapter(adapter, lending_pool)
        if status is not LoanStatus.ACTIVE:
            raise LendingPoolNotActive(f"Lending pool {lending_pool} is {status.value}")

        now = self.clock.now
        info = ReferenceLendingPoolInfo(
            protocol=protocol,
            added_timestamp=now,
            protection_purchase_limit_timestamp=now + protection_purchase_limit_days * SECONDS_PER_DAY,
        )
        self._pools[lending_pool] = info
        self._order.append(lending_pool)
        logger.info(
            "Added lending pool %s (%s), purchases open until %s",
            lending_pool, protocol, info.protection_purchase_limit_timestamp,
        )
        return info

    def get_lending_pools(self) -> List[str]:
        return list(self._order)

    def get_reference_lending_pool_info(self, lending_pool: str) -> Optional[ReferenceLendingPoolInfo]:
        return self._pools.get(lending_pool)

    def is_supported(self, lending_pool: str) -> bool:
        return lending_pool in self._pools

    # ========================================================================
    # STATUS
    # ========================================================================

    @staticmethod
    def _status_from_adapter(adapter: LendingProtocolAdapter, lending_pool: str) -> LoanStatus:
        if adapter.is_lending_pool_expired(lending_pool):
            return LoanStatus.EXPIRED
        if adapter.is_lending_pool_late_within_grace_period(lending_pool, LATE_PAYMENT_GRACE_PERIOD_DAYS):
            return LoanStatus.LATE_WITHIN_GRACE_PERIOD
        if adapter.is_lending_pool_late(lending_pool):
            return LoanStatus.LATE
        return LoanStatus.ACTIVE

    def get_lending_pool_status(self, lending_pool: str) -> LoanStatus:
        """Oracle status of a loan; NOT_SUPPORTED when it is not in the basket."""
        if lending_pool not in self._pools:
            return LoanStatus.NOT_SUPPORTED
        return self._status_from_adapter(self._adapter(lending_pool), lending_pool)

    def assess_state(self) -> Tuple[List[str], List[LoanStatus]]:
        """Current oracle status of every loan, in basket order."""
        lending_pools = self.get_lending_pools()
        statuses = [self.get_lending_pool_status(lp) for lp in lending_pools]
        return lending_pools, statuses

    # ========================================================================
    # PURCHASE CHECKS AND ADAPTER PASS-THROUGHS
    # ========================================================================

    def _adapter(self, lending_pool: str) -> LendingProtocolAdapter:
        info = self._pools.get(lending_pool)
        if info is None:
            raise LendingPoolNotSupported(f"Lending pool {lending_pool} is not in the basket")
        return self.registry.get(info.protocol)

    def can_buy_protection(
        self,
        buyer: str,
        params: ProtectionPurchaseParams,
        is_renewal: bool,
    ) -> bool:
        """
        Whether the buyer may protect the requested position.

        New purchases must fall inside the loan's purchase window; renewals
        are exempt. In both cases the amount may not exceed the buyer's
        remaining principal on the position.

        Raises:
            LendingPoolNotSupported: If the loan is not in the basket.
        """
        info = self._pools.get(params.lending_pool)
        if info is None:
            raise LendingPoolNotSupported(f"Lending pool {params.lending_pool} is not in the basket")
        if not is_renewal and self.clock.now > info.protection_purchase_limit_timestamp:
            return False
        remaining = self.calculate_remaining_principal(params.lending_pool, buyer, params.position_id)
        return params.protection_amount <= remaining

    def calculate_protection_buyer_apr(self, lending_pool: str) -> Decimal:
        return self._adapter(lending_pool).calculate_protection_buyer_apr(lending_pool)

    def calculate_remaining_principal(self, lending_pool: str, lender: str, position_id: int) -> Decimal:
        return self._adapter(lending_pool).calculate_remaining_principal(lending_pool, lender, position_id)

    def get_latest_payment_timestamp(self, lending_pool: str) -> int:
        return self._adapter(lending_pool).get_latest_payment_timestamp(lending_pool)

    def get_payment_period_in_days(self, lending_pool: str) -> int:
        return self._adapter(lending_pool).get_payment_period_in_days(lending_pool)

    def get_lending_pool_term_end_timestamp(self, lending_pool: str) -> int:
        return self._adapter(lending_pool).get_lending_pool_term_end_timestamp(lending_pool)
