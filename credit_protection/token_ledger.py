"""
token_ledger.py - Token Balances with Snapshots

The TokenLedger holds balances of every fungible token a protection pool
touches: the underlying asset held in custody and the pool's share token.

Key responsibilities:
    - Registers token units with their decimal precision
    - Applies mints, burns and transfers as Moves, rejecting overdrafts
    - Keeps an audit trail of every applied Move
    - Takes numbered balance snapshots per token (ids start at 1)
    - Checkpoints and restores its state for atomic pool operations

PoolShareToken and UnderlyingAsset are thin per-symbol views that satisfy the
ShareToken and UnderlyingToken protocols.
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Set
import logging

from .core import (
    Move, TransactionalState, ZERO,
    InsufficientFunds, StateError, UnitNotRegistered, ValidationError,
    to_decimal,
)

logger = logging.getLogger("CreditProtection.TokenLedger")

# Reserved wallet used as the counterparty of mints and burns.
MINT_WALLET = "mint"


@dataclass(frozen=True, slots=True)
class TokenUnit:
    """
    A fungible token definition.

    Attributes:
        symbol: Unique ticker (e.g. "USDC", "sToken-pool-1").
        name: Human-readable name.
        decimals: Fractional digits kept on balances; amounts are truncated.
    """
    symbol: str
    name: str
    decimals: int

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("TokenUnit symbol cannot be empty")
        if not 0 <= self.decimals <= 18:
            raise ValueError(f"decimals must be between 0 and 18, got {self.decimals}")

    def round(self, quantity: Decimal) -> Decimal:
        return quantity.quantize(Decimal(1).scaleb(-self.decimals), rounding=ROUND_DOWN)


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    """Balances and supply of one token at a point in time."""
    snapshot_id: int
    balances: Dict[str, Decimal]
    total_supply: Decimal


class TokenLedger(TransactionalState):
    """
    Double-entry token ledger.

    Wallets come into existence on first use. The mint wallet is exempt from
    balance checks so it may go negative by the amount in circulation.

    Example:
        ledger = TokenLedger("pool-1")
        ledger.register_unit(TokenUnit("USDC", "USD Coin", 6))
        ledger.mint("USDC", "alice", Decimal("1000"))
        ledger.transfer("USDC", "alice", "pool-1", Decimal("250"))
    """

    def __init__(self, name: str, test_mode: bool = False):
        """
        Create a token ledger.

        Args:
            name: Ledger identifier
            test_mode: Allow set_balance() calls (default: False)
        """
        self.name = name
        self.units: Dict[str, TokenUnit] = {}
        self.balances: Dict[str, Dict[str, Decimal]] = defaultdict(dict)
        self.transaction_log: List[Move] = []
        self._snapshots: Dict[str, List[BalanceSnapshot]] = defaultdict(list)
        self._test_mode = test_mode

    # ========================================================================
    # READ-ONLY
    # ========================================================================

    def get_unit(self, symbol: str) -> TokenUnit:
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Balance of a unit in a wallet; zero for wallets never used."""
        self.get_unit(unit_symbol)
        return self.balances.get(unit_symbol, {}).get(wallet_id, ZERO)

    def get_positions(self, unit_symbol: str) -> Dict[str, Decimal]:
        """Non-zero holdings of a unit, excluding the mint wallet."""
        self.get_unit(unit_symbol)
        return {
            wallet: qty
            for wallet, qty in self.balances.get(unit_symbol, {}).items()
            if wallet != MINT_WALLET and qty != ZERO
        }

    def list_wallets(self) -> Set[str]:
        wallets: Set[str] = set()
        for holdings in self.balances.values():
            wallets.update(holdings)
        wallets.discard(MINT_WALLET)
        return wallets

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Sum of all holdings of a unit.

        Wallets are summed in sorted order so accumulation is deterministic.
        """
        positions = self.get_positions(unit_symbol)
        return sum((positions[w] for w in sorted(positions)), ZERO)

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register_unit(self, unit: TokenUnit) -> None:
        """
        Register a token.

        Raises:
            ValueError: If the symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        logger.debug("Registered token %s (%s, %d decimals)", unit.symbol, unit.name, unit.decimals)

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Overwrite a balance directly. Test mode only.

        Raises:
            StateError: If called when test_mode is False
        """
        if not self._test_mode:
            raise StateError(
                "set_balance() is disabled in production mode. "
                "Use mint(), burn() or transfer() to modify balances."
            )
        unit = self.get_unit(unit_symbol)
        self.balances[unit_symbol][wallet_id] = unit.round(to_decimal(quantity, "quantity"))

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def mint(self, unit_symbol: str, wallet_id: str, quantity: Decimal, memo: str = "mint") -> Decimal:
        return self._move(unit_symbol, MINT_WALLET, wallet_id, quantity, memo)

    def burn(self, unit_symbol: str, wallet_id: str, quantity: Decimal, memo: str = "burn") -> Decimal:
        return self._move(unit_symbol, wallet_id, MINT_WALLET, quantity, memo)

    def transfer(
        self, unit_symbol: str, source: str, dest: str, quantity: Decimal, memo: str = "transfer"
    ) -> Decimal:
        """
        Move tokens between wallets.

        Returns:
            The quantity actually moved after truncation to the unit's decimals.

        Raises:
            InsufficientFunds: If the source balance is too small.
            ValidationError: If the quantity is negative.
        """
        if source == dest:
            raise ValidationError("Source and dest must be different")
        return self._move(unit_symbol, source, dest, quantity, memo)

    def _move(self, unit_symbol: str, source: str, dest: str, quantity: Decimal, memo: str) -> Decimal:
        unit = self.get_unit(unit_symbol)
        quantity = to_decimal(quantity, "quantity")
        if quantity < ZERO:
            raise ValidationError(f"Token quantity must be non-negative, got {quantity}")
        rounded = unit.round(quantity)
        # Dust below the unit's precision moves nothing.
        if rounded == ZERO:
            return ZERO
        return self._apply(Move(rounded, unit_symbol, source, dest, memo))

    def _apply(self, move: Move) -> Decimal:
        holdings = self.balances[move.unit_symbol]
        if move.source != MINT_WALLET:
            available = holdings.get(move.source, ZERO)
            if available < move.quantity:
                raise InsufficientFunds(
                    f"{move.source} holds {available} {move.unit_symbol}, needs {move.quantity}"
                )
        holdings[move.source] = holdings.get(move.source, ZERO) - move.quantity
        holdings[move.dest] = holdings.get(move.dest, ZERO) + move.quantity
        self.transaction_log.append(move)
        logger.debug("Applied %r (%s)", move, move.memo)
        return move.quantity

    # ========================================================================
    # SNAPSHOTS
    # ========================================================================

    def snapshot(self, unit_symbol: str) -> int:
        """
        Record current balances of a unit.

        Returns:
            The new snapshot id. Ids start at 1 and increase by one per token.
        """
        snapshots = self._snapshots[unit_symbol]
        snapshot_id = len(snapshots) + 1
        snapshots.append(BalanceSnapshot(
            snapshot_id=snapshot_id,
            balances=self.get_positions(unit_symbol),
            total_supply=self.total_supply(unit_symbol),
        ))
        logger.debug("Snapshot %d of %s", snapshot_id, unit_symbol)
        return snapshot_id

    def current_snapshot_id(self, unit_symbol: str) -> int:
        return len(self._snapshots.get(unit_symbol, []))

    def _get_snapshot(self, unit_symbol: str, snapshot_id: int) -> BalanceSnapshot:
        snapshots = self._snapshots.get(unit_symbol, [])
        if snapshot_id < 1 or snapshot_id > len(snapshots):
            raise ValidationError(f"Snapshot {snapshot_id} of {unit_symbol} does not exist")
        return snapshots[snapshot_id - 1]

    def balance_of_at(self, unit_symbol: str, wallet_id: str, snapshot_id: int) -> Decimal:
        return self._get_snapshot(unit_symbol, snapshot_id).balances.get(wallet_id, ZERO)

    def total_supply_at(self, unit_symbol: str, snapshot_id: int) -> Decimal:
        return self._get_snapshot(unit_symbol, snapshot_id).total_supply

    # ========================================================================
    # CHECKPOINTS
    # ========================================================================

    def checkpoint(self) -> Dict[str, Any]:
        """
        Copy the balance maps and record how long the history is.

        The move log and snapshot lists only ever grow, so a checkpoint keeps
        their lengths rather than their contents.
        """
        return {
            'balances': {
                symbol: dict(holdings) for symbol, holdings in self.balances.items()
            },
            'log_length': len(self.transaction_log),
            'snapshot_counts': {
                symbol: len(snapshots) for symbol, snapshots in self._snapshots.items()
            },
        }

    def restore(self, saved: Dict[str, Any]) -> None:
        """Put balances back and drop every move and snapshot added since."""
        self.balances = defaultdict(dict, {
            symbol: dict(holdings) for symbol, holdings in saved['balances'].items()
        })
        del self.transaction_log[saved['log_length']:]
        counts = saved['snapshot_counts']
        for symbol in list(self._snapshots):
            if symbol in counts:
                del self._snapshots[symbol][counts[symbol]:]
            else:
                del self._snapshots[symbol]


class PoolShareToken:
    """ShareToken view over one symbol of a TokenLedger."""

    def __init__(self, ledger: TokenLedger, symbol: str):
        self.ledger = ledger
        self.symbol = symbol

    @property
    def decimals(self) -> int:
        return self.ledger.get_unit(self.symbol).decimals

    def balance_of(self, holder: str) -> Decimal:
        return self.ledger.get_balance(holder, self.symbol)

    def total_supply(self) -> Decimal:
        return self.ledger.total_supply(self.symbol)

    def mint(self, holder: str, amount: Decimal) -> None:
        self.ledger.mint(self.symbol, holder, amount)

    def burn(self, holder: str, amount: Decimal) -> None:
        self.ledger.burn(self.symbol, holder, amount)

    def snapshot(self) -> int:
        return self.ledger.snapshot(self.symbol)

    def balance_of_at(self, holder: str, snapshot_id: int) -> Decimal:
        return self.ledger.balance_of_at(self.symbol, holder, snapshot_id)

    def total_supply_at(self, snapshot_id: int) -> Decimal:
        return self.ledger.total_supply_at(self.symbol, snapshot_id)


class UnderlyingAsset:
    """UnderlyingToken view over one symbol of a TokenLedger."""

    def __init__(self, ledger: TokenLedger, symbol: str):
        self.ledger = ledger
        self.symbol = symbol

    @property
    def decimals(self) -> int:
        return self.ledger.get_unit(self.symbol).decimals

    def balance_of(self, holder: str) -> Decimal:
        return self.ledger.get_balance(holder, self.symbol)

    def transfer(self, source: str, dest: str, amount: Decimal) -> None:
        self.ledger.transfer(self.symbol, source, dest, amount)
