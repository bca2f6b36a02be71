"""
test_transactions.py - Unit tests for atomicity, reentrancy and core helpers

Tests:
- atomic() restores every participant when the block raises
- atomic() keeps changes when the block succeeds
- Shared participants are checkpointed once
- ReentrancyGuard rejects nested entry and resets after errors
- ManualClock only moves forward
- Decimal coercion and fixed-point rounding
"""

import pytest
from decimal import Decimal, ROUND_DOWN

from credit_protection import (
    TransactionalState,
    ReentrancyGuard,
    ManualClock,
    ReentrantCall,
    ValidationError,
    atomic,
    to_decimal,
    to_fixed,
    round_down_to,
)


class Counter(TransactionalState):
    _state_fields = ('values',)

    def __init__(self):
        self.values = {"count": 0}
        self.checkpoints = 0

    def checkpoint(self):
        self.checkpoints += 1
        return super().checkpoint()


class TestAtomic:
    """Tests for the atomic() context manager."""

    def test_commit_on_success(self):
        counter = Counter()
        with atomic(counter):
            counter.values["count"] = 5
        assert counter.values == {"count": 5}

    def test_rollback_on_error(self):
        first, second = Counter(), Counter()
        with pytest.raises(RuntimeError, match="boom"):
            with atomic(first, second):
                first.values["count"] = 1
                second.values["count"] = 2
                raise RuntimeError("boom")
        assert first.values == {"count": 0}
        assert second.values == {"count": 0}

    def test_nested_mutation_rolled_back(self):
        """The checkpoint is a deep copy."""
        counter = Counter()
        counter.values["nested"] = [1]
        with pytest.raises(ValueError):
            with atomic(counter):
                counter.values["nested"].append(2)
                raise ValueError("rejected")
        assert counter.values["nested"] == [1]

    def test_participant_listed_twice(self):
        counter = Counter()
        with atomic(counter, counter):
            pass
        assert counter.checkpoints == 1

    def test_nested_atomic_inner_failure(self):
        """An inner failure caught by the caller keeps the outer block's work."""
        counter = Counter()
        with atomic(counter):
            counter.values["count"] = 1
            with pytest.raises(KeyError):
                with atomic(counter):
                    counter.values["count"] = 2
                    raise KeyError("inner")
        assert counter.values == {"count": 1}


class TestReentrancyGuard:
    """Tests for ReentrancyGuard."""

    def test_nested_entry_rejected(self):
        guard = ReentrancyGuard("pool-1")
        with guard.enter():
            assert guard.entered
            with pytest.raises(ReentrantCall, match="pool-1"):
                with guard.enter():
                    pass
        assert not guard.entered

    def test_released_after_error(self):
        guard = ReentrancyGuard("pool-1")
        with pytest.raises(RuntimeError):
            with guard.enter():
                raise RuntimeError("failed")
        with guard.enter():
            assert guard.entered


class TestManualClock:
    """Tests for ManualClock."""

    def test_advance(self):
        clock = ManualClock(start=100)
        assert clock.advance(5) == 105
        assert clock.advance_days(1) == 105 + 86400

    def test_cannot_go_backwards(self):
        clock = ManualClock(start=100)
        with pytest.raises(ValueError, match="backwards"):
            clock.advance(-1)
        with pytest.raises(ValueError, match="backwards"):
            clock.set_time(99)

    def test_set_time(self):
        clock = ManualClock()
        clock.set_time(42)
        assert clock.now == 42


class TestDecimalHelpers:
    """Tests for to_decimal, to_fixed and round_down_to."""

    def test_accepts_int_and_str(self):
        assert to_decimal(3) == Decimal("3")
        assert to_decimal("0.1") == Decimal("0.1")

    def test_rejects_float_and_bool(self):
        with pytest.raises(ValidationError, match="float"):
            to_decimal(0.1, "rate")
        with pytest.raises(ValidationError, match="bool"):
            to_decimal(True, "rate")

    def test_rejects_non_finite(self):
        with pytest.raises(ValidationError, match="finite"):
            to_decimal("NaN")
        with pytest.raises(ValidationError, match="not a valid decimal"):
            to_decimal("ten")

    def test_fixed_point_rounding(self):
        assert to_fixed(Decimal(1) / Decimal(3)) == Decimal("0.333333333333333333")
        assert to_fixed(Decimal(2) / Decimal(3)) == Decimal("0.666666666666666667")
        assert to_fixed(Decimal(2) / Decimal(3), ROUND_DOWN) == Decimal("0.666666666666666666")

    def test_round_down_to(self):
        assert round_down_to(Decimal("1.2345679"), 6) == Decimal("1.234567")
        assert round_down_to(Decimal("-1.2345679"), 6) == Decimal("-1.234567")
