"""
conftest.py - Shared pytest fixtures for protection pool tests

Provides common fixtures used across unit, functional and conformance tests:
- A freshly built world (see tests/builders.py) and one fixture per part of it
- A registered protection pool at each launch stage
"""

import pytest
from decimal import Decimal

from tests.builders import OWNER, build_world, purchase


@pytest.fixture
def world():
    """Registered pool with funded participants, loans and managers."""
    return build_world()


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def clock(world):
    return world.clock


@pytest.fixture
def tokens(world):
    """Token ledger with USDC; alice, dave, erin hold 1M and bob, carol 100k."""
    return world.tokens


@pytest.fixture
def adapter(world):
    """
    Payment-driven adapter with two loans:

    - loan-1: 17% APR, monthly payments; bob position 1 (300k), carol position 2 (50k)
    - loan-2: 10% APR, monthly payments; bob position 3 (200k)
    """
    return world.adapter


@pytest.fixture
def fake_adapter(world):
    """Scripted adapter with loan-f; bob position 7 and carol position 8 (100k each)."""
    return world.fake_adapter


@pytest.fixture
def registry(world):
    return world.registry


@pytest.fixture
def basket(world):
    """Basket holding loan-1, loan-2 and loan-f, each purchasable for 90 days."""
    return world.basket


@pytest.fixture
def cycle_manager(world):
    return world.cycle_manager


@pytest.fixture
def dsm(world):
    return world.dsm


# =============================================================================
# POOLS
# =============================================================================

@pytest.fixture
def pool(world):
    """Registered pool in the OPEN_TO_SELLERS phase with no capital."""
    return world.pool


@pytest.fixture
def funded_pool(pool):
    """Pool with 100k from alice, moved to OPEN_TO_BUYERS."""
    pool.deposit("alice", Decimal("100000"))
    pool.move_pool_phase(OWNER)
    return pool


@pytest.fixture
def open_pool(funded_pool):
    """Funded pool where bob protected 100k of loan-1 for 40 days, moved to OPEN."""
    funded_pool.buy_protection("bob", purchase(), Decimal("10000"))
    funded_pool.move_pool_phase(OWNER)
    return funded_pool
