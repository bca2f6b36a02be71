"""
cycle_manager.py - Pool Cycle Scheduling

Each protection pool runs in consecutive cycles. A cycle starts OPEN (sellers
may withdraw) and turns LOCKED once its open period has elapsed. After the
full cycle duration a new cycle starts at the moment the transition is
observed, so cycle start times drift with the polling cadence.

Transitions are lazy: nothing happens until calculate_and_set_pool_cycle_state
is called.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from typing import Dict, Optional

from .config import PoolCycleParams
from .core import (
    Clock, InvalidCycleDuration, PoolAlreadyRegistered, PoolCycleState,
    TransactionalState,
)

logger = logging.getLogger("CreditProtection.CycleManager")


@dataclass(frozen=True, slots=True)
class PoolCycle:
    """Current cycle of one pool."""
    params: PoolCycleParams
    current_cycle_index: int
    current_cycle_start_time: int
    current_cycle_state: PoolCycleState


class PoolCycleManager(TransactionalState):
    """
    Tracks cycles for every registered pool.

    Example:
        >>> manager = PoolCycleManager(clock)
        >>> manager.register_pool("pool-1", PoolCycleParams(864000, 2592000))
        >>> manager.calculate_and_set_pool_cycle_state("pool-1")
        <PoolCycleState.OPEN: 'open'>
    """

    _state_fields = ('_cycles',)

    def __init__(self, clock: Clock):
        self.clock = clock
        self._cycles: Dict[str, PoolCycle] = {}

    def register_pool(self, pool_id: str, params: PoolCycleParams) -> PoolCycle:
        """
        Start cycle 0 for a pool, OPEN from now.

        Raises:
            PoolAlreadyRegistered: If the pool already has a cycle.
            InvalidCycleDuration: If the open period exceeds the cycle.
        """
        if pool_id in self._cycles:
            raise PoolAlreadyRegistered(f"Pool {pool_id} already has a cycle")
        if params.open_cycle_duration > params.cycle_duration:
            raise InvalidCycleDuration(
                f"open_cycle_duration ({params.open_cycle_duration}) exceeds "
                f"cycle_duration ({params.cycle_duration})"
            )
        cycle = PoolCycle(
            params=params,
            current_cycle_index=0,
            current_cycle_start_time=self.clock.now,
            current_cycle_state=PoolCycleState.OPEN,
        )
        self._cycles[pool_id] = cycle
        logger.info("Registered pool %s: cycle 0 open at %s", pool_id, cycle.current_cycle_start_time)
        return cycle

    def is_registered(self, pool_id: str) -> bool:
        return pool_id in self._cycles

    def calculate_and_set_pool_cycle_state(self, pool_id: str) -> PoolCycleState:
        """
        Bring the pool's cycle up to date with the clock.

        OPEN turns LOCKED once now - start > open_cycle_duration; LOCKED
        starts a new OPEN cycle once now - start > cycle_duration. Calling
        again at the same time leaves the state unchanged. Unregistered pools
        report NONE.
        """
        cycle = self._cycles.get(pool_id)
        if cycle is None:
            return PoolCycleState.NONE

        now = self.clock.now
        while True:
            elapsed = now - cycle.current_cycle_start_time
            if (cycle.current_cycle_state is PoolCycleState.OPEN
                    and elapsed > cycle.params.open_cycle_duration):
                cycle = replace(cycle, current_cycle_state=PoolCycleState.LOCKED)
                logger.info("Pool %s cycle %d locked", pool_id, cycle.current_cycle_index)
            elif (cycle.current_cycle_state is PoolCycleState.LOCKED
                    and elapsed > cycle.params.cycle_duration):
                cycle = replace(
                    cycle,
                    current_cycle_index=cycle.current_cycle_index + 1,
                    current_cycle_start_time=now,
                    current_cycle_state=PoolCycleState.OPEN,
                )
                logger.info("Pool %s cycle %d opened at %s", pool_id, cycle.current_cycle_index, now)
            else:
                break

        self._cycles[pool_id] = cycle
        return cycle.current_cycle_state

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_current_pool_cycle(self, pool_id: str) -> Optional[PoolCycle]:
        return self._cycles.get(pool_id)

    def get_current_cycle_state(self, pool_id: str) -> PoolCycleState:
        cycle = self._cycles.get(pool_id)
        return PoolCycleState.NONE if cycle is None else cycle.current_cycle_state

    def get_current_cycle_index(self, pool_id: str) -> int:
        cycle = self._cycles.get(pool_id)
        return 0 if cycle is None else cycle.current_cycle_index

    def get_next_cycle_end_timestamp(self, pool_id: str) -> int:
        """End of the cycle after the current one; 0 for unregistered pools."""
        cycle = self._cycles.get(pool_id)
        if cycle is None:
            return 0
        return cycle.current_cycle_start_time + 2 * cycle.params.cycle_duration
