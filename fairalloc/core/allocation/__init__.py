"""
fairalloc Allocation Module.

This module provides the per-tier allocation machinery:
- Round state and lifecycle
- Strategy dispatch (FCFS, lottery, whitelist, hybrid, time-weighted)
- Anti-sniping guards
- Lifecycle events

The engine itself lives in fairalloc.core.allocation.engine.
"""

from fairalloc.core.allocation.round import (
    AllocationConfig,
    AllocationResult,
    AllocationStrategy,
    DrawRecord,
    LotteryEntry,
    TierRound,
    TierState,
    derive_round_seed,
)

from fairalloc.core.allocation.strategies import (
    AllocationOutcome,
    allocate,
    required_draws,
)

from fairalloc.core.allocation.events import AllocationEvent, EventLog

__all__ = [
    # Round
    "AllocationConfig",
    "AllocationResult",
    "AllocationStrategy",
    "DrawRecord",
    "LotteryEntry",
    "TierRound",
    "TierState",
    "derive_round_seed",
    # Strategies
    "AllocationOutcome",
    "allocate",
    "required_draws",
    # Events
    "AllocationEvent",
    "EventLog",
]
