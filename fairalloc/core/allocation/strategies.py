"""
Allocation strategies - turning entries plus randomness into winners.

Strategies form a closed set dispatched in allocate():
- FIRST_COME_FIRST_SERVED: earliest registrations win, no randomness
- LOTTERY: uniform sampling without replacement, one output per draw
- WHITELIST: allowlisted entries win, capped, no fallback
- HYBRID_WHITELIST_LOTTERY: whitelist first, lottery for remaining slots
- TIME_WEIGHTED: weighted sampling without replacement, earlier = heavier

All ordering is total and deterministic: (registered_at_sequence,
participant_id) for ties, randomness consumed strictly in supplied order.
Anyone holding the entries and outputs can replay the selection.
"""

from bisect import bisect_right
from dataclasses import dataclass, field
from itertools import accumulate
from typing import List, Optional, Sequence, Tuple

from fairalloc.core.allocation.round import (
    AllocationConfig,
    AllocationResult,
    AllocationStrategy,
    DrawRecord,
    LotteryEntry,
)
from fairalloc.core.errors import InsufficientRandomness
from fairalloc.core.vrf import RandomnessOutput, compute_selection_index
from fairalloc.utils.logger import get_logger

logger = get_logger("allocation.strategies")


# =============================================================================
# Outcome
# =============================================================================


@dataclass
class AllocationOutcome:
    """Results plus the draw trace used for fairness scoring."""
    results: List[AllocationResult]
    draws: List[DrawRecord] = field(default_factory=list)

    @property
    def winners(self) -> List[AllocationResult]:
        return sorted((r for r in self.results if r.is_winner), key=lambda r: r.rank)

    @property
    def consumed(self) -> int:
        return len(self.draws)


# (entry, proof_reference) in selection order
Selection = List[Tuple[LotteryEntry, Optional[int]]]


# =============================================================================
# Helpers
# =============================================================================


def fcfs_order(entries: Sequence[LotteryEntry]) -> List[LotteryEntry]:
    """Registration order with participant id as tie-break."""
    return sorted(entries, key=lambda e: (e.registered_at_sequence, e.participant_id))


def time_weight(entry: LotteryEntry, config: AllocationConfig) -> int:
    """Strictly decreasing in registration sequence, always >= 1."""
    return max(1, config.finalization_sequence - entry.registered_at_sequence + 1)


def split_whitelist(
    entries: Sequence[LotteryEntry],
    whitelist: frozenset,
) -> Tuple[List[LotteryEntry], List[LotteryEntry]]:
    """(whitelisted, others), both in registration order."""
    ordered = fcfs_order(entries)
    listed = [e for e in ordered if e.participant_id in whitelist]
    others = [e for e in ordered if e.participant_id not in whitelist]
    return listed, others


def _lottery_draws(slots: int, pool_size: int) -> int:
    """Draws needed to fill `slots` from `pool_size` (0 if everyone fits)."""
    if slots <= 0 or pool_size <= slots:
        return 0
    return slots


def required_draws(config: AllocationConfig, entries: Sequence[LotteryEntry]) -> int:
    """Number of independent randomness outputs the strategy will consume."""
    strategy = config.strategy
    k = config.total_allocations

    if strategy in (AllocationStrategy.FIRST_COME_FIRST_SERVED, AllocationStrategy.WHITELIST):
        return 0
    if strategy in (AllocationStrategy.LOTTERY, AllocationStrategy.TIME_WEIGHTED):
        return _lottery_draws(k, len(entries))
    if strategy == AllocationStrategy.HYBRID_WHITELIST_LOTTERY:
        listed, others = split_whitelist(entries, config.whitelist)
        remaining = k - min(k, len(listed))
        return _lottery_draws(remaining, len(others))
    raise ValueError(f"Unsupported strategy: {strategy!r}")


# =============================================================================
# Selection Primitives
# =============================================================================


def draw_uniform(
    pool: Sequence[LotteryEntry],
    slots: int,
    randomness: Sequence[RandomnessOutput],
    offset: int = 0,
) -> Tuple[Selection, List[DrawRecord]]:
    """
    Uniform sampling without replacement.

    Draw i uses randomness[offset + i] over the entries not yet selected.
    """
    remaining = list(pool)
    selection: Selection = []
    draws: List[DrawRecord] = []

    for i in range(slots):
        output = randomness[offset + i]
        span = len(remaining)
        index = compute_selection_index(output.value, span)
        chosen = remaining.pop(index)
        selection.append((chosen, output.proof.nonce))
        draws.append(DrawRecord(
            nonce=output.proof.nonce,
            target=index,
            span=span,
            participant_id=chosen.participant_id,
        ))

    return selection, draws


def draw_weighted(
    pool: Sequence[LotteryEntry],
    weights: Sequence[int],
    slots: int,
    randomness: Sequence[RandomnessOutput],
    offset: int = 0,
) -> Tuple[Selection, List[DrawRecord]]:
    """
    Weighted sampling without replacement via cumulative-weight search.

    target = value mod total_weight; the chosen entry is the first whose
    cumulative weight exceeds target.
    """
    remaining = list(zip(pool, weights))
    selection: Selection = []
    draws: List[DrawRecord] = []

    for i in range(slots):
        output = randomness[offset + i]
        cumulative = list(accumulate(w for _, w in remaining))
        total = cumulative[-1]
        target = output.value % total
        index = bisect_right(cumulative, target)
        chosen, _ = remaining.pop(index)
        selection.append((chosen, output.proof.nonce))
        draws.append(DrawRecord(
            nonce=output.proof.nonce,
            target=target,
            span=total,
            participant_id=chosen.participant_id,
        ))

    return selection, draws


# =============================================================================
# Strategies
# =============================================================================


def allocate_first_come_first_served(entries, randomness, config) -> Tuple[Selection, List[DrawRecord]]:
    ordered = fcfs_order(entries)
    return [(e, None) for e in ordered[:config.total_allocations]], []


def allocate_lottery(entries, randomness, config) -> Tuple[Selection, List[DrawRecord]]:
    ordered = fcfs_order(entries)
    k = config.total_allocations
    if _lottery_draws(k, len(ordered)) == 0:
        return [(e, None) for e in ordered[:k]], []
    return draw_uniform(ordered, k, randomness)


def allocate_whitelist(entries, randomness, config) -> Tuple[Selection, List[DrawRecord]]:
    listed, _ = split_whitelist(entries, config.whitelist)
    return [(e, None) for e in listed[:config.total_allocations]], []


def allocate_hybrid(entries, randomness, config) -> Tuple[Selection, List[DrawRecord]]:
    listed, others = split_whitelist(entries, config.whitelist)
    k = config.total_allocations
    selection: Selection = [(e, None) for e in listed[:k]]
    remaining = k - len(selection)

    if _lottery_draws(remaining, len(others)) == 0:
        selection.extend((e, None) for e in others[:remaining])
        return selection, []

    drawn, draws = draw_uniform(others, remaining, randomness)
    selection.extend(drawn)
    return selection, draws


def allocate_time_weighted(entries, randomness, config) -> Tuple[Selection, List[DrawRecord]]:
    ordered = fcfs_order(entries)
    k = config.total_allocations
    if _lottery_draws(k, len(ordered)) == 0:
        return [(e, None) for e in ordered[:k]], []
    weights = [time_weight(e, config) for e in ordered]
    return draw_weighted(ordered, weights, k, randomness)


# =============================================================================
# Dispatch
# =============================================================================


def build_results(
    tier_id: int,
    entries: Sequence[LotteryEntry],
    selection: Selection,
) -> List[AllocationResult]:
    """Winners ranked 1..k in selection order, then everyone else (rank 0)."""
    results = [
        AllocationResult(
            tier_id=tier_id,
            participant_id=entry.participant_id,
            rank=rank,
            proof_reference=ref,
            is_winner=True,
        )
        for rank, (entry, ref) in enumerate(selection, start=1)
    ]
    selected = {entry.participant_id for entry, _ in selection}
    for entry in fcfs_order(entries):
        if entry.participant_id not in selected:
            results.append(AllocationResult(
                tier_id=tier_id,
                participant_id=entry.participant_id,
                rank=0,
                proof_reference=None,
                is_winner=False,
            ))
    return results


def allocate(
    entries: Sequence[LotteryEntry],
    randomness: Sequence[RandomnessOutput],
    config: AllocationConfig,
) -> AllocationOutcome:
    """
    Run the configured strategy over the eligible entries.

    Args:
        entries: Eligible entries (order irrelevant)
        randomness: Outputs consumed in order, one per draw
        config: Tier configuration

    Returns:
        AllocationOutcome with one result per entry

    Raises:
        InsufficientRandomness: Fewer outputs than required draws
    """
    needed = required_draws(config, entries)
    if len(randomness) < needed:
        raise InsufficientRandomness(
            f"Strategy {config.strategy.name} needs {needed} outputs, got {len(randomness)}",
            required=needed,
            supplied=len(randomness),
            tier_id=config.tier_id,
        )

    strategy = config.strategy
    if strategy == AllocationStrategy.FIRST_COME_FIRST_SERVED:
        selection, draws = allocate_first_come_first_served(entries, randomness, config)
    elif strategy == AllocationStrategy.LOTTERY:
        selection, draws = allocate_lottery(entries, randomness, config)
    elif strategy == AllocationStrategy.WHITELIST:
        selection, draws = allocate_whitelist(entries, randomness, config)
    elif strategy == AllocationStrategy.HYBRID_WHITELIST_LOTTERY:
        selection, draws = allocate_hybrid(entries, randomness, config)
    elif strategy == AllocationStrategy.TIME_WEIGHTED:
        selection, draws = allocate_time_weighted(entries, randomness, config)
    else:
        raise ValueError(f"Unsupported strategy: {strategy!r}")

    results = build_results(config.tier_id, entries, selection)
    logger.debug(f"Tier {config.tier_id}: {strategy.name} selected {len(selection)} of "
                 f"{len(entries)} entries using {len(draws)} draws")
    return AllocationOutcome(results=results, draws=draws)


__all__ = [
    "AllocationOutcome",
    "allocate",
    "required_draws",
    "fcfs_order",
    "time_weight",
    "split_whitelist",
    "draw_uniform",
    "draw_weighted",
    "build_results",
]
