"""
Tests for allocation strategies.

Tests cover:
1. FCFS ordering and tie-breaks
2. Lottery sampling without replacement
3. Whitelist capping (no fallback)
4. Hybrid whitelist + lottery
5. Time-weighted sampling
6. Required draw counts and insufficient randomness
"""

import pytest

from fairalloc.crypto import sha256, u64
from fairalloc.core.allocation.round import (
    AllocationConfig,
    AllocationStrategy,
    LotteryEntry,
)
from fairalloc.core.allocation.strategies import (
    allocate,
    required_draws,
    fcfs_order,
    time_weight,
)
from fairalloc.core.errors import InsufficientRandomness
from fairalloc.core.vrf import RandomnessOutput, VRFProof, generate_batch_randomness


# =============================================================================
# Helpers
# =============================================================================


def make_config(strategy, k, whitelist=(), finalization=100):
    return AllocationConfig(
        tier_id=1,
        strategy=strategy,
        total_allocations=k,
        finalization_sequence=finalization,
        reveal_start_sequence=50,
        reveal_end_sequence=80,
        max_entries_per_participant=1,
        minimum_lock_period=0,
        rate_limit_window=0,
        whitelist=frozenset(whitelist),
    )


def make_entries(*specs):
    """specs: (participant_id, registered_at_sequence)"""
    return [LotteryEntry(participant_id=pid, tier_id=1, registered_at_sequence=seq) for pid, seq in specs]


def fixed_outputs(*values):
    """Outputs with chosen values; nonce i for the i-th value."""
    outputs = []
    for i, value in enumerate(values):
        proof = VRFProof(
            output=sha256(u64(i)),
            proof_bytes=u64(i) + bytes(32),
            ledger_sequence=100,
            input_hash=bytes(32),
        )
        outputs.append(RandomnessOutput(value=value, proof=proof))
    return outputs


def winners(outcome):
    return [r.participant_id for r in outcome.winners]


@pytest.fixture
def abc():
    return make_entries(("C", 30), ("A", 10), ("B", 20))


# =============================================================================
# FCFS
# =============================================================================


class TestFirstComeFirstServed:
    """Tests for FCFS selection."""

    def test_earliest_win(self, abc):
        outcome = allocate(abc, [], make_config(AllocationStrategy.FIRST_COME_FIRST_SERVED, 2))
        assert winners(outcome) == ["A", "B"]
        assert outcome.consumed == 0

    def test_tie_broken_by_participant_id(self):
        entries = make_entries(("zed", 5), ("amy", 5), ("bob", 1))
        assert [e.participant_id for e in fcfs_order(entries)] == ["bob", "amy", "zed"]

    def test_results_cover_every_entry(self, abc):
        outcome = allocate(abc, [], make_config(AllocationStrategy.FIRST_COME_FIRST_SERVED, 1))
        by_id = {r.participant_id: r for r in outcome.results}
        assert by_id["A"].rank == 1 and by_id["A"].is_winner
        assert by_id["A"].proof_reference is None
        assert by_id["B"].rank == 0 and not by_id["B"].is_winner
        assert len(outcome.results) == 3


# =============================================================================
# Lottery
# =============================================================================


class TestLottery:
    """Tests for uniform sampling without replacement."""

    def test_draws_over_remaining_pool(self, abc):
        """Index 1 of [A,B,C] then index 0 of [A,C]."""
        outcome = allocate(abc, fixed_outputs(1, 0), make_config(AllocationStrategy.LOTTERY, 2))
        assert winners(outcome) == ["B", "A"]
        assert [r.proof_reference for r in outcome.winners] == [0, 1]
        assert [(d.target, d.span) for d in outcome.draws] == [(1, 3), (0, 2)]

    def test_no_duplicates_with_colliding_values(self, abc):
        """Equal values still pick distinct entries."""
        outcome = allocate(abc, fixed_outputs(0, 0, 0), make_config(AllocationStrategy.LOTTERY, 2))
        assert len(set(winners(outcome))) == 2

    def test_everyone_fits(self, abc):
        """k >= N: all win in FCFS order and no randomness is consumed."""
        outcome = allocate(abc, [], make_config(AllocationStrategy.LOTTERY, 3))
        assert winners(outcome) == ["A", "B", "C"]
        assert outcome.draws == []

    def test_empty_pool(self):
        outcome = allocate([], [], make_config(AllocationStrategy.LOTTERY, 5))
        assert outcome.results == []

    def test_insufficient_randomness(self, abc):
        with pytest.raises(InsufficientRandomness) as exc:
            allocate(abc, fixed_outputs(1), make_config(AllocationStrategy.LOTTERY, 2))
        assert exc.value.required == 2
        assert exc.value.supplied == 1

    def test_coverage_with_real_outputs(self):
        """Exactly k distinct winners, all drawn from the entries."""
        entries = make_entries(*[(f"p{i}", i) for i in range(30)])
        outputs = generate_batch_randomness(sha256(b"e"), 100, 7, b"seed")
        outcome = allocate(entries, outputs, make_config(AllocationStrategy.LOTTERY, 7))
        names = winners(outcome)
        assert len(names) == 7
        assert len(set(names)) == 7
        assert set(names) <= {e.participant_id for e in entries}
        assert [r.rank for r in outcome.winners] == list(range(1, 8))

    def test_extra_outputs_unused(self, abc):
        outcome = allocate(abc, fixed_outputs(1, 0, 5, 6), make_config(AllocationStrategy.LOTTERY, 2))
        assert outcome.consumed == 2


# =============================================================================
# Whitelist & Hybrid
# =============================================================================


class TestWhitelist:
    """Tests for whitelist selection."""

    def test_capped_in_fcfs_order(self, abc):
        config = make_config(AllocationStrategy.WHITELIST, 1, whitelist={"C", "A", "ghost"})
        outcome = allocate(abc, [], config)
        assert winners(outcome) == ["A"]

    def test_no_fallback_for_empty_slots(self, abc):
        config = make_config(AllocationStrategy.WHITELIST, 3, whitelist={"B"})
        outcome = allocate(abc, [], config)
        assert winners(outcome) == ["B"]
        assert sum(1 for r in outcome.results if not r.is_winner) == 2


class TestHybrid:
    """Tests for whitelist-then-lottery."""

    def test_lottery_fills_remaining(self):
        entries = make_entries(("A", 10), ("B", 20), ("C", 30), ("D", 40))
        config = make_config(AllocationStrategy.HYBRID_WHITELIST_LOTTERY, 2, whitelist={"D"})
        assert required_draws(config, entries) == 1

        outcome = allocate(entries, fixed_outputs(2), config)
        assert winners(outcome) == ["D", "C"]
        assert [r.proof_reference for r in outcome.winners] == [None, 0]

    def test_pool_fits(self):
        entries = make_entries(("A", 10), ("B", 20), ("D", 40))
        config = make_config(AllocationStrategy.HYBRID_WHITELIST_LOTTERY, 5, whitelist={"D"})
        outcome = allocate(entries, [], config)
        assert winners(outcome) == ["D", "A", "B"]

    def test_whitelist_overflow(self):
        entries = make_entries(("A", 10), ("B", 20), ("C", 30))
        config = make_config(AllocationStrategy.HYBRID_WHITELIST_LOTTERY, 2, whitelist={"A", "B", "C"})
        assert required_draws(config, entries) == 0
        assert winners(allocate(entries, [], config)) == ["A", "B"]


# =============================================================================
# Time Weighted
# =============================================================================


class TestTimeWeighted:
    """Tests for weighted sampling without replacement."""

    @pytest.fixture
    def weighted(self):
        # weights with finalization 100: A=91, B=51, C=11 (total 153)
        return make_entries(("A", 10), ("B", 50), ("C", 90))

    def test_weights_decrease_with_sequence(self, weighted):
        config = make_config(AllocationStrategy.TIME_WEIGHTED, 1)
        assert [time_weight(e, config) for e in weighted] == [91, 51, 11]
        late = make_entries(("late", 100))[0]
        assert time_weight(late, config) == 1

    @pytest.mark.parametrize("value,expected", [(0, "A"), (90, "A"), (91, "B"), (141, "B"), (142, "C"), (153 + 95, "B")])
    def test_cumulative_search(self, weighted, value, expected):
        config = make_config(AllocationStrategy.TIME_WEIGHTED, 1)
        assert winners(allocate(weighted, fixed_outputs(value), config)) == [expected]

    def test_without_replacement(self, weighted):
        config = make_config(AllocationStrategy.TIME_WEIGHTED, 2)
        outcome = allocate(weighted, fixed_outputs(91, 0), config)
        assert winners(outcome) == ["B", "A"]
        assert [(d.target, d.span) for d in outcome.draws] == [(91, 153), (0, 102)]


class TestRequiredDraws:
    """Draw counts per strategy."""

    def test_counts(self, abc):
        assert required_draws(make_config(AllocationStrategy.FIRST_COME_FIRST_SERVED, 2), abc) == 0
        assert required_draws(make_config(AllocationStrategy.WHITELIST, 2, {"A"}), abc) == 0
        assert required_draws(make_config(AllocationStrategy.LOTTERY, 2), abc) == 2
        assert required_draws(make_config(AllocationStrategy.LOTTERY, 3), abc) == 0
        assert required_draws(make_config(AllocationStrategy.TIME_WEIGHTED, 1), abc) == 1
        assert required_draws(make_config(AllocationStrategy.LOTTERY, 0), abc) == 0

    def test_strategy_names(self):
        assert AllocationStrategy.from_name("fcfs") == AllocationStrategy.FIRST_COME_FIRST_SERVED
        assert AllocationStrategy.from_name("hybrid") == AllocationStrategy.HYBRID_WHITELIST_LOTTERY
        with pytest.raises(ValueError):
            AllocationStrategy.from_name("auction")
