"""
Round state - the per-tier arena slot owned by the engine.

A tier owns one AllocationConfig, its entries and commitments, one batch
of randomness and one result set. Nothing here references another tier.

Lifecycle (one-directional):

    OPEN -> LOCKED -> ALLOCATED -> FINALIZED

OPEN ends lazily: the first call observing sequence >= finalization_sequence
moves the tier to LOCKED.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from fairalloc.crypto import sha256, hash_domain, u64
from fairalloc.core.commit_reveal import Commitment, CommitmentBook
from fairalloc.core.entropy import EntropySource
from fairalloc.core.vrf import RandomnessOutput

DOMAIN_ROUND_SEED = b"fairalloc.round"
DOMAIN_ENTRY_LEAF = b"fairalloc.entry"


# =============================================================================
# Enums
# =============================================================================


class AllocationStrategy(IntEnum):
    """Closed set of selection strategies."""
    FIRST_COME_FIRST_SERVED = 0
    LOTTERY = 1
    WHITELIST = 2
    HYBRID_WHITELIST_LOTTERY = 3
    TIME_WEIGHTED = 4

    @classmethod
    def from_name(cls, name: str) -> "AllocationStrategy":
        key = name.strip().upper().replace("-", "_")
        aliases = {"FCFS": "FIRST_COME_FIRST_SERVED", "HYBRID": "HYBRID_WHITELIST_LOTTERY"}
        try:
            return cls[aliases.get(key, key)]
        except KeyError:
            raise ValueError(f"Unknown allocation strategy: {name}") from None

    @property
    def uses_whitelist(self) -> bool:
        return self in (AllocationStrategy.WHITELIST, AllocationStrategy.HYBRID_WHITELIST_LOTTERY)


class TierState(IntEnum):
    """Lifecycle of a tier."""
    OPEN = 0        # Accepting entries
    LOCKED = 1      # Finalization boundary reached
    ALLOCATED = 2   # Winners computed
    FINALIZED = 3   # Results immutable, escrow may act


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class AllocationConfig:
    """
    Parameters of a tier's round. Immutable after initialization.

    Invariant: reveal_start_sequence < reveal_end_sequence <= finalization_sequence.
    """
    tier_id: int
    strategy: AllocationStrategy
    total_allocations: int
    finalization_sequence: int
    reveal_start_sequence: int
    reveal_end_sequence: int
    max_entries_per_participant: int
    minimum_lock_period: int
    rate_limit_window: int
    rate_limit_max_entries: int = 5
    require_commitment: bool = False
    whitelist: FrozenSet[str] = frozenset()
    entropy_source: EntropySource = EntropySource.LEDGER_HEADER_HASH_WITH_TIMESTAMP

    @property
    def earliest_allocation_sequence(self) -> int:
        return self.finalization_sequence + self.minimum_lock_period

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier_id": self.tier_id,
            "strategy": self.strategy.name,
            "total_allocations": self.total_allocations,
            "finalization_sequence": self.finalization_sequence,
            "reveal_start_sequence": self.reveal_start_sequence,
            "reveal_end_sequence": self.reveal_end_sequence,
            "max_entries_per_participant": self.max_entries_per_participant,
            "minimum_lock_period": self.minimum_lock_period,
            "rate_limit_window": self.rate_limit_window,
            "rate_limit_max_entries": self.rate_limit_max_entries,
            "require_commitment": self.require_commitment,
            "whitelist": sorted(self.whitelist),
            "entropy_source": self.entropy_source.name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllocationConfig":
        return cls(
            tier_id=int(data["tier_id"]),
            strategy=AllocationStrategy.from_name(data["strategy"]),
            total_allocations=int(data["total_allocations"]),
            finalization_sequence=int(data["finalization_sequence"]),
            reveal_start_sequence=int(data["reveal_start_sequence"]),
            reveal_end_sequence=int(data["reveal_end_sequence"]),
            max_entries_per_participant=int(data["max_entries_per_participant"]),
            minimum_lock_period=int(data["minimum_lock_period"]),
            rate_limit_window=int(data["rate_limit_window"]),
            rate_limit_max_entries=int(data.get("rate_limit_max_entries", 5)),
            require_commitment=bool(data.get("require_commitment", False)),
            whitelist=frozenset(data.get("whitelist", [])),
            entropy_source=EntropySource.from_name(
                data.get("entropy_source", EntropySource.LEDGER_HEADER_HASH_WITH_TIMESTAMP.name)
            ),
        )


@dataclass
class LotteryEntry:
    """
    One participant's entry in a tier.

    Immutable after registration except for the commitment's reveal status.
    """
    participant_id: str
    tier_id: int
    registered_at_sequence: int
    commitment: Optional[Commitment] = None
    origin: str = ""

    def leaf(self) -> bytes:
        """Transcript leaf binding the entry's identity and timing."""
        commitment_hash = self.commitment.commitment_hash if self.commitment else bytes(32)
        return hash_domain(
            DOMAIN_ENTRY_LEAF,
            u64(self.tier_id),
            self.participant_id.encode(),
            u64(self.registered_at_sequence),
            commitment_hash,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "tier_id": self.tier_id,
            "registered_at_sequence": self.registered_at_sequence,
            "commitment_hash": self.commitment.commitment_hash.hex() if self.commitment else None,
            "origin": self.origin,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LotteryEntry":
        commitment = None
        if data.get("commitment_hash"):
            commitment = Commitment(
                participant_id=data["participant_id"],
                commitment_hash=bytes.fromhex(data["commitment_hash"]),
                created_at=int(data["registered_at_sequence"]),
            )
        return cls(
            participant_id=data["participant_id"],
            tier_id=int(data["tier_id"]),
            registered_at_sequence=int(data["registered_at_sequence"]),
            commitment=commitment,
            origin=data.get("origin", ""),
        )


@dataclass(frozen=True)
class AllocationResult:
    """Outcome for one eligible entry. Immutable once produced."""
    tier_id: int
    participant_id: str
    rank: int                        # 1..k for winners, 0 otherwise
    proof_reference: Optional[int]   # nonce of the consumed output
    is_winner: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier_id": self.tier_id,
            "participant_id": self.participant_id,
            "rank": self.rank,
            "proof_reference": self.proof_reference,
            "is_winner": self.is_winner,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllocationResult":
        ref = data.get("proof_reference")
        return cls(
            tier_id=int(data["tier_id"]),
            participant_id=data["participant_id"],
            rank=int(data["rank"]),
            proof_reference=None if ref is None else int(ref),
            is_winner=bool(data["is_winner"]),
        )


@dataclass(frozen=True)
class DrawRecord:
    """
    One randomized draw: `target` landed inside [0, span).

    span is the remaining pool size for uniform draws and the remaining
    total weight for weighted draws.
    """
    nonce: int
    target: int
    span: int
    participant_id: str

    @property
    def position(self) -> float:
        """Normalized position of the draw in (0, 1)."""
        return (self.target + 0.5) / self.span

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nonce": self.nonce,
            "target": self.target,
            "span": self.span,
            "participant_id": self.participant_id,
        }


def derive_round_seed(tier_id: int, revealed_seeds: List[Tuple[str, bytes]]) -> bytes:
    """
    Seed for a tier's randomness batch.

    Mixes every successfully revealed (participant_id, seed) pair, in
    participant order, under the tier id.
    """
    parts = [u64(tier_id)]
    for participant_id, seed in sorted(revealed_seeds):
        parts.append(sha256(participant_id.encode()) + sha256(seed))
    return hash_domain(DOMAIN_ROUND_SEED, *parts)


# =============================================================================
# Tier Round
# =============================================================================


@dataclass
class TierRound:
    """Everything the engine holds for one tier."""
    config: AllocationConfig
    commitments: CommitmentBook
    state: TierState = TierState.OPEN
    entries: Dict[str, LotteryEntry] = field(default_factory=dict)

    # Set once by randomness generation
    randomness: Optional[List[RandomnessOutput]] = None
    eligible_ids: Optional[List[str]] = None
    entropy: Optional[bytes] = None
    entropy_counter: Optional[int] = None
    round_seed: Optional[bytes] = None
    entries_root: Optional[bytes] = None

    # Set once by allocation
    results: Optional[List[AllocationResult]] = None
    consumed: List[RandomnessOutput] = field(default_factory=list)
    draws: List[DrawRecord] = field(default_factory=list)
    allocated_at: Optional[int] = None
    finalized_at: Optional[int] = None

    @classmethod
    def create(cls, config: AllocationConfig) -> "TierRound":
        return cls(
            config=config,
            commitments=CommitmentBook(config.reveal_start_sequence, config.reveal_end_sequence),
        )

    @property
    def tier_id(self) -> int:
        return self.config.tier_id

    def update_state(self, current_sequence: int) -> bool:
        """
        Apply the time-driven OPEN -> LOCKED transition.

        Returns True if the tier just locked.
        """
        if self.state == TierState.OPEN and current_sequence >= self.config.finalization_sequence:
            self.state = TierState.LOCKED
            return True
        return False

    def is_entry_eligible(self, entry: LotteryEntry) -> bool:
        if entry.commitment is not None:
            return self.commitments.is_eligible(entry.participant_id)
        return not self.config.require_commitment

    def ordered_entries(self) -> List[LotteryEntry]:
        """Entries by (registered_at_sequence, participant_id)."""
        return sorted(self.entries.values(), key=lambda e: (e.registered_at_sequence, e.participant_id))

    def eligible_entries(self) -> List[LotteryEntry]:
        """
        Eligible entries in registration order.

        After randomness generation this is the frozen snapshot.
        """
        if self.eligible_ids is not None:
            return [self.entries[pid] for pid in self.eligible_ids]
        return [e for e in self.ordered_entries() if self.is_entry_eligible(e)]

    def entries_for_origin(self, origin: str) -> List[LotteryEntry]:
        return [e for e in self.entries.values() if e.origin == origin]
