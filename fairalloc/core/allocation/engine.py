"""
Allocation Engine - the public operation surface of fairalloc.

This module ties together:
- EntropyManager for freshness-gated ledger entropy
- CommitmentBook for per-tier commit-reveal
- Anti-sniping guards at registration and execution time
- VRF batch generation and strategy dispatch
- Fairness scoring, entry transcripts and the optional audit store

Every call compares the ledger's latest closed sequence against the
tier's stored boundaries at the start of the call; there is no timer.
Calls validate and compute first and mutate last, so a raised error
leaves the tier exactly as it was (apart from the time-driven
OPEN -> LOCKED transition, which depends only on the sequence).
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from fairalloc.crypto import short_hex
from fairalloc.core.allocation import events as ev
from fairalloc.core.allocation.anti_sniping import check_lock_period, check_registration
from fairalloc.core.allocation.events import AllocationEvent, EventLog
from fairalloc.core.allocation.round import (
    AllocationConfig,
    AllocationResult,
    AllocationStrategy,
    LotteryEntry,
    TierRound,
    TierState,
    derive_round_seed,
)
from fairalloc.core.allocation.strategies import allocate, required_draws
from fairalloc.core.capability import OrganizerCapability
from fairalloc.core.config import EngineConfig
from fairalloc.core.entropy import EntropyManager, EntropySource, LedgerView
from fairalloc.core.errors import (
    AlreadyAllocated,
    EntropyNotReady,
    InsufficientRandomness,
    InvalidState,
    DuplicateEntry,
    RoundNotFound,
    Unauthorized,
)
from fairalloc.core.storage.storage_manager import StorageManager
from fairalloc.core.transcript import MerkleTree, compute_entries_root
from fairalloc.core.verification import (
    RoundAudit,
    compute_fairness_score,
    needs_review,
    verify_lottery_randomness,
)
from fairalloc.core.vrf import (
    RandomnessOutput,
    VRFInput,
    VRFProof,
    can_finalize_randomness,
    generate_batch_randomness,
)
from fairalloc.utils.logger import get_logger
from fairalloc.utils.validation import (
    MAX_SEED_SIZE,
    validate_bytes,
    validate_integer,
    validate_participant_id,
    validate_round_parameters,
)

logger = get_logger("allocation")


class AllocationEngine:
    """
    Multi-tier allocation engine.

    Each tier is an independent TierRound keyed by tier id; no call
    touches more than one tier.

    Attributes:
        ledger: Host ledger (sequence clock and entropy source)
        organizer_public_key: Key whose capability authorizes admin calls
        config: Engine-wide defaults
        storage: Optional audit store, written before in-memory state
    """

    def __init__(
        self,
        ledger: LedgerView,
        organizer_public_key: bytes,
        config: Optional[EngineConfig] = None,
        storage: Optional[StorageManager] = None,
    ):
        self.ledger = ledger
        self.organizer_public_key = organizer_public_key
        self.config = config or EngineConfig()
        self.storage = storage

        self.entropy = EntropyManager(ledger)
        self.events = EventLog()

        # tier_id -> TierRound
        self.rounds: Dict[int, TierRound] = {}

        self.paused = False

        logger.info(f"AllocationEngine initialized at sequence {self.current_sequence()}")

    # =========================================================================
    # Internals
    # =========================================================================

    def current_sequence(self) -> int:
        return self.ledger.latest_sequence()

    def _authorize(self, capability: Optional[OrganizerCapability]) -> None:
        if capability is None or not capability.is_valid_for(self.organizer_public_key):
            logger.warning("Rejected call with missing or invalid organizer capability")
            raise Unauthorized("Organizer capability missing or invalid")

    def _require_active(self) -> None:
        if self.paused:
            raise InvalidState("Engine is paused")

    def _round(self, tier_id: int) -> TierRound:
        tier = self.rounds.get(tier_id)
        if tier is None:
            raise RoundNotFound(f"No round initialized for tier {tier_id}", tier_id=tier_id)
        return tier

    def _emit(self, kind: str, tier_id: Optional[int], sequence: int, **data) -> AllocationEvent:
        event = self.events.emit(kind, tier_id, sequence, **data)
        if self.storage is not None:
            self.storage.persist_event(event)
        return event

    def _sync(self, tier: TierRound, sequence: int) -> None:
        """Apply the lazy OPEN -> LOCKED transition."""
        if tier.update_state(sequence):
            if self.storage is not None:
                self.storage.persist_state(tier.tier_id, tier.state, sequence)
            self._emit(ev.ROUND_LOCKED, tier.tier_id, sequence)
            logger.info(f"Tier {tier.tier_id} locked at sequence {sequence} "
                        f"({len(tier.entries)} entries)")

    # =========================================================================
    # Admin
    # =========================================================================

    def initialize_round(
        self,
        capability: OrganizerCapability,
        tier_id: int,
        strategy: Union[AllocationStrategy, str],
        total_allocations: int,
        finalization_sequence: int,
        reveal_start_sequence: int,
        reveal_end_sequence: int,
        max_entries_per_participant: int,
        minimum_lock_period: int,
        rate_limit_window: int,
        *,
        rate_limit_max_entries: Optional[int] = None,
        require_commitment: bool = False,
        whitelist: Optional[Iterable[str]] = None,
        entropy_source: Optional[EntropySource] = None,
    ) -> AllocationConfig:
        """
        Create a tier's round.

        Raises:
            Unauthorized: Capability does not verify against the organizer key
            InvalidState: Engine paused, tier exists, or finalization already passed
            ValueError: Parameters violate the window invariant or bounds
        """
        self._authorize(capability)
        self._require_active()

        valid, err = validate_integer(tier_id, "tier_id")
        if not valid:
            raise ValueError(err)
        if not isinstance(strategy, AllocationStrategy):
            strategy = AllocationStrategy.from_name(strategy)
        valid, err = validate_round_parameters(
            total_allocations,
            finalization_sequence,
            reveal_start_sequence,
            reveal_end_sequence,
            max_entries_per_participant,
            minimum_lock_period,
            rate_limit_window,
        )
        if not valid:
            raise ValueError(err)

        max_recent = rate_limit_max_entries if rate_limit_max_entries is not None \
            else self.config.rate_limit_max_entries
        valid, err = validate_integer(max_recent, "rate_limit_max_entries", 1)
        if not valid:
            raise ValueError(err)

        members = frozenset(whitelist or ())
        for member in members:
            valid, err = validate_participant_id(member)
            if not valid:
                raise ValueError(f"whitelist: {err}")

        if tier_id in self.rounds:
            raise InvalidState(f"Tier {tier_id} already initialized", tier_id=tier_id)

        sequence = self.current_sequence()
        if sequence >= finalization_sequence:
            raise InvalidState(
                f"finalization_sequence {finalization_sequence} already reached (now {sequence})",
                tier_id=tier_id,
            )

        config = AllocationConfig(
            tier_id=tier_id,
            strategy=strategy,
            total_allocations=total_allocations,
            finalization_sequence=finalization_sequence,
            reveal_start_sequence=reveal_start_sequence,
            reveal_end_sequence=reveal_end_sequence,
            max_entries_per_participant=max_entries_per_participant,
            minimum_lock_period=minimum_lock_period,
            rate_limit_window=rate_limit_window,
            rate_limit_max_entries=max_recent,
            require_commitment=require_commitment,
            whitelist=members,
            entropy_source=entropy_source if entropy_source is not None else self.config.entropy_source,
        )

        if self.storage is not None:
            self.storage.persist_round(config, sequence)
        self.rounds[tier_id] = TierRound.create(config)

        self._emit(ev.ROUND_INITIALIZED, tier_id, sequence,
                   strategy=strategy.name, total_allocations=total_allocations,
                   finalization_sequence=finalization_sequence)
        logger.info(f"Tier {tier_id} initialized: {strategy.name}, {total_allocations} slots, "
                    f"finalization at {finalization_sequence}")
        return config

    def pause(self, capability: OrganizerCapability) -> None:
        """Block every state-mutating call until unpause()."""
        self._authorize(capability)
        if self.paused:
            raise InvalidState("Engine already paused")
        self.paused = True
        self._emit(ev.ENGINE_PAUSED, None, self.current_sequence())
        logger.warning("Engine paused")

    def unpause(self, capability: OrganizerCapability) -> None:
        self._authorize(capability)
        if not self.paused:
            raise InvalidState("Engine is not paused")
        self.paused = False
        self._emit(ev.ENGINE_UNPAUSED, None, self.current_sequence())
        logger.info("Engine unpaused")

    def finalize_round(self, capability: OrganizerCapability, tier_id: int) -> List[AllocationResult]:
        """
        Move an allocated tier to FINALIZED; escrow acts on these results.

        Returns:
            Winners ranked 1..k
        """
        self._authorize(capability)
        self._require_active()
        tier = self._round(tier_id)

        if tier.state != TierState.ALLOCATED:
            raise InvalidState(f"Tier {tier_id} is {tier.state.name}, expected ALLOCATED", tier_id=tier_id)

        sequence = self.current_sequence()
        if self.storage is not None:
            self.storage.persist_state(tier_id, TierState.FINALIZED, sequence)
        tier.state = TierState.FINALIZED
        tier.finalized_at = sequence

        self._emit(ev.ROUND_FINALIZED, tier_id, sequence)
        logger.info(f"Tier {tier_id} finalized at sequence {sequence}")
        return self.get_winners(tier_id)

    # =========================================================================
    # Registration & Commit-Reveal
    # =========================================================================

    def register_entry(
        self,
        tier_id: int,
        participant_id: str,
        commitment_hash: Optional[bytes] = None,
        origin: Optional[str] = None,
    ) -> LotteryEntry:
        """
        Register an entry, optionally binding a commitment.

        Args:
            tier_id: Target tier
            participant_id: Opaque participant identifier
            commitment_hash: SHA256(seed || nonce), must arrive before the reveal window
            origin: Registrant the anti-sniping caps count against (defaults to participant_id)

        Raises:
            InvalidState: Tier no longer open, or commit phase over
            DuplicateEntry: Participant already registered
            RateLimited: Registrant over its entry cap or rate limit
        """
        self._require_active()
        tier = self._round(tier_id)
        sequence = self.current_sequence()
        self._sync(tier, sequence)

        if tier.state != TierState.OPEN:
            raise InvalidState(f"Tier {tier_id} is {tier.state.name}; entries closed", tier_id=tier_id)

        valid, err = validate_participant_id(participant_id)
        if not valid:
            raise ValueError(err)
        origin = origin if origin is not None else participant_id
        valid, err = validate_participant_id(origin)
        if not valid:
            raise ValueError(f"origin: {err}")

        if participant_id in tier.entries:
            raise DuplicateEntry(f"Participant {participant_id} already registered", tier_id=tier_id)

        check_registration(tier.config, origin, tier.entries_for_origin(origin), sequence)

        if commitment_hash is not None:
            tier.commitments.check_commit(participant_id, commitment_hash, sequence)
        elif tier.config.require_commitment:
            raise InvalidState(f"Tier {tier_id} requires a commitment", tier_id=tier_id)

        commitment = None
        if commitment_hash is not None:
            commitment = tier.commitments.commit(participant_id, commitment_hash, sequence)

        entry = LotteryEntry(
            participant_id=participant_id,
            tier_id=tier_id,
            registered_at_sequence=sequence,
            commitment=commitment,
            origin=origin,
        )
        tier.entries[participant_id] = entry

        self._emit(ev.ENTRY_REGISTERED, tier_id, sequence,
                   participant_id=participant_id, committed=commitment is not None)
        logger.debug(f"Tier {tier_id}: registered {participant_id} at sequence {sequence}")
        return entry

    def reveal(self, tier_id: int, participant_id: str, seed: bytes, nonce: bytes) -> bool:
        """
        Reveal a registered commitment.

        Returns:
            True if the pair matches; False marks the entry forfeited

        Raises:
            InvalidState: Outside the reveal window, not committed, or already revealed
            CommitmentMismatch: An earlier reveal for this entry failed
            ValueError: seed or nonce not bytes, or longer than MAX_SEED_SIZE
        """
        self._require_active()
        tier = self._round(tier_id)
        sequence = self.current_sequence()
        self._sync(tier, sequence)

        if tier.randomness is not None:
            raise InvalidState(f"Tier {tier_id} entries are frozen", tier_id=tier_id)
        if participant_id not in tier.entries:
            raise InvalidState(f"Participant {participant_id} is not registered", tier_id=tier_id)
        for value, name in ((seed, "seed"), (nonce, "nonce")):
            valid, err = validate_bytes(value, name, max_length=MAX_SEED_SIZE)
            if not valid:
                raise ValueError(err)

        matched = tier.commitments.reveal(participant_id, seed, nonce, sequence)

        kind = ev.COMMITMENT_REVEALED if matched else ev.REVEAL_REJECTED
        self._emit(kind, tier_id, sequence, participant_id=participant_id)
        return matched

    # =========================================================================
    # Randomness & Allocation
    # =========================================================================

    def generate_randomness(self, tier_id: int, batch_size: Optional[int] = None) -> List[RandomnessOutput]:
        """
        Freeze the eligible entries and derive the tier's randomness batch.

        Entropy comes from the ledger closed at finalization_sequence and
        is only requested once the lock period has elapsed.

        Args:
            tier_id: Target tier
            batch_size: Outputs to generate (None = exactly the required draws)

        Raises:
            EntropyNotReady: Boundary or lock period not reached yet (retry later)
            AlreadyAllocated: Randomness already generated
            InsufficientRandomness: batch_size below the required draws
        """
        self._require_active()
        tier = self._round(tier_id)
        sequence = self.current_sequence()
        self._sync(tier, sequence)
        config = tier.config

        if tier.randomness is not None or tier.state in (TierState.ALLOCATED, TierState.FINALIZED):
            raise AlreadyAllocated(f"Randomness for tier {tier_id} already generated", tier_id=tier_id)

        if not can_finalize_randomness(sequence, config):
            raise EntropyNotReady(
                f"Tier {tier_id} randomness available at sequence "
                f"{config.earliest_allocation_sequence} (now {sequence})",
                current_sequence=sequence,
                required_sequence=config.earliest_allocation_sequence,
                tier_id=tier_id,
            )

        eligible = tier.eligible_entries()
        needed = required_draws(config, eligible)
        count = needed if batch_size is None else batch_size
        valid, err = validate_integer(count, "batch_size")
        if not valid:
            raise ValueError(err)
        if count < needed:
            raise InsufficientRandomness(
                f"Tier {tier_id} needs {needed} outputs, batch_size is {count}",
                required=needed,
                supplied=count,
                tier_id=tier_id,
            )

        round_seed = derive_round_seed(tier_id, tier.commitments.revealed_seeds())
        counter = self.entropy.counter
        entropy = self.entropy.get_entropy(config.entropy_source, config.finalization_sequence)
        outputs = generate_batch_randomness(entropy, config.finalization_sequence, count, round_seed)
        entries_root = compute_entries_root(eligible)
        forfeited = tier.commitments.get_unrevealed()

        if self.storage is not None:
            self.storage.persist_randomness(tier_id, outputs)

        tier.eligible_ids = [e.participant_id for e in eligible]
        tier.entropy = entropy
        tier.entropy_counter = counter
        tier.round_seed = round_seed
        tier.entries_root = entries_root
        tier.randomness = outputs

        self._emit(ev.RANDOMNESS_GENERATED, tier_id, sequence,
                   count=count, eligible=len(eligible), entries_root=entries_root.hex())
        logger.info(f"Tier {tier_id}: {count} outputs over {len(eligible)} eligible entries "
                    f"(root {short_hex(entries_root)}...)")
        if forfeited:
            logger.info(f"Tier {tier_id}: {len(forfeited)} committed entries never revealed and were excluded")
        return list(outputs)

    def execute_allocation(
        self,
        tier_id: int,
        randomness_values: Optional[Sequence[RandomnessOutput]] = None,
    ) -> List[AllocationResult]:
        """
        Run the tier's strategy over the frozen eligible entries.

        Args:
            tier_id: Target tier
            randomness_values: Prefix of the stored batch to consume (None = the stored batch)

        Returns:
            One result per eligible entry, winners first by rank

        Raises:
            AlreadyAllocated: Tier already allocated
            InvalidState: Lock period not over, or no randomness generated
            InsufficientRandomness: Fewer outputs than required draws
            ValueError: Supplied outputs are not the stored batch in nonce order
        """
        self._require_active()
        tier = self._round(tier_id)
        sequence = self.current_sequence()
        self._sync(tier, sequence)
        config = tier.config

        if tier.state in (TierState.ALLOCATED, TierState.FINALIZED):
            raise AlreadyAllocated(f"Tier {tier_id} already allocated", tier_id=tier_id)
        check_lock_period(config, sequence)
        if tier.randomness is None:
            raise InvalidState(f"Tier {tier_id} has no randomness; call generate_randomness first",
                               tier_id=tier_id)

        eligible = tier.eligible_entries()
        needed = required_draws(config, eligible)
        stored = list(tier.randomness)
        if randomness_values is None:
            values = stored[:needed]
        else:
            values = list(randomness_values)
            if values != stored[:len(values)]:
                raise ValueError(f"Tier {tier_id} consumes its stored outputs in nonce order "
                                 f"starting at 0; supplied nonces "
                                 f"{[v.proof.nonce for v in values]}")

        outcome = allocate(eligible, values, config)
        used = values[:outcome.consumed]
        score = compute_fairness_score(outcome.draws, self.config.fairness_bins)

        if self.storage is not None:
            audit = self._build_audit(tier, outcome.results, used, score)
            self.storage.persist_allocation(tier_id, outcome.results, audit.to_dict())
            self.storage.persist_state(tier_id, TierState.ALLOCATED, sequence)

        tier.results = outcome.results
        tier.consumed = used
        tier.draws = outcome.draws
        tier.state = TierState.ALLOCATED
        tier.allocated_at = sequence

        winners = outcome.winners
        self._emit(ev.ALLOCATION_EXECUTED, tier_id, sequence,
                   winners=[r.participant_id for r in winners], draws=outcome.consumed,
                   fairness_score=score)
        logger.info(f"Tier {tier_id} allocated: {len(winners)} winners from {len(eligible)} "
                    f"eligible entries, fairness {score:.2f}")
        if needs_review(score, self.config.fairness_threshold):
            logger.warning(f"Tier {tier_id} fairness score {score:.2f} below "
                           f"{self.config.fairness_threshold:.2f}; review advised")
        return list(outcome.results)

    @staticmethod
    def verify_randomness(proof: VRFProof, original_input: VRFInput, expected_sequence: int) -> bool:
        """Pure check of a single proof. Never raises."""
        return verify_lottery_randomness(proof, original_input, expected_sequence)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_round(self, tier_id: int) -> TierRound:
        return self._round(tier_id)

    def get_config(self, tier_id: int) -> AllocationConfig:
        return self._round(tier_id).config

    def get_state(self, tier_id: int) -> TierState:
        """Effective state, including a lock not yet applied by a call."""
        tier = self._round(tier_id)
        if tier.state == TierState.OPEN and self.current_sequence() >= tier.config.finalization_sequence:
            return TierState.LOCKED
        return tier.state

    def get_entries(self, tier_id: int) -> List[LotteryEntry]:
        return self._round(tier_id).ordered_entries()

    def get_eligible_entries(self, tier_id: int) -> List[LotteryEntry]:
        return self._round(tier_id).eligible_entries()

    def get_randomness(self, tier_id: int) -> List[RandomnessOutput]:
        tier = self._round(tier_id)
        return list(tier.randomness) if tier.randomness is not None else []

    def get_results(self, tier_id: int) -> List[AllocationResult]:
        """All results (winners then non-winners); empty before allocation."""
        tier = self._round(tier_id)
        return list(tier.results) if tier.results is not None else []

    def get_winners(self, tier_id: int) -> List[AllocationResult]:
        """Winners ranked 1..k; empty before allocation."""
        return sorted((r for r in self.get_results(tier_id) if r.is_winner), key=lambda r: r.rank)

    def get_fairness(self, tier_id: int) -> float:
        """
        Advisory fairness score in [0, 100].

        Raises:
            InvalidState: Tier not allocated yet
        """
        tier = self._round(tier_id)
        if tier.results is None:
            raise InvalidState(f"Tier {tier_id} not allocated yet", tier_id=tier_id)
        return compute_fairness_score(tier.draws, self.config.fairness_bins)

    def get_entry_proof(self, tier_id: int, participant_id: str) -> List[Tuple[bytes, bool]]:
        """
        Inclusion proof of an eligible entry against the tier's entries_root.

        Raises:
            InvalidState: Entries not frozen yet
            ValueError: Participant not in the eligible set
        """
        tier = self._round(tier_id)
        if tier.eligible_ids is None:
            raise InvalidState(f"Tier {tier_id} entries not frozen yet", tier_id=tier_id)
        if participant_id not in tier.eligible_ids:
            raise ValueError(f"Participant {participant_id} is not in the eligible set")

        tree = MerkleTree(e.leaf() for e in tier.eligible_entries())
        return tree.prove(tier.eligible_ids.index(participant_id))

    def get_events(self, tier_id: Optional[int] = None) -> List[AllocationEvent]:
        return self.events.for_tier(tier_id)

    # =========================================================================
    # Audit
    # =========================================================================

    def _build_audit(
        self,
        tier: TierRound,
        results: List[AllocationResult],
        consumed: List[RandomnessOutput],
        score: float,
    ) -> RoundAudit:
        return RoundAudit(
            config=tier.config,
            entropy=tier.entropy,
            entropy_sequence=tier.config.finalization_sequence,
            round_seed=tier.round_seed,
            entries_root=tier.entries_root,
            eligible_entries=tier.eligible_entries(),
            randomness=list(consumed),
            results=list(results),
            fairness_score=score,
            events=[e.to_dict() for e in self.events.for_tier(tier.tier_id)],
            reveals=tier.commitments.revealed_openings(),
            entropy_counter=tier.entropy_counter,
        )

    def export_audit(self, tier_id: int) -> RoundAudit:
        """
        Everything an auditor needs to replay the tier's allocation.

        Raises:
            InvalidState: Tier not allocated yet
        """
        tier = self._round(tier_id)
        if tier.results is None:
            raise InvalidState(f"Tier {tier_id} not allocated yet", tier_id=tier_id)
        return self._build_audit(tier, tier.results, tier.consumed, self.get_fairness(tier_id))

    # =========================================================================
    # Contract-style aliases
    # =========================================================================

    def generate_lottery_randomness(self, tier_id: int, batch_size: Optional[int] = None) -> List[RandomnessOutput]:
        return self.generate_randomness(tier_id, batch_size)

    def execute_lottery_allocation(
        self,
        tier_id: int,
        randomness_values: Optional[Sequence[RandomnessOutput]] = None,
    ) -> List[AllocationResult]:
        return self.execute_allocation(tier_id, randomness_values)

    def get_lottery_winners(self, tier_id: int) -> List[AllocationResult]:
        return self.get_winners(tier_id)

    def get_allocation_fairness(self, tier_id: int) -> float:
        return self.get_fairness(tier_id)


__all__ = ["AllocationEngine"]
