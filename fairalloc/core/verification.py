"""
Verification & Fairness Scoring - what an external auditor runs.

- verify_lottery_randomness: recompute a VRF proof from its inputs
- compute_fairness_score: chi-square distance of the realized draw
  positions from their expected (uniform or weighted) distribution,
  mapped onto [0, 100], higher is closer to expectation
- verify_allocation: full replay of a RoundAudit (entropy, round seed,
  nonce order, proofs, entry root, strategy re-run, result comparison)

The fairness score is advisory. A low score is logged for investigation;
it never invalidates or re-runs an allocation.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fairalloc.core.allocation.round import (
    AllocationConfig,
    AllocationResult,
    DrawRecord,
    LotteryEntry,
    derive_round_seed,
)
from fairalloc.core.allocation.strategies import allocate, required_draws
from fairalloc.core.commit_reveal import compute_commitment
from fairalloc.core.entropy import LedgerHeader, derive_entropy
from fairalloc.core.errors import InsufficientRandomness
from fairalloc.core.transcript import compute_entries_root
from fairalloc.core.vrf import (
    RandomnessOutput,
    VRFInput,
    VRFProof,
    verify_randomness_output,
    verify_vrf_proof,
)
from fairalloc.utils.logger import get_logger

logger = get_logger("verification")


# =============================================================================
# Constants
# =============================================================================

MAX_SCORE = 100.0
DEFAULT_FAIRNESS_BINS = 10
DEFAULT_FAIRNESS_THRESHOLD = 50.0
MIN_EXPECTED_PER_BIN = 5


# =============================================================================
# Randomness
# =============================================================================


def verify_lottery_randomness(proof: VRFProof, original_input: VRFInput, expected_sequence: int) -> bool:
    """Auditor entry point for a single proof. Never raises."""
    return verify_vrf_proof(proof, original_input, expected_sequence)


# =============================================================================
# Fairness
# =============================================================================


def compute_fairness_score(draws: Sequence[DrawRecord], bins: int = DEFAULT_FAIRNESS_BINS) -> float:
    """
    Map the draw positions' chi-square statistic onto [0, 100].

    Each draw lands at position (target + 0.5) / span, which is uniform on
    (0, 1) under the expected distribution. Positions are bucketed into
    B = min(bins, n // MIN_EXPECTED_PER_BIN) bins and

        score = 100 * (1 - chi2 / (n * (B - 1)))

    where n * (B - 1) is the statistic when every draw hits one bin.
    Rounds too small for two bins of MIN_EXPECTED_PER_BIN draws carry
    no signal and score 100.
    """
    n = len(draws)
    num_bins = min(bins, n // MIN_EXPECTED_PER_BIN)
    if num_bins < 2:
        return MAX_SCORE

    counts = [0] * num_bins
    for draw in draws:
        bucket = min(int(draw.position * num_bins), num_bins - 1)
        counts[bucket] += 1

    expected = n / num_bins
    chi2 = sum((observed - expected) ** 2 / expected for observed in counts)
    worst = n * (num_bins - 1)

    score = MAX_SCORE * (1.0 - chi2 / worst)
    return round(min(MAX_SCORE, max(0.0, score)), 2)


def needs_review(score: float, threshold: float = DEFAULT_FAIRNESS_THRESHOLD) -> bool:
    """Whether a score warrants operator investigation."""
    return score < threshold


# =============================================================================
# Round Audit
# =============================================================================


@dataclass
class RoundAudit:
    """
    Everything needed to re-check a tier's allocation offline.

    Produced by AllocationEngine.export_audit(). `reveals` holds the
    (participant_id, seed, nonce) openings the round seed was derived
    from; `entropy_counter` is the mixing counter MULTI_SOURCE entropy
    was drawn with.
    """
    config: AllocationConfig
    entropy: bytes
    entropy_sequence: int
    round_seed: bytes
    entries_root: bytes
    eligible_entries: List[LotteryEntry]
    randomness: List[RandomnessOutput]
    results: List[AllocationResult]
    fairness_score: Optional[float] = None
    events: List[Dict[str, Any]] = field(default_factory=list)
    reveals: List[Tuple[str, bytes, bytes]] = field(default_factory=list)
    entropy_counter: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "entropy": self.entropy.hex(),
            "entropy_sequence": self.entropy_sequence,
            "entropy_counter": self.entropy_counter,
            "round_seed": self.round_seed.hex(),
            "reveals": [
                {"participant_id": pid, "seed": seed.hex(), "nonce": nonce.hex()}
                for pid, seed, nonce in self.reveals
            ],
            "entries_root": self.entries_root.hex(),
            "eligible_entries": [e.to_dict() for e in self.eligible_entries],
            "randomness": [r.to_dict() for r in self.randomness],
            "results": [r.to_dict() for r in self.results],
            "fairness_score": self.fairness_score,
            "events": list(self.events),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoundAudit":
        return cls(
            config=AllocationConfig.from_dict(data["config"]),
            entropy=bytes.fromhex(data["entropy"]),
            entropy_sequence=int(data["entropy_sequence"]),
            round_seed=bytes.fromhex(data["round_seed"]),
            entries_root=bytes.fromhex(data["entries_root"]),
            eligible_entries=[LotteryEntry.from_dict(e) for e in data["eligible_entries"]],
            randomness=[RandomnessOutput.from_dict(r) for r in data["randomness"]],
            results=[AllocationResult.from_dict(r) for r in data["results"]],
            fairness_score=data.get("fairness_score"),
            events=list(data.get("events", [])),
            reveals=[
                (r["participant_id"], bytes.fromhex(r["seed"]), bytes.fromhex(r["nonce"]))
                for r in data.get("reveals", [])
            ],
            entropy_counter=int(data.get("entropy_counter", 0)),
        )


def _check_round_seed(audit: RoundAudit) -> Optional[str]:
    """Re-open every commitment and re-derive the round seed; returns an error or None."""
    committed = {
        e.participant_id: e.commitment.commitment_hash
        for e in audit.eligible_entries
        if e.commitment is not None
    }
    opened = {pid for pid, _, _ in audit.reveals}
    if len(opened) != len(audit.reveals) or opened != set(committed):
        return "Reveals do not match the committed eligible entries"

    for pid, seed, nonce in audit.reveals:
        if compute_commitment(seed, nonce) != committed[pid]:
            return f"Reveal for participant {pid} does not open its commitment"

    seeds = [(pid, seed) for pid, seed, _ in audit.reveals]
    if derive_round_seed(audit.config.tier_id, seeds) != audit.round_seed:
        return "Round seed does not match the revealed seeds"
    return None


def verify_allocation(audit: RoundAudit, header: Optional[LedgerHeader] = None) -> Tuple[bool, str]:
    """
    Replay a round from its audit record.

    Checks, in order:
    1. Entropy was taken at the tier's finalization sequence and, when the
       ledger header is supplied, re-derives from it
    2. The reveals open the eligible commitments and re-derive round_seed
    3. The outputs are exactly the nonces 0..n-1 in order, n being the
       strategy's draw count
    4. Every randomness output verifies against (round_seed, entropy, nonce)
    5. The eligible entries hash to entries_root
    6. Re-running the strategy yields exactly the recorded results

    Args:
        audit: Record to replay
        header: Ledger header at the finalization sequence (optional)

    Returns:
        (is_valid, error_message)
    """
    config = audit.config
    if audit.entropy_sequence != config.finalization_sequence:
        return False, (f"Entropy taken at ledger {audit.entropy_sequence}, "
                       f"expected {config.finalization_sequence}")

    if header is not None:
        if header.sequence != audit.entropy_sequence:
            return False, f"Header is for ledger {header.sequence}, not {audit.entropy_sequence}"
        if derive_entropy(config.entropy_source, header, audit.entropy_counter) != audit.entropy:
            return False, "Entropy does not match the ledger header"

    error = _check_round_seed(audit)
    if error:
        return False, error

    needed = required_draws(config, audit.eligible_entries)
    if len(audit.randomness) != needed:
        return False, f"Audit carries {len(audit.randomness)} outputs, strategy consumes {needed}"
    nonces = [output.proof.nonce for output in audit.randomness]
    if nonces != list(range(needed)):
        return False, "Randomness outputs must be nonces 0..n-1 in order"

    for output in audit.randomness:
        original = VRFInput(
            participant_seed=audit.round_seed,
            entropy=audit.entropy,
            nonce=output.proof.nonce,
        )
        if not verify_randomness_output(output, original, audit.entropy_sequence):
            return False, f"Randomness output with nonce {output.proof.nonce} failed verification"

    if compute_entries_root(audit.eligible_entries) != audit.entries_root:
        return False, "Eligible entries do not match entries_root"

    try:
        outcome = allocate(audit.eligible_entries, audit.randomness, config)
    except InsufficientRandomness as e:
        return False, str(e)

    if outcome.results != list(audit.results):
        return False, "Replayed allocation differs from recorded results"

    logger.info(f"Tier {config.tier_id} audit verified: "
                f"{len(audit.randomness)} proofs, {len(audit.results)} results")
    return True, ""


__all__ = [
    "verify_lottery_randomness",
    "compute_fairness_score",
    "needs_review",
    "RoundAudit",
    "verify_allocation",
    "DEFAULT_FAIRNESS_BINS",
    "DEFAULT_FAIRNESS_THRESHOLD",
    "MIN_EXPECTED_PER_BIN",
]
