"""
Commit-Reveal - binding registration commitments for a tier.

This module implements the two-phase protocol:
1. Commit Phase: participants register H = SHA256(seed || nonce)
   strictly before the reveal window opens
2. Reveal Phase: participants disclose (seed, nonce) inside
   [reveal_start_sequence, reveal_end_sequence]

Benefits:
- A participant cannot tailor their entry after watching others reveal
- Revealed seeds feed the round seed, so committed participants
  contribute to the randomness without being able to predict it
- A failed or missing reveal forfeits eligibility and cannot be fixed later
"""

import secrets
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fairalloc.crypto import sha256, short_hex
from fairalloc.core.errors import CommitmentMismatch, DuplicateEntry, InvalidState
from fairalloc.utils.logger import get_logger
from fairalloc.utils.validation import validate_hash

logger = get_logger("commit_reveal")


# =============================================================================
# Constants
# =============================================================================

DEFAULT_SEED_SIZE = 32
DEFAULT_NONCE_SIZE = 16


# =============================================================================
# Enums
# =============================================================================


class CommitmentStatus(IntEnum):
    """State of a single commitment."""
    COMMITTED = 0   # Hash stored, not yet revealed
    REVEALED = 1    # Pre-image matched
    REJECTED = 2    # Reveal mismatched; eligibility forfeited


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class Commitment:
    """
    A participant's binding commitment for one tier.

    commitment_hash = SHA256(seed || nonce)
    """
    participant_id: str
    commitment_hash: bytes
    created_at: int
    status: CommitmentStatus = CommitmentStatus.COMMITTED
    revealed_at: Optional[int] = None
    revealed_seed: Optional[bytes] = None
    revealed_nonce: Optional[bytes] = None

    @property
    def revealed(self) -> bool:
        return self.status == CommitmentStatus.REVEALED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "commitment_hash": self.commitment_hash.hex(),
            "created_at": self.created_at,
            "status": self.status.name,
            "revealed_at": self.revealed_at,
        }


def compute_commitment(seed: bytes, nonce: bytes) -> bytes:
    """SHA256(seed || nonce)."""
    if not isinstance(seed, (bytes, bytearray)) or not isinstance(nonce, (bytes, bytearray)):
        raise ValueError("seed and nonce must be bytes")
    return sha256(bytes(seed) + bytes(nonce))


def create_commitment_pair(
    seed: Optional[bytes] = None,
    nonce: Optional[bytes] = None,
) -> Tuple[bytes, bytes, bytes]:
    """
    Create a commitment with fresh random seed/nonce where not supplied.

    Returns:
        (commitment_hash, seed, nonce)
    """
    seed = seed if seed is not None else secrets.token_bytes(DEFAULT_SEED_SIZE)
    nonce = nonce if nonce is not None else secrets.token_bytes(DEFAULT_NONCE_SIZE)
    return compute_commitment(seed, nonce), seed, nonce


def verify_batch(
    commitments: Sequence[Any],
    reveals: Sequence[Tuple[bytes, bytes]],
) -> List[bool]:
    """
    Independently re-derive each commitment from its (seed, nonce) pair.

    Needs no engine state, so auditors can run it over exported data.

    Args:
        commitments: Commitment objects or raw 32-byte hashes
        reveals: (seed, nonce) pairs, index-aligned with commitments

    Returns:
        One boolean per pair
    """
    if len(commitments) != len(reveals):
        raise ValueError(f"Got {len(commitments)} commitments but {len(reveals)} reveals")

    results = []
    for commitment, (seed, nonce) in zip(commitments, reveals):
        expected = commitment.commitment_hash if isinstance(commitment, Commitment) else commitment
        try:
            results.append(compute_commitment(seed, nonce) == expected)
        except ValueError:
            results.append(False)
    return results


# =============================================================================
# Commitment Book
# =============================================================================


class CommitmentBook:
    """
    Commitments of a single tier, keyed by participant id.

    Window boundaries are fixed at construction; every call compares the
    caller's current sequence against them.
    """

    def __init__(self, reveal_start_sequence: int, reveal_end_sequence: int):
        if reveal_start_sequence >= reveal_end_sequence:
            raise ValueError("reveal_start_sequence must be before reveal_end_sequence")
        self.reveal_start_sequence = reveal_start_sequence
        self.reveal_end_sequence = reveal_end_sequence
        self.commitments: Dict[str, Commitment] = {}

    # =========================================================================
    # Commit Phase
    # =========================================================================

    def check_commit(self, participant_id: str, commitment_hash: bytes, current_sequence: int) -> None:
        """Raise if commit() would be rejected; changes nothing."""
        valid, err = validate_hash(commitment_hash, "commitment_hash")
        if not valid:
            raise ValueError(err)
        if current_sequence >= self.reveal_start_sequence:
            raise InvalidState(
                f"Commit phase closed at sequence {self.reveal_start_sequence} (now {current_sequence})"
            )
        if participant_id in self.commitments:
            raise DuplicateEntry(f"Participant {participant_id} already committed")

    def commit(self, participant_id: str, commitment_hash: bytes, current_sequence: int) -> Commitment:
        """
        Store a commitment. Valid only strictly before the reveal window.

        Raises:
            InvalidState: Reveal window already open
            DuplicateEntry: Participant already committed
        """
        self.check_commit(participant_id, commitment_hash, current_sequence)

        commitment = Commitment(
            participant_id=participant_id,
            commitment_hash=bytes(commitment_hash),
            created_at=current_sequence,
        )
        self.commitments[participant_id] = commitment

        logger.debug(f"Commitment {short_hex(commitment.commitment_hash)}... from {participant_id} "
                     f"at sequence {current_sequence}")
        return commitment

    # =========================================================================
    # Reveal Phase
    # =========================================================================

    def in_reveal_window(self, current_sequence: int) -> bool:
        return self.reveal_start_sequence <= current_sequence <= self.reveal_end_sequence

    def reveal(self, participant_id: str, seed: bytes, nonce: bytes, current_sequence: int) -> bool:
        """
        Check a reveal against the stored commitment.

        A mismatch marks the commitment REJECTED and returns False; the
        attempted pair is never recorded.

        Raises:
            InvalidState: Outside the reveal window, no commitment, or already revealed
            CommitmentMismatch: An earlier reveal for this commitment failed
        """
        if not self.in_reveal_window(current_sequence):
            raise InvalidState(
                f"Reveal window is [{self.reveal_start_sequence}, {self.reveal_end_sequence}], "
                f"now {current_sequence}"
            )

        commitment = self.commitments.get(participant_id)
        if commitment is None:
            raise InvalidState(f"No commitment found for participant {participant_id}")
        if commitment.status == CommitmentStatus.REJECTED:
            raise CommitmentMismatch(f"Reveal for {participant_id} already failed; eligibility forfeited")
        if commitment.status == CommitmentStatus.REVEALED:
            raise InvalidState(f"Participant {participant_id} already revealed")

        try:
            matches = compute_commitment(seed, nonce) == commitment.commitment_hash
        except ValueError:
            matches = False

        if not matches:
            commitment.status = CommitmentStatus.REJECTED
            logger.warning(f"Reveal mismatch for participant {participant_id}; entry forfeited")
            return False

        commitment.status = CommitmentStatus.REVEALED
        commitment.revealed_at = current_sequence
        commitment.revealed_seed = bytes(seed)
        commitment.revealed_nonce = bytes(nonce)

        logger.debug(f"Valid reveal from {participant_id} at sequence {current_sequence}")
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, participant_id: str) -> Optional[Commitment]:
        return self.commitments.get(participant_id)

    def is_eligible(self, participant_id: str) -> bool:
        """Committed participants are eligible only after a successful reveal."""
        commitment = self.commitments.get(participant_id)
        return commitment is not None and commitment.revealed

    def revealed_seeds(self) -> List[Tuple[str, bytes]]:
        """(participant_id, seed) for every successful reveal, sorted by id."""
        return sorted(
            (c.participant_id, c.revealed_seed)
            for c in self.commitments.values()
            if c.revealed and c.revealed_seed is not None
        )

    def revealed_openings(self) -> List[Tuple[str, bytes, bytes]]:
        """(participant_id, seed, nonce) for every successful reveal, sorted by id."""
        return sorted(
            (c.participant_id, c.revealed_seed, c.revealed_nonce)
            for c in self.commitments.values()
            if c.revealed and c.revealed_seed is not None
        )

    def get_unrevealed(self) -> List[str]:
        """Participants who committed but never revealed."""
        return sorted(
            pid for pid, c in self.commitments.items()
            if c.status == CommitmentStatus.COMMITTED
        )

    def get_commit_count(self) -> int:
        return len(self.commitments)

    def get_reveal_count(self) -> int:
        return sum(1 for c in self.commitments.values() if c.revealed)


__all__ = [
    "Commitment",
    "CommitmentStatus",
    "CommitmentBook",
    "compute_commitment",
    "create_commitment_pair",
    "verify_batch",
]
