"""
VRF Engine - deterministic, verifiable randomness from ledger entropy.

Each output is a hash of the inputs, so anyone holding the inputs can
recompute it byte-for-byte, and nobody can compute it before the entropy
(a closed ledger header) exists:

    output      = SHA256(seed || entropy || u64(sequence) || u64(nonce))
    input_hash  = SHA256("fairalloc.vrf.input" || seed || entropy)
    proof_bytes = u64(nonce) || SHA256("fairalloc.vrf.proof" || output || input_hash || u64(sequence))

A batch draws nonces 0..count-1 over the same seed and entropy; each
output feeds exactly one allocation draw.

Selection indices are reduced modulo the population. Values are 128 bits
wide, so the modulo bias for a population of N is below N / 2^128.
"""

from dataclasses import dataclass
from typing import Any, Dict, List

from fairalloc.crypto import sha256, hash_domain, u64, bytes_to_u128, short_hex, HASH_SIZE
from fairalloc.utils.logger import get_logger

logger = get_logger("vrf")


# =============================================================================
# Constants
# =============================================================================

DOMAIN_VRF_INPUT = b"fairalloc.vrf.input"
DOMAIN_VRF_PROOF = b"fairalloc.vrf.proof"

PROOF_SIZE = 8 + HASH_SIZE


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class VRFInput:
    """The public preimage of a VRF output (everything except the sequence)."""
    participant_seed: bytes
    entropy: bytes
    nonce: int

    @property
    def input_hash(self) -> bytes:
        return hash_domain(DOMAIN_VRF_INPUT, self.participant_seed, self.entropy)


@dataclass(frozen=True)
class VRFProof:
    """
    Proof that `output` was derived from a specific input at a sequence.

    Immutable once emitted.
    """
    output: bytes
    proof_bytes: bytes
    ledger_sequence: int
    input_hash: bytes

    @property
    def nonce(self) -> int:
        return int.from_bytes(self.proof_bytes[:8], "big")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output": self.output.hex(),
            "proof_bytes": self.proof_bytes.hex(),
            "ledger_sequence": self.ledger_sequence,
            "input_hash": self.input_hash.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VRFProof":
        return cls(
            output=bytes.fromhex(data["output"]),
            proof_bytes=bytes.fromhex(data["proof_bytes"]),
            ledger_sequence=int(data["ledger_sequence"]),
            input_hash=bytes.fromhex(data["input_hash"]),
        )


@dataclass(frozen=True)
class RandomnessOutput:
    """A 128-bit randomness value with the proof it was taken from."""
    value: int
    proof: VRFProof

    def to_dict(self) -> Dict[str, Any]:
        return {"value": str(self.value), "proof": self.proof.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RandomnessOutput":
        return cls(value=int(data["value"]), proof=VRFProof.from_dict(data["proof"]))


# =============================================================================
# Generation
# =============================================================================


def _compute_output(participant_seed: bytes, entropy: bytes, sequence: int, nonce: int) -> bytes:
    return sha256(participant_seed + entropy + u64(sequence) + u64(nonce))


def _compute_binding(output: bytes, input_hash: bytes, sequence: int) -> bytes:
    return hash_domain(DOMAIN_VRF_PROOF, output, input_hash, u64(sequence))


def generate_vrf_randomness(
    participant_seed: bytes,
    entropy: bytes,
    sequence: int,
    nonce: int,
) -> VRFProof:
    """
    Derive one VRF output and its proof.

    Args:
        participant_seed: Seed contributed by the caller (round seed)
        entropy: 32-byte ledger entropy
        sequence: Ledger sequence the entropy belongs to
        nonce: Draw index within the batch

    Returns:
        VRFProof (deterministic for identical inputs)
    """
    if len(entropy) != HASH_SIZE:
        raise ValueError(f"entropy must be {HASH_SIZE} bytes, got {len(entropy)}")

    output = _compute_output(participant_seed, entropy, sequence, nonce)
    input_hash = hash_domain(DOMAIN_VRF_INPUT, participant_seed, entropy)
    proof_bytes = u64(nonce) + _compute_binding(output, input_hash, sequence)

    return VRFProof(
        output=output,
        proof_bytes=proof_bytes,
        ledger_sequence=sequence,
        input_hash=input_hash,
    )


def generate_batch_randomness(
    entropy: bytes,
    sequence: int,
    count: int,
    participant_seed: bytes = b"",
) -> List[RandomnessOutput]:
    """
    Generate `count` independent outputs with nonces 0..count-1.

    Raises:
        ValueError: count is negative, or two outputs collide
    """
    if count < 0:
        raise ValueError(f"count must be non-negative, got {count}")

    outputs: List[RandomnessOutput] = []
    seen = set()
    for nonce in range(count):
        proof = generate_vrf_randomness(participant_seed, entropy, sequence, nonce)
        if proof.output in seen:
            raise ValueError(f"VRF output collision at nonce {nonce}")
        seen.add(proof.output)
        outputs.append(RandomnessOutput(value=bytes_to_u128(proof.output), proof=proof))

    logger.debug(f"Generated {count} outputs at sequence {sequence} "
                 f"(entropy {short_hex(entropy)}...)")
    return outputs


# =============================================================================
# Verification
# =============================================================================


def verify_vrf_proof(proof: VRFProof, original_input: VRFInput, expected_sequence: int) -> bool:
    """
    Recompute a proof from its input and compare.

    Checks the output, the input hash, the binding hash, the nonce and the
    sequence. Never raises: malformed inputs verify as False.
    """
    try:
        if proof.ledger_sequence != expected_sequence:
            return False
        if len(proof.proof_bytes) != PROOF_SIZE or len(original_input.entropy) != HASH_SIZE:
            return False
        if proof.nonce != original_input.nonce:
            return False

        output = _compute_output(
            original_input.participant_seed,
            original_input.entropy,
            expected_sequence,
            original_input.nonce,
        )
        if output != proof.output:
            return False

        input_hash = original_input.input_hash
        if input_hash != proof.input_hash:
            return False

        return proof.proof_bytes[8:] == _compute_binding(output, input_hash, expected_sequence)
    except (AttributeError, TypeError, ValueError, OverflowError):
        return False


def verify_randomness_output(output: RandomnessOutput, original_input: VRFInput,
                             expected_sequence: int) -> bool:
    """Verify a proof and that the value was taken from its output."""
    if not verify_vrf_proof(output.proof, original_input, expected_sequence):
        return False
    return output.value == bytes_to_u128(output.proof.output)


# =============================================================================
# Selection and Boundaries
# =============================================================================


def compute_selection_index(randomness_value: int, population_size: int) -> int:
    """
    Reduce a randomness value to an index in [0, population_size).

    Raises:
        ValueError: population_size is not positive
    """
    if population_size <= 0:
        raise ValueError(f"population_size must be positive, got {population_size}")
    return randomness_value % population_size


def is_in_anti_sniping_window(sequence: int, config) -> bool:
    """Between the finalization boundary and the end of the lock period."""
    start = config.finalization_sequence
    return start <= sequence < start + config.minimum_lock_period


def can_finalize_randomness(sequence: int, config) -> bool:
    """Whether randomness for the round may be treated as final."""
    return sequence >= config.finalization_sequence + config.minimum_lock_period


__all__ = [
    "VRFInput",
    "VRFProof",
    "RandomnessOutput",
    "generate_vrf_randomness",
    "generate_batch_randomness",
    "verify_vrf_proof",
    "verify_randomness_output",
    "compute_selection_index",
    "is_in_anti_sniping_window",
    "can_finalize_randomness",
]
