"""
Input Validation - checks applied to every externally supplied value.

Validators return (is_valid, error_message) so callers decide whether
to raise, log or report.
"""

import re
from typing import Any, Optional, Tuple

# =============================================================================
# Constants
# =============================================================================

MAX_HASH_SIZE = 32
MAX_SEED_SIZE = 1024
MAX_PARTICIPANT_ID_LENGTH = 128
MAX_SEQUENCE = 2**64 - 1
MAX_ALLOCATIONS = 1_000_000

PARTICIPANT_ID_PATTERN = r"^[A-Za-z0-9_.:@\-]+$"


# =============================================================================
# Validation Functions
# =============================================================================


def validate_bytes(
    data: Any,
    name: str,
    expected_length: Optional[int] = None,
    max_length: Optional[int] = None,
) -> Tuple[bool, str]:
    """
    Validate bytes input.

    Args:
        data: Data to validate
        name: Field name for error messages
        expected_length: Exact expected length
        max_length: Maximum allowed length

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(data, (bytes, bytearray)):
        return False, f"{name} must be bytes, got {type(data).__name__}"

    if expected_length is not None and len(data) != expected_length:
        return False, f"{name} must be {expected_length} bytes, got {len(data)}"

    if max_length is not None and len(data) > max_length:
        return False, f"{name} exceeds max length {max_length}, got {len(data)}"

    return True, ""


def validate_hash(hash_value: Any, name: str = "hash") -> Tuple[bool, str]:
    """Validate a 32-byte hash value."""
    return validate_bytes(hash_value, name, expected_length=MAX_HASH_SIZE)


def validate_integer(
    value: Any,
    name: str,
    min_val: int = 0,
    max_val: int = MAX_SEQUENCE,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Returns:
        (is_valid, error_message)
    """
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_sequence(value: Any, name: str = "sequence") -> Tuple[bool, str]:
    """Validate a ledger sequence number."""
    return validate_integer(value, name, 0, MAX_SEQUENCE)


def validate_participant_id(value: Any) -> Tuple[bool, str]:
    """Participant ids are short opaque strings."""
    if not isinstance(value, str):
        return False, f"participant_id must be str, got {type(value).__name__}"

    if not value or len(value) > MAX_PARTICIPANT_ID_LENGTH:
        return False, f"participant_id must be 1..{MAX_PARTICIPANT_ID_LENGTH} characters"

    if not re.match(PARTICIPANT_ID_PATTERN, value):
        return False, "participant_id does not match required pattern"

    return True, ""


def validate_hex_string(value: Any, name: str, expected_bytes: Optional[int] = None) -> Tuple[bool, str]:
    """
    Validate a hex string (with or without 0x prefix).

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    hex_str = value[2:] if value.startswith("0x") else value

    if len(hex_str) % 2 != 0:
        return False, f"{name} has odd length, invalid hex"

    try:
        bytes.fromhex(hex_str)
    except ValueError:
        return False, f"{name} contains invalid hex characters"

    if expected_bytes is not None:
        actual_bytes = len(hex_str) // 2
        if actual_bytes != expected_bytes:
            return False, f"{name} must be {expected_bytes} bytes, got {actual_bytes}"

    return True, ""


# =============================================================================
# Composite Validators
# =============================================================================


def validate_round_parameters(
    total_allocations: Any,
    finalization_sequence: Any,
    reveal_start_sequence: Any,
    reveal_end_sequence: Any,
    max_entries_per_participant: Any,
    minimum_lock_period: Any,
    rate_limit_window: Any,
) -> Tuple[bool, str]:
    """
    Validate the numeric parameters of a round.

    Enforces reveal_start < reveal_end <= finalization.
    """
    checks = [
        validate_integer(total_allocations, "total_allocations", 0, MAX_ALLOCATIONS),
        validate_sequence(finalization_sequence, "finalization_sequence"),
        validate_sequence(reveal_start_sequence, "reveal_start_sequence"),
        validate_sequence(reveal_end_sequence, "reveal_end_sequence"),
        validate_integer(max_entries_per_participant, "max_entries_per_participant", 1),
        validate_sequence(minimum_lock_period, "minimum_lock_period"),
        validate_sequence(rate_limit_window, "rate_limit_window"),
    ]
    for valid, err in checks:
        if not valid:
            return False, err

    if not reveal_start_sequence < reveal_end_sequence:
        return False, "reveal_start_sequence must be < reveal_end_sequence"

    if not reveal_end_sequence <= finalization_sequence:
        return False, "reveal_end_sequence must be <= finalization_sequence"

    return True, ""


__all__ = [
    "validate_bytes",
    "validate_hash",
    "validate_integer",
    "validate_sequence",
    "validate_participant_id",
    "validate_hex_string",
    "validate_round_parameters",
    "MAX_HASH_SIZE",
    "MAX_PARTICIPANT_ID_LENGTH",
    "MAX_SEED_SIZE",
]
