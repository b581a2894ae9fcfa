"""
Error taxonomy for the allocation engine.

Every failing engine call raises one of these and leaves tier state
untouched. Only EntropyNotReady is expected to be retried as-is; the
others need a different input or different timing first.
"""

from typing import Optional


class AllocationError(Exception):
    """Base class for all engine errors."""

    retryable = False

    def __init__(self, message: str, tier_id: Optional[int] = None):
        super().__init__(message)
        self.tier_id = tier_id


class EntropyNotReady(AllocationError):
    """The ledger has not reached the finalization boundary yet."""

    retryable = True

    def __init__(self, message: str, current_sequence: int, required_sequence: int,
                 tier_id: Optional[int] = None):
        super().__init__(message, tier_id)
        self.current_sequence = current_sequence
        self.required_sequence = required_sequence


class InvalidState(AllocationError):
    """Operation attempted outside its lifecycle phase."""


class DuplicateEntry(AllocationError):
    """Participant already registered (or committed) for this tier."""


class RateLimited(AllocationError):
    """Registrant exceeded its entry cap or the rate-limit window."""


class CommitmentMismatch(AllocationError):
    """Reveal attempted for a commitment whose earlier reveal failed."""


class AlreadyAllocated(AllocationError):
    """Write-once randomness or results already produced."""


class InsufficientRandomness(AllocationError):
    """Fewer independent randomness outputs than required draws."""

    def __init__(self, message: str, required: int, supplied: int,
                 tier_id: Optional[int] = None):
        super().__init__(message, tier_id)
        self.required = required
        self.supplied = supplied


class Unauthorized(AllocationError):
    """Organizer capability missing or invalid."""


class RoundNotFound(AllocationError):
    """No round initialized for the tier."""


__all__ = [
    "AllocationError",
    "EntropyNotReady",
    "InvalidState",
    "DuplicateEntry",
    "RateLimited",
    "CommitmentMismatch",
    "AlreadyAllocated",
    "InsufficientRandomness",
    "Unauthorized",
    "RoundNotFound",
]
