"""
Anti-sniping controls applied before any strategy runs.

Registration-time caps:
- max_entries_per_participant: total entries one registrant may hold
- rate_limit_window / rate_limit_max_entries: entries one registrant may
  add within the trailing window of sequences

Both count per registrant (the origin behind a registration), a coarse
Sybil deterrent that cannot tell distinct identities apart.

Execution-time gate:
- minimum_lock_period: allocation waits until
  finalization_sequence + minimum_lock_period
"""

from typing import Sequence

from fairalloc.core.allocation.round import AllocationConfig, LotteryEntry
from fairalloc.core.errors import InvalidState, RateLimited
from fairalloc.core.vrf import can_finalize_randomness
from fairalloc.utils.logger import get_logger

logger = get_logger("allocation.anti_sniping")


def entries_in_window(
    origin_entries: Sequence[LotteryEntry],
    window: int,
    current_sequence: int,
) -> int:
    """Entries registered within (current_sequence - window, current_sequence]."""
    floor = current_sequence - window
    return sum(1 for e in origin_entries if e.registered_at_sequence > floor)


def check_registration(
    config: AllocationConfig,
    origin: str,
    origin_entries: Sequence[LotteryEntry],
    current_sequence: int,
) -> None:
    """
    Raise RateLimited if one more entry from `origin` breaks a cap.

    Args:
        config: Tier configuration
        origin: Registrant identifier
        origin_entries: Entries `origin` already holds in this tier
        current_sequence: Sequence of the registration
    """
    if len(origin_entries) >= config.max_entries_per_participant:
        logger.warning(f"Tier {config.tier_id}: {origin} reached "
                       f"{config.max_entries_per_participant} entries")
        raise RateLimited(
            f"Registrant {origin} already holds {len(origin_entries)} entries "
            f"(max {config.max_entries_per_participant})",
            tier_id=config.tier_id,
        )

    if config.rate_limit_window > 0:
        recent = entries_in_window(origin_entries, config.rate_limit_window, current_sequence)
        if recent >= config.rate_limit_max_entries:
            logger.warning(f"Tier {config.tier_id}: {origin} rate limited "
                           f"({recent} entries in last {config.rate_limit_window} sequences)")
            raise RateLimited(
                f"Registrant {origin} made {recent} entries in the last "
                f"{config.rate_limit_window} sequences (max {config.rate_limit_max_entries})",
                tier_id=config.tier_id,
            )


def check_lock_period(config: AllocationConfig, current_sequence: int) -> None:
    """Raise InvalidState before finalization_sequence + minimum_lock_period."""
    if not can_finalize_randomness(current_sequence, config):
        raise InvalidState(
            f"Tier {config.tier_id} is locked until sequence "
            f"{config.earliest_allocation_sequence} (now {current_sequence})",
            tier_id=config.tier_id,
        )
