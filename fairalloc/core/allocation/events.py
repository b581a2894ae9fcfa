"""
Lifecycle events - append-only record of every successful mutation.

Mirrors contract-style event publication so off-engine consumers
(escrow, notifications, auditors) can follow a tier without polling it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fairalloc.utils.logger import get_logger

logger = get_logger("allocation.events")

ROUND_INITIALIZED = "round_initialized"
ENTRY_REGISTERED = "entry_registered"
COMMITMENT_REVEALED = "commitment_revealed"
REVEAL_REJECTED = "reveal_rejected"
ROUND_LOCKED = "round_locked"
RANDOMNESS_GENERATED = "randomness_generated"
ALLOCATION_EXECUTED = "allocation_executed"
ROUND_FINALIZED = "round_finalized"
ENGINE_PAUSED = "engine_paused"
ENGINE_UNPAUSED = "engine_unpaused"


@dataclass(frozen=True)
class AllocationEvent:
    kind: str
    tier_id: Optional[int]
    sequence: int
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "tier_id": self.tier_id,
            "sequence": self.sequence,
            "data": dict(self.data),
        }


class EventLog:
    """In-memory, append-only event list."""

    def __init__(self):
        self._events: List[AllocationEvent] = []

    def emit(self, kind: str, tier_id: Optional[int], sequence: int, **data: Any) -> AllocationEvent:
        event = AllocationEvent(kind=kind, tier_id=tier_id, sequence=sequence, data=data)
        self._events.append(event)
        logger.debug(f"Event {kind} tier={tier_id} seq={sequence}")
        return event

    def for_tier(self, tier_id: Optional[int] = None) -> List[AllocationEvent]:
        if tier_id is None:
            return list(self._events)
        return [e for e in self._events if e.tier_id == tier_id]

    def __len__(self) -> int:
        return len(self._events)
