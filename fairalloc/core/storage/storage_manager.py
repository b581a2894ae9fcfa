import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from fairalloc.core.allocation.events import AllocationEvent
from fairalloc.core.allocation.round import AllocationConfig, AllocationResult, TierState
from fairalloc.core.storage.sqlite_adapter import SQLiteAdapter
from fairalloc.core.vrf import RandomnessOutput
from fairalloc.utils.logger import get_logger

logger = get_logger("storage.manager")


class StorageManager:
    """
    Persists allocation rounds for later audit.

    Coordinates data persistence using the SQLite adapter.
    Handles:
    - Tier configurations and lifecycle state
    - Randomness batches, results and audit records (write-once)
    - Lifecycle events
    """

    def __init__(self, data_dir: Path, db_name: str = "fairalloc.db"):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"StorageManager initialized at {self.db_path}")

    # =========================================================================
    # Rounds
    # =========================================================================

    def persist_round(self, config: AllocationConfig, sequence: int):
        """Store a new tier's configuration and initial state."""
        self.adapter.save_round(config.tier_id, json.dumps(config.to_dict(), sort_keys=True), sequence)
        self.adapter.set_state(config.tier_id, TierState.OPEN.name, sequence)

    def persist_state(self, tier_id: int, state: TierState, sequence: int):
        self.adapter.set_state(tier_id, state.name, sequence)

    def load_config(self, tier_id: int) -> Optional[AllocationConfig]:
        raw = self.adapter.get_round(tier_id)
        return AllocationConfig.from_dict(json.loads(raw)) if raw else None

    def load_state(self, tier_id: int) -> Optional[TierState]:
        name = self.adapter.get_state(tier_id)
        return TierState[name] if name else None

    def list_tiers(self) -> List[int]:
        return self.adapter.list_rounds()

    # =========================================================================
    # Randomness & Results
    # =========================================================================

    def persist_randomness(self, tier_id: int, outputs: List[RandomnessOutput]):
        """Store a tier's randomness batch. Raises AlreadyAllocated on a second batch."""
        rows = [(o.proof.nonce, json.dumps(o.to_dict(), sort_keys=True)) for o in outputs]
        self.adapter.save_randomness(tier_id, rows)

    def load_randomness(self, tier_id: int) -> List[RandomnessOutput]:
        return [RandomnessOutput.from_dict(json.loads(raw)) for raw in self.adapter.get_randomness(tier_id)]

    def persist_allocation(self, tier_id: int, results: List[AllocationResult], audit: Dict[str, Any]):
        """Store results with their audit record. Raises AlreadyAllocated on a second write."""
        self.adapter.save_allocation(
            tier_id,
            [r.to_dict() for r in results],
            json.dumps(audit, sort_keys=True),
        )

    def load_results(self, tier_id: int) -> List[AllocationResult]:
        return [AllocationResult.from_dict(row) for row in self.adapter.get_results(tier_id)]

    def load_audit(self, tier_id: int) -> Optional[Dict[str, Any]]:
        raw = self.adapter.get_audit(tier_id)
        return json.loads(raw) if raw else None

    # =========================================================================
    # Events
    # =========================================================================

    def persist_event(self, event: AllocationEvent):
        self.adapter.save_event(event.tier_id, event.kind, event.sequence, json.dumps(event.data, sort_keys=True))

    def load_events(self, tier_id: Optional[int] = None) -> List[AllocationEvent]:
        return [
            AllocationEvent(kind=kind, tier_id=tid, sequence=seq, data=json.loads(data))
            for tid, kind, seq, data in self.adapter.get_events(tier_id)
        ]

    def close(self):
        self.adapter.close()
