import pytest

from fairalloc.crypto import generate_keypair
from fairalloc.core.allocation.engine import AllocationEngine
from fairalloc.core.allocation.round import AllocationStrategy, TierState
from fairalloc.core.capability import OrganizerCapability
from fairalloc.core.entropy import SimulatedLedger
from fairalloc.core.errors import AlreadyAllocated
from fairalloc.core.storage import StorageManager
from fairalloc.core.verification import RoundAudit, verify_allocation


@pytest.fixture
def temp_data_dir(tmp_path):
    """Temporary data directory for the audit store."""
    d = tmp_path / "fairalloc_data"
    d.mkdir()
    return d


def run_round(storage, tier_id=1, finalize=True):
    kp = generate_keypair()
    capability = OrganizerCapability.issue(kp)
    ledger = SimulatedLedger(genesis_seed=b"persistence")
    engine = AllocationEngine(ledger, kp.public_key, storage=storage)

    engine.initialize_round(capability, tier_id, AllocationStrategy.TIME_WEIGHTED, 3, 100, 50, 80, 1, 0, 0)
    for i in range(8):
        ledger.advance_to(5 * (i + 1))
        engine.register_entry(tier_id, f"user-{i}")
    ledger.advance_to(100)
    engine.generate_randomness(tier_id)
    engine.execute_allocation(tier_id)
    if finalize:
        engine.finalize_round(capability, tier_id)
    return engine, capability


def test_round_survives_restart(temp_data_dir):
    storage = StorageManager(data_dir=temp_data_dir)
    engine, _ = run_round(storage)
    winners = engine.get_winners(1)
    storage.close()

    reopened = StorageManager(data_dir=temp_data_dir)
    assert reopened.list_tiers() == [1]
    assert reopened.load_state(1) == TierState.FINALIZED
    assert reopened.load_config(1).strategy == AllocationStrategy.TIME_WEIGHTED

    stored_winners = [r for r in reopened.load_results(1) if r.is_winner]
    assert stored_winners == winners

    audit = RoundAudit.from_dict(reopened.load_audit(1))
    assert verify_allocation(audit) == (True, "")
    reopened.close()


def test_events_logged_in_order(temp_data_dir):
    storage = StorageManager(data_dir=temp_data_dir)
    engine, _ = run_round(storage, finalize=False)

    kinds = [e.kind for e in storage.load_events(1)]
    assert kinds[0] == "round_initialized"
    assert kinds.count("entry_registered") == 8
    assert kinds[-1] == "allocation_executed"
    assert storage.load_state(1) == TierState.ALLOCATED
    storage.close()


def test_stored_tier_is_write_once(temp_data_dir):
    """A fresh engine on the same store cannot re-run a stored tier."""
    storage = StorageManager(data_dir=temp_data_dir)
    run_round(storage)
    before = storage.load_results(1)

    with pytest.raises(AlreadyAllocated):
        run_round(storage)

    assert storage.load_results(1) == before
    assert storage.list_tiers() == [1]
    storage.close()
