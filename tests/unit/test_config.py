"""
Unit tests for configuration loading and round files.
"""

import json
import os

import pytest
from pydantic import ValidationError

from fairalloc.core.config import EngineConfig, RoundDefinition, load_config
from fairalloc.core.entropy import EntropySource


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Run each test in an empty directory without FAIRALLOC_ variables."""
    monkeypatch.chdir(tmp_path)
    for name in ("ENTROPY_SOURCE", "FAIRNESS_THRESHOLD", "FAIRNESS_BINS", "PERSIST_AUDIT",
                 "RATE_LIMIT_MAX_ENTRIES", "LOG_LEVEL", "LOG_TO_FILE", "DATA_DIR", "LOG_DIR"):
        monkeypatch.delenv(f"FAIRALLOC_{name}", raising=False)


class TestEngineConfig:
    """Tests for engine defaults."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.entropy_source == EntropySource.LEDGER_HEADER_HASH_WITH_TIMESTAMP
        assert config.rate_limit_max_entries == 5
        assert config.fairness_threshold == 50.0
        assert not config.persist_audit

    def test_no_directories_created(self, tmp_path):
        EngineConfig(data_dir=tmp_path / "d", log_dir=tmp_path / "l")
        assert not (tmp_path / "d").exists()

    def test_ensure_dirs(self, tmp_path):
        config = EngineConfig(data_dir=tmp_path / "d", log_dir=tmp_path / "l")
        config.ensure_dirs()
        assert (tmp_path / "d").is_dir()
        assert not (tmp_path / "l").exists()

    def test_ensure_dirs_with_file_logging(self, tmp_path):
        config = EngineConfig(data_dir=tmp_path / "d", log_dir=tmp_path / "l", log_to_file=True)
        config.ensure_dirs()
        assert (tmp_path / "l").is_dir()

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            EngineConfig(fairness_bins=1)
        with pytest.raises(ValueError):
            EngineConfig(fairness_threshold=120.0)


class TestLoadConfig:
    """Tests for file and environment resolution."""

    def test_defaults_without_sources(self):
        assert load_config() == EngineConfig()

    def test_json_file(self, tmp_path):
        path = tmp_path / "fairalloc.json"
        path.write_text(json.dumps({"entropy_source": "MULTI_SOURCE", "fairness_bins": 20}))
        config = load_config(str(path))
        assert config.entropy_source == EntropySource.MULTI_SOURCE
        assert config.fairness_bins == 20

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "fairalloc.json"
        path.write_text(json.dumps({"fairness_binz": 20}))
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "fairalloc.json"
        path.write_text(json.dumps({"fairness_threshold": 10.0}))
        monkeypatch.setenv("FAIRALLOC_FAIRNESS_THRESHOLD", "75.5")
        monkeypatch.setenv("FAIRALLOC_PERSIST_AUDIT", "true")
        monkeypatch.setenv("FAIRALLOC_LOG_TO_FILE", "yes")
        config = load_config(str(path))
        assert config.fairness_threshold == 75.5
        assert config.persist_audit
        assert config.log_to_file

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("FAIRALLOC_RATE_LIMIT_MAX_ENTRIES=9\n")
        try:
            config = load_config()
        finally:
            os.environ.pop("FAIRALLOC_RATE_LIMIT_MAX_ENTRIES", None)
        assert config.rate_limit_max_entries == 9


class TestRoundDefinition:
    """Tests for round-file validation."""

    def base(self, **overrides):
        data = {
            "tier_id": 1,
            "strategy": "lottery",
            "total_allocations": 2,
            "finalization_sequence": 100,
            "reveal_start_sequence": 50,
            "reveal_end_sequence": 80,
            "entries": [
                {"participant_id": "alice", "registered_at_sequence": 10},
                {"participant_id": "bob", "registered_at_sequence": 20, "seed": "0xaa", "nonce": "bb"},
            ],
        }
        data.update(overrides)
        return data

    def test_valid(self):
        definition = RoundDefinition.model_validate(self.base())
        assert definition.strategy == "LOTTERY"
        assert definition.entries[1].committed
        assert definition.entries[1].seed == "aa"
        assert not definition.entries[0].committed

    def test_window_order(self):
        with pytest.raises(ValidationError):
            RoundDefinition.model_validate(self.base(reveal_end_sequence=120))

    def test_unknown_strategy(self):
        with pytest.raises(ValidationError):
            RoundDefinition.model_validate(self.base(strategy="auction"))

    def test_seed_without_nonce(self):
        entries = [{"participant_id": "bob", "registered_at_sequence": 1, "seed": "aa"}]
        with pytest.raises(ValidationError):
            RoundDefinition.model_validate(self.base(entries=entries))

    def test_bad_hex(self):
        entries = [{"participant_id": "bob", "registered_at_sequence": 1, "seed": "zz", "nonce": "aa"}]
        with pytest.raises(ValidationError):
            RoundDefinition.model_validate(self.base(entries=entries))
