"""
Engine configuration for fairalloc.

Defines engine-wide defaults and the round-file schema used by the CLI.

Resolution order in load_config():
    dataclass defaults -> JSON file -> .env / FAIRALLOC_<FIELD> environment
"""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from fairalloc.core.allocation.round import AllocationStrategy
from fairalloc.core.entropy import EntropySource
from fairalloc.utils.validation import validate_hex_string

ENV_PREFIX = "FAIRALLOC_"


@dataclass
class EngineConfig:
    """Engine-wide configuration parameters"""

    # Randomness
    entropy_source: EntropySource = EntropySource.LEDGER_HEADER_HASH_WITH_TIMESTAMP

    # Anti-sniping default for rounds that do not set their own cap
    rate_limit_max_entries: int = 5

    # Fairness scoring (advisory)
    fairness_threshold: float = 50.0  # Scores below this log a warning
    fairness_bins: int = 10

    # Persistence
    persist_audit: bool = False  # Write rounds to the SQLite audit store

    # Logging
    log_level: str = "INFO"
    log_to_file: bool = False  # Also write <log_dir>/fairalloc.log

    # Paths
    data_dir: Path = Path("data")
    log_dir: Path = Path("logs")

    def __post_init__(self):
        if isinstance(self.entropy_source, str):
            self.entropy_source = EntropySource.from_name(self.entropy_source)
        self.data_dir = Path(self.data_dir)
        self.log_dir = Path(self.log_dir)
        if self.rate_limit_max_entries < 1:
            raise ValueError("rate_limit_max_entries must be >= 1")
        if self.fairness_bins < 2:
            raise ValueError("fairness_bins must be >= 2")
        if not 0.0 <= self.fairness_threshold <= 100.0:
            raise ValueError("fairness_threshold must be within [0, 100]")

    def ensure_dirs(self):
        """Create the data directory, and the log directory when logging to file"""
        self.data_dir.mkdir(exist_ok=True, parents=True)
        if self.log_to_file:
            self.log_dir.mkdir(exist_ok=True, parents=True)


def _coerce(name: str, raw: str) -> Any:
    """Convert an environment string to the field's type."""
    if name in ("rate_limit_max_entries", "fairness_bins"):
        return int(raw)
    if name == "fairness_threshold":
        return float(raw)
    if name in ("persist_audit", "log_to_file"):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return raw


def load_config(config_path: Optional[str] = None) -> EngineConfig:
    """
    Load configuration from file and environment, falling back to defaults.

    Args:
        config_path: Optional path to a JSON config file

    Returns:
        EngineConfig instance

    Raises:
        ValueError: Unknown keys or invalid values
    """
    known = {f.name for f in fields(EngineConfig)}
    values: Dict[str, Any] = {}

    if config_path:
        with open(config_path, "r") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_path} must contain a JSON object")
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        values.update(data)

    load_dotenv(find_dotenv(usecwd=True))
    for name in known:
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is not None:
            values[name] = _coerce(name, raw)

    return EngineConfig(**values)


# =============================================================================
# Round Files
# =============================================================================


class EntryDefinition(BaseModel):
    """One scripted entry of a simulated round."""

    participant_id: str
    registered_at_sequence: int = Field(ge=0)
    origin: Optional[str] = None
    seed: Optional[str] = Field(default=None, description="Hex seed; entry registers with a commitment")
    nonce: Optional[str] = Field(default=None, description="Hex nonce paired with seed")
    reveal: bool = True

    @field_validator("seed", "nonce")
    @classmethod
    def _check_hex(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        valid, err = validate_hex_string(value, "seed/nonce")
        if not valid:
            raise ValueError(err)
        return value[2:] if value.startswith("0x") else value

    @model_validator(mode="after")
    def _seed_and_nonce_together(self) -> "EntryDefinition":
        if (self.seed is None) != (self.nonce is None):
            raise ValueError("seed and nonce must be given together")
        return self

    @property
    def committed(self) -> bool:
        return self.seed is not None


class RoundDefinition(BaseModel):
    """A round file: tier parameters plus scripted entries."""

    tier_id: int = Field(ge=0)
    strategy: str = "LOTTERY"
    total_allocations: int = Field(ge=0)
    finalization_sequence: int = Field(ge=0)
    reveal_start_sequence: int = Field(ge=0)
    reveal_end_sequence: int = Field(ge=0)
    max_entries_per_participant: int = Field(default=1, ge=1)
    minimum_lock_period: int = Field(default=0, ge=0)
    rate_limit_window: int = Field(default=0, ge=0)
    rate_limit_max_entries: int = Field(default=5, ge=1)
    require_commitment: bool = False
    whitelist: List[str] = Field(default_factory=list)
    entropy_source: Optional[str] = None
    genesis_seed: str = "fairalloc-genesis"
    entries: List[EntryDefinition] = Field(default_factory=list)

    @field_validator("strategy")
    @classmethod
    def _known_strategy(cls, value: str) -> str:
        return AllocationStrategy.from_name(value).name

    @field_validator("entropy_source")
    @classmethod
    def _known_source(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return EntropySource.from_name(value).name

    @model_validator(mode="after")
    def _window_order(self) -> "RoundDefinition":
        if not self.reveal_start_sequence < self.reveal_end_sequence <= self.finalization_sequence:
            raise ValueError(
                "require reveal_start_sequence < reveal_end_sequence <= finalization_sequence"
            )
        return self


__all__ = [
    "EngineConfig",
    "load_config",
    "EntryDefinition",
    "RoundDefinition",
]
