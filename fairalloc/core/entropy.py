"""
Entropy Manager - freshness-gated randomness from the host ledger.

The engine never takes entropy from callers. Every value is read from
the header of a ledger that consensus has already closed, so it cannot
exist before the finalization boundary of a round:

    ledger(seq=finalization) closes  ->  header hash is public
    get_entropy(min_sequence=finalization)  ->  32-byte value

Three source kinds are supported:
- LEDGER_HEADER_HASH: the raw header hash
- LEDGER_HEADER_HASH_WITH_TIMESTAMP: SHA256(hash || u64(timestamp))
- MULTI_SOURCE: SHA256(hash XOR timestamp XOR sequence XOR counter), where
  the counter is internal and increments on every successful call, so two
  requests in the same ledger never share a preimage.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import List, Protocol, runtime_checkable

from fairalloc.crypto import sha256, u64, xor_bytes32, short_hex, HASH_SIZE
from fairalloc.core.errors import EntropyNotReady
from fairalloc.utils.logger import get_logger

logger = get_logger("entropy")


# =============================================================================
# Types
# =============================================================================


class EntropySource(IntEnum):
    """Where a round's entropy is derived from."""
    LEDGER_HEADER_HASH = 0
    LEDGER_HEADER_HASH_WITH_TIMESTAMP = 1
    MULTI_SOURCE = 2

    @classmethod
    def from_name(cls, name: str) -> "EntropySource":
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown entropy source: {name}") from None


@dataclass(frozen=True)
class LedgerHeader:
    """A closed ledger as seen by the engine."""
    sequence: int
    header_hash: bytes
    timestamp: int

    def __post_init__(self):
        if len(self.header_hash) != HASH_SIZE:
            raise ValueError(f"header_hash must be {HASH_SIZE} bytes, got {len(self.header_hash)}")


@runtime_checkable
class LedgerView(Protocol):
    """Read-only view of the host ledger."""

    def latest_sequence(self) -> int:
        """Sequence of the most recently closed ledger."""
        ...

    def header(self, sequence: int) -> LedgerHeader:
        """Header of a closed ledger."""
        ...


# =============================================================================
# Simulated Ledger
# =============================================================================


class SimulatedLedger:
    """
    Hash-chained in-memory ledger for tests, the CLI and offline replays.

    Header i is SHA256(header[i-1] || u64(i) || u64(timestamp_i)); future
    headers do not exist until advance() produces them.
    """

    def __init__(self, genesis_seed: bytes = b"fairalloc-genesis", start_time: int = 1_700_000_000,
                 block_time: int = 5):
        self.block_time = block_time
        genesis = LedgerHeader(
            sequence=0,
            header_hash=sha256(genesis_seed),
            timestamp=start_time,
        )
        self._headers: List[LedgerHeader] = [genesis]

    def latest_sequence(self) -> int:
        return self._headers[-1].sequence

    def header(self, sequence: int) -> LedgerHeader:
        if sequence < 0 or sequence > self.latest_sequence():
            raise KeyError(f"Ledger {sequence} is not closed (latest {self.latest_sequence()})")
        return self._headers[sequence]

    def advance(self, count: int = 1) -> LedgerHeader:
        """Close `count` new ledgers and return the latest header."""
        if count < 0:
            raise ValueError("count must be non-negative")
        for _ in range(count):
            prev = self._headers[-1]
            seq = prev.sequence + 1
            ts = prev.timestamp + self.block_time
            self._headers.append(LedgerHeader(
                sequence=seq,
                header_hash=sha256(prev.header_hash + u64(seq) + u64(ts)),
                timestamp=ts,
            ))
        return self._headers[-1]

    def advance_to(self, sequence: int) -> LedgerHeader:
        """Close ledgers until `sequence` is the latest one."""
        return self.advance(max(0, sequence - self.latest_sequence()))


# =============================================================================
# Entropy Manager
# =============================================================================


def derive_entropy(source: EntropySource, header: LedgerHeader, counter: int = 0) -> bytes:
    """
    Derive the 32-byte entropy value for a header.

    Pure function so that auditors holding the header can recompute it.
    """
    if source == EntropySource.LEDGER_HEADER_HASH:
        return header.header_hash
    if source == EntropySource.LEDGER_HEADER_HASH_WITH_TIMESTAMP:
        return sha256(header.header_hash + u64(header.timestamp))
    if source == EntropySource.MULTI_SOURCE:
        mixed = xor_bytes32(
            int.from_bytes(header.header_hash, "big"),
            header.timestamp,
            header.sequence,
            counter,
        )
        return sha256(mixed)
    raise ValueError(f"Unsupported entropy source: {source!r}")


class EntropyManager:
    """
    Hands out ledger entropy once a sequence boundary has been reached.

    Attributes:
        ledger: Host ledger view
        counter: Number of values handed out so far (MULTI_SOURCE mixing)
    """

    def __init__(self, ledger: LedgerView):
        self.ledger = ledger
        self.counter = 0

    def is_fresh(self, source: EntropySource, min_sequence: int) -> bool:
        """Whether the ledger has closed `min_sequence` (entropy exists)."""
        return self.ledger.latest_sequence() >= min_sequence

    def get_entropy(self, source: EntropySource, min_sequence: int) -> bytes:
        """
        Return the entropy of the ledger closed at `min_sequence`.

        Args:
            source: Derivation kind
            min_sequence: Boundary the ledger must have reached

        Returns:
            32-byte entropy value

        Raises:
            EntropyNotReady: The ledger has not closed `min_sequence` yet
        """
        current = self.ledger.latest_sequence()
        if not self.is_fresh(source, min_sequence):
            logger.warning(f"Entropy requested for ledger {min_sequence} at {current}; not ready")
            raise EntropyNotReady(
                f"Ledger {min_sequence} not closed yet (latest {current})",
                current_sequence=current,
                required_sequence=min_sequence,
            )

        header = self.ledger.header(min_sequence)
        value = derive_entropy(source, header, self.counter)
        self.counter += 1

        logger.debug(f"Entropy {short_hex(value)}... from ledger {header.sequence} "
                     f"({source.name}, counter={self.counter - 1})")
        return value
