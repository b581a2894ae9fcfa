import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fairalloc.core.errors import AlreadyAllocated
from fairalloc.utils.logger import get_logger

logger = get_logger("storage.sqlite")


class SQLiteAdapter:
    """
    SQLite backend for the allocation audit store.

    Tables:
    1. rounds: tier configuration, written once at initialization
    2. round_state: current lifecycle state (the only mutable row per tier)
    3. randomness / results / audits: write-once allocation artifacts
    4. events: append-only lifecycle log

    Write-once tables use plain INSERT; a primary-key conflict surfaces
    as AlreadyAllocated and the enclosing transaction is rolled back.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn_local = threading.local()

        # Ensure directory exists
        if not db_path.parent.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS rounds (
                    tier_id INTEGER PRIMARY KEY,
                    config TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS round_state (
                    tier_id INTEGER PRIMARY KEY,
                    state TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS randomness (
                    tier_id INTEGER NOT NULL,
                    nonce INTEGER NOT NULL,
                    output TEXT NOT NULL,
                    PRIMARY KEY (tier_id, nonce)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS results (
                    tier_id INTEGER NOT NULL,
                    participant_id TEXT NOT NULL,
                    rank INTEGER NOT NULL,
                    proof_reference INTEGER,
                    is_winner INTEGER NOT NULL,
                    PRIMARY KEY (tier_id, participant_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS audits (
                    tier_id INTEGER PRIMARY KEY,
                    data TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tier_id INTEGER,
                    kind TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_tier ON events(tier_id);")

    # =========================================================================
    # Rounds
    # =========================================================================

    def save_round(self, tier_id: int, config: str, created_at: int):
        """Insert a tier configuration. Fails if the tier already exists."""
        conn = self._get_conn()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO rounds (tier_id, config, created_at) VALUES (?, ?, ?)",
                    (tier_id, config, created_at)
                )
        except sqlite3.IntegrityError:
            raise AlreadyAllocated(f"Tier {tier_id} already stored", tier_id=tier_id) from None

    def get_round(self, tier_id: int) -> Optional[str]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT config FROM rounds WHERE tier_id = ?", (tier_id,))
        row = cursor.fetchone()
        return row['config'] if row else None

    def list_rounds(self) -> List[int]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT tier_id FROM rounds ORDER BY tier_id ASC")
        return [row['tier_id'] for row in cursor]

    def set_state(self, tier_id: int, state: str, updated_at: int):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO round_state (tier_id, state, updated_at) VALUES (?, ?, ?)",
                (tier_id, state, updated_at)
            )

    def get_state(self, tier_id: int) -> Optional[str]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT state FROM round_state WHERE tier_id = ?", (tier_id,))
        row = cursor.fetchone()
        return row['state'] if row else None

    # =========================================================================
    # Write-once Artifacts
    # =========================================================================

    def save_randomness(self, tier_id: int, outputs: List[Tuple[int, str]]):
        """Insert (nonce, output_json) rows for a tier in one transaction."""
        conn = self._get_conn()
        try:
            with conn:
                conn.executemany(
                    "INSERT INTO randomness (tier_id, nonce, output) VALUES (?, ?, ?)",
                    [(tier_id, nonce, output) for nonce, output in outputs]
                )
        except sqlite3.IntegrityError:
            raise AlreadyAllocated(f"Randomness for tier {tier_id} already stored", tier_id=tier_id) from None

    def get_randomness(self, tier_id: int) -> List[str]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT output FROM randomness WHERE tier_id = ? ORDER BY nonce ASC", (tier_id,)
        )
        return [row['output'] for row in cursor]

    def save_allocation(self, tier_id: int, results: List[Dict[str, Any]], audit: str):
        """Insert results and the audit record atomically."""
        conn = self._get_conn()
        try:
            with conn:
                conn.execute("INSERT INTO audits (tier_id, data) VALUES (?, ?)", (tier_id, audit))
                conn.executemany(
                    "INSERT INTO results (tier_id, participant_id, rank, proof_reference, is_winner) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [
                        (tier_id, r["participant_id"], r["rank"], r["proof_reference"], int(r["is_winner"]))
                        for r in results
                    ]
                )
        except sqlite3.IntegrityError:
            raise AlreadyAllocated(f"Results for tier {tier_id} already stored", tier_id=tier_id) from None

    def get_results(self, tier_id: int) -> List[Dict[str, Any]]:
        """Winners by rank, then non-winners by participant id."""
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT * FROM results WHERE tier_id = ? "
            "ORDER BY is_winner DESC, rank ASC, participant_id ASC",
            (tier_id,)
        )
        return [
            {
                "tier_id": row['tier_id'],
                "participant_id": row['participant_id'],
                "rank": row['rank'],
                "proof_reference": row['proof_reference'],
                "is_winner": bool(row['is_winner']),
            }
            for row in cursor
        ]

    def get_audit(self, tier_id: int) -> Optional[str]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT data FROM audits WHERE tier_id = ?", (tier_id,))
        row = cursor.fetchone()
        return row['data'] if row else None

    # =========================================================================
    # Events
    # =========================================================================

    def save_event(self, tier_id: Optional[int], kind: str, sequence: int, data: str):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT INTO events (tier_id, kind, sequence, data) VALUES (?, ?, ?, ?)",
                (tier_id, kind, sequence, data)
            )

    def get_events(self, tier_id: Optional[int] = None) -> List[Tuple[Optional[int], str, int, str]]:
        """(tier_id, kind, sequence, data) in insertion order."""
        conn = self._get_conn()
        if tier_id is None:
            cursor = conn.execute("SELECT tier_id, kind, sequence, data FROM events ORDER BY event_id ASC")
        else:
            cursor = conn.execute(
                "SELECT tier_id, kind, sequence, data FROM events WHERE tier_id = ? ORDER BY event_id ASC",
                (tier_id,)
            )
        return [(row['tier_id'], row['kind'], row['sequence'], row['data']) for row in cursor]

    def close(self):
        """Close the current thread's connection."""
        conn = getattr(self._conn_local, "conn", None)
        if conn is not None:
            conn.close()
            del self._conn_local.conn
