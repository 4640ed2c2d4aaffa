"""SQLite-backed primary store for telemetry batches."""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, List

from pcstats.errors import RejectedBatch, TransientWriteFailure
from pcstats.loggers.error_log import get_logger
from pcstats.models.batch import ProcessInfo, TelemetryBatch

from .primary import PrimaryStore

SCHEMA_SQL = """
-- One row per sampling cycle, keyed by the batch id for idempotent upserts
CREATE TABLE IF NOT EXISTS snapshots (
    snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id TEXT NOT NULL UNIQUE,
    local_snapshot_id INTEGER NOT NULL,
    snapshot_timestamp TEXT NOT NULL,
    total_cpu_usage REAL,
    total_memory_usage_mb INTEGER,
    total_available_memory_mb INTEGER,
    retry_count INTEGER NOT NULL DEFAULT 0,
    written_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Unique process definitions tracked across snapshots
CREATE TABLE IF NOT EXISTS processes (
    process_id INTEGER PRIMARY KEY,
    process_name TEXT NOT NULL CHECK (length(process_name) > 0),
    process_path TEXT NOT NULL DEFAULT '',
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    UNIQUE(process_name, process_path)
);

-- Per-process metrics for each snapshot
CREATE TABLE IF NOT EXISTS process_snapshots (
    process_snapshot_id INTEGER PRIMARY KEY,
    snapshot_id INTEGER NOT NULL REFERENCES snapshots(snapshot_id) ON DELETE CASCADE,
    process_id INTEGER NOT NULL REFERENCES processes(process_id) ON DELETE CASCADE,
    pid INTEGER NOT NULL,
    cpu_usage REAL CHECK (cpu_usage >= 0),
    memory_usage_mb INTEGER,
    private_memory_mb INTEGER,
    virtual_memory_mb INTEGER,
    vram_usage_mb INTEGER,
    thread_count INTEGER,
    handle_count INTEGER
);

-- At most one temperature reading per snapshot
CREATE TABLE IF NOT EXISTS cpu_temperatures (
    temp_id INTEGER PRIMARY KEY,
    snapshot_id INTEGER NOT NULL UNIQUE REFERENCES snapshots(snapshot_id) ON DELETE CASCADE,
    cpu_tctl_tdie REAL,
    cpu_die_average REAL,
    cpu_ccd1_tdie REAL,
    cpu_ccd2_tdie REAL,
    thermal_limit_percent REAL,
    thermal_throttling INTEGER
);

CREATE INDEX IF NOT EXISTS idx_snapshots_timestamp ON snapshots(snapshot_timestamp);
CREATE INDEX IF NOT EXISTS idx_process_snapshots_snapshot ON process_snapshots(snapshot_id);
"""


def _utc_iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


class SQLitePrimaryStore(PrimaryStore):
    """
    Primary store backed by a SQLite database file.

    A batch is written in a single transaction. The snapshot row is upserted
    on `batch_id` and its process / temperature rows are replaced, so
    replaying the same batch twice leaves exactly one record.

    Errors are mapped onto the persistence taxonomy:
    - sqlite3.IntegrityError -> RejectedBatch (constraint violation)
    - any other sqlite3.Error -> TransientWriteFailure

    The parent directory is not created: a missing or unmounted location is
    reported as the store being unreachable.
    """

    def __init__(self, db_path, timeout_sec: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout_sec = float(timeout_sec)
        self._schema_ready = False
        self._schema_lock = threading.Lock()
        self.logger = get_logger("SQLitePrimaryStore")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout_sec)
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            self._ensure_schema(conn)
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if not self._schema_ready:
                conn.executescript(SCHEMA_SQL)
                conn.commit()
                self._schema_ready = True

    # ------------------------------------------------------------------
    # PrimaryStore contract
    # ------------------------------------------------------------------

    def write_batch(self, batch: TelemetryBatch) -> None:
        try:
            with self._connect() as conn:
                with conn:
                    snapshot_id = self._upsert_snapshot(conn, batch)
                    conn.execute(
                        "DELETE FROM process_snapshots WHERE snapshot_id = ?", (snapshot_id,)
                    )
                    conn.execute(
                        "DELETE FROM cpu_temperatures WHERE snapshot_id = ?", (snapshot_id,)
                    )
                    for process in batch.processes:
                        self._insert_process_snapshot(conn, snapshot_id, process, batch.timestamp)
                    if batch.temperature is not None:
                        self._insert_temperature(conn, snapshot_id, batch)
        except sqlite3.IntegrityError as e:
            raise RejectedBatch(f"batch {batch.batch_id} rejected: {e}") from e
        except sqlite3.Error as e:
            raise TransientWriteFailure(f"sqlite store unavailable: {e}") from e

    def is_reachable(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            self.logger.debug(f"[PCStats] Primary store not reachable: {e}")
            return False

    # ------------------------------------------------------------------
    # Write helpers
    # ------------------------------------------------------------------

    def _upsert_snapshot(self, conn: sqlite3.Connection, batch: TelemetryBatch) -> int:
        system = batch.system
        conn.execute(
            """
            INSERT INTO snapshots (
                batch_id, local_snapshot_id, snapshot_timestamp, total_cpu_usage,
                total_memory_usage_mb, total_available_memory_mb, retry_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(batch_id) DO UPDATE SET
                total_cpu_usage = excluded.total_cpu_usage,
                total_memory_usage_mb = excluded.total_memory_usage_mb,
                total_available_memory_mb = excluded.total_available_memory_mb,
                retry_count = excluded.retry_count
            """,
            (
                batch.batch_id,
                batch.local_snapshot_id,
                _utc_iso(batch.timestamp),
                system.total_cpu_usage if system else None,
                system.total_memory_usage_mb if system else None,
                system.total_available_memory_mb if system else None,
                batch.retry_count,
            ),
        )
        row = conn.execute(
            "SELECT snapshot_id FROM snapshots WHERE batch_id = ?", (batch.batch_id,)
        ).fetchone()
        return int(row[0])

    def _get_or_create_process(
        self, conn: sqlite3.Connection, process: ProcessInfo, seen_at: datetime
    ) -> int:
        path = process.process_path or ""
        seen = _utc_iso(seen_at)
        conn.execute(
            """
            INSERT INTO processes (process_name, process_path, first_seen, last_seen)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(process_name, process_path) DO UPDATE SET
                last_seen = max(last_seen, excluded.last_seen)
            """,
            (process.process_name, path, seen, seen),
        )
        row = conn.execute(
            "SELECT process_id FROM processes WHERE process_name = ? AND process_path = ?",
            (process.process_name, path),
        ).fetchone()
        return int(row[0])

    def _insert_process_snapshot(
        self,
        conn: sqlite3.Connection,
        snapshot_id: int,
        process: ProcessInfo,
        seen_at: datetime,
    ) -> None:
        process_id = self._get_or_create_process(conn, process, seen_at)
        conn.execute(
            """
            INSERT INTO process_snapshots (
                snapshot_id, process_id, pid, cpu_usage, memory_usage_mb,
                private_memory_mb, virtual_memory_mb, vram_usage_mb,
                thread_count, handle_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot_id,
                process_id,
                process.pid,
                process.cpu_usage,
                process.memory_usage_mb,
                process.private_memory_mb,
                process.virtual_memory_mb,
                process.vram_usage_mb,
                process.thread_count,
                process.handle_count,
            ),
        )

    def _insert_temperature(
        self, conn: sqlite3.Connection, snapshot_id: int, batch: TelemetryBatch
    ) -> None:
        t = batch.temperature
        conn.execute(
            """
            INSERT INTO cpu_temperatures (
                snapshot_id, cpu_tctl_tdie, cpu_die_average, cpu_ccd1_tdie,
                cpu_ccd2_tdie, thermal_limit_percent, thermal_throttling
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot_id,
                t.cpu_tctl_tdie,
                t.cpu_die_average,
                t.cpu_ccd1_tdie,
                t.cpu_ccd2_tdie,
                t.thermal_limit_percent,
                None if t.thermal_throttling is None else int(t.thermal_throttling),
            ),
        )

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def snapshot_count(self) -> int:
        with self._connect() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0])

    def local_snapshot_ids(self) -> List[int]:
        """Local snapshot ids in the order they were first written."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT local_snapshot_id FROM snapshots ORDER BY snapshot_id"
            ).fetchall()
        return [int(r[0]) for r in rows]

    def process_snapshot_count(self, batch_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM process_snapshots ps
                JOIN snapshots s ON s.snapshot_id = ps.snapshot_id
                WHERE s.batch_id = ?
                """,
                (batch_id,),
            ).fetchone()
        return int(row[0])

    def cleanup_older_than(self, days: float, now=None) -> int:
        """Delete snapshots (and their child rows) captured more than `days` ago."""
        now = now or datetime.now(timezone.utc)
        cutoff = _utc_iso(now - timedelta(days=days))
        with self._connect() as conn:
            with conn:
                cur = conn.execute(
                    "DELETE FROM snapshots WHERE snapshot_timestamp < ?", (cutoff,)
                )
        deleted = cur.rowcount
        if deleted:
            self.logger.info(
                f"[PCStats] Deleted {deleted} snapshots older than {days} days"
            )
        return deleted
