"""
Durable local queue for telemetry batches.

Batches that could not reach the primary store are kept here, one file per
batch, until they are replayed or evicted.

Persisted layout
----------------
    <root>/<local_snapshot_id:020d>_<batch_id>.batch

Each file is a self-contained framed record (see `codec.py`). Files are
written to a temporary name, fsync'ed and atomically renamed, so a crash
leaves either the old record, the new record, or a `*.tmp` leftover that
is deleted on the next load. Records that fail validation are renamed to
`*.corrupt` and skipped.

Concurrency model
-----------------
- One `RLock` serializes every index and file mutation.
- `list_pending()` snapshots the index under the lock and then takes the
  lock again only for each single-record read, so the live `enqueue()` path
  is never blocked for the duration of a replay cycle.

Capacity
--------
When `max_batches` or `max_bytes` is exceeded, the oldest batch that has
already been retried (`retry_count > 0`) is evicted first. A never-attempted
batch is evicted only when no retried batch is left. Every eviction is
logged as data loss.
A single record larger than `max_bytes` is refused on its own instead of
flushing the rest of the queue. Capacity is re-checked after a retry-state
rewrite as well, since a longer `last_error` grows the record.

`scan_queue()` reads the same files for status reporting without creating,
deleting or renaming anything, so it is safe next to a running agent.
"""

import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pcstats.errors import DataLoss, StorageFault
from pcstats.loggers.error_log import get_logger
from pcstats.models.batch import TelemetryBatch

from .codec import CorruptRecord, decode_batch, encode_batch

RECORD_SUFFIX = ".batch"
TMP_SUFFIX = ".tmp"
CORRUPT_SUFFIX = ".corrupt"


@dataclass
class _Entry:
    batch_id: str
    local_snapshot_id: int
    path: Path
    size: int
    retry_count: int
    timestamp: datetime


@dataclass(frozen=True)
class EvictionRecord:
    """Identifying fields of a batch evicted without reaching the primary store."""

    batch_id: str
    local_snapshot_id: int
    timestamp: datetime
    retry_count: int
    reason: str


@dataclass(frozen=True)
class QueueStats:
    """
    Observability snapshot of the durable queue.

    `stuck_count` is the number of batches whose retry_count is above the
    threshold passed to `DurableQueue.stats()`.
    """

    depth: int
    total_bytes: int
    oldest_timestamp: Optional[datetime]
    oldest_age_sec: Optional[float]
    stuck_count: int


def _summarize(entries, total_bytes: int, stuck_retry_threshold: int, now) -> QueueStats:
    now = now or datetime.now(timezone.utc)
    oldest = min((e.timestamp for e in entries), default=None)
    return QueueStats(
        depth=len(entries),
        total_bytes=total_bytes,
        oldest_timestamp=oldest,
        oldest_age_sec=max(0.0, (now - oldest).total_seconds()) if oldest else None,
        stuck_count=sum(1 for e in entries if e.retry_count > stuck_retry_threshold),
    )


def scan_queue(
    root, stuck_retry_threshold: int = 10, now: Optional[datetime] = None
) -> QueueStats:
    """
    Compute `QueueStats` directly from the record files under `root`.

    Read-only: a missing directory reads as an empty queue, and `*.tmp` or
    unreadable records are skipped in place. Use this instead of opening a
    `DurableQueue` when another process may own the directory.
    """
    root = Path(root)
    entries: Dict[str, _Entry] = {}
    if root.is_dir():
        for path in sorted(root.glob(f"*{RECORD_SUFFIX}")):
            try:
                data = path.read_bytes()
                batch = decode_batch(data)
            except (OSError, CorruptRecord):
                continue
            entries[batch.batch_id] = _Entry(
                batch_id=batch.batch_id,
                local_snapshot_id=batch.local_snapshot_id,
                path=path,
                size=len(data),
                retry_count=batch.retry_count,
                timestamp=batch.timestamp,
            )

    values = list(entries.values())
    return _summarize(values, sum(e.size for e in values), stuck_retry_threshold, now)


class DurableQueue:
    """
    File-backed queue of pending telemetry batches ordered by
    `local_snapshot_id`.

    Parameters
    ----------
    root : str | Path
        Directory holding one record file per queued batch.
    max_batches : int
        Maximum number of queued batches. Must be > 0.
    max_bytes : int
        Maximum total size of queued record files. Must be > 0.
    fsync : bool
        Flush records to stable storage before acknowledging them.
    """

    def __init__(
        self,
        root,
        max_batches: int = 10_000,
        max_bytes: int = 256 * 1024 * 1024,
        fsync: bool = True,
    ):
        if max_batches <= 0:
            raise ValueError(f"max_batches must be > 0, got {max_batches}")
        if max_bytes <= 0:
            raise ValueError(f"max_bytes must be > 0, got {max_bytes}")

        self.root = Path(root)
        self.max_batches = int(max_batches)
        self.max_bytes = int(max_bytes)
        self._fsync = fsync

        self._lock = threading.RLock()
        self._entries: Dict[str, _Entry] = {}
        self._total_bytes = 0
        self.logger = get_logger("DurableQueue")

        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFault(f"cannot create queue directory {self.root}: {e}") from e

        self._load()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self) -> None:
        """Rebuild the in-memory index from the record files on disk."""
        for tmp in self.root.glob(f"*{TMP_SUFFIX}"):
            try:
                tmp.unlink()
            except OSError as e:
                self.logger.warning(f"[PCStats] Failed to remove leftover {tmp.name}: {e}")

        for path in sorted(self.root.glob(f"*{RECORD_SUFFIX}")):
            try:
                data = path.read_bytes()
            except OSError as e:
                self.logger.error(f"[PCStats] Failed to read queued record {path.name}: {e}")
                continue

            try:
                batch = decode_batch(data)
            except CorruptRecord as e:
                self._quarantine(path, str(e))
                continue

            previous = self._entries.get(batch.batch_id)
            if previous is not None:
                # Same batch under two names; keep the newest file.
                self.logger.warning(
                    f"[PCStats] Duplicate queued record for batch {batch.batch_id}, "
                    f"dropping {previous.path.name}"
                )
                self._unlink(previous.path)
                self._drop_entry(previous)

            self._add_entry(batch, path, len(data))

        if self._entries:
            self.logger.info(
                f"[PCStats] Loaded {len(self._entries)} pending batches "
                f"({self._total_bytes} bytes) from {self.root}"
            )

    def _quarantine(self, path: Path, reason: str) -> None:
        self.logger.warning(
            f"[PCStats] Skipping unreadable queued record {path.name} ({reason})"
        )
        try:
            os.replace(path, path.with_name(path.name + CORRUPT_SUFFIX))
        except OSError as e:
            self.logger.error(f"[PCStats] Failed to quarantine {path.name}: {e}")

    # ------------------------------------------------------------------
    # Index helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _record_path(self, batch: TelemetryBatch) -> Path:
        return self.root / f"{batch.local_snapshot_id:020d}_{batch.batch_id}{RECORD_SUFFIX}"

    def _add_entry(self, batch: TelemetryBatch, path: Path, size: int) -> None:
        self._entries[batch.batch_id] = _Entry(
            batch_id=batch.batch_id,
            local_snapshot_id=batch.local_snapshot_id,
            path=path,
            size=size,
            retry_count=batch.retry_count,
            timestamp=batch.timestamp,
        )
        self._total_bytes += size

    def _drop_entry(self, entry: _Entry) -> None:
        self._entries.pop(entry.batch_id, None)
        self._total_bytes -= entry.size

    def _ordered(self) -> List[_Entry]:
        return sorted(self._entries.values(), key=lambda e: (e.local_snapshot_id, e.batch_id))

    def _write_record(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(path.name + TMP_SUFFIX)
        try:
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                if self._fsync:
                    os.fsync(f.fileno())
            os.replace(tmp, path)
            if self._fsync:
                self._fsync_dir()
        except OSError as e:
            self._unlink(tmp)
            raise StorageFault(f"failed to write {path.name}: {e}") from e

    def _fsync_dir(self) -> None:
        # Directory fsync is not available on every platform.
        try:
            fd = os.open(self.root, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError:
            pass
        finally:
            os.close(fd)

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageFault(f"failed to delete {path.name}: {e}") from e

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(self, batch: TelemetryBatch) -> List[EvictionRecord]:
        """
        Durably persist `batch` before returning.

        A batch whose record alone exceeds `max_bytes` is not written and
        no other batch is evicted for it; it comes back as the only
        eviction (reason "oversize").

        Returns
        -------
        List[EvictionRecord]
            Batches evicted to bring the queue back under its bounds.

        Raises
        ------
        StorageFault
            The record could not be written.
        """
        data = encode_batch(batch)
        if len(data) > self.max_bytes:
            self.logger.error(
                f"[PCStats] Batch {batch.batch_id} record is {len(data)} bytes, "
                f"larger than the whole queue (max_bytes={self.max_bytes})"
            )
            return [
                self._record_loss(
                    batch.batch_id,
                    batch.local_snapshot_id,
                    batch.timestamp,
                    batch.retry_count,
                    "oversize",
                )
            ]

        with self._lock:
            path = self._record_path(batch)
            self._write_record(path, data)

            previous = self._entries.get(batch.batch_id)
            if previous is not None:
                self._drop_entry(previous)
                if previous.path != path:
                    self._unlink(previous.path)
            self._add_entry(batch, path, len(data))

            return self._enforce_capacity()

    def list_pending(self) -> Iterator[TelemetryBatch]:
        """
        Iterate queued batches in ascending `local_snapshot_id`.

        The set of batches is fixed when iteration starts; batches removed
        meanwhile are skipped. Each call starts a fresh iteration.
        """
        with self._lock:
            paths = [(e.batch_id, e.path) for e in self._ordered()]

        for batch_id, path in paths:
            with self._lock:
                entry = self._entries.get(batch_id)
                if entry is None:
                    continue
                path = entry.path
                try:
                    data = path.read_bytes()
                except FileNotFoundError:
                    self._drop_entry(entry)
                    continue
                except OSError as e:
                    self.logger.error(f"[PCStats] Failed to read queued record {path.name}: {e}")
                    continue

                try:
                    batch = decode_batch(data)
                except CorruptRecord as e:
                    self._drop_entry(entry)
                    self._quarantine(path, str(e))
                    continue

            yield batch

    def remove(self, batch_id: str) -> bool:
        """
        Delete a batch after a confirmed replay.

        Idempotent: returns False when the batch is not queued.
        """
        with self._lock:
            entry = self._entries.get(batch_id)
            if entry is None:
                return False
            self._unlink(entry.path)
            self._drop_entry(entry)
            return True

    def update_retry_state(
        self,
        batch_id: str,
        retry_count: int,
        last_error: Optional[str],
        rejection_count: Optional[int] = None,
    ) -> bool:
        """
        Persist new retry counters for a queued batch in place.

        Returns False when the batch has already been removed.
        """
        with self._lock:
            entry = self._entries.get(batch_id)
            if entry is None:
                return False

            try:
                current = decode_batch(entry.path.read_bytes())
            except FileNotFoundError:
                self._drop_entry(entry)
                return False
            except CorruptRecord as e:
                self._drop_entry(entry)
                self._quarantine(entry.path, str(e))
                return False
            except OSError as e:
                raise StorageFault(f"failed to read {entry.path.name}: {e}") from e

            updated = current.with_retry_state(retry_count, last_error, rejection_count)
            data = encode_batch(updated)
            self._write_record(entry.path, data)

            self._total_bytes += len(data) - entry.size
            entry.size = len(data)
            entry.retry_count = updated.retry_count

            # A longer last_error can push the queue over max_bytes.
            self._enforce_capacity()
            return True

    def evict(self, batch_id: str, reason: str) -> Optional[EvictionRecord]:
        """Remove a batch that will never reach the primary store and log the loss."""
        with self._lock:
            entry = self._entries.get(batch_id)
            if entry is None:
                return None
            return self._evict_entry(entry, reason)

    def evict_expired(
        self, max_age_sec: float, now: Optional[datetime] = None
    ) -> List[EvictionRecord]:
        """Evict batches captured more than `max_age_sec` ago."""
        now = now or datetime.now(timezone.utc)
        evicted = []
        with self._lock:
            for entry in self._ordered():
                if (now - entry.timestamp).total_seconds() > max_age_sec:
                    evicted.append(self._evict_entry(entry, "retention"))
        return evicted

    def _evict_entry(self, entry: _Entry, reason: str) -> EvictionRecord:
        self._unlink(entry.path)
        self._drop_entry(entry)
        return self._record_loss(
            entry.batch_id, entry.local_snapshot_id, entry.timestamp, entry.retry_count, reason
        )

    def _record_loss(
        self,
        batch_id: str,
        local_snapshot_id: int,
        timestamp: datetime,
        retry_count: int,
        reason: str,
    ) -> EvictionRecord:
        loss = DataLoss(batch_id, local_snapshot_id, reason)
        self.logger.warning(
            f"[PCStats] DataLoss: {loss} "
            f"(timestamp={timestamp.isoformat()}, retry_count={retry_count})"
        )
        return EvictionRecord(
            batch_id=batch_id,
            local_snapshot_id=local_snapshot_id,
            timestamp=timestamp,
            retry_count=retry_count,
            reason=reason,
        )

    def _over_capacity(self) -> bool:
        return len(self._entries) > self.max_batches or self._total_bytes > self.max_bytes

    def _enforce_capacity(self) -> List[EvictionRecord]:
        evicted = []
        while self._entries and self._over_capacity():
            ordered = self._ordered()
            victim = next((e for e in ordered if e.retry_count > 0), ordered[0])
            evicted.append(self._evict_entry(victim, "capacity"))
        return evicted

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def stats(self, stuck_retry_threshold: int = 10, now: Optional[datetime] = None) -> QueueStats:
        with self._lock:
            entries = list(self._entries.values())
            total_bytes = self._total_bytes
        return _summarize(entries, total_bytes, stuck_retry_threshold, now)

    def last_local_snapshot_id(self) -> int:
        with self._lock:
            return max((e.local_snapshot_id for e in self._entries.values()), default=0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, batch_id) -> bool:
        with self._lock:
            return batch_id in self._entries
