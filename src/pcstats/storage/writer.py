"""
Resilient writer.

Single entry point used by the sampler. It hides the distinction between the
primary store and the durable local queue:

- `write(batch)` tries the primary store and falls back to the queue.
- `replay_pending()` drains the queue back into the primary store in
  ascending `local_snapshot_id` order.

Failure behavior
----------------
Neither method raises. Every outcome is reported through a return value and
the log, so the sampling loop keeps running whatever the state of the
primary store or the local disk.

Ordering
--------
With `preserve_order=True` a live batch is queued behind any existing
backlog instead of being written ahead of it. The primary store therefore
sees snapshots in capture order even across outages. The one exception is a
batch that keeps being rejected: it is skipped so it cannot block the rest.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from pcstats.errors import StorageFault, TransientWriteFailure
from pcstats.loggers.error_log import get_logger
from pcstats.models.batch import TelemetryBatch

from .policy import FailureKind, RetryPolicy
from .primary import PrimaryStore
from .queue import DurableQueue, EvictionRecord, QueueStats


class WriteStatus(str, Enum):
    SUCCESS = "success"
    ENQUEUED = "enqueued"
    FAILED = "failed"


@dataclass(frozen=True)
class WriteOutcome:
    """
    Result of `ResilientWriter.write`.

    - SUCCESS: the batch is in the primary store.
    - ENQUEUED: degraded mode, the batch is durable in the local queue.
    - FAILED: the batch could not be stored anywhere and is lost, either on a
      local storage fault or because the queue refused it as oversize.
    """

    status: WriteStatus
    batch_id: str
    error: Optional[str] = None
    evicted: Tuple[EvictionRecord, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is not WriteStatus.FAILED

    @property
    def degraded(self) -> bool:
        return self.status is WriteStatus.ENQUEUED


@dataclass
class ReplayReport:
    """Summary of one replay cycle."""

    replayed: List[str] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)
    evicted: List[EvictionRecord] = field(default_factory=list)
    skipped_unreachable: bool = False
    stopped_on: Optional[FailureKind] = None
    cancelled: bool = False
    storage_fault: Optional[str] = None

    @property
    def attempted(self) -> int:
        return len(self.replayed) + len(self.retried) + len(self.evicted)


class ResilientWriter:
    """
    Primary store with a durable local fallback.

    Parameters
    ----------
    primary : PrimaryStore
        Central store; must be idempotent on batch_id.
    queue : DurableQueue
        Local holding area for batches that could not be delivered.
    policy : RetryPolicy, optional
        Failure classification and retry ceilings.
    write_timeout_sec : float
        Upper bound on a single primary-store call. A call that exceeds it
        counts as a connectivity failure.
    storage_fault_threshold : int
        Consecutive local storage faults after which `healthy` turns False.
    preserve_order : bool
        Queue live batches behind an existing backlog.
    """

    def __init__(
        self,
        primary: PrimaryStore,
        queue: DurableQueue,
        policy: Optional[RetryPolicy] = None,
        write_timeout_sec: float = 10.0,
        storage_fault_threshold: int = 3,
        preserve_order: bool = True,
    ):
        self.primary = primary
        self.queue = queue
        self.policy = policy or RetryPolicy()
        self.write_timeout_sec = float(write_timeout_sec)
        self.storage_fault_threshold = int(storage_fault_threshold)
        self.preserve_order = preserve_order

        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="PCStatsPrimary")
        self._fault_lock = threading.Lock()
        self._consecutive_storage_faults = 0
        self._replay_lock = threading.Lock()
        self.logger = get_logger("ResilientWriter")

    # ------------------------------------------------------------------
    # Primary store access
    # ------------------------------------------------------------------

    def _write_primary(self, batch: TelemetryBatch) -> None:
        """Run one primary-store write with a timeout."""
        future = self._executor.submit(self.primary.write_batch, batch)
        try:
            future.result(timeout=self.write_timeout_sec)
        except FutureTimeoutError:
            future.cancel()
            raise TransientWriteFailure(
                f"primary store write timed out after {self.write_timeout_sec}s"
            ) from None

    def _primary_reachable(self) -> bool:
        future = self._executor.submit(self.primary.is_reachable)
        try:
            return bool(future.result(timeout=self.write_timeout_sec))
        except FutureTimeoutError:
            future.cancel()
            return False
        except Exception as e:
            self.logger.warning(f"[PCStats] Primary store health check failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _record_storage_fault(self, error: Exception) -> None:
        with self._fault_lock:
            self._consecutive_storage_faults += 1
            count = self._consecutive_storage_faults
        if count == self.storage_fault_threshold:
            self.logger.error(
                f"[PCStats] Local queue failed {count} times in a row; "
                f"telemetry durability can no longer be guaranteed: {error}"
            )

    def _record_storage_ok(self) -> None:
        with self._fault_lock:
            if self._consecutive_storage_faults >= self.storage_fault_threshold:
                self.logger.info("[PCStats] Local queue is writable again")
            self._consecutive_storage_faults = 0

    @property
    def consecutive_storage_faults(self) -> int:
        with self._fault_lock:
            return self._consecutive_storage_faults

    @property
    def healthy(self) -> bool:
        return self.consecutive_storage_faults < self.storage_fault_threshold

    # ------------------------------------------------------------------
    # Live path
    # ------------------------------------------------------------------

    def write(self, batch: TelemetryBatch) -> WriteOutcome:
        """
        Persist one freshly sampled batch.

        Returns
        -------
        WriteOutcome
            SUCCESS, ENQUEUED (degraded) or FAILED. Never raises.
        """
        if self.preserve_order and len(self.queue) > 0:
            return self._enqueue(batch, "queued behind pending backlog")

        try:
            self._write_primary(batch)
        except Exception as e:
            self.logger.warning(
                f"[PCStats] Primary store write failed for batch {batch.batch_id} "
                f"(local_snapshot_id={batch.local_snapshot_id}), queueing locally: {e}"
            )
            return self._enqueue(batch, str(e))

        return WriteOutcome(status=WriteStatus.SUCCESS, batch_id=batch.batch_id)

    def _enqueue(self, batch: TelemetryBatch, reason: str) -> WriteOutcome:
        try:
            evicted = self.queue.enqueue(batch)
        except StorageFault as e:
            self._record_storage_fault(e)
            self.logger.error(
                f"[PCStats] StorageFault: dropping batch {batch.batch_id} "
                f"(local_snapshot_id={batch.local_snapshot_id}): {e}"
            )
            return WriteOutcome(
                status=WriteStatus.FAILED, batch_id=batch.batch_id, error=str(e)
            )

        own = next((e for e in evicted if e.batch_id == batch.batch_id), None)
        if own is not None:
            return WriteOutcome(
                status=WriteStatus.FAILED,
                batch_id=batch.batch_id,
                error=f"evicted from local queue: {own.reason}",
                evicted=tuple(evicted),
            )

        self._record_storage_ok()
        return WriteOutcome(
            status=WriteStatus.ENQUEUED,
            batch_id=batch.batch_id,
            error=reason,
            evicted=tuple(evicted),
        )

    # ------------------------------------------------------------------
    # Replay path
    # ------------------------------------------------------------------

    def replay_pending(self, stop_event: Optional[threading.Event] = None) -> ReplayReport:
        """
        Offer queued batches to the primary store in order.

        - success: the batch is removed from the queue
        - connectivity failure: retry state is recorded and the cycle stops
        - rejection: retry state is recorded and the cycle continues; the
          batch is evicted once it reaches the rejection ceiling

        Cancellation is checked between batches, never in the middle of one.
        """
        report = ReplayReport()
        if not self._replay_lock.acquire(blocking=False):
            self.logger.debug("[PCStats] Replay already in progress, skipping")
            return report

        try:
            if len(self.queue) == 0:
                return report

            if not self._primary_reachable():
                report.skipped_unreachable = True
                self.logger.info(
                    f"[PCStats] Primary store unreachable, "
                    f"{len(self.queue)} batches stay queued"
                )
                return report

            self._replay_queued(report, stop_event)
        except StorageFault as e:
            report.storage_fault = str(e)
            self._record_storage_fault(e)
            self.logger.error(f"[PCStats] StorageFault during replay: {e}")
        except Exception as e:
            self.logger.error(f"[PCStats] Replay cycle failed: {e}")
        finally:
            self._replay_lock.release()

        if report.attempted:
            self.logger.info(
                f"[PCStats] Replay cycle: {len(report.replayed)} replayed, "
                f"{len(report.retried)} retried, {len(report.evicted)} evicted, "
                f"{len(self.queue)} still queued"
            )
        return report

    def _replay_queued(
        self, report: ReplayReport, stop_event: Optional[threading.Event]
    ) -> None:
        for batch in self.queue.list_pending():
            if stop_event is not None and stop_event.is_set():
                report.cancelled = True
                return

            try:
                self._write_primary(batch)
            except Exception as e:
                kind = self.policy.classify(e)
                if kind is FailureKind.CONNECTIVITY:
                    self.queue.update_retry_state(
                        batch.batch_id, batch.retry_count + 1, str(e)
                    )
                    report.retried.append(batch.batch_id)
                    report.stopped_on = kind
                    self.logger.warning(
                        f"[PCStats] Replay of batch {batch.batch_id} "
                        f"(local_snapshot_id={batch.local_snapshot_id}) failed, "
                        f"primary store unavailable: {e}"
                    )
                    return

                self._handle_rejection(batch, e, report)
                continue

            self.queue.remove(batch.batch_id)
            self._record_storage_ok()
            report.replayed.append(batch.batch_id)

    def _handle_rejection(
        self, batch: TelemetryBatch, error: Exception, report: ReplayReport
    ) -> None:
        rejections = batch.rejection_count + 1
        self.logger.error(
            f"[PCStats] Primary store rejected batch {batch.batch_id} "
            f"(local_snapshot_id={batch.local_snapshot_id}, "
            f"timestamp={batch.timestamp.isoformat()}, "
            f"processes={len(batch.processes)}, "
            f"rejections={rejections}/{self.policy.max_rejected_attempts}): {error}"
        )

        if self.policy.rejection_exhausted(rejections):
            evicted = self.queue.evict(batch.batch_id, "rejected")
            if evicted is not None:
                report.evicted.append(evicted)
            return

        self.queue.update_retry_state(
            batch.batch_id, batch.retry_count + 1, str(error), rejections
        )
        report.retried.append(batch.batch_id)

    # ------------------------------------------------------------------
    # Observability / lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> QueueStats:
        return self.queue.stats(self.policy.stuck_retry_threshold)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
