"""
PCStats runtime agent.

This module implements the long-running agent that ties sampling and
persistence together. It is responsible for:

- Periodically sampling the host in a dedicated background thread and
  handing each batch to the ResilientWriter
- Periodically replaying queued batches in a second, independently timed
  thread
- Housekeeping on the replay thread (queue retention, stuck-batch warnings,
  optional primary store retention)

Design notes
------------
- Both threads share one stop event. The sampler thread never waits on the
  replay thread, and the replay thread never waits for a new sample.
- Cancellation is observed between batches: a batch is always either fully
  removed from the queue or fully retained.

Failure behavior
----------------
Nothing raised by sampling, the primary store or the local queue escapes a
loop iteration. Failures are logged and the next tick proceeds normally.
"""

import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from pcstats.errors import StorageFault
from pcstats.loggers.error_log import get_logger
from pcstats.samplers.base_sampler import BaseSampler
from pcstats.samplers.host_sampler import HostSampler
from pcstats.sequence import SnapshotSequence
from pcstats.settings import PCStatsSettings
from pcstats.storage.policy import RetryPolicy
from pcstats.storage.primary import PrimaryStore
from pcstats.storage.queue import DurableQueue
from pcstats.storage.sqlite_store import SQLitePrimaryStore
from pcstats.storage.writer import ResilientWriter, WriteStatus

COUNTER_FILE = "snapshot_counter"


def _safe(logger, label: str, fn: Callable[[], Any]) -> Any:
    """Execute `fn()` and log exceptions; never raise."""
    try:
        return fn()
    except Exception as e:
        logger.error(f"[PCStats] {label}: {e}")
        return None


def build_writer(
    settings: PCStatsSettings, primary: Optional[PrimaryStore] = None
) -> ResilientWriter:
    """Construct the queue, retry policy and writer described by `settings`."""
    queue = DurableQueue(
        settings.queue.path,
        max_batches=settings.queue.max_batches,
        max_bytes=settings.queue.max_bytes,
    )
    policy = RetryPolicy(
        replay_interval_sec=settings.replay.interval_sec,
        max_rejected_attempts=settings.replay.max_rejected_attempts,
        stuck_retry_threshold=settings.replay.stuck_retry_threshold,
    )
    primary = primary or SQLitePrimaryStore(
        settings.db_path, timeout_sec=settings.write_timeout_sec
    )
    return ResilientWriter(
        primary,
        queue,
        policy=policy,
        write_timeout_sec=settings.write_timeout_sec,
        storage_fault_threshold=settings.storage_fault_threshold,
        preserve_order=settings.preserve_order,
    )


class PCStatsAgent:
    """
    Host telemetry agent.

    Responsibilities:
    - Owns the ResilientWriter (and through it the durable queue).
    - Runs the sampler loop and the replay loop on two daemon threads.
    - Exposes health and queue statistics for external alerting.
    """

    def __init__(
        self,
        settings: Optional[PCStatsSettings] = None,
        primary: Optional[PrimaryStore] = None,
        sampler: Optional[BaseSampler] = None,
    ) -> None:
        self._settings = settings or PCStatsSettings()
        self._logger = get_logger("PCStatsAgent")

        # Stop event shared by both internal threads
        self._stop_event = threading.Event()

        self.writer = build_writer(self._settings, primary)
        self.sampler = sampler or self._build_sampler()

        self._cycle_count = 0
        self._lost_count = 0
        self._last_db_cleanup: Optional[float] = None

        self._sampler_thread = threading.Thread(
            target=self._sampler_loop, name="PCStatsSampler", daemon=True
        )
        self._replay_thread = threading.Thread(
            target=self._replay_loop, name="PCStatsReplay", daemon=True
        )

    def _build_sampler(self) -> BaseSampler:
        sequence = SnapshotSequence(
            Path(self._settings.queue.path) / COUNTER_FILE,
            floor=self.writer.queue.last_local_snapshot_id(),
        )
        return HostSampler(
            sequence,
            min_cpu_percent=self._settings.sampler.min_cpu_percent,
            min_private_memory_mb=self._settings.sampler.min_private_memory_mb,
        )

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _sample_tick(self) -> None:
        batch = _safe(self._logger, "sampler.sample failed", self.sampler.sample)
        if batch is None:
            return

        outcome = self.writer.write(batch)
        self._cycle_count += 1
        if outcome.status is WriteStatus.FAILED:
            self._lost_count += 1
        elif outcome.status is WriteStatus.ENQUEUED:
            self._logger.info(
                f"[PCStats] Batch {batch.batch_id} "
                f"(local_snapshot_id={batch.local_snapshot_id}) queued locally: "
                f"{outcome.error}"
            )

    def _sampler_loop(self) -> None:
        """Sampler loop."""
        interval = float(self._settings.sampler.interval_sec)
        while not self._stop_event.is_set():
            self._sample_tick()
            self._stop_event.wait(interval)

    # ------------------------------------------------------------------
    # Replay + housekeeping
    # ------------------------------------------------------------------

    def _housekeeping(self) -> None:
        retention_sec = float(self._settings.queue.retention_days) * 86400.0
        if retention_sec > 0:
            try:
                self.writer.queue.evict_expired(retention_sec)
            except StorageFault as e:
                self._logger.error(f"[PCStats] Retention cleanup failed: {e}")

        stats = self.writer.stats()
        if stats.stuck_count:
            self._logger.warning(
                f"[PCStats] {stats.stuck_count} queued batches have been retried more "
                f"than {self.writer.policy.stuck_retry_threshold} times "
                f"(queue depth {stats.depth}, oldest {stats.oldest_age_sec:.0f}s old)"
            )
        if not self.writer.healthy:
            self._logger.error(
                f"[PCStats] Unhealthy: {self.writer.consecutive_storage_faults} "
                f"consecutive local storage faults"
            )

        self._cleanup_primary()

    def _cleanup_primary(self) -> None:
        """Delete old snapshots from the primary store once per cleanup interval."""
        days = float(self._settings.db_retention_days)
        cleanup = getattr(self.writer.primary, "cleanup_older_than", None)
        if days <= 0 or cleanup is None:
            return

        now = time.monotonic()
        if (
            self._last_db_cleanup is not None
            and now - self._last_db_cleanup < self._settings.db_cleanup_interval_sec
        ):
            return
        self._last_db_cleanup = now
        cleanup(days)

    def _replay_tick(self) -> None:
        self.writer.replay_pending(self._stop_event)
        if not self._stop_event.is_set():
            _safe(self._logger, "queue housekeeping failed", self._housekeeping)

    def _replay_loop(self) -> None:
        """Replay loop."""
        interval = float(self._settings.replay.interval_sec)
        while not self._stop_event.wait(interval):
            self._replay_tick()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def healthy(self) -> bool:
        return self.writer.healthy

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def lost_count(self) -> int:
        return self._lost_count

    def start(self) -> None:
        """
        Start the agent.

        A replay pass runs first so batches left over from a previous run
        are offered to the primary store before new samples.
        """
        pending = len(self.writer.queue)
        if pending:
            self._logger.info(f"[PCStats] {pending} batches pending from a previous run")
            _safe(self._logger, "initial replay failed", self._replay_tick)

        self._logger.info(
            f"[PCStats] Agent started: sampling every "
            f"{self._settings.sampler.interval_sec}s, replaying every "
            f"{self._settings.replay.interval_sec}s"
        )
        self._sampler_thread.start()
        self._replay_thread.start()

    def stop(self) -> None:
        """
        Stop the agent and release resources (best effort).

        - Signals both threads to stop
        - Joins them with a bounded timeout
        - Shuts down the writer and closes the primary store
        """
        self._stop_event.set()

        join_timeout = max(
            float(self._settings.sampler.interval_sec),
            float(self._settings.write_timeout_sec),
        ) * 2.0
        for thread in (self._sampler_thread, self._replay_thread):
            if thread.is_alive():
                thread.join(timeout=join_timeout)
                if thread.is_alive():
                    self._logger.error(
                        f"[PCStats] WARNING: {thread.name} thread did not terminate"
                    )

        _safe(self._logger, "writer.close failed", self.writer.close)
        _safe(self._logger, "primary.close failed", self.writer.primary.close)
        self._logger.info(
            f"[PCStats] Agent stopped after {self._cycle_count} cycles "
            f"({self._lost_count} batches lost, {len(self.writer.queue)} still queued)"
        )
