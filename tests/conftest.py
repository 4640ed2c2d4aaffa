"""
Shared fixtures: an in-memory primary store with switchable failure modes
and a small telemetry batch factory.
"""

import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from pcstats.errors import RejectedBatch, TransientWriteFailure
from pcstats.models.batch import (
    CpuTemperature,
    ProcessInfo,
    SystemSnapshot,
    TelemetryBatch,
)
from pcstats.storage.primary import PrimaryStore
from pcstats.storage.queue import DurableQueue


class FakePrimaryStore(PrimaryStore):
    """
    Idempotent in-memory store.

    - `down=True`: every call raises TransientWriteFailure / reports unreachable
    - `reject`: set of batch ids refused with RejectedBatch
    - `hang`: optional Event; writes block until it is set
    """

    def __init__(self):
        self.records = {}
        self.write_order = []
        self.attempts = []
        self.down = False
        self.reject = set()
        self.hang = None
        self.closed = False
        self._lock = threading.Lock()

    def write_batch(self, batch):
        with self._lock:
            self.attempts.append(batch.batch_id)
        if self.hang is not None:
            self.hang.wait(5.0)
        if self.down:
            raise TransientWriteFailure("connection refused")
        if batch.batch_id in self.reject:
            raise RejectedBatch(f"constraint violation for {batch.batch_id}")
        with self._lock:
            if batch.batch_id not in self.records:
                self.write_order.append(batch.local_snapshot_id)
            self.records[batch.batch_id] = batch

    def is_reachable(self):
        return not self.down

    def close(self):
        self.closed = True

    @property
    def written_ids(self):
        return list(self.write_order)


def make_batch(seq, batch_id=None, timestamp=None, processes=None, retry_count=0):
    return TelemetryBatch(
        batch_id=batch_id or uuid.uuid4().hex,
        local_snapshot_id=seq,
        timestamp=timestamp or datetime.now(timezone.utc),
        system=SystemSnapshot(
            total_cpu_usage=12.5,
            total_memory_usage_mb=8192,
            total_available_memory_mb=24576,
        ),
        processes=tuple(
            processes
            if processes is not None
            else [
                ProcessInfo(
                    pid=100 + seq,
                    process_name="python.exe",
                    process_path="C:/Python/python.exe",
                    cpu_usage=7.5,
                    memory_usage_mb=300,
                    private_memory_mb=250,
                    virtual_memory_mb=900,
                    thread_count=12,
                    handle_count=210,
                )
            ]
        ),
        temperature=CpuTemperature(cpu_tctl_tdie=61.0, thermal_throttling=False),
        retry_count=retry_count,
    )


def days_ago(days):
    return datetime.now(timezone.utc) - timedelta(days=days)


@pytest.fixture
def primary():
    return FakePrimaryStore()


@pytest.fixture
def queue(tmp_path):
    return DurableQueue(tmp_path / "queue", fsync=False)
