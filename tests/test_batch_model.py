"""Tests for the telemetry batch schema."""

from datetime import datetime, timedelta, timezone

import pytest

from pcstats.models.batch import CpuTemperature, ProcessInfo, TelemetryBatch

from conftest import make_batch


class TestTelemetryBatchCreate:
    def test_create_assigns_unique_ids_and_utc_time(self):
        a = TelemetryBatch.create(1)
        b = TelemetryBatch.create(2)
        assert a.batch_id != b.batch_id
        assert a.timestamp.tzinfo is not None
        assert a.retry_count == 0 and a.rejection_count == 0
        assert a.last_error is None

    def test_processes_are_frozen_into_a_tuple(self):
        procs = [ProcessInfo(pid=1, process_name="a")]
        batch = TelemetryBatch.create(1, processes=procs)
        procs.append(ProcessInfo(pid=2, process_name="b"))
        assert isinstance(batch.processes, tuple)
        assert len(batch.processes) == 1

    def test_batch_is_immutable(self):
        batch = make_batch(1)
        with pytest.raises(Exception):
            batch.retry_count = 3


class TestRetryState:
    def test_with_retry_state_returns_updated_copy(self):
        batch = make_batch(1)
        updated = batch.with_retry_state(1, "timeout")
        assert updated.retry_count == 1
        assert updated.last_error == "timeout"
        assert batch.retry_count == 0
        assert updated.batch_id == batch.batch_id
        assert updated.processes == batch.processes

    def test_retry_count_never_decreases(self):
        batch = make_batch(1).with_retry_state(3, "x")
        with pytest.raises(ValueError):
            batch.with_retry_state(2, "y")

    def test_rejection_count_never_decreases(self):
        batch = make_batch(1).with_retry_state(2, "x", rejection_count=2)
        with pytest.raises(ValueError):
            batch.with_retry_state(3, "y", rejection_count=1)

    def test_rejection_count_kept_when_not_given(self):
        batch = make_batch(1).with_retry_state(1, "x", rejection_count=1)
        assert batch.with_retry_state(2, "y").rejection_count == 1


class TestWireFormat:
    def test_wire_keeps_all_fields(self):
        batch = make_batch(7).with_retry_state(2, "refused", rejection_count=1)
        restored = TelemetryBatch.from_wire(batch.to_wire())
        assert restored == batch

    def test_naive_timestamp_is_read_as_utc(self):
        wire = make_batch(1).to_wire()
        wire["ts"] = "2024-05-01T10:00:00"
        restored = TelemetryBatch.from_wire(wire)
        assert restored.timestamp == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)

    def test_missing_optional_parts(self):
        wire = {"batch_id": "b1", "seq": 3, "ts": "2024-05-01T10:00:00+00:00"}
        restored = TelemetryBatch.from_wire(wire)
        assert restored.system is None
        assert restored.temperature is None
        assert restored.processes == ()
        assert restored.retry_count == 0


def test_age_seconds():
    now = datetime.now(timezone.utc)
    batch = make_batch(1, timestamp=now - timedelta(seconds=90))
    assert batch.age_seconds(now) == pytest.approx(90.0)


def test_temperature_has_readings():
    assert not CpuTemperature().has_readings
    assert CpuTemperature(thermal_throttling=False).has_readings
