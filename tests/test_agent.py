"""
Tests for PCStatsAgent: the two background loops, start-up replay and
housekeeping.
"""

import time
from unittest.mock import MagicMock

import pytest

from pcstats.runtime.agent import PCStatsAgent, build_writer
from pcstats.samplers.base_sampler import BaseSampler
from pcstats.settings import (
    PCStatsSettings,
    QueueSettings,
    ReplaySettings,
    SamplerSettings,
)
from pcstats.storage.queue import DurableQueue
from pcstats.storage.sqlite_store import SQLitePrimaryStore

from conftest import days_ago, make_batch


class CountingSampler(BaseSampler):
    def __init__(self):
        super().__init__(sampler_name="CountingSampler")
        self.seq = 0

    def sample(self):
        self.seq += 1
        return make_batch(self.seq)


def _settings(tmp_path, **kwargs):
    return PCStatsSettings(
        db_path=str(tmp_path / "pcstats.db"),
        logs_dir=str(tmp_path / "logs"),
        write_timeout_sec=1.0,
        queue=QueueSettings(path=str(tmp_path / "queue")),
        replay=ReplaySettings(interval_sec=0.05),
        sampler=SamplerSettings(interval_sec=0.02),
        **kwargs,
    )


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestLifecycle:
    def test_samples_reach_primary(self, tmp_path, primary):
        agent = PCStatsAgent(_settings(tmp_path), primary=primary, sampler=CountingSampler())
        agent.start()
        try:
            assert _wait_for(lambda: len(primary.records) >= 3)
        finally:
            agent.stop()
        assert agent.cycle_count >= 3
        assert agent.lost_count == 0
        assert primary.closed

    def test_outage_then_recovery_keeps_order(self, tmp_path, primary):
        primary.down = True
        agent = PCStatsAgent(_settings(tmp_path), primary=primary, sampler=CountingSampler())
        agent.start()
        try:
            assert _wait_for(lambda: len(agent.writer.queue) >= 3)
            primary.down = False
            assert _wait_for(
                lambda: len(agent.writer.queue) == 0 and len(primary.records) >= 3
            )
        finally:
            agent.stop()

        ids = primary.written_ids
        assert ids == sorted(ids)
        assert ids[:3] == [1, 2, 3]

    def test_sampler_failure_does_not_stop_loop(self, tmp_path, primary):
        sampler = MagicMock(spec=BaseSampler)
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] % 2:
                raise RuntimeError("sensor glitch")
            return make_batch(calls["n"])

        sampler.sample.side_effect = flaky
        agent = PCStatsAgent(_settings(tmp_path), primary=primary, sampler=sampler)
        agent.start()
        try:
            assert _wait_for(lambda: len(primary.records) >= 2)
        finally:
            agent.stop()

    def test_start_replays_leftover_backlog(self, tmp_path, primary):
        settings = _settings(tmp_path)
        leftover = DurableQueue(settings.queue.path, fsync=False)
        for seq in (1, 2):
            leftover.enqueue(make_batch(seq))

        sampler = CountingSampler()
        sampler.seq = 2
        agent = PCStatsAgent(settings, primary=primary, sampler=sampler)
        agent.start()
        try:
            assert _wait_for(lambda: len(primary.records) >= 3)
        finally:
            agent.stop()
        assert primary.written_ids[:2] == [1, 2]

    def test_default_sampler_resumes_after_queued_ids(self, tmp_path, primary):
        settings = _settings(tmp_path)
        DurableQueue(settings.queue.path, fsync=False).enqueue(make_batch(41))
        agent = PCStatsAgent(settings, primary=primary)
        try:
            assert agent.sampler.sequence.last == 41
        finally:
            agent.writer.close()


class TestHousekeeping:
    def test_expired_batches_are_evicted(self, tmp_path, primary):
        primary.down = True
        agent = PCStatsAgent(_settings(tmp_path), primary=primary, sampler=CountingSampler())
        try:
            agent.writer.queue.enqueue(make_batch(1, timestamp=days_ago(30)))
            agent.writer.queue.enqueue(make_batch(2))
            agent._housekeeping()
            assert [b.local_snapshot_id for b in agent.writer.queue.list_pending()] == [2]
        finally:
            agent.writer.close()

    def test_primary_cleanup_runs_once_per_interval(self, tmp_path, primary):
        primary.cleanup_older_than = MagicMock(return_value=0)
        agent = PCStatsAgent(
            _settings(tmp_path, db_retention_days=30.0, db_cleanup_interval_sec=3600.0),
            primary=primary,
            sampler=CountingSampler(),
        )
        try:
            agent._housekeeping()
            agent._housekeeping()
        finally:
            agent.writer.close()
        primary.cleanup_older_than.assert_called_once_with(30.0)

    def test_primary_cleanup_disabled_by_default(self, tmp_path, primary):
        primary.cleanup_older_than = MagicMock(return_value=0)
        agent = PCStatsAgent(_settings(tmp_path), primary=primary, sampler=CountingSampler())
        try:
            agent._housekeeping()
        finally:
            agent.writer.close()
        primary.cleanup_older_than.assert_not_called()


def test_build_writer_defaults_to_sqlite(tmp_path):
    settings = _settings(tmp_path)
    writer = build_writer(settings)
    try:
        assert isinstance(writer.primary, SQLitePrimaryStore)
        assert writer.policy.replay_interval_sec == pytest.approx(0.05)
        assert writer.queue.root.name == "queue"
    finally:
        writer.close()
