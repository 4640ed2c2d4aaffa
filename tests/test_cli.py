"""Tests for the command-line entry point and the queue status renderer."""

import logging

import pytest
from rich.console import Console

from pcstats.cli import apply_overrides, build_parser, main
from pcstats.renderers.queue_renderer import QueueRenderer
from pcstats.settings import PCStatsSettings
from pcstats.storage.queue import DurableQueue
from pcstats.storage.sqlite_store import SQLitePrimaryStore
from pcstats.utils.formatting import fmt_bytes, fmt_duration

from conftest import days_ago, make_batch


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for key in ("PCSTATS_DB_PATH", "PCSTATS_QUEUE_PATH", "PCSTATS_LOGS_DIR"):
        monkeypatch.delenv(key, raising=False)
    yield
    logger = logging.getLogger("pcstats")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


class TestParser:
    def test_run_flags(self):
        args = build_parser().parse_args(
            ["run", "--db", "x.db", "--interval", "2", "--replay-interval", "15"]
        )
        settings = apply_overrides(PCStatsSettings(), args)
        assert settings.db_path == "x.db"
        assert settings.sampler.interval_sec == 2.0
        assert settings.replay.interval_sec == 15.0

    def test_no_flags_keep_settings(self):
        args = build_parser().parse_args(["status"])
        base = PCStatsSettings()
        assert apply_overrides(base, args) is base

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    def test_status(self, tmp_path, capsys):
        queue_dir = tmp_path / "queue"
        DurableQueue(queue_dir, fsync=False).enqueue(make_batch(1))
        with pytest.raises(SystemExit) as exc:
            main(["status", "--queue-dir", str(queue_dir)])
        assert exc.value.code == 0
        assert "Pending batches" in capsys.readouterr().out

    def test_status_does_not_touch_queue_directory(self, tmp_path, capsys):
        queue_dir = tmp_path / "queue"
        DurableQueue(queue_dir, fsync=False).enqueue(make_batch(1))
        (queue_dir / "00000000000000000002_inflight.batch.tmp").write_bytes(b"partial")
        before = sorted(p.name for p in queue_dir.iterdir())

        with pytest.raises(SystemExit) as exc:
            main(["status", "--queue-dir", str(queue_dir)])
        assert exc.value.code == 0
        assert sorted(p.name for p in queue_dir.iterdir()) == before

    def test_status_on_missing_queue_does_not_create_it(self, tmp_path, capsys):
        queue_dir = tmp_path / "absent"
        with pytest.raises(SystemExit) as exc:
            main(["status", "--queue-dir", str(queue_dir)])
        assert exc.value.code == 0
        assert not queue_dir.exists()

    def test_replay_drains_queue(self, tmp_path, capsys):
        queue_dir = tmp_path / "queue"
        db = tmp_path / "pcstats.db"
        DurableQueue(queue_dir, fsync=False).enqueue(make_batch(1))
        with pytest.raises(SystemExit) as exc:
            main(
                [
                    "replay",
                    "--queue-dir", str(queue_dir),
                    "--db", str(db),
                    "--logs-dir", str(tmp_path / "logs"),
                ]
            )
        assert exc.value.code == 0
        assert "Replayed 1" in capsys.readouterr().out
        assert SQLitePrimaryStore(db).local_snapshot_ids() == [1]

    def test_replay_with_unreachable_store(self, tmp_path, capsys):
        queue_dir = tmp_path / "queue"
        DurableQueue(queue_dir, fsync=False).enqueue(make_batch(1))
        with pytest.raises(SystemExit) as exc:
            main(
                [
                    "replay",
                    "--queue-dir", str(queue_dir),
                    "--db", str(tmp_path / "missing" / "pcstats.db"),
                    "--logs-dir", str(tmp_path / "logs"),
                ]
            )
        assert exc.value.code == 1
        assert len(DurableQueue(queue_dir, fsync=False)) == 1

    def test_invalid_env_exits_with_usage_error(self, monkeypatch):
        monkeypatch.setenv("PCSTATS_QUEUE_MAX_BATCHES", "many")
        with pytest.raises(SystemExit) as exc:
            main(["status"])
        assert exc.value.code == 2


class TestQueueRenderer:
    def test_panel_shows_stuck_batches(self, tmp_path):
        queue = DurableQueue(tmp_path / "q", fsync=False)
        batch = make_batch(1, timestamp=days_ago(2))
        queue.enqueue(batch)
        queue.update_retry_state(batch.batch_id, 12, "refused")

        renderer = QueueRenderer(queue.stats(10), stuck_retry_threshold=10, healthy=False)
        console = Console(record=True, width=100)
        console.print(renderer.get_panel_renderable())
        text = console.export_text()

        assert "Offline Queue" in text
        assert "Retried > 10x" in text
        assert "FAULTING" in text
        assert "stuck(>10)=1" in renderer.log_summary()


def test_formatting_helpers():
    assert fmt_bytes(512) == "512 B"
    assert fmt_bytes(1536) == "1.50 KB"
    assert fmt_bytes(None) == "N/A"
    assert fmt_duration(None) == "N/A"
    assert fmt_duration(42) == "42s"
    assert fmt_duration(185) == "3m 05s"
    assert fmt_duration(2 * 86400 + 3600) == "2d 1h"
