import pytest

from pcstats.settings import PCStatsSettings, read_pcstats_env


class TestReadEnv:
    def test_defaults_when_unset(self):
        settings = read_pcstats_env({})
        assert settings == PCStatsSettings()
        assert settings.queue.max_batches == 10_000
        assert settings.queue.max_bytes == 256 * 1024 * 1024
        assert settings.queue.retention_days == 7.0
        assert settings.replay.max_rejected_attempts == 5
        assert settings.preserve_order is True

    def test_overrides(self):
        settings = read_pcstats_env(
            {
                "PCSTATS_DB_PATH": "/data/pc.db",
                "PCSTATS_LOG_LEVEL": "debug",
                "PCSTATS_QUEUE_PATH": "/var/pcstats",
                "PCSTATS_QUEUE_MAX_BATCHES": "50",
                "PCSTATS_REPLAY_INTERVAL": "2.5",
                "PCSTATS_MAX_REJECTED_ATTEMPTS": "2",
                "PCSTATS_SAMPLE_INTERVAL": "1",
                "PCSTATS_PRESERVE_ORDER": "off",
            }
        )
        assert settings.db_path == "/data/pc.db"
        assert settings.log_level == "DEBUG"
        assert settings.queue.path == "/var/pcstats"
        assert settings.queue.max_batches == 50
        assert settings.replay.interval_sec == 2.5
        assert settings.replay.max_rejected_attempts == 2
        assert settings.sampler.interval_sec == 1.0
        assert settings.preserve_order is False

    def test_empty_value_uses_default(self):
        settings = read_pcstats_env({"PCSTATS_QUEUE_MAX_BATCHES": ""})
        assert settings.queue.max_batches == 10_000

    def test_invalid_value_names_the_variable(self):
        with pytest.raises(ValueError, match="PCSTATS_QUEUE_MAX_BATCHES"):
            read_pcstats_env({"PCSTATS_QUEUE_MAX_BATCHES": "lots"})

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("PCSTATS_WRITE_TIMEOUT", "3")
        assert read_pcstats_env().write_timeout_sec == 3.0
