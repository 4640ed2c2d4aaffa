"""
PCStats settings (shared configuration schema).

This module defines the configuration dataclasses used by:
- CLI launcher (flags override env-derived defaults)
- runtime agent (sampler + replay threads)
- durable queue and resilient writer

Notes:
- `sampler.interval_sec` and `replay.interval_sec` are independent cadences.
- `max_rejected_attempts` bounds batch-specific rejections only; connectivity
  failures are retried until success or eviction.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class QueueSettings:
    """Durable local queue location and bounds."""

    path: str = "./offline_data"
    max_batches: int = 10_000
    max_bytes: int = 256 * 1024 * 1024
    retention_days: float = 7.0


@dataclass(frozen=True)
class ReplaySettings:
    """Replay cadence and retry ceilings."""

    interval_sec: float = 30.0
    max_rejected_attempts: int = 5
    stuck_retry_threshold: int = 10


@dataclass(frozen=True)
class SamplerSettings:
    """Sampling cadence and process filter thresholds."""

    interval_sec: float = 5.0
    min_cpu_percent: float = 5.0
    min_private_memory_mb: int = 100


@dataclass(frozen=True)
class PCStatsSettings:
    """
    Top-level settings for one PCStats agent.

    `storage_fault_threshold` is the number of consecutive local storage
    faults after which the agent reports itself unhealthy.
    `db_retention_days` > 0 enables periodic deletion of old snapshots from
    the primary store.
    """

    db_path: str = "./pcstats.db"
    logs_dir: str = "./logs"
    log_level: str = "INFO"
    write_timeout_sec: float = 10.0
    storage_fault_threshold: int = 3
    preserve_order: bool = True
    db_retention_days: float = 0.0
    db_cleanup_interval_sec: float = 24 * 3600.0
    queue: QueueSettings = field(default_factory=QueueSettings)
    replay: ReplaySettings = field(default_factory=ReplaySettings)
    sampler: SamplerSettings = field(default_factory=SamplerSettings)


def _get(env: Mapping[str, str], key: str, default: Any, cast) -> Any:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {key}: {raw!r}") from None


def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def read_pcstats_env(env: Optional[Mapping[str, str]] = None) -> PCStatsSettings:
    """
    Read PCStats configuration from `PCSTATS_*` environment variables.

    Unset variables fall back to the dataclass defaults.
    """
    env = os.environ if env is None else env
    q, r, s, top = QueueSettings(), ReplaySettings(), SamplerSettings(), PCStatsSettings()

    return PCStatsSettings(
        db_path=_get(env, "PCSTATS_DB_PATH", top.db_path, str),
        logs_dir=_get(env, "PCSTATS_LOGS_DIR", top.logs_dir, str),
        log_level=_get(env, "PCSTATS_LOG_LEVEL", top.log_level, str).upper(),
        write_timeout_sec=_get(
            env, "PCSTATS_WRITE_TIMEOUT", top.write_timeout_sec, float
        ),
        storage_fault_threshold=_get(
            env, "PCSTATS_STORAGE_FAULT_THRESHOLD", top.storage_fault_threshold, int
        ),
        preserve_order=_get(env, "PCSTATS_PRESERVE_ORDER", top.preserve_order, _as_bool),
        db_retention_days=_get(
            env, "PCSTATS_DB_RETENTION_DAYS", top.db_retention_days, float
        ),
        db_cleanup_interval_sec=_get(
            env, "PCSTATS_DB_CLEANUP_INTERVAL", top.db_cleanup_interval_sec, float
        ),
        queue=QueueSettings(
            path=_get(env, "PCSTATS_QUEUE_PATH", q.path, str),
            max_batches=_get(env, "PCSTATS_QUEUE_MAX_BATCHES", q.max_batches, int),
            max_bytes=_get(env, "PCSTATS_QUEUE_MAX_BYTES", q.max_bytes, int),
            retention_days=_get(
                env, "PCSTATS_QUEUE_RETENTION_DAYS", q.retention_days, float
            ),
        ),
        replay=ReplaySettings(
            interval_sec=_get(env, "PCSTATS_REPLAY_INTERVAL", r.interval_sec, float),
            max_rejected_attempts=_get(
                env, "PCSTATS_MAX_REJECTED_ATTEMPTS", r.max_rejected_attempts, int
            ),
            stuck_retry_threshold=_get(
                env, "PCSTATS_STUCK_RETRY_THRESHOLD", r.stuck_retry_threshold, int
            ),
        ),
        sampler=SamplerSettings(
            interval_sec=_get(env, "PCSTATS_SAMPLE_INTERVAL", s.interval_sec, float),
            min_cpu_percent=_get(
                env, "PCSTATS_MIN_CPU_PERCENT", s.min_cpu_percent, float
            ),
            min_private_memory_mb=_get(
                env, "PCSTATS_MIN_PRIVATE_MEMORY_MB", s.min_private_memory_mb, int
            ),
        ),
    )

