"""
Telemetry batch schema.

This module defines the canonical data structures for one sampling cycle:
- System-wide CPU / memory usage
- Per-process usage records
- CPU temperature readings

A `TelemetryBatch` is the atomic unit of persistence: its snapshot, process
list and temperature either all reach the primary store or none do.

Design principles
-----------------
- Clear separation between:
    * internal representation (frozen dataclasses)
    * wire representation (plain dicts, msgpack friendly)
- Only `retry_count`, `last_error` and `rejection_count` ever change after
  creation, and only through `with_retry_state()` which returns a copy
- Stable field names for storage and transport
"""

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

# ---------------------------------------------------------------------------
# Per-process usage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProcessInfo:
    """
    Resource usage of a single process during one sampling cycle.

    Units
    -----
    cpu_usage : percent of total machine CPU
    *_mb : megabytes
    """

    pid: int
    process_name: str
    process_path: Optional[str] = None
    cpu_usage: float = 0.0
    memory_usage_mb: int = 0
    private_memory_mb: int = 0
    virtual_memory_mb: int = 0
    vram_usage_mb: int = 0
    thread_count: int = 0
    handle_count: int = 0

    def to_wire(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.process_name,
            "path": self.process_path,
            "cpu": self.cpu_usage,
            "mem_mb": self.memory_usage_mb,
            "private_mb": self.private_memory_mb,
            "virtual_mb": self.virtual_memory_mb,
            "vram_mb": self.vram_usage_mb,
            "threads": self.thread_count,
            "handles": self.handle_count,
        }

    @staticmethod
    def from_wire(data: Dict[str, Any]) -> "ProcessInfo":
        return ProcessInfo(
            pid=data["pid"],
            process_name=data["name"],
            process_path=data.get("path"),
            cpu_usage=data.get("cpu", 0.0),
            memory_usage_mb=data.get("mem_mb", 0),
            private_memory_mb=data.get("private_mb", 0),
            virtual_memory_mb=data.get("virtual_mb", 0),
            vram_usage_mb=data.get("vram_mb", 0),
            thread_count=data.get("threads", 0),
            handle_count=data.get("handles", 0),
        )


# ---------------------------------------------------------------------------
# System-wide usage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SystemSnapshot:
    """Aggregate CPU / memory usage for the cycle. Any field may be missing."""

    total_cpu_usage: Optional[float] = None
    total_memory_usage_mb: Optional[int] = None
    total_available_memory_mb: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "cpu": self.total_cpu_usage,
            "mem_used_mb": self.total_memory_usage_mb,
            "mem_available_mb": self.total_available_memory_mb,
        }

    @staticmethod
    def from_wire(data: Dict[str, Any]) -> "SystemSnapshot":
        return SystemSnapshot(
            total_cpu_usage=data.get("cpu"),
            total_memory_usage_mb=data.get("mem_used_mb"),
            total_available_memory_mb=data.get("mem_available_mb"),
        )


# ---------------------------------------------------------------------------
# CPU temperature
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CpuTemperature:
    """
    CPU temperature readings in degrees Celsius.

    Sensors differ per platform, so every reading is optional.
    """

    cpu_tctl_tdie: Optional[float] = None
    cpu_die_average: Optional[float] = None
    cpu_ccd1_tdie: Optional[float] = None
    cpu_ccd2_tdie: Optional[float] = None
    thermal_limit_percent: Optional[float] = None
    thermal_throttling: Optional[bool] = None

    @property
    def has_readings(self) -> bool:
        return any(
            v is not None
            for v in (
                self.cpu_tctl_tdie,
                self.cpu_die_average,
                self.cpu_ccd1_tdie,
                self.cpu_ccd2_tdie,
                self.thermal_limit_percent,
                self.thermal_throttling,
            )
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "tctl_tdie": self.cpu_tctl_tdie,
            "die_avg": self.cpu_die_average,
            "ccd1": self.cpu_ccd1_tdie,
            "ccd2": self.cpu_ccd2_tdie,
            "limit_pct": self.thermal_limit_percent,
            "throttling": self.thermal_throttling,
        }

    @staticmethod
    def from_wire(data: Dict[str, Any]) -> "CpuTemperature":
        return CpuTemperature(
            cpu_tctl_tdie=data.get("tctl_tdie"),
            cpu_die_average=data.get("die_avg"),
            cpu_ccd1_tdie=data.get("ccd1"),
            cpu_ccd2_tdie=data.get("ccd2"),
            thermal_limit_percent=data.get("limit_pct"),
            thermal_throttling=data.get("throttling"),
        )


# ---------------------------------------------------------------------------
# Telemetry batch
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TelemetryBatch:
    """
    One sampling cycle's full telemetry payload.

    Notes
    -----
    - `batch_id` is globally unique and is the idempotency key at the
      primary store.
    - `local_snapshot_id` is strictly increasing per host and defines the
      replay order.
    - `timestamp` is the UTC capture time.
    - `retry_count` counts failed replay attempts of any kind;
      `rejection_count` counts only batch-specific rejections.
    """

    batch_id: str
    local_snapshot_id: int
    timestamp: datetime
    system: Optional[SystemSnapshot] = None
    processes: Tuple[ProcessInfo, ...] = ()
    temperature: Optional[CpuTemperature] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    rejection_count: int = 0

    @classmethod
    def create(
        cls,
        local_snapshot_id: int,
        system: Optional[SystemSnapshot] = None,
        processes=(),
        temperature: Optional[CpuTemperature] = None,
    ) -> "TelemetryBatch":
        """Factory that assigns a fresh batch id and the current UTC time."""
        return cls(
            batch_id=uuid.uuid4().hex,
            local_snapshot_id=int(local_snapshot_id),
            timestamp=datetime.now(timezone.utc),
            system=system,
            processes=tuple(processes),
            temperature=temperature,
        )

    def with_retry_state(
        self,
        retry_count: int,
        last_error: Optional[str],
        rejection_count: Optional[int] = None,
    ) -> "TelemetryBatch":
        """
        Return a copy carrying new retry counters.

        Counters never go backwards.
        """
        if retry_count < self.retry_count:
            raise ValueError(
                f"retry_count cannot decrease ({self.retry_count} -> {retry_count})"
            )
        if rejection_count is None:
            rejection_count = self.rejection_count
        if rejection_count < self.rejection_count:
            raise ValueError(
                f"rejection_count cannot decrease "
                f"({self.rejection_count} -> {rejection_count})"
            )
        return replace(
            self,
            retry_count=retry_count,
            last_error=last_error,
            rejection_count=rejection_count,
        )

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - self.timestamp).total_seconds())

    def to_wire(self) -> Dict[str, Any]:
        """
        Convert the batch to a wire-friendly representation.

        Returns
        -------
        Dict[str, Any]
            Nested dict of builtins; the timestamp is an ISO-8601 string.
        """
        return {
            "batch_id": self.batch_id,
            "seq": self.local_snapshot_id,
            "ts": self.timestamp.isoformat(),
            "system": self.system.to_wire() if self.system else None,
            "processes": [p.to_wire() for p in self.processes],
            "temperature": self.temperature.to_wire() if self.temperature else None,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "rejection_count": self.rejection_count,
        }

    @staticmethod
    def from_wire(data: Dict[str, Any]) -> "TelemetryBatch":
        """
        Reconstruct a TelemetryBatch from its wire representation.

        Parameters
        ----------
        data : Dict[str, Any]
            Wire-format dictionary produced by `to_wire()`.
        """
        ts = datetime.fromisoformat(data["ts"])
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)

        system = data.get("system")
        temperature = data.get("temperature")
        return TelemetryBatch(
            batch_id=data["batch_id"],
            local_snapshot_id=int(data["seq"]),
            timestamp=ts,
            system=SystemSnapshot.from_wire(system) if system else None,
            processes=tuple(ProcessInfo.from_wire(p) for p in data.get("processes", [])),
            temperature=CpuTemperature.from_wire(temperature) if temperature else None,
            retry_count=int(data.get("retry_count", 0)),
            last_error=data.get("last_error"),
            rejection_count=int(data.get("rejection_count", 0)),
        )
