import time
from statistics import mean
from typing import Dict, List, Optional

import psutil

from pcstats.loggers.error_log import get_logger
from pcstats.models.batch import CpuTemperature, ProcessInfo, SystemSnapshot, TelemetryBatch
from pcstats.sequence import SnapshotSequence

from .base_sampler import BaseSampler

MB = 1024 * 1024

# Sensor chips reporting the CPU package temperature, in order of preference.
CPU_SENSOR_CHIPS = ("k10temp", "zenpower", "coretemp", "cpu_thermal", "cpu-thermal", "acpitz")


class HostSampler(BaseSampler):
    """
    Sampler that captures one host telemetry batch per call using psutil:
    system CPU / memory, the processes worth keeping, and CPU temperature.

    A process is kept when its CPU usage OR its private memory reaches the
    configured threshold. Any part that cannot be read is logged and left
    out; the batch is still produced.
    """

    def __init__(
        self,
        sequence: SnapshotSequence,
        min_cpu_percent: float = 5.0,
        min_private_memory_mb: int = 100,
    ) -> None:
        super().__init__(sampler_name="HostSampler")
        self.logger = get_logger(self.sampler_name)
        self.sequence = sequence
        self.min_cpu_percent = float(min_cpu_percent)
        self.min_private_memory_mb = int(min_private_memory_mb)

        self._attrs = ["pid", "name", "exe", "cpu_percent", "memory_info", "num_threads"]
        if psutil.WINDOWS:
            self._attrs.append("num_handles")

        self._warmup_cpu()

    def _warmup_cpu(self) -> None:
        # First cpu_percent() calls return 0.0; prime system and per-process counters.
        self.cpu_count = 1
        try:
            psutil.cpu_percent(interval=None)
            self.cpu_count = psutil.cpu_count(logical=True) or 1
            for _ in psutil.process_iter(["cpu_percent"]):
                pass
        except Exception as e:
            self.logger.error(f"[PCStats] WARNING: CPU counter warmup failed: {e}")

    def _sample_system(self) -> Optional[SystemSnapshot]:
        try:
            cpu = float(psutil.cpu_percent(interval=None))
            mem = psutil.virtual_memory()
            return SystemSnapshot(
                total_cpu_usage=round(cpu, 2),
                total_memory_usage_mb=int((mem.total - mem.available) // MB),
                total_available_memory_mb=int(mem.available // MB),
            )
        except Exception as e:
            self.logger.error(f"[PCStats] System sampling failed: {e}")
            return None

    def _to_process_info(self, info: Dict) -> Optional[ProcessInfo]:
        mem = info.get("memory_info")
        name = info.get("name")
        if mem is None or not name:
            return None

        rss = int(mem.rss)
        if hasattr(mem, "private"):
            private = int(mem.private)
        elif hasattr(mem, "shared"):
            private = max(0, rss - int(mem.shared))
        else:
            private = rss

        cpu = float(info.get("cpu_percent") or 0.0) / self.cpu_count
        return ProcessInfo(
            pid=int(info["pid"]),
            process_name=name,
            process_path=info.get("exe") or None,
            cpu_usage=round(cpu, 2),
            memory_usage_mb=rss // MB,
            private_memory_mb=private // MB,
            virtual_memory_mb=int(mem.vms) // MB,
            thread_count=int(info.get("num_threads") or 0),
            handle_count=int(info.get("num_handles") or 0),
        )

    def _keep(self, process: ProcessInfo) -> bool:
        return (
            process.cpu_usage >= self.min_cpu_percent
            or process.private_memory_mb >= self.min_private_memory_mb
        )

    def _sample_processes(self) -> List[ProcessInfo]:
        processes = []
        seen = 0
        try:
            for proc in psutil.process_iter(self._attrs):
                seen += 1
                try:
                    process = self._to_process_info(proc.info)
                except Exception as e:
                    self.logger.debug(f"[PCStats] Skipping process {proc.pid}: {e}")
                    continue
                if process is not None and self._keep(process):
                    processes.append(process)
        except Exception as e:
            self.logger.error(f"[PCStats] Process enumeration failed: {e}")

        self.logger.debug(
            f"[PCStats] Keeping {len(processes)} of {seen} processes "
            f"(CPU >= {self.min_cpu_percent}% OR private memory >= "
            f"{self.min_private_memory_mb}MB)"
        )
        return processes

    def _sample_temperature(self) -> Optional[CpuTemperature]:
        read_sensors = getattr(psutil, "sensors_temperatures", None)
        if read_sensors is None:
            return None

        try:
            sensors = read_sensors() or {}
        except Exception as e:
            self.logger.error(f"[PCStats] Temperature sensors read failed: {e}")
            return None

        entries = next((sensors[c] for c in CPU_SENSOR_CHIPS if sensors.get(c)), None)
        if not entries:
            return None

        by_label = {(e.label or "").strip(): e for e in entries}
        package = (
            by_label.get("Tdie")
            or by_label.get("Tctl")
            or by_label.get("Package id 0")
            or entries[0]
        )
        ccd1 = by_label.get("Tccd1")
        ccd2 = by_label.get("Tccd2")

        dies = [
            e.current
            for e in entries
            if (e.label or "").startswith(("Tccd", "Core")) and e.current is not None
        ]
        limit_pct = None
        if package.high:
            limit_pct = round(package.current * 100.0 / package.high, 2)
        throttling = None
        if package.critical:
            throttling = package.current >= package.critical

        temperature = CpuTemperature(
            cpu_tctl_tdie=package.current,
            cpu_die_average=round(mean(dies), 2) if dies else None,
            cpu_ccd1_tdie=ccd1.current if ccd1 else None,
            cpu_ccd2_tdie=ccd2.current if ccd2 else None,
            thermal_limit_percent=limit_pct,
            thermal_throttling=throttling,
        )
        return temperature if temperature.has_readings else None

    def sample(self) -> TelemetryBatch:
        """Take one host snapshot and return it as a new TelemetryBatch."""
        started = time.perf_counter()
        system = self._sample_system()
        processes = self._sample_processes()
        temperature = self._sample_temperature()

        batch = TelemetryBatch.create(
            local_snapshot_id=self.sequence.next(),
            system=system,
            processes=processes,
            temperature=temperature,
        )
        self.logger.debug(
            f"[PCStats] Sampled batch {batch.batch_id} "
            f"(local_snapshot_id={batch.local_snapshot_id}, "
            f"{len(processes)} processes) in "
            f"{(time.perf_counter() - started) * 1000:.0f}ms"
        )
        return batch
