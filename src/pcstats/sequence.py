import os
import threading
from pathlib import Path

from pcstats.loggers.error_log import get_logger


class SnapshotSequence:
    """
    Allocator for strictly increasing local snapshot ids.

    The last issued id is persisted to a small counter file so ids keep
    increasing across restarts. On startup the sequence resumes after the
    larger of the persisted counter and `floor` (typically the highest id
    still sitting in the durable queue).
    """

    def __init__(self, counter_path, floor: int = 0):
        self._path = Path(counter_path)
        self._lock = threading.Lock()
        self._logger = get_logger("SnapshotSequence")
        self._last = max(self._read_counter(), int(floor))

    def _read_counter(self) -> int:
        try:
            return int(self._path.read_text(encoding="utf-8").strip() or 0)
        except FileNotFoundError:
            return 0
        except (OSError, ValueError) as e:
            self._logger.warning(
                f"[PCStats] Failed to read snapshot counter {self._path}, "
                f"ignoring it: {e}"
            )
            return 0

    def _write_counter(self, value: int) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(str(value), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as e:
            # The in-memory counter stays authoritative for this process.
            self._logger.warning(f"[PCStats] Failed to update snapshot counter: {e}")

    @property
    def last(self) -> int:
        return self._last

    def next(self) -> int:
        with self._lock:
            self._last += 1
            self._write_counter(self._last)
            return self._last
