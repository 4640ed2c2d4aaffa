from dataclasses import dataclass
from enum import Enum

from pcstats.errors import TransientWriteFailure
from pcstats.models.batch import TelemetryBatch


class FailureKind(str, Enum):
    """How a failed primary-store write should affect the replay cycle."""

    CONNECTIVITY = "connectivity"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Replay cadence and retry limits.

    There is no per-batch backoff: a connectivity failure ends the whole
    replay cycle, and the next attempt happens on the next fixed tick.
    Connectivity failures are retried indefinitely; batch-specific
    rejections are retried until `max_rejected_attempts` is reached.
    """

    replay_interval_sec: float = 30.0
    max_rejected_attempts: int = 5
    stuck_retry_threshold: int = 10

    def __post_init__(self):
        if self.replay_interval_sec <= 0:
            raise ValueError(
                f"replay_interval_sec must be > 0, got {self.replay_interval_sec}"
            )
        if self.max_rejected_attempts <= 0:
            raise ValueError(
                f"max_rejected_attempts must be > 0, got {self.max_rejected_attempts}"
            )

    def classify(self, exc: BaseException) -> FailureKind:
        if isinstance(exc, (TransientWriteFailure, TimeoutError, ConnectionError)):
            return FailureKind.CONNECTIVITY
        return FailureKind.REJECTED

    def rejection_exhausted(self, rejection_count: int) -> bool:
        return rejection_count >= self.max_rejected_attempts

    def is_stuck(self, batch: TelemetryBatch) -> bool:
        return batch.retry_count > self.stuck_retry_threshold
