from abc import ABC, abstractmethod

from pcstats.models.batch import TelemetryBatch


class PrimaryStore(ABC):
    """
    Abstract base class for the central store telemetry ends up in.

    Implementations must make `write_batch` idempotent on `batch.batch_id`
    (upsert semantics): a batch replayed after a lost confirmation must not
    create a second record.
    """

    @abstractmethod
    def write_batch(self, batch: TelemetryBatch) -> None:
        """
        Persist the whole batch atomically.

        Raises
        ------
        TransientWriteFailure
            The store is unreachable or timed out.
        RejectedBatch
            The store refused this batch's content.
        """
        raise NotImplementedError("Must be implemented by subclasses.")

    @abstractmethod
    def is_reachable(self) -> bool:
        """Cheap health check. Not a substitute for handling write failures."""
        raise NotImplementedError("Must be implemented by subclasses.")

    def close(self) -> None:
        pass
