"""
Error taxonomy for the persistence layer.

- TransientWriteFailure: primary store unreachable or timed out.
  Recovered locally by queueing the batch and replaying it later.
- RejectedBatch: primary store refused the batch content
  (schema / constraint violation). Retried a bounded number of times.
- StorageFault: the durable local queue cannot be written.
  Fatal for that one batch only.
- DataLoss: a queued batch was evicted before it reached the primary store.
  Describes an event for logs and eviction records; never raised to the sampler.
"""


class PCStatsError(Exception):
    """Base class for all PCStats errors."""


class PrimaryStoreError(PCStatsError):
    """Base class for failures reported by a primary store."""


class TransientWriteFailure(PrimaryStoreError):
    pass


class RejectedBatch(PrimaryStoreError):
    pass


class StorageFault(PCStatsError):
    pass


class DataLoss(PCStatsError):
    """
    A batch left the local queue without reaching the primary store.

    Parameters
    ----------
    batch_id : str
        Identifier of the evicted batch.
    local_snapshot_id : int
        Local sequence number of the evicted batch.
    reason : str
        Why it was evicted ("capacity", "retention", "rejected").
    """

    def __init__(self, batch_id: str, local_snapshot_id: int, reason: str):
        super().__init__(
            f"batch {batch_id} (local_snapshot_id={local_snapshot_id}) "
            f"evicted: {reason}"
        )
        self.batch_id = batch_id
        self.local_snapshot_id = local_snapshot_id
        self.reason = reason
