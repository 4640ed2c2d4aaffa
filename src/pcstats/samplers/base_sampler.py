from abc import ABC, abstractmethod

from pcstats.models.batch import TelemetryBatch


class BaseSampler(ABC):
    """
    Abstract base class for samplers that produce one telemetry batch per
    sampling cycle.

    Samplers may be stateful and are polled periodically by the runtime.
    """

    def __init__(self, sampler_name: str) -> None:
        self.sampler_name = sampler_name

    @abstractmethod
    def sample(self) -> TelemetryBatch:
        raise NotImplementedError("Must be implemented by subclasses.")
