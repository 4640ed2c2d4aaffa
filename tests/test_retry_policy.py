import pytest

from pcstats.errors import RejectedBatch, TransientWriteFailure
from pcstats.storage.policy import FailureKind, RetryPolicy

from conftest import make_batch


class TestClassify:
    @pytest.mark.parametrize(
        "exc",
        [TransientWriteFailure("down"), TimeoutError(), ConnectionRefusedError()],
    )
    def test_connectivity(self, exc):
        assert RetryPolicy().classify(exc) is FailureKind.CONNECTIVITY

    @pytest.mark.parametrize("exc", [RejectedBatch("bad row"), ValueError("schema")])
    def test_rejected(self, exc):
        assert RetryPolicy().classify(exc) is FailureKind.REJECTED


class TestLimits:
    def test_rejection_ceiling(self):
        policy = RetryPolicy(max_rejected_attempts=3)
        assert not policy.rejection_exhausted(2)
        assert policy.rejection_exhausted(3)

    def test_is_stuck_is_strictly_above_threshold(self):
        policy = RetryPolicy(stuck_retry_threshold=10)
        assert not policy.is_stuck(make_batch(1, retry_count=10))
        assert policy.is_stuck(make_batch(1, retry_count=11))

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.replay_interval_sec == 30.0
        assert policy.max_rejected_attempts == 5
        assert policy.stuck_retry_threshold == 10

    @pytest.mark.parametrize(
        "kwargs", [{"replay_interval_sec": 0}, {"max_rejected_attempts": 0}]
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)
