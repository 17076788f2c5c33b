import pytest

from services.download_management.models import FailureReason, FetchFailureKind, GiveUp, RetryAfter
from services.download_management.retry_handler import RetryPolicy


def test_backoff_doubles_and_caps():
    policy = RetryPolicy(max_attempts=10, base_delay=2, max_delay=20)

    assert [policy.backoff_delay(n) for n in range(1, 6)] == [2, 4, 8, 16, 20]
    assert policy.backoff_delay(500) == 20


@pytest.mark.parametrize(
    "kind,reason",
    [
        (FetchFailureKind.FATAL, FailureReason.FATAL),
        (FetchFailureKind.NOT_FOUND, FailureReason.NOT_FOUND),
        (FetchFailureKind.RESOLUTION_ERROR, FailureReason.RESOLUTION),
    ],
)
def test_permanent_failures_give_up_immediately(kind, reason):
    decision = RetryPolicy(max_attempts=5).decide(kind, attempt_count=1)

    assert isinstance(decision, GiveUp)
    assert decision.reason is reason


@pytest.mark.parametrize("kind", [FetchFailureKind.TRANSIENT, FetchFailureKind.BYPASS_REQUIRED])
def test_retryable_failures_back_off(kind):
    decision = RetryPolicy(max_attempts=5, base_delay=1, max_delay=60).decide(kind, attempt_count=3)

    assert decision == RetryAfter(4.0)


def test_gives_up_when_attempts_exhausted():
    policy = RetryPolicy(max_attempts=3, base_delay=1)

    assert isinstance(policy.decide(FetchFailureKind.TRANSIENT, 2), RetryAfter)
    decision = policy.decide(FetchFailureKind.TRANSIENT, 3)
    assert isinstance(decision, GiveUp)
    assert decision.reason is FailureReason.RETRIES_EXHAUSTED


def test_rate_limit_hint_overrides_backoff():
    policy = RetryPolicy(max_attempts=5, base_delay=1, max_delay=10)

    assert policy.decide(FetchFailureKind.RATE_LIMITED, 1, retry_after=42) == RetryAfter(42.0)
    assert policy.decide(FetchFailureKind.RATE_LIMITED, 2) == RetryAfter(2.0)


def test_rate_limit_still_bounded_by_attempts():
    decision = RetryPolicy(max_attempts=1).decide(FetchFailureKind.RATE_LIMITED, 1, retry_after=5)

    assert isinstance(decision, GiveUp)


def test_jitter_adds_proportional_delay():
    policy = RetryPolicy(base_delay=10, max_delay=100, jitter=0.5, random_source=lambda: 1.0)

    assert policy.backoff_delay(1) == 15.0


def test_rejects_invalid_configuration():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay=-1)


def test_huge_rate_limit_hint_is_clamped():
    policy = RetryPolicy(base_delay=1)

    assert policy.decide(FetchFailureKind.RATE_LIMITED, 1, retry_after=1e15) == RetryAfter(RetryPolicy.MAX_RETRY_AFTER)
    assert policy.decide(FetchFailureKind.RATE_LIMITED, 1, retry_after=float("inf")) == RetryAfter(RetryPolicy.MAX_RETRY_AFTER)
    assert policy.decide(FetchFailureKind.RATE_LIMITED, 2, retry_after=float("nan")) == RetryAfter(2.0)
