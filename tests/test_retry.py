"""Tests for retry_with_backoff, CircuitBreaker and poll_until."""

import pytest
from botocore.exceptions import ClientError

from k8s_bootstrap.retry import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    RetriableError,
    RetryExhaustedError,
    is_retriable,
    poll_until,
    retry_with_backoff,
)

from conftest import metric_names


def client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "Operation")


class Flaky:
    """Fails ``failures`` times, then returns ``result``."""

    def __init__(self, failures, exc=None, result="ok"):
        self.failures = failures
        self.exc = exc or ConnectionError("connection reset")
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return self.result


def test_succeeds_after_transient_failures():
    delays = []
    op = Flaky(failures=2)
    assert retry_with_backoff(op, "flaky", max_retries=3, base_delay=1,
                              jitter_factor=0, sleep=delays.append) == "ok"
    assert op.calls == 3
    assert delays == [1, 2]


def test_jitter_is_bounded(monkeypatch):
    monkeypatch.setattr("k8s_bootstrap.retry.random.random", lambda: 1.0)
    delays = []
    with pytest.raises(RetryExhaustedError):
        retry_with_backoff(Flaky(failures=5), "always", max_retries=3, base_delay=2,
                           jitter_factor=0.3, sleep=delays.append)
    assert delays == pytest.approx([2.6, 5.2])


def test_exhaustion_raises_with_last_error(metrics, emitted):
    op = Flaky(failures=10, exc=TimeoutError("slow"))
    with pytest.raises(RetryExhaustedError) as info:
        retry_with_backoff(op, "slow op", max_retries=3, base_delay=0, metrics=metrics,
                           sleep=lambda _: None)
    assert op.calls == 3
    assert info.value.attempts == 3
    assert isinstance(info.value.last_error, TimeoutError)
    names = metric_names(emitted)
    assert names.count("RetryAttempt") == 2
    assert names.count("RetryExhausted") == 1


def test_non_retriable_error_is_raised_immediately():
    op = Flaky(failures=10, exc=RetriableError("bad input", retriable=False))
    with pytest.raises(RetriableError):
        retry_with_backoff(op, "permanent", max_retries=5, base_delay=0,
                           sleep=lambda _: None)
    assert op.calls == 1


def test_unlisted_exception_types_propagate():
    op = Flaky(failures=1, exc=KeyError("missing"))
    with pytest.raises(KeyError):
        retry_with_backoff(op, "typed", retriable_exceptions=(ConnectionError,),
                           sleep=lambda _: None)
    assert op.calls == 1


@pytest.mark.parametrize("code,expected", [
    ("ThrottlingException", True),
    ("ProvisionedThroughputExceededException", True),
    ("InternalError", True),
    ("AccessDeniedException", False),
    ("ValidationException", False),
])
def test_client_errors_classified_by_code(code, expected):
    assert is_retriable(client_error(code)) is expected


def test_generic_errors_default_to_retriable():
    assert is_retriable(OSError("reset"))
    assert not is_retriable(RetriableError("nope", retriable=False))


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def failing():
    raise ConnectionError("down")


def test_circuit_opens_after_threshold_and_fails_fast():
    clock = FakeClock()
    breaker = CircuitBreaker("ssm", failure_threshold=3, reset_timeout=60, clock=clock)
    for _ in range(3):
        with pytest.raises(RetryExhaustedError):
            breaker.call(failing, "ssm call", max_retries=1)
    assert breaker.state is CircuitState.OPEN

    calls = []
    with pytest.raises(CircuitOpenError):
        breaker.call(lambda: calls.append(1), "ssm call")
    assert calls == []


def test_circuit_half_opens_after_timeout_and_closes_on_success():
    clock = FakeClock()
    breaker = CircuitBreaker("ssm", failure_threshold=1, reset_timeout=60, clock=clock)
    with pytest.raises(RetryExhaustedError):
        breaker.call(failing, "ssm call", max_retries=1)
    assert breaker.state is CircuitState.OPEN

    clock.now = 61
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.call(lambda: "fine", "ssm call") == "fine"
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failures == 0


def test_half_open_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker("ssm", failure_threshold=5, reset_timeout=10, clock=clock)
    for _ in range(5):
        breaker.record_failure()
    clock.now = 11
    assert breaker.state is CircuitState.HALF_OPEN
    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN


def test_poll_until_returns_first_truthy_result():
    values = iter([None, False, "ready"])
    slept = []
    assert poll_until(lambda: next(values), timeout=10, interval=2,
                      description="thing", sleep=slept.append) == "ready"
    assert slept == [2, 2]


def test_poll_until_times_out():
    slept = []
    assert poll_until(lambda: None, timeout=5, interval=2,
                      description="never", sleep=slept.append) is None
    assert sum(slept) <= 5
