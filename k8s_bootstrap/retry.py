#!/usr/bin/env python3
"""
@format
Retry with exponential backoff, circuit breaker and bounded polling.

Every remote call made by the node state machine, the rotation manager
and the handlers goes through ``retry_with_backoff``; every waiting loop
goes through ``poll_until``.
"""

from __future__ import annotations

import enum
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from botocore.exceptions import ClientError

from k8s_bootstrap.common import log_error, log_info, log_warn
from k8s_bootstrap.metrics import COUNT, MetricsLogger

T = TypeVar("T")

# botocore error codes that indicate a transient service-side condition
RETRIABLE_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ProvisionedThroughputExceededException",
    "RequestThrottled",
    "SlowDown",
    "InternalError",
    "InternalFailure",
    "InternalServerError",
    "ServiceUnavailable",
    "ServiceUnavailableException",
})


# =============================================================================
# Exceptions
# =============================================================================

class RetriableError(Exception):
    """Base class for errors that carry an explicit retriability flag."""

    is_retriable = True

    def __init__(self, message: str = "", *, retriable: Optional[bool] = None):
        super().__init__(message)
        if retriable is not None:
            self.is_retriable = retriable


class RetryExhaustedError(Exception):
    """Raised when every attempt of a retriable operation has failed."""

    def __init__(self, operation_name: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{operation_name} failed after {attempts} attempts: {last_error}"
        )
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error


class CircuitOpenError(Exception):
    """Raised when a call is rejected because its circuit is open."""


def is_retriable(exc: BaseException) -> bool:
    """
    Classify an exception as transient (retriable) or permanent.

    An explicit ``is_retriable`` attribute wins. botocore ``ClientError``s
    are classified by error code. Anything else (connection resets,
    timeouts, command failures) defaults to retriable.
    """
    explicit = getattr(exc, "is_retriable", None)
    if explicit is not None:
        return bool(explicit)
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        return code in RETRIABLE_ERROR_CODES
    return True


# =============================================================================
# Retry with Backoff
# =============================================================================

def retry_with_backoff(
    operation: Callable[[], T],
    operation_name: str,
    max_retries: int = 3,
    base_delay: float = 5,
    jitter_factor: float = 0.3,
    retriable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    metrics: Optional[MetricsLogger] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Execute ``operation`` with exponential backoff and jitter.

    Args:
        operation: Zero-argument callable (use a closure or functools.partial).
        operation_name: Human-readable name for logging and metrics.
        max_retries: Maximum number of attempts.
        base_delay: Base delay in seconds; attempt n waits base_delay * 2**(n-1).
        jitter_factor: Up to this fraction of the delay is added at random.
        retriable_exceptions: Exception types that are caught and considered.
        metrics: Optional metrics logger for RetryAttempt/RetryExhausted.
        sleep: Sleep function (injected by tests).

    Returns:
        The result of the first successful call.

    Raises:
        RetryExhaustedError: If every attempt failed with a retriable error.
        Exception: A non-retriable error is re-raised unchanged.
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_retries + 1):
        try:
            log_info(f"Attempt {attempt}/{max_retries}: {operation_name}")
            return operation()
        except retriable_exceptions as exc:
            last_error = exc
            log_warn(
                f"{operation_name} attempt {attempt} failed: {exc}",
                operation=operation_name,
                attempt=attempt,
            )

            if not is_retriable(exc):
                log_error(f"{operation_name} error is not retriable, giving up")
                raise

            if metrics and attempt > 1:
                metrics.set_dimension("Operation", operation_name)
                metrics.put_metric("RetryAttempt", 1, COUNT)
                metrics.flush()

            if attempt < max_retries:
                delay = base_delay * (2 ** (attempt - 1))
                jitter = delay * jitter_factor * random.random()
                log_info(
                    f"Waiting {delay + jitter:.1f}s before retry "
                    f"(base: {delay}s, jitter: {jitter:.1f}s)"
                )
                (sleep or time.sleep)(delay + jitter)

    log_error(
        f"All {max_retries} attempts failed for {operation_name}",
        last_error=str(last_error),
    )
    if metrics:
        metrics.set_dimension("Operation", operation_name)
        metrics.put_metric("RetryExhausted", 1, COUNT)
        metrics.flush()
    raise RetryExhaustedError(operation_name, max_retries, last_error)


# =============================================================================
# Circuit Breaker
# =============================================================================

class CircuitState(enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Fail fast while a dependency is down.

    Transitions:
        CLOSED    -> OPEN       after ``failure_threshold`` consecutive failures
        OPEN      -> HALF_OPEN  after ``reset_timeout`` seconds
        HALF_OPEN -> CLOSED     on success
        HALF_OPEN -> OPEN       on failure
    """

    def __init__(self, name: str = "default", failure_threshold: int = 5,
                 reset_timeout: float = 60, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.last_failure_time: Optional[float] = None
        self._state = CircuitState.CLOSED
        self._clock = clock

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self.last_failure_time is not None
            and self._clock() - self.last_failure_time >= self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
        return self._state

    def can_execute(self) -> bool:
        return self.state is not CircuitState.OPEN

    def record_success(self) -> None:
        self.failures = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure_time = self._clock()
        if self._state is CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            if self._state is not CircuitState.OPEN:
                log_warn(f"Circuit '{self.name}' opened", failures=self.failures)
            self._state = CircuitState.OPEN

    def call(self, operation: Callable[[], T], operation_name: str, **retry_kwargs) -> T:
        """
        Run ``operation`` through ``retry_with_backoff`` guarded by this breaker.

        Raises:
            CircuitOpenError: If the circuit is open.
        """
        if not self.can_execute():
            log_warn(f"Circuit breaker OPEN for {operation_name}, failing fast")
            raise CircuitOpenError(f"circuit '{self.name}' is open")
        try:
            result = retry_with_backoff(operation, operation_name, **retry_kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


# =============================================================================
# Bounded Polling
# =============================================================================

def poll_until(
    check: Callable[[], Optional[T]],
    timeout: float,
    interval: float,
    description: str,
    sleep: Optional[Callable[[float], None]] = None,
) -> Optional[T]:
    """
    Call ``check`` every ``interval`` seconds until it returns a truthy value.

    Args:
        check: Zero-argument callable; a truthy return ends the wait.
        timeout: Total seconds to wait.
        interval: Seconds between checks.
        description: What is being waited for (for logging).

    Returns:
        The first truthy result, or None on timeout.
    """
    waited = 0.0
    while True:
        result = check()
        if result:
            return result
        if waited + interval > timeout:
            log_warn(f"Timed out waiting for {description} after {timeout}s")
            return None
        log_info(f"Waiting for {description}... ({waited:.0f}s / {timeout}s)")
        (sleep or time.sleep)(interval)
        waited += interval
