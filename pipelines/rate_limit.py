"""Rate limiting, per-call timeouts and linear retries for external collaborators."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, TypeVar

from app.observability.metrics import metrics

logger = logging.getLogger("pipelines.rate_limit")

_T = TypeVar("_T")
SleepFn = Callable[[float], None]
ClockFn = Callable[[], float]


class ExternalCallError(RuntimeError):
    """Raised when an external call keeps failing after every retry."""

    def __init__(self, message: str, code: str = "EXTERNAL_CALL_FAILED") -> None:
        super().__init__(message)
        self.code = code


class CallTimeoutError(ExternalCallError):
    """Raised when a single attempt exceeds the hard per-call timeout."""

    def __init__(self, message: str = "External call timed out") -> None:
        super().__init__(message, code="CALL_TIMEOUT")


def linear_backoff(*, max_attempts: int = 3, base_delay: float = 2.0) -> Iterator[tuple[int, float]]:
    """Yield (attempt, delay_seconds) pairs where the delay grows by ``base_delay`` per attempt."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if base_delay < 0:
        raise ValueError("base_delay must be >= 0")
    for attempt in range(1, max_attempts + 1):
        yield attempt, base_delay * attempt


class TokenBucket:
    """Token-bucket limiter shared by every call site of one external service.

    A bucket with ``capacity=1`` and ``rate_per_second=1/delay`` enforces a fixed
    minimum spacing of ``delay`` seconds between calls.
    """

    def __init__(
        self,
        *,
        rate_per_second: float,
        capacity: float = 1.0,
        clock: ClockFn | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0")
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._rate = rate_per_second
        self._capacity = capacity
        self._clock = clock or time.monotonic
        self._sleep = sleep
        self._tokens = capacity
        self._updated = self._clock()

    @classmethod
    def from_delay(cls, delay_seconds: float, **kwargs: Any) -> "TokenBucket | None":
        """Build a bucket spacing calls ``delay_seconds`` apart; ``None`` when no delay is wanted."""
        if delay_seconds <= 0:
            return None
        return cls(rate_per_second=1.0 / delay_seconds, **kwargs)

    @property
    def rate_per_second(self) -> float:
        return self._rate

    def acquire(self) -> float:
        """Take one token, sleeping until one is available. Returns the seconds waited."""
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._updated = max(now, self._updated)
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0
        wait = (1.0 - self._tokens) / self._rate
        sleeper = self._sleep or time.sleep
        sleeper(wait)
        self._tokens = 0.0
        self._updated += wait
        return wait


def run_with_timeout(operation: Callable[[], _T], timeout: float | None) -> _T:
    """Run ``operation`` and abandon it once ``timeout`` seconds have passed."""
    if timeout is None or math.isinf(timeout):
        return operation()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="external-call")
    future = executor.submit(operation)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        future.cancel()
        raise CallTimeoutError(f"External call exceeded {timeout:.1f}s") from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def _log_retry_event(
    *,
    provider: str,
    code: str,
    attempt: int,
    max_attempts: int,
    delay: float,
    context: str,
) -> None:
    logger.warning(
        "provider.retry",
        extra={
            "provider": provider,
            "code": code,
            "attempt": attempt,
            "max_attempts": max_attempts,
            "delay_ms": round(delay * 1000, 2),
            "context": context[:120],
        },
    )


class ExternalCaller:
    """Wraps one external service: shared limiter, hard timeout and linear retries."""

    def __init__(
        self,
        provider: str,
        *,
        limiter: TokenBucket | None = None,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        timeout: float | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.provider = provider
        self._limiter = limiter
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._timeout = timeout
        self._sleep = sleep

    def call(self, operation: Callable[[], _T], *, context: str = "") -> _T:
        """Invoke ``operation`` through the limiter, retrying any failure up to ``max_attempts`` times."""
        sleeper = self._sleep or time.sleep
        last_error: Exception | None = None
        for attempt, delay in linear_backoff(max_attempts=self._max_attempts, base_delay=self._base_delay):
            if self._limiter is not None:
                self._limiter.acquire()
            try:
                return run_with_timeout(operation, self._timeout)
            except Exception as exc:  # noqa: BLE001 - every upstream failure is retryable here
                last_error = exc
                if attempt >= self._max_attempts:
                    break
                _log_retry_event(
                    provider=self.provider,
                    code=getattr(exc, "code", type(exc).__name__),
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    delay=delay,
                    context=context,
                )
                metrics.increment("external.retries", tags={"provider": self.provider})
                sleeper(delay)

        metrics.increment("external.failures", tags={"provider": self.provider})
        code = getattr(last_error, "code", "EXTERNAL_CALL_FAILED")
        raise ExternalCallError(
            f"{self.provider} call failed after {self._max_attempts} attempts: {last_error}",
            code=code,
        ) from last_error
