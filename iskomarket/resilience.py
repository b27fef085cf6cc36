"""
Retry and circuit breaking for the backend REST client.

Only connection-level failures are retried. The breaker is shared by all
requests of one client so a dead backend is not hammered by the persistent
poll, the fast poll and realtime-triggered fetches at once.
"""
import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from iskomarket.observability import get_logger, metrics

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class RetryConfig:
    """Backoff schedule: base_delay doubled per attempt, capped at max_delay."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 4.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> float:
        """Sleep before retrying after the given (1-based) failed attempt."""
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        return delay * (1 + self.jitter * random.random())


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    half_open_requests: int = 1


class CircuitOpenError(Exception):
    """Request rejected without reaching the backend."""

    def __init__(self, message: str, retry_in: float = 0.0):
        super().__init__(message)
        self.retry_in = retry_in


class CircuitBreaker:
    """
    Consecutive-failure breaker.

    CLOSED until failure_threshold failures in a row, then OPEN for
    recovery_timeout seconds, then HALF_OPEN where up to
    half_open_requests probes decide between CLOSED and OPEN again.
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self._opened_at = 0.0
        self._probes = 0
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def retry_in(self) -> float:
        """Seconds until an open breaker lets a probe through."""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._opened_at + self.config.recovery_timeout - time.monotonic())

    def _transition(self, state: CircuitState) -> None:
        if state == self.state:
            return
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(f"Backend circuit {self.state.value} -> {state.value}", extra={"failures": self.failure_count})
        metrics.increment(f"circuit_{state.value}")
        self.state = state
        if state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        self._probes = 0

    async def can_execute(self) -> bool:
        async with self._lock:
            if self.state == CircuitState.OPEN and self.retry_in == 0.0:
                self._transition(CircuitState.HALF_OPEN)

            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.HALF_OPEN and self._probes < self.config.half_open_requests:
                self._probes += 1
                return True
            return False

    async def record_success(self) -> None:
        async with self._lock:
            self.failure_count = 0
            self._transition(CircuitState.CLOSED)

    async def record_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            if (
                self.state == CircuitState.HALF_OPEN
                or self.failure_count >= self.config.failure_threshold
            ):
                self._transition(CircuitState.OPEN)


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    *args,
    config: Optional[RetryConfig] = None,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs
) -> Any:
    """
    Await func(*args, **kwargs), retrying retryable_exceptions with backoff.

    Anything else propagates from the first attempt. The last retryable
    error is re-raised once max_attempts is exhausted.
    """
    config = config or RetryConfig()
    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            if attempt >= config.max_attempts:
                logger.warning(f"Giving up after {attempt} attempts: {e}")
                raise
            delay = config.delay_for(attempt)
            metrics.increment("backend_retries")
            logger.debug(f"Attempt {attempt} failed ({e}), retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            attempt += 1
