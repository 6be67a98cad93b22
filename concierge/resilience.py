"""Retry and circuit breaking for upstream provider calls"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from .clock import Clock, system_clock
from .errors import UpstreamProviderError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 1.0,
    operation_name: str = "provider_call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` retrying retryable provider errors with exponential backoff.

    Non-retryable provider errors and any other exception propagate on the
    first failure.
    """
    attempts = max(1, attempts)

    for attempt in range(attempts):
        try:
            return await operation()
        except UpstreamProviderError as e:
            if not e.retryable or attempt == attempts - 1:
                raise

            wait_time = base_delay * (2 ** attempt)
            logger.warning("Retrying provider call",
                           operation=operation_name,
                           attempt=attempt + 1,
                           wait_time=wait_time,
                           error=str(e))
            await sleep(wait_time)

    raise RuntimeError("unreachable")


class CircuitBreaker:
    """Opens after consecutive failures and half-opens after a cool-down"""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock or system_clock
        self.failures = 0
        self.last_failure: Optional[float] = None
        self.state = "closed"  # closed, open, half-open

    def allow_request(self) -> bool:
        if self.state == "closed":
            return True
        if self.state == "open":
            if self.last_failure is not None and self.clock.now() - self.last_failure > self.reset_timeout:
                self.state = "half-open"
                return True
            return False
        return True

    def record_success(self):
        self.failures = 0
        self.state = "closed"

    def record_failure(self):
        self.failures += 1
        self.last_failure = self.clock.now()

        if self.state == "half-open" or self.failures >= self.failure_threshold:
            if self.state != "open":
                logger.warning("Circuit breaker opened", breaker=self.name, failures=self.failures)
            self.state = "open"

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker"""
        if not self.allow_request():
            raise UpstreamProviderError(f"Circuit breaker open for {self.name}", retryable=False)

        try:
            result = await operation()
        except UpstreamProviderError:
            self.record_failure()
            raise

        self.record_success()
        return result
