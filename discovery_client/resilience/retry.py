"""
Retry Mechanism with Exponential Backoff and Jitter

Wraps a single registry call with bounded retries. Delay before retry k
(1-indexed) is min(max_delay, base * 2^(k-1)) scaled by a jitter factor
drawn uniformly from [0.5, 1.5] so that many clients do not retry in step.

Only transient failures are retried: RegistryTransportError and an elapsed
per-attempt timeout. Everything else (not found, circuit open, rejected
request) propagates on the first occurrence.

Usage:
    policy = RetryPolicy(retries=3, timeout=5.0, base_delay=0.2, max_delay=10.0)
    records = await policy.execute(fetch, breaker=breaker, operation="discover")
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

import structlog

from discovery_client.exceptions import RegistryTransportError, RegistryUnavailableError

logger = structlog.get_logger("retry")

TRANSIENT_ERRORS = (RegistryTransportError, asyncio.TimeoutError)

JITTER_LOW = 0.5
JITTER_HIGH = 1.5


def exponential_backoff(attempt: int, base_delay: float = 0.2, max_delay: float = 10.0) -> float:
    """
    Calculate exponential backoff delay.

    Args:
        attempt: Retry number (1-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay cap

    Returns:
        Delay in seconds (base, 2*base, 4*base, ... capped)
    """
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def exponential_with_jitter(
    attempt: int,
    base_delay: float = 0.2,
    max_delay: float = 10.0,
    rng: Optional[random.Random] = None
) -> float:
    """Exponential backoff scaled by a uniform factor in [0.5, 1.5]."""
    factor = (rng or random).uniform(JITTER_LOW, JITTER_HIGH)
    return exponential_backoff(attempt, base_delay, max_delay) * factor


class RetryPolicy:
    """
    Injectable retry strategy.

    The sleep function is injected so tests can record delays instead of
    waiting on real timers.
    """

    def __init__(
        self,
        retries: int = 3,
        timeout: float = 5.0,
        base_delay: float = 0.2,
        max_delay: float = 10.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None
    ):
        if retries < 0:
            raise ValueError("retries must be >= 0")
        self.retries = retries
        self.timeout = timeout
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings, sleep=None) -> "RetryPolicy":
        return cls(
            retries=settings.REGISTRY_RETRIES,
            timeout=settings.timeout_seconds,
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            sleep=sleep,
        )

    def compute_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-indexed)."""
        return exponential_with_jitter(attempt, self.base_delay, self.max_delay, self._rng)

    async def sleep(self, seconds: float) -> None:
        await self._sleep(seconds)

    async def execute(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        breaker=None,
        idempotent: bool = True,
        operation: str = "registry call",
        service: Optional[str] = None
    ) -> Any:
        """
        Run func with retry logic.

        Each attempt runs inside the breaker (when given) and under the
        per-attempt timeout, so a timeout counts as a breaker failure.

        Raises:
            RegistryUnavailableError: every attempt failed transiently
            Any non-transient exception raised by func or the breaker
        """
        max_attempts = self.retries + 1 if idempotent else 1
        last_exception: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            try:
                result = await self._attempt(func, breaker)

                if attempt > 1:
                    logger.info(
                        "Retry succeeded",
                        operation=operation,
                        service=service,
                        attempt=attempt
                    )

                return result

            except TRANSIENT_ERRORS as e:
                last_exception = e

                if attempt < max_attempts:
                    delay = self.compute_delay(attempt)
                    logger.warning(
                        "Attempt failed, retrying",
                        operation=operation,
                        service=service,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=round(delay, 3),
                        error=_describe(e)
                    )
                    await self._sleep(delay)
                else:
                    logger.error(
                        "All attempts failed",
                        operation=operation,
                        service=service,
                        attempts=max_attempts,
                        error=_describe(e)
                    )

        raise RegistryUnavailableError(
            f"{operation} failed after {max_attempts} attempt(s): {_describe(last_exception)}",
            service=service,
            attempts=max_attempts
        ) from last_exception

    async def _attempt(self, func, breaker):
        if breaker is None:
            return await asyncio.wait_for(func(), timeout=self.timeout)
        async with breaker:
            return await asyncio.wait_for(func(), timeout=self.timeout)


def _describe(exc: Optional[BaseException]) -> str:
    if exc is None:
        return "unknown error"
    if isinstance(exc, asyncio.TimeoutError):
        return "attempt timed out"
    return str(exc) or type(exc).__name__
