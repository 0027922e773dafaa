"""
Reliability utilities for outbound gateway calls.

Includes the Circuit Breaker pattern and retry with exponential backoff.
"""

import time
import asyncio
import logging
from typing import Callable, Any, Tuple, Type

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    If 'failure_threshold' failures occur within 'reset_timeout',
    the circuit opens and rejects calls for 'reset_timeout' seconds.

    Only exceptions listed in 'failure_exceptions' count as failures, so a
    provider refusing a bad request does not trip the breaker.
    """
    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: int = 60,
        failure_exceptions: Tuple[Type[BaseException], ...] = (Exception,)
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failure_exceptions = failure_exceptions
        self.failures = 0
        self.last_failure_time = 0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.monotonic() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError("Circuit is OPEN")

        try:
            result = await func(*args, **kwargs)
        except self.failure_exceptions:
            self.record_failure()
            raise

        if self.state == "HALF_OPEN" or self.failures:
            self.reset_state()
        return result

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.monotonic()
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"


async def retry_with_backoff(
    func: Callable,
    *args,
    attempts: int = 3,
    backoff_seconds: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs
) -> Any:
    """
    Call an async function, retrying on the given exceptions.

    Sleeps backoff_seconds * 2**n between attempts (0.5s, 1s, 2s ...).
    The last exception propagates once attempts are exhausted.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt >= attempts:
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Retrying after failure",
                extra={
                    "function": getattr(func, "__name__", repr(func)),
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error": str(e),
                }
            )
            await asyncio.sleep(delay)
