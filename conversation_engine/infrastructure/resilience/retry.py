"""Retry wrapper for network-bound steps.

Kept free of engine types so it can be exercised with a fake clock and a
fake sleep.
"""

from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar
import asyncio
import random
import time

import structlog

from conversation_engine.errors import ExternalHandoffError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Exponential backoff: ``base_delay * 2 ** (attempt - 1)``, capped.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
        jitter: Fraction of the delay randomly added or removed
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.sleep = sleep
        self.clock = clock
        self.rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "RetryPolicy":
        return cls(
            max_attempts=settings.handoff_max_attempts,
            base_delay=settings.handoff_base_delay,
            max_delay=settings.handoff_max_delay,
            jitter=settings.handoff_jitter,
            **kwargs
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt"""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay = max(0.0, delay + self.rng.uniform(-spread, spread))
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        deadline: Optional[float] = None,
        description: str = "operation",
    ) -> T:
        """Run ``operation`` until it succeeds or attempts run out.

        ``deadline`` is an absolute value of ``clock``; a retry whose delay
        would cross it is not attempted.
        """

        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except retry_on as e:
                last_error = e
                logger.warning(
                    "Attempt failed",
                    operation=description,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(e),
                )

            if attempt == self.max_attempts:
                break
            delay = self.delay_for(attempt)
            if deadline is not None and self.clock() + delay >= deadline:
                raise ExternalHandoffError(
                    f"{description} abandoned, deadline reached",
                    attempts=attempt,
                ) from last_error
            await self.sleep(delay)

        raise ExternalHandoffError(
            f"{description} failed after retries",
            attempts=self.max_attempts,
        ) from last_error
