"""
Exponential backoff retry policy for external calls
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """All attempts failed with retryable errors"""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetryPolicy:
    """
    Reusable retry policy.

    An operation is called up to ``max_attempts`` times. Errors for which
    ``is_retryable`` returns False propagate immediately. Between attempt N and
    N+1 the policy sleeps ``base_delay * 2**N`` seconds (2s, 4s, ... with the
    default base of 1s). When every attempt fails, ``RetryExhausted`` is raised
    wrapping the last error.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        is_retryable: Callable[[BaseException], bool] = lambda error: True,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.is_retryable = is_retryable
        self.sleep = sleep or asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt"""
        return self.base_delay * (2**attempt)

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "operation") -> T:
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    f"⚠️ {label} attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                await self.sleep(delay)

        raise RetryExhausted(self.max_attempts, last_error)
