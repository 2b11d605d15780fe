"""
Deadlines and bounded retry for external chain calls.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from .errors import DeadlineExceededError, QueryError, SubmissionTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Reads get a deadline and are retried with exponential backoff.
    Submissions get a deadline and are never retried: a retried mint
    could land twice.
    """

    query_timeout: float = 30.0
    submit_timeout: float = 180.0
    retries: int = 3
    backoff: float = 1.0
    max_backoff: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)."""
        return min(self.backoff * 2 ** (attempt - 1), self.max_backoff)

    async def query(
        self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """
        Run a read under the deadline, retrying QueryError.

        Raises the last error once `retries` retries are exhausted.
        """
        attempt = 0
        while True:
            try:
                return await self._with_deadline(operation, fn(*args, **kwargs))
            except QueryError as e:
                attempt += 1
                if attempt > self.retries:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "query_retry",
                    operation=operation,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

    async def submit(
        self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Run a submission under the submit deadline. Never retried."""
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), self.submit_timeout)
        except asyncio.TimeoutError as e:
            raise SubmissionTimeoutError(
                f"{operation} exceeded {self.submit_timeout}s deadline"
            ) from e

    async def _with_deadline(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.query_timeout)
        except asyncio.TimeoutError as e:
            raise DeadlineExceededError(
                f"{operation} exceeded {self.query_timeout}s deadline"
            ) from e
