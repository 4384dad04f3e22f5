# src/estuary_sync/retry.py
"""
Bounded retry policy for idempotent collaborator calls.

A bulk-index window is safe to resend because every document is addressed
by its record identifier. The policy is a fixed number of attempts separated
by a fixed backoff.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Describes how often and how patiently an operation is retried.

    Attributes:
        max_attempts (int): Total number of attempts, including the first one.
        backoff_s (float): Fixed delay between two attempts in seconds.
    """

    max_attempts: int = 2
    backoff_s: float = 2.0

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_on: Tuple[Type[BaseException], ...],
        description: str = "operation",
    ) -> T:
        """
        Awaits `operation` until it succeeds or the attempts are exhausted.

        Args:
            operation (Callable[[], Awaitable[T]]): Factory producing a fresh
                awaitable for each attempt.
            retry_on (Tuple[Type[BaseException], ...]): Exception types that
                trigger another attempt. Anything else propagates immediately.
            description (str): Human readable name used in log messages.

        Returns:
            T: The result of the first successful attempt.

        Raises:
            BaseException: The error of the last attempt once all attempts failed.
        """
        attempts: int = max(1, self.max_attempts)
        retrying: AsyncRetrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(self.backoff_s),
            retry=retry_if_exception_type(retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return await retrying(operation)
        except retry_on as e:
            logger.error(f"{description} failed after {attempts} attempt(s): {e}")
            raise
