"""Error types and retry handling for the daybook daemon.

Every failure the daemon knows how to handle is a subclass of DaybookError:
- StorageError: the journal medium rejected a write or could not be opened
- NotFound: a note or attachment id that does not exist
- IndexCorruption: the search index disagrees with the journal
- InvalidTransition: an attachment status change outside its state machine
- ShuttingDown: new work refused while the daemon stops
- CaptureError: an external capture tool run failed (transient or terminal)
"""

import asyncio
import random
from typing import Any, Callable, Optional

from loguru import logger


class DaybookError(Exception):
    """Base class for daybook errors."""


class StorageError(DaybookError):
    """The durable medium rejected a read or write."""


class NotFound(DaybookError):
    """A referenced note or attachment does not exist."""


class IndexCorruption(DaybookError):
    """The search index is inconsistent with the note journal."""


class InvalidTransition(DaybookError):
    """An attachment status change that its lifecycle does not allow."""


class ShuttingDown(DaybookError):
    """The daemon is stopping and no longer accepts new notes."""


class TooLarge(DaybookError):
    """An upload exceeds the configured size limit."""


class CaptureError(DaybookError):
    """
    A capture tool run failed.

    Transient errors (timeouts, non-zero exits) are retried; terminal ones
    (missing binary, malformed URL) settle the attachment as failed at once.
    """

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class RetryPolicy:
    """Retry policy with exponential backoff."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 2.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        """
        Initialize retry policy.

        Args:
            max_attempts: Total attempts including the first one
            base_delay: Delay before the second attempt, in seconds
            max_delay: Upper bound for any single delay
            exponential_base: Growth factor between attempts
            jitter: Whether to randomize delays
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate the delay after a failed attempt.

        Args:
            attempt: Number of attempts made so far (1-based)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay = delay * (0.5 + random.random())

        return delay

    async def execute(
        self,
        func: Callable,
        *args,
        should_retry: Callable[[Exception], bool] = lambda e: True,
        on_attempt: Optional[Callable[[int], Any]] = None,
        **kwargs
    ) -> Any:
        """
        Execute an async function under this policy.

        Args:
            func: Coroutine function to call
            should_retry: Decides whether a raised exception may be retried
            on_attempt: Called with the attempt number before each call

        Returns:
            Function result

        Raises:
            The last exception once attempts are exhausted or the
            exception is not retryable.
        """
        attempt = 0
        while True:
            attempt += 1
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if attempt >= self.max_attempts or not should_retry(e):
                    raise
                delay = self.calculate_delay(attempt)
                logger.debug(f"Retry {attempt}/{self.max_attempts - 1} after {delay:.2f}s: {e}")
                await asyncio.sleep(delay)
