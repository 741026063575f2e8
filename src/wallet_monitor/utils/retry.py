"""Retry utilities with exponential backoff."""

import asyncio
import random
import logging
from typing import Callable, Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def exponential_backoff(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: tuple = (Exception,)
) -> T:
    """
    Execute an async function with exponential backoff retry logic.

    Args:
        func: Async function to execute
        max_attempts: Maximum number of attempts
        initial_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        backoff_factor: Multiplier for delay after each failure
        jitter: Whether to add random jitter to delays
        exceptions: Tuple of exceptions to catch and retry on

    Returns:
        Result of the function call

    Raises:
        The last exception encountered if all retries fail
    """
    delay = initial_delay

    for attempt in range(max_attempts):
        try:
            return await func()
        except exceptions as e:
            if attempt == max_attempts - 1:
                logger.error(f"Function failed after {max_attempts} attempts: {e}")
                raise

            if jitter:
                # Add jitter: ±25% of the delay
                jitter_range = delay * 0.25
                actual_delay = delay + random.uniform(-jitter_range, jitter_range)
            else:
                actual_delay = delay

            actual_delay = min(actual_delay, max_delay)

            logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} failed: {e}. "
                f"Retrying in {actual_delay:.2f} seconds..."
            )

            await asyncio.sleep(actual_delay)
            delay *= backoff_factor

    raise ValueError("max_attempts must be at least 1")


class ReconnectBackoff:
    """
    Capped exponential delay sequence for reconnect attempts.

    Delays never decrease between consecutive failures; ``reset()`` returns
    to the base delay after a stable connection.
    """

    def __init__(
        self,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        backoff_factor: float = 2.0
    ):
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.attempts = 0

    def peek(self) -> float:
        """Delay the next failure will wait, without consuming it."""
        exponent = min(self.attempts, 64)
        return min(self.initial_delay * (self.backoff_factor ** exponent), self.max_delay)

    def next_delay(self) -> float:
        delay = self.peek()
        self.attempts += 1
        return delay

    def reset(self):
        if self.attempts:
            logger.debug(f"Reconnect backoff reset after {self.attempts} attempts")
        self.attempts = 0
