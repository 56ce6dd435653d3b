"""
Exponential backoff for provider calls.

Only ProviderTransientFailure is retried; ProviderRejected propagates at once.
"""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .exceptions import ProviderTransientFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, initial_delay: float, max_delay: float, multiplier: float = 2.0) -> float:
    """Delay before retry number `attempt` (1-based)."""
    return min(initial_delay * (multiplier ** (attempt - 1)), max_delay)


async def with_retry(
    call: Callable[[], Awaitable[T]],
    attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    multiplier: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `call` with bounded exponential backoff.

    Args:
        call: Zero-argument coroutine factory
        attempts: Total attempts including the first
        initial_delay: Delay before the first retry, seconds
        max_delay: Upper bound for any single delay
        multiplier: Backoff multiplier
        sleep: Awaitable sleep (injected in tests)

    Returns:
        Result of the first successful call

    Raises:
        ProviderTransientFailure: After the last attempt fails transiently
        ProviderRejected: Immediately, never retried
    """
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except ProviderTransientFailure as e:
            if attempt == attempts:
                raise
            delay = backoff_delay(attempt, initial_delay, max_delay, multiplier)
            logger.warning(
                f"[{e.provider.upper()}] Transient failure (attempt {attempt}/{attempts}), "
                f"retrying in {delay:.1f}s: {e.message}"
            )
            await sleep(delay)
