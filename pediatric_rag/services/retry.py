import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import CollaboratorError, CollaboratorTimeoutError

logger = logging.getLogger("PediatricRAG")

T = TypeVar("T")


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    service: str,
    attempts: int = 3,
    timeout: Optional[float] = 30.0,
    backoff: float = 1.0,
) -> T:
    """
    Run an external call with a per-attempt timeout and bounded linear backoff.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        service: Name used in logs and in the raised error
        attempts: Maximum number of attempts (at least one is always made)
        timeout: Seconds allowed per attempt, or None for no limit
        backoff: Base delay; attempt N waits ``backoff * N`` seconds before retrying

    Returns:
        The operation's result

    Raises:
        CollaboratorError: The last failure once attempts are exhausted, or
            immediately for non-retryable failures (auth, quota)
        asyncio.CancelledError: Always propagated untouched
    """
    attempts = max(1, attempts)
    last_error: Optional[CollaboratorError] = None

    for attempt in range(1, attempts + 1):
        try:
            if timeout is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError:
            last_error = CollaboratorTimeoutError(
                f"{service} timed out after {timeout}s", service=service
            )
        except CollaboratorError as e:
            if not e.retryable:
                logger.error(f"{service} failed with non-retryable error: {e}")
                raise
            last_error = e

        if attempt < attempts:
            delay = backoff * attempt
            logger.warning(
                f"{service} attempt {attempt}/{attempts} failed ({last_error}); "
                f"retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    logger.error(f"{service} failed after {attempts} attempts: {last_error}")
    assert last_error is not None
    raise last_error
