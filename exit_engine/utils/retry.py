"""Bounded exponential backoff for calls to external services."""
import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import structlog

from exit_engine.core.exceptions import NetworkError

logger = structlog.get_logger(__name__)


class RetryConfig:
    """Defaults for retry logic."""
    DEFAULT_MAX_ATTEMPTS = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 10.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0


def backoff_delay(
    attempt: int,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    return min(base_delay * (exponential_base ** attempt), max_delay)


async def with_timeout(coro: Awaitable[Any], timeout: Optional[float], operation: str) -> Any:
    """Await ``coro`` with a deadline, turning timeouts into NetworkError."""
    if timeout is None:
        return await coro
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise NetworkError(f"{operation} timed out after {timeout}s") from e


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args,
    operation: str = "call",
    max_attempts: int = RetryConfig.DEFAULT_MAX_ATTEMPTS,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (NetworkError,),
    on_retry: Optional[Callable[[int, BaseException], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs,
) -> Any:
    """Call ``func`` until it succeeds or ``max_attempts`` is reached.

    Args:
        func: Coroutine function to call
        operation: Name used in log events
        max_attempts: Total attempts, including the first
        base_delay: Initial delay between attempts in seconds
        max_delay: Cap on the delay between attempts
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Exceptions that should trigger another attempt;
            anything else propagates immediately
        on_retry: Awaited before each retry with (attempt, error)
        sleep: Sleep function, replaceable in tests

    Raises:
        The last retryable exception once attempts are exhausted.
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(max_attempts):
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            if getattr(e, "retryable", True) is False:
                raise
            last_exception = e
            if attempt + 1 >= max_attempts:
                break
            delay = backoff_delay(attempt, base_delay, max_delay, exponential_base)
            logger.warning(
                f"{operation}.retry_attempt",
                attempt=attempt + 1,
                max_attempts=max_attempts,
                delay=delay,
                error=str(e),
            )
            if on_retry is not None:
                await on_retry(attempt + 1, e)
            await sleep(delay)

    logger.error(
        f"{operation}.max_retries_exceeded",
        max_attempts=max_attempts,
        last_error=str(last_exception),
    )
    raise last_exception
