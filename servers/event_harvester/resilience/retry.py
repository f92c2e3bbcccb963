"""In-process retry with exponential backoff for short-lived remote calls.

Job-level retries (minutes apart, persisted) are handled by the job queue;
this decorator covers quick reattempts such as logging in to the store.
"""

import asyncio
import random
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator for async retry with exponential backoff.

    Args:
        max_attempts: Total attempts, including the first call
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay, in seconds
        exponential_base: Growth factor of the delay between attempts
        jitter: Scale each delay by a random factor in [0.5, 1.5)
        retryable_exceptions: Exception types that trigger another attempt

    Returns:
        Decorated async function with retry logic
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt == max_attempts:
                        logger.error(
                            "retry_exhausted",
                            function=func.__name__,
                            max_attempts=max_attempts,
                            error=str(e),
                        )
                        raise

                    delay = min(base_delay * (exponential_base ** (attempt - 1)), max_delay)
                    if jitter:
                        delay *= 0.5 + random.random()

                    logger.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=round(delay, 2),
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("max_attempts must be at least 1")

        return wrapper

    return decorator
