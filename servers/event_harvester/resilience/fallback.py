"""Graceful degradation for optional pipeline steps."""

from typing import Any, Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


async def with_default(
    func: Callable[..., Awaitable[T]],
    default: T,
    *args: Any,
    **kwargs: Any,
) -> T:
    """Execute function and return default value on failure.

    The failure is logged, never raised. Use it for steps whose failure
    must not abort the surrounding job.

    Args:
        func: Async function to execute
        default: Value to return if function fails
        *args: Positional arguments for function
        **kwargs: Keyword arguments for function

    Returns:
        Function result or default value
    """
    try:
        return await func(*args, **kwargs)
    except Exception as e:
        logger.warning(
            "using_default_value",
            function=getattr(func, "__name__", repr(func)),
            error=str(e),
            error_type=type(e).__name__,
        )
        return default
