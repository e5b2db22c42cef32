"""Retry decorator with exponential or linear backoff."""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, Literal, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")


def backoff_delay(
    attempt: int, base_delay: float, backoff: Literal["exponential", "linear"]
) -> float:
    """Delay before retrying after the zero-based ``attempt`` failed."""
    if backoff == "linear":
        return base_delay * (attempt + 1)
    return base_delay * (2**attempt)


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    backoff: Literal["exponential", "linear"] = "exponential",
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for retry logic with backoff between attempts.

    Args:
        max_attempts: Maximum number of attempts
        base_delay: Base delay in seconds
        exceptions: Tuple of exception types to catch
        backoff: "exponential" doubles the delay each attempt,
            "linear" grows it by ``base_delay`` each attempt

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < max_attempts - 1:
                        delay = backoff_delay(attempt, base_delay, backoff)
                        logger.warning(
                            f"Attempt {attempt + 1}/{max_attempts} failed: {e}. "
                            f"Retrying in {delay}s..."
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f"All {max_attempts} attempts failed: {e}")

            raise last_exception  # type: ignore

        return wrapper  # type: ignore

    return decorator
