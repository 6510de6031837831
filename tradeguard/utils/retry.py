import asyncio
import functools
import random
from typing import Callable, Optional, Tuple, Type

from tradeguard.exceptions import OperationalError, RateLimitError
from tradeguard.monitoring.logger import get_logger

logger = get_logger(__name__)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
    is_retryable: Optional[Callable[[Exception], bool]] = None,
):
    """
    Decorator to retry async broker calls on transient errors.

    Implements exponential backoff with jitter. Only exceptions in
    ``transient_errors`` are retried (default: OperationalError whose
    ``retryable`` flag is set); ``is_retryable`` can veto individual errors,
    e.g. a 4xx order rejection that must reach the retry engine untouched.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types to retry on
        is_retryable: Optional per-error predicate
    """
    retry_types = transient_errors or (OperationalError,)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_types as e:
                    if not getattr(e, "retryable", True):
                        raise
                    if is_retryable is not None and not is_retryable(e):
                        raise
                    if retry_count >= max_retries:
                        logger.warning(
                            f"Max retries ({max_retries}) exhausted for {func.__name__}",
                            error=str(e),
                        )
                        raise

                    if isinstance(e, RateLimitError):
                        backoff = max(backoff, base_delay * 2)
                    logger.warning(
                        f"Transient error in {func.__name__}, retrying ({retry_count + 1}/{max_retries})",
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )
                    await asyncio.sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    backoff += random.uniform(0, 0.5)

        return wrapper

    return decorator
