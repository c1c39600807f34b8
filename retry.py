# retry.py
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from constants import (
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_INITIAL_DELAY,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
)
from errors import IdeogramError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    initial_delay: float = RETRY_INITIAL_DELAY,
    max_delay: float = RETRY_MAX_DELAY,
    multiplier: float = RETRY_BACKOFF_MULTIPLIER,
    jitter: bool = True,
) -> float:
    """Delay before retry number `attempt` (0-based), with optional +/-25% jitter."""
    delay = initial_delay * (multiplier ** attempt)
    if jitter:
        delay *= 0.75 + random.random() * 0.5
    return min(delay, max_delay)


def retry_delay(exc: BaseException, attempt: int, **backoff) -> float:
    """Prefer the server's Retry-After hint over computed backoff."""
    if isinstance(exc, IdeogramError) and exc.details:
        retry_after = exc.details.get("retry_after_seconds")
        if retry_after:
            return min(float(retry_after), backoff.get("max_delay", RETRY_MAX_DELAY))
    return backoff_delay(attempt, **backoff)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = RETRY_MAX_ATTEMPTS,
    initial_delay: float = RETRY_INITIAL_DELAY,
    max_delay: float = RETRY_MAX_DELAY,
    multiplier: float = RETRY_BACKOFF_MULTIPLIER,
    jitter: bool = True,
    should_retry: Callable[[BaseException, int], bool] = lambda exc, attempt: is_retryable(exc),
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call `fn` until it succeeds, it raises a non-retryable error, or
    `max_attempts` calls have been made. The last error is re-raised.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_attempts or not should_retry(exc, attempt):
                if attempt > 1:
                    logger.warning(
                        "%s failed after %d attempt(s): %r", operation_name, attempt, exc
                    )
                raise
            delay = retry_delay(
                exc,
                attempt - 1,
                initial_delay=initial_delay,
                max_delay=max_delay,
                multiplier=multiplier,
                jitter=jitter,
            )
            if on_retry is not None:
                on_retry(exc, attempt, delay)
            logger.info(
                "Retrying %s after %.2fs (attempt %d/%d): %r",
                operation_name, delay, attempt + 1, max_attempts, exc,
            )
            await sleep(delay)
            attempt += 1
