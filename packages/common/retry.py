"""
Rate-limit retry with exponential backoff and jitter

Shared by the Anthropic categorizer and the Notion client. Only errors the
caller classifies as rate limiting are retried; everything else propagates on
the first attempt.
"""
import asyncio
import random
from typing import Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

MAX_RETRIES = 5
BASE_DELAY_SECONDS = 1.0
MAX_JITTER_SECONDS = 0.5


def is_http_429(error: BaseException) -> bool:
    """True for SDK/HTTP errors that carry a 429 status"""
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    return status == 429


def backoff_delay(attempt: int, base_delay: float, max_jitter: float) -> float:
    """Delay before retry number `attempt` (0-based)"""
    return base_delay * (2 ** attempt) + random.uniform(0, max_jitter)


async def with_rate_limit_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    context: str,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY_SECONDS,
    max_jitter: float = MAX_JITTER_SECONDS,
    is_rate_limited: Callable[[BaseException], bool] = is_http_429,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call `fn`, retrying rate-limited attempts up to `max_retries` times.

    Args:
        fn: Zero-argument coroutine factory (called once per attempt)
        context: Label for log events
        max_retries: Retries after the first attempt
        base_delay: Delay for the first retry; doubles each time
        max_jitter: Upper bound of the random delay added to each wait
        is_rate_limited: Classifier for retryable errors
        sleep: Awaitable sleep (injectable for tests)

    Returns:
        Result of the first successful attempt

    Raises:
        The rate-limit error from the last attempt once retries are exhausted,
        or any non-rate-limit error immediately.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if not is_rate_limited(e) or attempt >= max_retries:
                if attempt >= max_retries and is_rate_limited(e):
                    logger.error("rate_limit_retries_exhausted",
                                 context=context,
                                 attempts=attempt + 1)
                raise

            delay = backoff_delay(attempt, base_delay, max_jitter)
            logger.warning("rate_limited_retrying",
                           context=context,
                           attempt=attempt + 1,
                           max_retries=max_retries,
                           delay_seconds=round(delay, 3))
            await sleep(delay)
            attempt += 1
