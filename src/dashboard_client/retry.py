# src/dashboard_client/retry.py

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .error_handler import ApiError, ErrorKind

lib_logger = logging.getLogger("dashboard_client")

T = TypeVar("T")

MAX_BACKOFF_SECONDS = 60.0


async def with_retry(
    func: Callable[[], Awaitable[T]],
    retries: int = 3,
    delay: float = 1.0,
    retry_rate_limited: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call `func`, replaying it with exponential backoff on transient failures.

    Only ServerError and NetworkError are replayed by default; pass
    retry_rate_limited=True to also back off on 429 (the server's Retry-After
    is honored when larger than the computed delay). Everything else is
    raised immediately.

    Args:
        func: Zero-argument coroutine factory; called once per attempt
        retries: Extra attempts after the first one
        delay: Wait before the first retry, doubled on each subsequent one
        retry_rate_limited: Opt in to replaying RATE_LIMITED errors
        sleep: Injected for tests

    Returns:
        The first successful result

    Raises:
        ApiError: the last error once attempts are exhausted
    """
    attempt = 0
    wait = delay
    while True:
        try:
            return await func()
        except ApiError as e:
            eligible = e.retryable or (
                retry_rate_limited and e.kind is ErrorKind.RATE_LIMITED
            )
            if not eligible or attempt >= retries:
                raise

            attempt += 1
            backoff = min(wait, MAX_BACKOFF_SECONDS)
            if e.retry_after is not None:
                backoff = max(backoff, float(e.retry_after))
            lib_logger.warning(
                f"{e.kind.value} on {e.method} {e.url}, "
                f"retry {attempt}/{retries} in {backoff:.1f}s"
            )
            await sleep(backoff)
            wait *= 2
