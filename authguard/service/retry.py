from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from authguard.logging import get_logger
from authguard.storage.errors import is_retryable

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


async def retry_store_write(
    operation: Callable[[], T],
    *,
    max_attempts: int,
    backoff_seconds: float,
    sleep: Optional[Sleep] = None,
    op_name: str = "store_write",
    **log_context: Any,
) -> T:
    """Run a synchronous store write, retrying transient failures.

    Waits ``backoff_seconds * 2 ** (attempt - 1)`` between attempts. Errors
    that ``is_retryable`` rejects, and the last transient error once attempts
    run out, propagate unchanged.
    """
    sleep = sleep or asyncio.sleep
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt >= max_attempts:
                logger.error(
                    f"{op_name}_retries_exhausted",
                    attempts=attempt,
                    error=str(exc),
                    **log_context,
                )
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                f"{op_name}_retry",
                attempt=attempt,
                delay_seconds=delay,
                error=str(exc),
                **log_context,
            )
            await sleep(delay)
            attempt += 1
