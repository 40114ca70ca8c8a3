from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from rentease.logging import get_logger
from rentease.storage.errors import is_transient_error

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_db_operation(
    operation: Callable[[], T],
    *,
    reset: Optional[Callable[[], None]] = None,
    max_retries: int = 3,
    delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run a read against the credential store, retrying transient pool errors.

    ``operation`` is a synchronous store call; it runs in a worker thread so the
    event loop keeps serving other requests. Only errors recognised by
    ``is_transient_error`` are retried: the connection is reset, the helper
    sleeps ``delay`` seconds (doubling each time) and tries again, up to
    ``max_retries`` attempts in total. Anything else propagates on the first
    failure. Writes must not go through this helper.
    """
    wait = delay
    for attempt in range(1, max_retries + 1):
        try:
            return await asyncio.to_thread(operation)
        except Exception as exc:
            if not is_transient_error(exc) or attempt >= max_retries:
                raise
            logger.warning(
                "db_transient_error_retry",
                attempt=attempt,
                max_retries=max_retries,
                delay_seconds=wait,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if reset is not None:
                await asyncio.to_thread(reset)
            await sleep(wait)
            wait *= 2
    raise RuntimeError("retry_db_operation requires max_retries >= 1")
