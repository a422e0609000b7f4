from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import InvalidResponseError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    delay_seconds: float,
    *,
    is_valid: Callable[[T], bool] | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` sequentially until it succeeds or ``max_attempts`` is spent.

    Sleeps ``delay_seconds`` between attempts, never after the last one. A
    result rejected by ``is_valid`` consumes an attempt like an exception
    does. When every attempt fails the most recent error is raised.
    """
    if max_attempts <= 0:
        raise ValueError("max_attempts must be > 0")

    last_error: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            logger.warning("%s failed on attempt %d/%d: %s", label, attempt, max_attempts, exc)
        else:
            if is_valid is None or is_valid(result):
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d/%d", label, attempt, max_attempts)
                return result
            last_error = InvalidResponseError(f"{label} returned an unusable result", payload=result)
            logger.warning("%s returned an unusable result on attempt %d/%d", label, attempt, max_attempts)

        if attempt < max_attempts:
            await sleep(delay_seconds)

    logger.error("%s failed after %d attempts, last error: %s", label, max_attempts, last_error)
    assert last_error is not None
    raise last_error


__all__ = ["with_retry"]
