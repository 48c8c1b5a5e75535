"""Bounded retries for idempotent store reads and fail-closed error mapping.

Only reads go through ``read_with_retries``/``aread_with_retries``. Writes and
the refresh rotation compare-and-swap are never retried: a timed-out write may
have landed, and replaying a rotation would look like token reuse.
"""

from __future__ import annotations

import asyncio
import functools
import time
from typing import Awaitable, Callable, TypeVar

from identcore.logging import get_logger
from identcore.service.errors import ServiceUnavailableError
from identcore.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_SECONDS = 0.05


def _backoff(attempt: int) -> float:
    return DEFAULT_BACKOFF_SECONDS * (2 ** (attempt - 1))


def read_with_retries(fn: Callable[..., T], *args, retries: int = 2, **kwargs) -> T:
    attempt = 0
    while True:
        try:
            return fn(*args, **kwargs)
        except StoreUnavailable as exc:
            attempt += 1
            if attempt > retries:
                raise
            logger.warning(
                "store_read_retry",
                backend=exc.backend,
                operation=exc.operation,
                attempt=attempt,
            )
            time.sleep(_backoff(attempt))


async def aread_with_retries(
    fn: Callable[..., Awaitable[T]], *args, retries: int = 2, **kwargs
) -> T:
    attempt = 0
    while True:
        try:
            return await fn(*args, **kwargs)
        except StoreUnavailable as exc:
            attempt += 1
            if attempt > retries:
                raise
            logger.warning(
                "store_read_retry",
                backend=exc.backend,
                operation=exc.operation,
                attempt=attempt,
            )
            await asyncio.sleep(_backoff(attempt))


def fail_closed(fn):
    """Deny the operation with a 503 when a backing store is unreachable."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except StoreUnavailable as exc:
            logger.error(
                "store_unavailable_request_denied",
                operation=fn.__name__,
                backend=exc.backend,
                store_operation=exc.operation,
            )
            raise ServiceUnavailableError(
                "authentication backend unavailable",
                detail={"backend": exc.backend},
            ) from exc

    return wrapper
