from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, TypeVar

from sessionward.logging import get_logger
from sessionward.service.errors import AuthError, AuthResult
from sessionward.storage.errors import StorageUnavailable

logger = get_logger(__name__)

R = TypeVar("R")


async def call_store(
    fn: Callable[..., R], *args: Any, timeout: float, **kwargs: Any
) -> R:
    """Run a blocking repository call off the event loop with a deadline.

    A timeout is reported as StorageUnavailable; the security decision that
    depended on the call is never assumed either way.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        name = getattr(fn, "__name__", repr(fn))
        raise StorageUnavailable(
            f"repository call {name} timed out", {"timeout": timeout}
        ) from exc


def storage_guarded(
    operation: str,
) -> Callable[[Callable[..., Awaitable[AuthResult]]], Callable[..., Awaitable[AuthResult]]]:
    """Turn StorageUnavailable raised inside an operation into an Unavailable result."""

    def decorator(fn: Callable[..., Awaitable[AuthResult]]):
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> AuthResult:
            try:
                return await fn(*args, **kwargs)
            except StorageUnavailable as exc:
                logger.error(
                    "storage_unavailable",
                    operation=operation,
                    error=exc.message,
                    detail=exc.detail,
                )
                return AuthResult.failure(AuthError.unavailable())

        return wrapper

    return decorator
