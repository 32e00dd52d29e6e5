from __future__ import annotations

import asyncio
import functools
import secrets
from typing import Any, Awaitable, Callable, TypeVar

from nestauth.logging import get_logger
from nestauth.service.errors import InternalError, ServiceError
from nestauth.service.result import Err
from nestauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")

# 32 random bytes, url-safe; used for reset and verification links
ONE_TIME_TOKEN_BYTES = 32


def new_one_time_token() -> str:
    return secrets.token_urlsafe(ONE_TIME_TOKEN_BYTES)


class StoreRunner:
    """Runs blocking store calls off the event loop under a deadline.

    A timed-out call surfaces as InternalError and the worker thread is left
    to finish. Every multi-step store mutation is one atomic statement.
    """

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds

    async def __call__(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        op = getattr(fn, "__name__", "store_call")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            logger.error("store_call_timeout", op=op, timeout=self.timeout_seconds)
            raise InternalError() from exc
        except StoreUnavailable as exc:
            logger.error("store_unavailable", op=op, error=str(exc))
            raise InternalError() from exc


def returns_result(
    fn: Callable[..., Awaitable[Any]]
) -> Callable[..., Awaitable[Any]]:
    """Turn a ServiceError raised inside an async service method into ``Err``."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any):
        try:
            return await fn(*args, **kwargs)
        except ServiceError as exc:
            return Err(exc)

    return wrapper
