# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Error handling utilities for the router.

This module provides:
- Fallback execution for optional ranking inputs
- A fail-open decorator for outcome reporting
- A best-effort sink for writes nobody waits on
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from . import metrics
from .errors import InternalError, RouterError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


async def handle_async_with_fallback(
    operation: Callable[[], Awaitable[T]],
    fallback_value: T,
    log_level: int = logging.WARNING,
    context: str = "",
    on_error: Callable[[Exception], None] | None = None,
) -> T:
    """Execute async operation with fallback on failure."""
    try:
        return await operation()
    except Exception as e:
        message = f"{context}: {e}" if context else str(e)
        _logger.log(log_level, message)
        if on_error is not None:
            on_error(e)
        return fallback_value


def fail_open(context: str, on_error: Callable[[Exception], None] | None = None):
    """Decorator: log and swallow any failure of the wrapped coroutine, returning False.

    The wrapped coroutine returns True on success.
    """

    def decorator(func: Callable[..., Awaitable[Any]]):
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> bool:
            try:
                await func(*args, **kwargs)
                return True
            except Exception as e:
                _logger.error(f"{context} failed: {e}")
                if on_error is not None:
                    on_error(e)
                return False

        return wrapper

    return decorator


@asynccontextmanager
async def async_error_context(context: str = "", log_level: int = logging.ERROR) -> AsyncIterator[None]:
    """Wrap unexpected exceptions in InternalError; router errors pass through."""
    try:
        yield
    except RouterError:
        raise
    except Exception as e:
        message = f"{context}: {e}" if context else str(e)
        _logger.log(log_level, message)
        raise InternalError(message) from e


class BestEffortSink:
    """Runs fire-and-forget writes as tracked tasks.

    Failures are logged and counted, never raised to the caller. ``drain``
    awaits everything still in flight, for shutdown and tests.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def submit(self, name: str, operation: Callable[[], Awaitable[Any]]) -> asyncio.Task[None]:
        task = asyncio.create_task(self._run(name, operation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, operation: Callable[[], Awaitable[Any]]) -> None:
        try:
            await operation()
        except Exception as e:
            _logger.warning(f"Best-effort write '{name}' failed: {e}")
            metrics.record_sink_failure(name)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
