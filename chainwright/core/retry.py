"""Retry helpers for transient deployment and import failures."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from chainwright.core.errors import AttemptTimeoutError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_timeout(awaitable: Awaitable[T], time_limit: float | None = None) -> T:
    """Await ``awaitable``, aborting it once ``time_limit`` seconds elapse."""
    if time_limit is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=time_limit)
    except asyncio.TimeoutError as exc:
        raise AttemptTimeoutError(
            f"Attempt exceeded time limit of {time_limit}s",
            details={"time_limit": time_limit},
        ) from exc


async def retry(
    fn: Callable[[], Awaitable[T]],
    retries: int = 5,
    time_limit: float | None = None,
    wait: float = 0.25,
    on_retry: Callable[[], Awaitable[Any]] | None = None,
    label: str = "operation",
) -> T:
    """Call ``fn`` until it succeeds, retrying up to ``retries`` more times.

    The delay between attempts starts at ``wait`` seconds and doubles after
    every failure. A timed-out attempt counts as a failed attempt. Structural
    errors are never retried. Once the budget is spent the last underlying
    error is re-raised unchanged.

    Args:
        fn: Zero-arg factory returning a fresh awaitable per attempt.
        retries: How many retries follow the first attempt.
        time_limit: Per-attempt time limit in seconds.
        wait: Base delay in seconds.
        on_retry: Awaited after each failure, before sleeping.
        label: Name used in log messages.
    """
    delay = wait
    remaining = retries
    attempt = 0
    while True:
        attempt += 1
        try:
            return await call_with_timeout(fn(), time_limit)
        except Exception as exc:
            if remaining <= 0 or not is_retryable(exc):
                raise
            logger.warning(
                "Retrying %s with retries left: %d, wait: %.3fs, error is: %r",
                label, remaining, delay, exc,
                extra={"attempt": attempt},
            )
            if on_retry is not None:
                await on_retry()
            await asyncio.sleep(delay)
            remaining -= 1
            delay *= 2


async def retry_fixed(
    fn: Callable[[], Awaitable[T]],
    retries: int,
    delay: float,
    label: str = "operation",
) -> T:
    """Like :func:`retry` but with a fixed delay between attempts."""
    remaining = retries
    while True:
        try:
            return await fn()
        except Exception as exc:
            if remaining <= 0 or not is_retryable(exc):
                raise
            logger.warning(
                "%s failed (%r), %d retries left, waiting %.1fs",
                label, exc, remaining, delay,
            )
            await asyncio.sleep(delay)
            remaining -= 1
