"""
Exponential-backoff retry executor for DEX Pair Monitor.

Wraps any fallible awaitable factory. Delay before retry k (0-based) is
``min(initial_delay * factor**k, max_delay)``; after ``max_retries + 1``
attempts the last error is re-raised unchanged.

Usage:
    retry = BackoffRetry(max_retries=3, initial_delay=0.5)
    result = await retry.execute(lambda: client.fetch(x), "fetch x")

    result = await with_backoff(lambda: client.fetch(x), "fetch x")
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config, get_env_var
from shared.constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BACKOFF_INITIAL_DELAY_SECONDS,
    DEFAULT_BACKOFF_MAX_DELAY_SECONDS,
    DEFAULT_BACKOFF_MAX_RETRIES,
)

T = TypeVar("T")

_logger = setup_module_logger("retry", "retry.log", module_folder="Main_Logs")


class BackoffRetry:
    """Bounded exponential-backoff executor."""

    def __init__(
        self,
        max_retries: int | None = None,
        initial_delay: float | None = None,
        max_delay: float | None = None,
        factor: float | None = None,
    ) -> None:
        backoff_cfg = get_config().get_timing_config().get("backoff", {})

        # BACKOFF_* env vars are milliseconds
        if max_retries is None:
            max_retries = get_env_var(
                "BACKOFF_MAX_RETRIES",
                backoff_cfg.get("max_retries", DEFAULT_BACKOFF_MAX_RETRIES),
                int,
            )
        if initial_delay is None:
            initial_delay = get_env_var(
                "BACKOFF_INITIAL_DELAY",
                backoff_cfg.get("initial_delay_seconds", DEFAULT_BACKOFF_INITIAL_DELAY_SECONDS) * 1000,
                float,
            ) / 1000
        if max_delay is None:
            max_delay = get_env_var(
                "BACKOFF_MAX_DELAY",
                backoff_cfg.get("max_delay_seconds", DEFAULT_BACKOFF_MAX_DELAY_SECONDS) * 1000,
                float,
            ) / 1000
        if factor is None:
            factor = backoff_cfg.get("factor", DEFAULT_BACKOFF_FACTOR)

        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self.max_retries: int = max_retries
        self.initial_delay: float = initial_delay
        self.max_delay: float = max_delay
        self.factor: float = factor

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt`` (0-based)."""
        return min(self.initial_delay * (self.factor**attempt), self.max_delay)

    async def execute(self, fn: Callable[[], Awaitable[T]], label: str = "operation") -> T:
        """
        Run ``fn`` until it succeeds or retries are exhausted.

        ``fn`` must return a fresh awaitable on every call. Cancellation is
        never retried.
        """
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                if attempt >= self.max_retries:
                    break
                delay = self.delay_for(attempt)
                _logger.warning(
                    "%s failed (attempt %d/%d): %s. Retrying in %.2fs",
                    label,
                    attempt + 1,
                    self.max_retries + 1,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)

        _logger.error("%s failed after %d attempts: %s", label, self.max_retries + 1, last_error)
        assert last_error is not None
        raise last_error


async def with_backoff(
    fn: Callable[[], Awaitable[T]],
    label: str = "operation",
    **options: float,
) -> T:
    """One-shot convenience wrapper around ``BackoffRetry.execute``."""
    return await BackoffRetry(**options).execute(fn, label)  # type: ignore[arg-type]
