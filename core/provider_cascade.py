"""
Ordered provider cascade with per-provider rate gates.

One helper drives every "try provider A, then B, then C" lookup in the
bot (price cascade, volume cascade). Providers are tried in list order;
the first one returning a non-None value wins. Each provider sits behind
a "time since last call" gate with one of two policies:

    SKIP -- a call attempted before the interval elapses fails immediately
            with ``RateLimitedError`` and the next provider is tried.
    WAIT -- the caller sleeps until the provider is eligible again.

Usage:
    cascade = ProviderCascade(
        [CascadeProvider("coingecko", fetch_cg, 10.0), CascadeProvider("binance", fetch_bn, 1.0)],
        policy=RateGatePolicy.SKIP,
        label="price",
    )
    provider_name, value = await cascade.fetch(token)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from shared.types import RateGatePolicy

T = TypeVar("T")


class RateLimitedError(Exception):
    """Provider called before its minimum interval elapsed (SKIP policy)."""

    def __init__(self, provider: str, retry_in: float) -> None:
        super().__init__(f"{provider} rate limited, eligible in {retry_in:.2f}s")
        self.provider = provider
        self.retry_in = retry_in


class CascadeExhaustedError(Exception):
    """Every provider in the cascade failed or was rate limited."""

    def __init__(self, label: str, errors: dict[str, str]) -> None:
        detail = "; ".join(f"{name}: {err}" for name, err in errors.items())
        super().__init__(f"All {label} providers failed ({detail})")
        self.label = label
        self.errors = errors


@dataclass(frozen=True)
class CascadeProvider(Generic[T]):
    name: str
    fetch: Callable[..., Awaitable[T | None]]
    min_interval: float = 0.0


class RateGate:
    """Per-provider minimum inter-call interval (not a token bucket)."""

    def __init__(
        self,
        intervals: dict[str, float],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._intervals = dict(intervals)
        self._last_call: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in intervals}
        self._clock = clock
        self._sleep = sleep

    def remaining(self, name: str) -> float:
        """Seconds until ``name`` may be called again (0 when eligible)."""
        last = self._last_call.get(name)
        if last is None:
            return 0.0
        return max(0.0, self._intervals.get(name, 0.0) - (self._clock() - last))

    def try_acquire(self, name: str) -> None:
        """SKIP policy: record the call or raise ``RateLimitedError``."""
        wait = self.remaining(name)
        if wait > 0:
            raise RateLimitedError(name, wait)
        self._last_call[name] = self._clock()

    async def acquire(self, name: str) -> None:
        """WAIT policy: sleep until eligible, then record the call."""
        async with self._locks[name]:
            wait = self.remaining(name)
            if wait > 0:
                await self._sleep(wait)
            self._last_call[name] = self._clock()


class ProviderCascade(Generic[T]):
    """First-success-wins lookup across an ordered provider list."""

    def __init__(
        self,
        providers: list[CascadeProvider[T]],
        policy: RateGatePolicy,
        label: str,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not providers:
            raise ValueError(f"{label} cascade needs at least one provider")
        self._providers = list(providers)
        self._policy = policy
        self._label = label
        self._logger = logger or logging.getLogger(f"cascade.{label}")
        self._gate = RateGate({p.name: p.min_interval for p in providers}, clock=clock, sleep=sleep)

        # Per-provider counters
        self._successes: dict[str, int] = {p.name: 0 for p in providers}
        self._failures: dict[str, int] = {p.name: 0 for p in providers}
        self._rate_limited: dict[str, int] = {p.name: 0 for p in providers}

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self._providers]

    async def fetch(self, *args: Any, **kwargs: Any) -> tuple[str, T]:
        """
        Try providers in order; return ``(provider_name, value)`` from the
        first that yields a non-None value.

        Raises ``CascadeExhaustedError`` when none does.
        """
        errors: dict[str, str] = {}
        for provider in self._providers:
            try:
                if self._policy is RateGatePolicy.SKIP:
                    self._gate.try_acquire(provider.name)
                else:
                    await self._gate.acquire(provider.name)
            except RateLimitedError as exc:
                self._rate_limited[provider.name] += 1
                errors[provider.name] = str(exc)
                self._logger.debug("%s: %s", self._label, exc)
                continue

            try:
                value = await provider.fetch(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._failures[provider.name] += 1
                errors[provider.name] = str(exc) or type(exc).__name__
                self._logger.warning("%s provider %s failed: %s", self._label, provider.name, exc)
                continue

            if value is None:
                self._failures[provider.name] += 1
                errors[provider.name] = "no usable result"
                self._logger.debug("%s provider %s returned no data", self._label, provider.name)
                continue

            self._successes[provider.name] += 1
            return provider.name, value

        raise CascadeExhaustedError(self._label, errors)

    def get_stats(self) -> dict[str, dict[str, int]]:
        return {
            name: {
                "successes": self._successes[name],
                "failures": self._failures[name],
                "rate_limited": self._rate_limited[name],
            }
            for name in self.provider_names
        }
