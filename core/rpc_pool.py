"""
Multi-endpoint RPC pool with health-tracking failover.

Owns one AsyncWeb3 connection per configured HTTP endpoint. Every call
goes through ``execute_with_failover``: the operation runs against the
active endpoint under a per-call timeout; on error or timeout the
endpoint's consecutive-failure counter is bumped (demoting it once the
counter exceeds the failure threshold) and the cursor advances to the
next healthy endpoint in pool order, wrapping. At most one attempt per
configured endpoint is made before ``AllProvidersExhaustedError``.

The cursor is sticky: there is no reset-to-primary. A periodic health
pass reconnects dead endpoints, probes live ones, and may proactively
move the cursor off a slow endpoint to the first strictly faster
healthy one.

Usage:
    pool = RpcEndpointPool(chain_id=56)
    await pool.initialize()
    pool.start_health_checks()
    block = await pool.get_block_number()
    await pool.close()
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from web3 import AsyncWeb3, Web3
from web3.providers import AsyncHTTPProvider

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config, get_env_var
from shared.constants import (
    DEFAULT_RPC_CONNECT_TIMEOUT_SECONDS,
    DEFAULT_RPC_FAILURE_THRESHOLD,
    DEFAULT_RPC_HEALTH_CHECK_INTERVAL_SECONDS,
    DEFAULT_RPC_LATENCY_WINDOW,
    DEFAULT_RPC_MAX_RESPONSE_TIME_MS,
    DEFAULT_RPC_PROBE_FAILURE_THRESHOLD,
    DEFAULT_RPC_PROBE_TIMEOUT_SECONDS,
    DEFAULT_RPC_SLOW_THRESHOLD_MS,
)
from shared.types import EndpointSnapshot, RpcPoolStats

T = TypeVar("T")

W3Factory = Callable[[str], AsyncWeb3]


class RpcPoolConfigError(ValueError):
    """Raised when the pool is built with zero endpoint URLs."""


class RpcPoolInitError(Exception):
    """Raised when no endpoint is reachable at initialization."""


class AllProvidersExhaustedError(Exception):
    """Raised when every endpoint failed for one call."""

    def __init__(self, label: str, last_error: BaseException | None) -> None:
        message = str(last_error) if last_error is not None else "no healthy endpoints"
        super().__init__(f"All RPC providers failed ({label}): {message}")
        self.label = label
        self.last_error = last_error


class Endpoint:
    """Mutable per-endpoint health record."""

    __slots__ = (
        "index",
        "url",
        "w3",
        "healthy",
        "last_checked_at",
        "last_response_time_ms",
        "consecutive_failures",
        "chain_id",
        "_latencies",
    )

    def __init__(self, index: int, url: str, latency_window: int = DEFAULT_RPC_LATENCY_WINDOW) -> None:
        self.index = index
        self.url = url
        self.w3: AsyncWeb3 | None = None
        self.healthy = False
        self.last_checked_at: float | None = None
        self.last_response_time_ms: float | None = None
        self.consecutive_failures = 0
        self.chain_id: int | None = None
        self._latencies: deque[float] = deque(maxlen=latency_window)

    def record_latency(self, elapsed_ms: float) -> None:
        self.last_response_time_ms = elapsed_ms
        self.last_checked_at = time.time()
        self._latencies.append(elapsed_ms)

    @property
    def avg_response_time_ms(self) -> float | None:
        if not self._latencies:
            return None
        return sum(self._latencies) / len(self._latencies)

    def short_url(self) -> str:
        return self.url if len(self.url) <= 40 else f"{self.url[:37]}..."


def _default_w3_factory(url: str) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(url))


class RpcEndpointPool:
    """
    Ordered pool of RPC endpoints with a single shared active cursor.

    Cursor reads and writes are serialized with an ``asyncio.Lock``;
    the operation itself runs outside the lock so calls proceed
    concurrently.
    """

    def __init__(
        self,
        urls: list[str] | None = None,
        chain_id: int | None = None,
        w3_factory: W3Factory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = get_config()
        self._expected_chain_id = chain_id if chain_id is not None else cfg.get_chain_id()
        if urls is None:
            urls = cfg.get_rpc_urls(self._expected_chain_id)
        urls = [u for u in urls if u]
        if not urls:
            raise RpcPoolConfigError("RPC endpoint pool needs at least one URL")

        rpc_cfg = cfg.get_timing_config().get("rpc", {})

        # RPC_* env vars are milliseconds
        self._health_check_interval: float = get_env_var(
            "RPC_HEALTH_CHECK_INTERVAL",
            rpc_cfg.get("health_check_interval_seconds", DEFAULT_RPC_HEALTH_CHECK_INTERVAL_SECONDS) * 1000,
            float,
        ) / 1000
        self._max_response_time: float = get_env_var(
            "RPC_MAX_RESPONSE_TIME",
            rpc_cfg.get("max_response_time_ms", DEFAULT_RPC_MAX_RESPONSE_TIME_MS),
            float,
        ) / 1000
        self._connect_timeout: float = rpc_cfg.get(
            "connect_timeout_seconds", DEFAULT_RPC_CONNECT_TIMEOUT_SECONDS
        )
        self._probe_timeout: float = rpc_cfg.get(
            "probe_timeout_seconds", DEFAULT_RPC_PROBE_TIMEOUT_SECONDS
        )
        self._slow_threshold_ms: float = rpc_cfg.get("slow_threshold_ms", DEFAULT_RPC_SLOW_THRESHOLD_MS)
        self._failure_threshold: int = rpc_cfg.get("failure_threshold", DEFAULT_RPC_FAILURE_THRESHOLD)
        self._probe_failure_threshold: int = rpc_cfg.get(
            "probe_failure_threshold", DEFAULT_RPC_PROBE_FAILURE_THRESHOLD
        )
        latency_window: int = rpc_cfg.get("latency_window", DEFAULT_RPC_LATENCY_WINDOW)

        self._endpoints: list[Endpoint] = [
            Endpoint(i, url, latency_window) for i, url in enumerate(urls)
        ]
        self._w3_factory: W3Factory = w3_factory or _default_w3_factory
        self._clock = clock

        # Mutable state
        self._cursor: int = 0
        self._lock = asyncio.Lock()
        self._initialized: bool = False
        self._running: bool = False
        self._health_task: asyncio.Task[None] | None = None

        # Statistics
        self._requests: int = 0
        self._failures: int = 0
        self._failovers: int = 0
        self._proactive_switches: int = 0

        self._logger = setup_module_logger("rpc_pool", "rpc_pool.log", module_folder="RPC_Pool_Logs")

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Connect to every endpoint and test-ping it.

        Raises ``RpcPoolInitError`` only if every endpoint fails.
        """
        self._logger.info("Initializing RPC pool with %d endpoint(s)", len(self._endpoints))
        await asyncio.gather(*(self._connect(ep) for ep in self._endpoints))

        healthy = [ep for ep in self._endpoints if ep.healthy]
        if not healthy:
            raise RpcPoolInitError(
                f"No RPC endpoint reachable out of {len(self._endpoints)} configured"
            )

        async with self._lock:
            self._cursor = healthy[0].index
        self._initialized = True

        chain_ids = {ep.chain_id for ep in healthy}
        if self._expected_chain_id not in chain_ids:
            self._logger.warning(
                "Connected chain id(s) %s do not match configured chain %d",
                sorted(c for c in chain_ids if c is not None),
                self._expected_chain_id,
            )
        self._logger.info(
            "RPC pool ready: %d/%d healthy, active=%s",
            len(healthy),
            len(self._endpoints),
            self._endpoints[self._cursor].short_url(),
        )

    async def _connect(self, endpoint: Endpoint) -> None:
        try:
            w3 = self._w3_factory(endpoint.url)
            start = self._clock()
            chain_id = await asyncio.wait_for(w3.eth.chain_id, timeout=self._connect_timeout)
            endpoint.record_latency((self._clock() - start) * 1000)
            endpoint.w3 = w3
            endpoint.chain_id = int(chain_id)
            endpoint.healthy = True
            endpoint.consecutive_failures = 0
            self._logger.info(
                "Endpoint %d connected: %s (chain %s, %.0fms)",
                endpoint.index,
                endpoint.short_url(),
                chain_id,
                endpoint.last_response_time_ms,
            )
        except Exception as exc:
            endpoint.w3 = None
            endpoint.healthy = False
            endpoint.last_checked_at = time.time()
            self._logger.warning(
                "Endpoint %d failed to connect: %s (%s)",
                endpoint.index,
                endpoint.short_url(),
                exc or type(exc).__name__,
            )

    # ------------------------------------------------------------------
    # Failover execution
    # ------------------------------------------------------------------

    async def execute_with_failover(
        self,
        operation: Callable[[AsyncWeb3], Awaitable[T]],
        label: str = "rpc_call",
    ) -> T:
        """
        Run ``operation(w3)`` against the active endpoint, failing over on
        error or timeout. At most one attempt per configured endpoint.
        """
        self._requests += 1
        last_error: BaseException | None = None

        for _ in range(len(self._endpoints)):
            async with self._lock:
                endpoint = self._endpoints[self._cursor]

            if not endpoint.healthy or endpoint.w3 is None:
                if not await self._failover(endpoint.index):
                    break
                continue

            start = self._clock()
            try:
                result = await asyncio.wait_for(operation(endpoint.w3), timeout=self._max_response_time)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc if str(exc) else TimeoutError(
                    f"{type(exc).__name__} after {self._max_response_time * 1000:.0f}ms"
                )
                self._record_failure(endpoint, label, last_error)
                await self._failover(endpoint.index)
                continue

            endpoint.record_latency((self._clock() - start) * 1000)
            endpoint.consecutive_failures = 0
            return result

        self._logger.error("%s: all endpoints exhausted, last error: %s", label, last_error)
        raise AllProvidersExhaustedError(label, last_error)

    def _record_failure(self, endpoint: Endpoint, label: str, error: BaseException) -> None:
        self._failures += 1
        endpoint.consecutive_failures += 1
        endpoint.last_checked_at = time.time()
        self._logger.warning(
            "%s failed on endpoint %d (%s), failure %d: %s",
            label,
            endpoint.index,
            endpoint.short_url(),
            endpoint.consecutive_failures,
            error,
        )
        if endpoint.healthy and endpoint.consecutive_failures > self._failure_threshold:
            endpoint.healthy = False
            self._logger.error(
                "Endpoint %d marked unhealthy after %d consecutive failures",
                endpoint.index,
                endpoint.consecutive_failures,
            )

    async def _failover(self, from_index: int) -> bool:
        """
        Advance the cursor from ``from_index`` to the next healthy endpoint.

        Returns True when a healthy endpoint is now current. If another
        call already moved the cursor, its choice is kept.
        """
        async with self._lock:
            if self._cursor != from_index:
                return self._endpoints[self._cursor].healthy
            n = len(self._endpoints)
            for step in range(1, n):
                candidate = self._endpoints[(from_index + step) % n]
                if candidate.healthy and candidate.w3 is not None:
                    self._cursor = candidate.index
                    self._failovers += 1
                    self._logger.warning(
                        "Failover: endpoint %d -> %d (%s)",
                        from_index,
                        candidate.index,
                        candidate.short_url(),
                    )
                    return True
            current_ok = self._endpoints[from_index].healthy
        if not current_ok:
            self._logger.error("No healthy RPC endpoints available")
        return current_ok

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    def start_health_checks(self) -> asyncio.Task[None]:
        """Launch the periodic health-check loop as a task."""
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self.run(), name="rpc_health_check")
        return self._health_task

    async def run(self) -> None:
        """Health-check loop, designed to be launched as an asyncio.Task."""
        self._running = True
        self._logger.info("RPC health checks every %.0fs", self._health_check_interval)
        try:
            while self._running:
                await asyncio.sleep(self._health_check_interval)
                try:
                    await self.check_health()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._logger.error("Health check pass failed: %s", exc)
        except asyncio.CancelledError:
            self._logger.info("RPC health checks cancelled")
        finally:
            self._running = False

    async def check_health(self) -> None:
        """One health pass: probe every endpoint, then consider a slow switch."""
        await asyncio.gather(*(self._probe(ep) for ep in self._endpoints))
        await self._rebalance()

    async def _probe(self, endpoint: Endpoint) -> None:
        was_healthy = endpoint.healthy
        try:
            if endpoint.w3 is None:
                endpoint.w3 = self._w3_factory(endpoint.url)
            start = self._clock()
            await asyncio.wait_for(endpoint.w3.eth.block_number, timeout=self._probe_timeout)
            endpoint.record_latency((self._clock() - start) * 1000)
            endpoint.consecutive_failures = 0
            if not was_healthy:
                endpoint.healthy = True
                self._logger.info(
                    "Endpoint %d recovered: %s (%.0fms)",
                    endpoint.index,
                    endpoint.short_url(),
                    endpoint.last_response_time_ms,
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            endpoint.last_checked_at = time.time()
            endpoint.consecutive_failures += 1
            if was_healthy and endpoint.consecutive_failures > self._probe_failure_threshold:
                endpoint.healthy = False
                self._logger.error(
                    "Endpoint %d failed health probe %d times, marked unhealthy: %s",
                    endpoint.index,
                    endpoint.consecutive_failures,
                    exc or type(exc).__name__,
                )
            else:
                self._logger.debug("Endpoint %d probe failed: %s", endpoint.index, exc)

    async def _rebalance(self) -> None:
        async with self._lock:
            current = self._endpoints[self._cursor]

            if not current.healthy:
                for candidate in self._endpoints:
                    if candidate.healthy and candidate.w3 is not None:
                        self._cursor = candidate.index
                        self._failovers += 1
                        self._logger.warning(
                            "Health check: active endpoint %d unhealthy, switched to %d",
                            current.index,
                            candidate.index,
                        )
                        return
                return

            current_avg = current.avg_response_time_ms
            if current_avg is None or current_avg <= self._slow_threshold_ms:
                return
            for candidate in self._endpoints:
                if candidate is current or not candidate.healthy or candidate.w3 is None:
                    continue
                candidate_avg = candidate.avg_response_time_ms
                if candidate_avg is not None and candidate_avg < current_avg:
                    self._cursor = candidate.index
                    self._proactive_switches += 1
                    self._logger.info(
                        "Switching from slow endpoint %d (%.0fms) to %d (%.0fms)",
                        current.index,
                        current_avg,
                        candidate.index,
                        candidate_avg,
                    )
                    return

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        async def _op(w3: AsyncWeb3) -> int:
            return await w3.eth.block_number

        return int(await self.execute_with_failover(_op, "get_block_number"))

    async def get_block(self, block_identifier: int | str = "latest") -> Any:
        return await self.execute_with_failover(
            lambda w3: w3.eth.get_block(block_identifier), f"get_block({block_identifier})"
        )

    async def get_logs(self, filter_params: dict[str, Any]) -> list[Any]:
        return await self.execute_with_failover(
            lambda w3: w3.eth.get_logs(filter_params), "get_logs"
        )

    async def call_function(self, address: str, abi: list, fn_name: str, *args: Any) -> Any:
        """Read-only contract call with failover."""
        checksum = Web3.to_checksum_address(address)

        def _op(w3: AsyncWeb3) -> Awaitable[Any]:
            contract = w3.eth.contract(address=checksum, abi=abi)
            return getattr(contract.functions, fn_name)(*args).call()

        return await self.execute_with_failover(_op, f"{fn_name}@{address[:10]}")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def current_index(self) -> int:
        return self._cursor

    @property
    def current_url(self) -> str:
        return self._endpoints[self._cursor].url

    @property
    def endpoints(self) -> list[Endpoint]:
        return list(self._endpoints)

    @property
    def failover_count(self) -> int:
        return self._failovers

    def is_healthy(self) -> bool:
        return any(ep.healthy for ep in self._endpoints)

    def get_stats(self) -> RpcPoolStats:
        return RpcPoolStats(
            requests=self._requests,
            failures=self._failures,
            failovers=self._failovers,
            proactive_switches=self._proactive_switches,
            endpoints=[
                EndpointSnapshot(
                    index=ep.index,
                    url=ep.url,
                    healthy=ep.healthy,
                    is_current=ep.index == self._cursor,
                    last_checked_at=ep.last_checked_at,
                    last_response_time_ms=ep.last_response_time_ms,
                    avg_response_time_ms=ep.avg_response_time_ms,
                    consecutive_failures=ep.consecutive_failures,
                )
                for ep in self._endpoints
            ],
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Signal the health-check loop to stop."""
        self._running = False

    async def close(self) -> None:
        """Stop health checks and disconnect every endpoint."""
        self.stop()
        if self._health_task is not None and not self._health_task.done():
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
        for endpoint in self._endpoints:
            provider = getattr(endpoint.w3, "provider", None)
            disconnect = getattr(provider, "disconnect", None)
            if disconnect is None:
                continue
            try:
                await disconnect()
            except Exception as exc:
                self._logger.debug("Endpoint %d disconnect failed: %s", endpoint.index, exc)
        self._logger.info(
            "RPC pool closed: requests=%d failures=%d failovers=%d",
            self._requests,
            self._failures,
            self._failovers,
        )
