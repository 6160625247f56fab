"""
Pair event detector: the top-level orchestrator.

Three feeds converge on one dedup -> classify -> notify pipeline:

    push      eth_subscribe PairCreated stream (when the endpoint allows it)
    poll      eth_getLogs over the block range since the watermark, every
              ``EVENT_POLL_INTERVAL`` (always on, also alongside push)
    backfill  factory allPairsLength / allPairs(i) sweep, every ``POLL_INTERVAL``

Detection mode is a two-state machine, PUSH -> POLL, one-way: a
rejected subscription at startup, or a push stream that exhausts its
reconnects, moves the detector to POLL for the rest of the process.

Dedup is a lowercase address set with an atomic test-and-set under a
lock, so the same pair arriving through several feeds at once is
classified and notified exactly once. Per-pair errors are counted,
logged and reported to the notifier; they never stop the detector.

Usage:
    detector = PairEventDetector(rpc_pool, classifier, notifier, token_info, security_checks)
    await detector.start()
    ...
    await detector.stop()
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from web3 import Web3

from bot_logging.logger_manager import (
    log_data_entry,
    log_data_output,
    log_data_processing,
    setup_module_logger,
)
from config.loader import get_config, get_env_var
from core.retry import with_backoff
from data.pair_event_stream import (
    PAIR_CREATED_TOPIC,
    PairEventStream,
    SubscriptionRejectedError,
    decode_pair_created,
)
from shared.constants import (
    DEFAULT_BACKFILL_INTERVAL_SECONDS,
    DEFAULT_EVENT_POLL_INTERVAL_SECONDS,
    DEFAULT_MAX_BLOCK_RANGE,
    DEFAULT_STATS_INTERVAL_SECONDS,
)
from shared.serialization_utils import to_json
from shared.types import (
    CandidateSource,
    DetectionMode,
    DetectorStats,
    LiquidityTier,
    PairAlert,
    PairCandidate,
    PairClassification,
    SecurityReport,
)

if TYPE_CHECKING:
    from alerts.telegram_notifier import TelegramNotifier
    from checks.security_checks import SecurityChecks
    from checks.token_info import TokenInfoService
    from core.liquidity_classifier import LiquidityClassifier
    from core.rpc_pool import RpcEndpointPool

StreamFactory = Callable[..., PairEventStream]

_MODULE = "pair_detector"


class PairEventDetector:
    """Push/poll/backfill pair discovery feeding one dedup'd pipeline."""

    def __init__(
        self,
        rpc_pool: RpcEndpointPool,
        classifier: LiquidityClassifier,
        notifier: TelegramNotifier,
        token_info: TokenInfoService,
        security_checks: SecurityChecks | None = None,
        factory_address: str | None = None,
        ws_url: str | None = None,
        chain_id: int | None = None,
        stream_factory: StreamFactory = PairEventStream,
    ) -> None:
        self._rpc_pool = rpc_pool
        self._classifier = classifier
        self._notifier = notifier
        self._token_info = token_info
        self._security = security_checks
        self._stream_factory = stream_factory

        cfg = get_config()
        chain_id = chain_id if chain_id is not None else cfg.get_chain_id()
        detector_cfg = cfg.get_timing_config().get("detector", {})
        features = cfg.get_app_config().get("features", {})

        factory = factory_address or cfg.get_factory_address(chain_id)
        self._factory_address: str = Web3.to_checksum_address(factory)
        self._factory_abi = cfg.get_abi("uniswap_v2_factory")
        self._ws_url: str = ws_url if ws_url is not None else cfg.get_ws_url(chain_id)

        # Interval env vars are milliseconds
        self._poll_interval: float = get_env_var(
            "EVENT_POLL_INTERVAL",
            detector_cfg.get("event_poll_interval_seconds", DEFAULT_EVENT_POLL_INTERVAL_SECONDS) * 1000,
            float,
        ) / 1000
        self._backfill_interval: float = get_env_var(
            "POLL_INTERVAL",
            detector_cfg.get("backfill_interval_seconds", DEFAULT_BACKFILL_INTERVAL_SECONDS) * 1000,
            float,
        ) / 1000
        self._stats_interval: float = get_env_var(
            "STATS_INTERVAL",
            detector_cfg.get("stats_interval_seconds", DEFAULT_STATS_INTERVAL_SECONDS) * 1000,
            float,
        ) / 1000
        self._max_block_range: int = detector_cfg.get("max_block_range", DEFAULT_MAX_BLOCK_RANGE)
        self._send_stats: bool = get_env_var("SEND_STATS", features.get("send_stats", True), bool)
        self._shutdown_grace: float = detector_cfg.get("shutdown_grace_seconds", 10)

        # Detection state
        self._mode: DetectionMode = DetectionMode.POLL
        self._stream: PairEventStream | None = None
        self._last_block: int | None = None
        self._last_pair_count: int | None = None

        # Dedup state
        self._processed: set[str] = set()
        self._dedup_lock = asyncio.Lock()

        self._stats = DetectorStats()
        self._started_at: float | None = None
        self._running: bool = False
        self._tasks: list[asyncio.Task[Any]] = []
        self._inflight: set[asyncio.Task[Any]] = set()

        self._logger = setup_module_logger(
            "pair_detector", "pair_detector.log", module_folder="Pair_Detector_Logs"
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def mode(self) -> DetectionMode:
        return self._mode

    @property
    def last_block(self) -> int | None:
        return self._last_block

    @property
    def last_pair_count(self) -> int | None:
        return self._last_pair_count

    def is_processed(self, pair_address: str) -> bool:
        return pair_address.lower() in self._processed

    def get_stats(self) -> DetectorStats:
        """Snapshot of the counters, with the pool's failover count refreshed."""
        self._stats.rpc_failovers = self._rpc_pool.failover_count
        return dataclasses.replace(self._stats)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Seed watermarks, choose the detection mode and launch the loops."""
        self._running = True
        self._started_at = time.monotonic()

        self._last_block = await with_backoff(self._rpc_pool.get_block_number, "initial block number")
        self._last_pair_count = await with_backoff(self._fetch_pair_count, "initial pair count")
        self._logger.info(
            "Watching factory %s from block %d (%d pairs so far)",
            self._factory_address,
            self._last_block,
            self._last_pair_count,
        )

        await self._start_push()

        self._spawn(self._poll_loop(), "pair_poll")
        self._spawn(self._backfill_loop(), "pair_backfill")
        if self._send_stats:
            self._spawn(self._stats_loop(), "pair_stats")
        self._logger.info("Detector running in %s mode", self._mode.value.upper())

    async def _start_push(self) -> None:
        if not self._ws_url:
            self._logger.info("No websocket endpoint configured, using POLL mode")
            self._mode = DetectionMode.POLL
            return

        stream = self._stream_factory(self._ws_url, self._factory_address, self.submit)
        try:
            await stream.subscribe()
        except SubscriptionRejectedError as exc:
            self._logger.warning("Push subscription unavailable (%s), falling back to POLL mode", exc)
            self._mode = DetectionMode.POLL
            return

        self._stream = stream
        self._mode = DetectionMode.PUSH
        task = self._spawn(stream.run(), "pair_push_stream")
        task.add_done_callback(self._on_stream_done)

    def _on_stream_done(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled() or not self._running:
            return
        exc = task.exception()
        reason = f"push stream lost: {exc}" if exc is not None else "push stream ended"
        self._enter_poll_mode(reason)

    def _enter_poll_mode(self, reason: str) -> None:
        if self._mode is DetectionMode.POLL:
            return
        self._mode = DetectionMode.POLL
        self._logger.warning("Switching to POLL mode for the rest of this run: %s", reason)

    def _spawn(self, coro: Any, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.append(task)
        return task

    async def stop(self) -> None:
        """
        Halt the timers, cancel the push subscription, let in-flight pairs
        finish, then flush pending aggregated notifications.
        """
        self._running = False
        for task in self._tasks:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, result in zip(self._tasks, results):
            if isinstance(result, Exception):
                self._logger.debug("Task %s ended with %s", task.get_name(), result)
        self._tasks.clear()

        if self._stream is not None:
            await self._stream.close()
            self._stream = None

        await self.wait_idle(timeout=self._shutdown_grace)
        for task in list(self._inflight):
            task.cancel()

        stats = self.get_stats()
        try:
            await self._notifier.send_shutdown(stats, self._rpc_pool.get_stats(), self._uptime())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning("Shutdown report failed: %s", exc)
        await self._notifier.flush()

        self._logger.info("Detector stopped. Final stats: %s", to_json(stats))

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait for in-flight pair handling tasks to finish."""
        if self._inflight:
            await asyncio.wait(set(self._inflight), timeout=timeout)

    def _uptime(self) -> float | None:
        return time.monotonic() - self._started_at if self._started_at is not None else None

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------

    async def submit(self, candidate: PairCandidate) -> None:
        """Queue a candidate for handling without blocking the feed."""
        if not self._running:
            return
        task = asyncio.create_task(self.handle_candidate(candidate), name=f"pair_{candidate.pair_address[:10]}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error("Poll tick failed: %s", exc)

    async def poll_once(self) -> int:
        """
        Query PairCreated logs since the watermark in ``max_block_range``
        chunks. The watermark only advances past successfully queried
        chunks. Returns the number of candidates found.
        """
        try:
            latest = await self._rpc_pool.get_block_number()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning("Poll: block number unavailable: %s", exc)
            return 0

        if self._last_block is None:
            self._last_block = latest
            return 0

        found = 0
        from_block = self._last_block + 1
        while from_block <= latest:
            to_block = min(from_block + self._max_block_range - 1, latest)
            try:
                logs = await self._rpc_pool.get_logs(
                    {
                        "address": self._factory_address,
                        "topics": [PAIR_CREATED_TOPIC],
                        "fromBlock": from_block,
                        "toBlock": to_block,
                    }
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.warning(
                    "Poll: getLogs %d-%d failed, watermark stays at %d: %s",
                    from_block,
                    to_block,
                    self._last_block,
                    exc,
                )
                break

            for log in logs:
                candidate = decode_pair_created(log, CandidateSource.POLL)
                if candidate is not None:
                    found += 1
                    await self.submit(candidate)
            self._last_block = to_block
            from_block = to_block + 1

        if found:
            self._logger.info("Poll: %d PairCreated event(s) up to block %d", found, self._last_block)
        return found

    async def _backfill_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._backfill_interval)
            try:
                await self.backfill_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error("Backfill tick failed: %s", exc)

    async def _fetch_pair_count(self) -> int:
        return int(
            await self._rpc_pool.call_function(self._factory_address, self._factory_abi, "allPairsLength")
        )

    async def backfill_once(self) -> int:
        """
        Feed pairs whose factory index is past the last observed count.
        The count advances per successfully fetched index.
        """
        try:
            count = await self._fetch_pair_count()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning("Backfill: allPairsLength unavailable: %s", exc)
            return 0

        if self._last_pair_count is None:
            self._last_pair_count = count
            return 0
        if count <= self._last_pair_count:
            return 0

        fed = 0
        for index in range(self._last_pair_count, count):
            try:
                pair = await self._rpc_pool.call_function(
                    self._factory_address, self._factory_abi, "allPairs", index
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.warning("Backfill: allPairs(%d) failed, resuming next tick: %s", index, exc)
                break
            self._last_pair_count = index + 1
            fed += 1
            await self.submit(PairCandidate(pair_address=str(pair).lower(), source=CandidateSource.BACKFILL))

        if fed:
            self._logger.info("Backfill: fed %d pair(s), count now %d", fed, self._last_pair_count)
        return fed

    async def _stats_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._stats_interval)
            try:
                await self._notifier.send_statistics(
                    self.get_stats(), self._rpc_pool.get_stats(), self._uptime()
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.warning("Stats report failed: %s", exc)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def handle_candidate(self, candidate: PairCandidate) -> PairClassification | None:
        """
        Dedup, classify and notify one candidate. Returns the
        classification, or None when skipped as duplicate or on error.
        """
        pair = candidate.pair_address.lower()
        async with self._dedup_lock:
            if pair in self._processed:
                self._stats.duplicates += 1
                self._logger.debug("Skipping already processed pair %s (%s)", pair, candidate.source.value)
                return None
            self._processed.add(pair)
        self._stats.total += 1

        trace_id = uuid.uuid4().hex[:16]
        log_data_entry(
            trace_id,
            _MODULE,
            "pair_candidate",
            f"new pair via {candidate.source.value}",
            "PairCandidate",
            dataclasses.asdict(candidate),
        )
        try:
            return await self._process(candidate, pair, trace_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._stats.errors += 1
            self._logger.error("Error processing pair %s: %s", pair, exc, exc_info=exc)
            try:
                await self._notifier.send_error(f"Error processing pair {pair}", exc)
            except asyncio.CancelledError:
                raise
            except Exception as notify_exc:
                self._logger.warning("Error notification failed: %s", notify_exc)
            return None

    async def _process(self, candidate: PairCandidate, pair: str, trace_id: str) -> PairClassification:
        classification = await self._classifier.analyze_pair(pair)
        log_data_processing(
            trace_id,
            _MODULE,
            "classification",
            "value pair and assign tier",
            "PairClassification",
            {"pair": pair},
            {
                "success": classification.success,
                "tier": classification.tier.value,
                "liquidity_usd": str(classification.liquidity_usd),
                "channel_a": classification.alert_channel_a,
                "channel_b": classification.alert_channel_b,
                "reason": classification.reason.value if classification.reason else None,
            },
        )

        if not classification.success:
            self._stats.filtered += 1
            self._logger.info(
                "Filtered %s: %s",
                pair,
                classification.reason.value if classification.reason else "unclassifiable",
            )
            return classification
        if not classification.activates_any_channel:
            self._stats.filtered += 1
            self._logger.info(
                "Filtered %s: %s at $%.0f activates no channel",
                pair,
                classification.tier.value,
                classification.liquidity_usd,
            )
            return classification

        self._count_tier(classification.tier)

        token_address = self._new_token_address(classification)
        token_info = await self._token_info.get_token_info(token_address)
        if self._security is not None:
            security = await self._security.perform_checks(token_address, pair)
        else:
            security = SecurityReport(False, False, False, ("Security checks disabled",))

        alert = PairAlert(
            candidate=candidate,
            classification=classification,
            token_info=token_info,
            security=security,
        )
        sent_a, queued_b = await self._notifier.send_pair_alert(alert)
        if sent_a:
            self._stats.channel_a_sent += 1
        if queued_b:
            self._stats.channel_b_sent += 1

        log_data_output(
            trace_id,
            _MODULE,
            "pair_alert",
            "route qualifying pair to notification channels",
            "PairAlert",
            {"pair": pair, "token": token_info.symbol, "channel_a": sent_a, "channel_b": queued_b},
            "telegram_notifier",
        )
        self._logger.info(
            "Routed %s (%s, %s) A=%s B=%s",
            pair,
            token_info.symbol,
            classification.tier.value,
            sent_a,
            queued_b,
        )
        return classification

    def _count_tier(self, tier: LiquidityTier) -> None:
        if tier is LiquidityTier.MEGA:
            self._stats.mega += 1
        elif tier is LiquidityTier.HIGH_LIQUIDITY:
            self._stats.high_liquidity += 1
        elif tier is LiquidityTier.EARLY_SIGNAL:
            self._stats.early_signal += 1

    @staticmethod
    def _new_token_address(classification: PairClassification) -> str:
        """The pair side that is not the valuation anchor."""
        reserves = classification.reserves
        assert reserves is not None
        base = classification.base_token.address if classification.base_token else None
        return reserves.token1 if reserves.token0 == base else reserves.token0
