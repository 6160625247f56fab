"""
Unit tests for core/pair_detector.py.

Tests cover:
- Startup watermarks and detection-mode selection (no endpoint, rejected
  subscription, confirmed subscription, stream lost -> POLL)
- Dedup across push/poll/backfill, including concurrent case variants
- Poll watermark semantics and block-range chunking
- Backfill index sweep
- Pipeline routing, filtering, per-pair error isolation
- Shutdown: notifier flushed and final report sent

Mock strategy: RPC pool, classifier, notifier, token info and security
checks are AsyncMock-based; the push stream is a small fake handed in
through ``stream_factory``.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from eth_abi import encode as abi_encode

from data.pair_event_stream import (
    PAIR_CREATED_TOPIC,
    SubscriptionLostError,
    SubscriptionRejectedError,
)
from shared.types import (
    CandidateSource,
    ClassificationReason,
    DetectionMode,
    DynamicPrice,
    KnownToken,
    LiquidityTier,
    PairCandidate,
    PairClassification,
    PairReserves,
    SecurityReport,
    TierChecks,
    TokenInfo,
)

WBNB = "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c"
NEW_TOKEN = "0x1111111111111111111111111111111111111111"
FACTORY = "0xca143ce32fe78f1f7019d7d551a6402fc5350c73"
PAIR = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
PAIR_2 = "0x3333333333333333333333333333333333333333"
PAIR_3 = "0x4444444444444444444444444444444444444444"

WBNB_TOKEN = KnownToken(
    address=WBNB,
    symbol="WBNB",
    decimals=18,
    pricing=DynamicPrice(coingecko_id="binancecoin", ticker_symbol="BNBUSDT"),
)


def _classification(
    pair=PAIR,
    tier=LiquidityTier.HIGH_LIQUIDITY,
    channel_a=True,
    channel_b=False,
    success=True,
    reason=None,
) -> PairClassification:
    return PairClassification(
        pair_address=pair,
        success=success,
        tier=tier,
        checks=TierChecks(liquidity=success),
        liquidity_usd=Decimal("12000") if success else Decimal("0"),
        alert_channel_a=channel_a,
        alert_channel_b=channel_b,
        reserves=PairReserves(token0=NEW_TOKEN, token1=WBNB, reserve0=10**24, reserve1=10 * 10**18),
        base_token=WBNB_TOKEN,
        reason=reason,
    )


def _pair_created_log(pair: str) -> dict:
    pad = "0x" + "00" * 12
    return {
        "topics": [PAIR_CREATED_TOPIC, pad + NEW_TOKEN[2:], pad + WBNB[2:]],
        "data": "0x" + abi_encode(["address", "uint256"], [pair, 1]).hex(),
        "blockNumber": 120,
        "transactionHash": "0x" + "cd" * 32,
    }


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeStream:
    """Push stream stand-in: ``subscribe`` scripted, ``run`` ends on demand."""

    def __init__(self, reject: bool = False) -> None:
        self.reject = reject
        self.lost = asyncio.Event()
        self.close = AsyncMock()
        self.on_candidate = None

    def __call__(self, ws_url, factory_address, on_candidate):
        self.on_candidate = on_candidate
        return self

    async def subscribe(self):
        if self.reject:
            raise SubscriptionRejectedError("eth_subscribe not supported")
        return "0xsub"

    async def run(self):
        await self.lost.wait()
        raise SubscriptionLostError("reconnects exhausted")


@pytest.fixture
def rpc_pool():
    pairs = {5: PAIR_2, 6: PAIR_3}

    async def call_function(address, abi, fn_name, *args):
        if fn_name == "allPairsLength":
            return pool.pair_count
        if fn_name == "allPairs":
            if args[0] not in pairs:
                raise ConnectionError(f"allPairs({args[0]}) failed")
            return pairs[args[0]]
        raise AssertionError(fn_name)

    pool = MagicMock()
    pool.pair_count = 5
    pool.get_block_number = AsyncMock(return_value=100)
    pool.get_logs = AsyncMock(return_value=[])
    pool.call_function = AsyncMock(side_effect=call_function)
    pool.failover_count = 0
    pool.get_stats = MagicMock(return_value={"failovers": 0})
    return pool


@pytest.fixture
def collaborators():
    classifier = MagicMock()
    classifier.analyze_pair = AsyncMock(side_effect=lambda pair: _classification(pair=pair))

    notifier = MagicMock()
    notifier.send_pair_alert = AsyncMock(return_value=(True, False))
    notifier.send_error = AsyncMock()
    notifier.send_shutdown = AsyncMock()
    notifier.send_statistics = AsyncMock()
    notifier.flush = AsyncMock(return_value=0)

    token_info = MagicMock()
    token_info.get_token_info = AsyncMock(
        side_effect=lambda addr: TokenInfo(addr, "New Token", "NEW", 18, 10**27)
    )

    security = MagicMock()
    security.perform_checks = AsyncMock(return_value=SecurityReport(True, False, False))
    return classifier, notifier, token_info, security


@pytest.fixture
def make_detector(mock_config_loader, rpc_pool, collaborators):
    classifier, notifier, token_info, security = collaborators
    with patch("core.pair_detector.get_config", return_value=mock_config_loader), \
         patch("core.retry.get_config", return_value=mock_config_loader), \
         patch("core.pair_detector.setup_module_logger", return_value=MagicMock()), \
         patch("core.pair_detector.log_data_entry"), \
         patch("core.pair_detector.log_data_processing"), \
         patch("core.pair_detector.log_data_output"):

        def _make(ws_url="", stream=None, with_security=True):
            from core.pair_detector import PairEventDetector

            kwargs = {"stream_factory": stream} if stream is not None else {}
            return PairEventDetector(
                rpc_pool,
                classifier,
                notifier,
                token_info,
                security if with_security else None,
                factory_address=FACTORY,
                ws_url=ws_url,
                chain_id=56,
                **kwargs,
            )

        yield _make


@pytest.fixture
async def detector(make_detector):
    instance = make_detector()
    await instance.start()
    yield instance
    await instance.stop()


# ---------------------------------------------------------------------------
# Startup and detection mode
# ---------------------------------------------------------------------------


class TestStartup:
    async def test_watermarks_seeded(self, detector):
        assert detector.last_block == 100
        assert detector.last_pair_count == 5

    async def test_no_websocket_endpoint_means_poll(self, detector):
        assert detector.mode is DetectionMode.POLL

    async def test_rejected_subscription_means_poll(self, make_detector):
        stream = FakeStream(reject=True)
        detector = make_detector(ws_url="wss://ws.example", stream=stream)
        await detector.start()
        try:
            assert detector.mode is DetectionMode.POLL
        finally:
            await detector.stop()
        stream.close.assert_not_awaited()

    async def test_confirmed_subscription_means_push(self, make_detector):
        stream = FakeStream()
        detector = make_detector(ws_url="wss://ws.example", stream=stream)
        await detector.start()
        assert detector.mode is DetectionMode.PUSH
        assert stream.on_candidate == detector.submit

        await detector.stop()
        stream.close.assert_awaited_once()

    async def test_lost_stream_falls_back_to_poll_for_good(self, make_detector):
        stream = FakeStream()
        detector = make_detector(ws_url="wss://ws.example", stream=stream)
        await detector.start()

        stream.lost.set()
        await _settle()

        assert detector.mode is DetectionMode.POLL
        await detector.stop()


# ---------------------------------------------------------------------------
# Dedup
# ---------------------------------------------------------------------------


class TestDedup:
    async def test_same_pair_from_all_feeds_processed_once(self, detector, collaborators):
        classifier, notifier, _, _ = collaborators

        async def slow_classify(pair):
            await asyncio.sleep(0.01)
            return _classification(pair=pair)

        classifier.analyze_pair.side_effect = slow_classify

        results = await asyncio.gather(
            detector.handle_candidate(PairCandidate(PAIR, CandidateSource.PUSH)),
            detector.handle_candidate(PairCandidate(PAIR.upper().replace("0X", "0x"), CandidateSource.POLL)),
            detector.handle_candidate(PairCandidate(PAIR, CandidateSource.BACKFILL)),
        )

        assert sum(r is not None for r in results) == 1
        classifier.analyze_pair.assert_awaited_once_with(PAIR)
        notifier.send_pair_alert.assert_awaited_once()
        stats = detector.get_stats()
        assert stats.total == 1
        assert stats.duplicates == 2

    async def test_submitted_candidates_run_in_background(self, detector, collaborators):
        classifier, _, _, _ = collaborators
        await detector.submit(PairCandidate(PAIR, CandidateSource.PUSH))
        await detector.submit(PairCandidate(PAIR, CandidateSource.POLL))
        await detector.wait_idle(timeout=1)

        assert detector.is_processed(PAIR.upper().replace("0X", "0x"))
        assert classifier.analyze_pair.await_count == 1

    async def test_submit_ignored_when_not_running(self, make_detector, collaborators):
        classifier, _, _, _ = collaborators
        detector = make_detector()
        await detector.submit(PairCandidate(PAIR, CandidateSource.PUSH))
        await detector.wait_idle(timeout=1)
        classifier.analyze_pair.assert_not_awaited()


# ---------------------------------------------------------------------------
# Poll feed
# ---------------------------------------------------------------------------


class TestPoll:
    async def test_success_advances_watermark(self, detector, rpc_pool):
        rpc_pool.get_block_number.return_value = 150
        rpc_pool.get_logs.return_value = [_pair_created_log(PAIR)]

        assert await detector.poll_once() == 1
        await detector.wait_idle(timeout=1)

        assert detector.last_block == 150
        log_filter = rpc_pool.get_logs.await_args.args[0]
        assert log_filter["fromBlock"] == 101
        assert log_filter["toBlock"] == 150
        assert log_filter["topics"] == [PAIR_CREATED_TOPIC]
        assert log_filter["address"].lower() == FACTORY
        assert detector.is_processed(PAIR)

    async def test_failure_leaves_watermark(self, detector, rpc_pool):
        rpc_pool.get_block_number.return_value = 150
        rpc_pool.get_logs.side_effect = ConnectionError("getLogs failed")

        assert await detector.poll_once() == 0
        assert detector.last_block == 100

        # The same range is retried on the next tick
        rpc_pool.get_logs.side_effect = None
        rpc_pool.get_logs.return_value = []
        await detector.poll_once()
        assert rpc_pool.get_logs.await_args.args[0]["fromBlock"] == 101
        assert detector.last_block == 150

    async def test_malformed_log_does_not_stall_watermark(self, detector, rpc_pool):
        bad = _pair_created_log(PAIR)
        bad["topics"] = ["0xnothex", *bad["topics"][1:]]
        rpc_pool.get_block_number.return_value = 150
        rpc_pool.get_logs.return_value = [bad, ["not", "a", "log"], _pair_created_log(PAIR_2)]

        assert await detector.poll_once() == 1
        await detector.wait_idle(timeout=1)

        assert detector.last_block == 150
        assert detector.is_processed(PAIR_2)
        assert not detector.is_processed(PAIR)

    async def test_ranges_are_chunked(self, detector, rpc_pool):
        rpc_pool.get_block_number.return_value = 4500
        rpc_pool.get_logs.side_effect = [[], ConnectionError("range too wide"), []]

        await detector.poll_once()

        ranges = [(c.args[0]["fromBlock"], c.args[0]["toBlock"]) for c in rpc_pool.get_logs.await_args_list]
        assert ranges == [(101, 2100), (2101, 4100)]
        assert detector.last_block == 2100

    async def test_block_number_failure_is_a_no_op(self, detector, rpc_pool):
        rpc_pool.get_block_number.side_effect = ConnectionError("down")
        assert await detector.poll_once() == 0
        assert detector.last_block == 100
        rpc_pool.get_logs.assert_not_awaited()


# ---------------------------------------------------------------------------
# Backfill feed
# ---------------------------------------------------------------------------


class TestBackfill:
    async def test_new_indexes_fed_until_failure(self, detector, rpc_pool):
        rpc_pool.pair_count = 8

        assert await detector.backfill_once() == 2
        await detector.wait_idle(timeout=1)

        # allPairs(7) failed: resume from 7 next tick
        assert detector.last_pair_count == 7
        assert detector.is_processed(PAIR_2)
        assert detector.is_processed(PAIR_3)

    async def test_no_new_pairs(self, detector, rpc_pool):
        assert await detector.backfill_once() == 0
        assert detector.last_pair_count == 5


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestPipeline:
    async def test_routed_pair(self, detector, collaborators):
        _, notifier, token_info, security = collaborators
        notifier.send_pair_alert.return_value = (True, True)

        result = await detector.handle_candidate(PairCandidate(PAIR, CandidateSource.PUSH))

        assert result.tier is LiquidityTier.HIGH_LIQUIDITY
        token_info.get_token_info.assert_awaited_once_with(NEW_TOKEN)
        security.perform_checks.assert_awaited_once_with(NEW_TOKEN, PAIR)
        alert = notifier.send_pair_alert.await_args.args[0]
        assert alert.token_info.symbol == "NEW"
        assert alert.candidate.source is CandidateSource.PUSH
        stats = detector.get_stats()
        assert stats.high_liquidity == 1
        assert stats.channel_a_sent == 1
        assert stats.channel_b_sent == 1

    async def test_security_checks_disabled(self, make_detector, collaborators):
        _, notifier, _, security = collaborators
        detector = make_detector(with_security=False)
        await detector.start()
        await detector.handle_candidate(PairCandidate(PAIR, CandidateSource.POLL))
        await detector.stop()

        security.perform_checks.assert_not_awaited()
        report = notifier.send_pair_alert.await_args.args[0].security
        assert report.score == 0
        assert report.warnings == ("Security checks disabled",)

    async def test_unclassifiable_pair_is_filtered(self, detector, collaborators):
        classifier, notifier, _, _ = collaborators
        classifier.analyze_pair.side_effect = None
        classifier.analyze_pair.return_value = _classification(
            success=False,
            tier=LiquidityTier.BELOW_THRESHOLD,
            channel_a=False,
            reason=ClassificationReason.NO_KNOWN_TOKEN,
        )

        await detector.handle_candidate(PairCandidate(PAIR, CandidateSource.POLL))

        assert detector.get_stats().filtered == 1
        notifier.send_pair_alert.assert_not_awaited()

    async def test_pair_activating_no_channel_is_filtered(self, detector, collaborators):
        classifier, notifier, token_info, _ = collaborators
        classifier.analyze_pair.side_effect = None
        classifier.analyze_pair.return_value = _classification(
            tier=LiquidityTier.EARLY_SIGNAL, channel_a=False
        )

        await detector.handle_candidate(PairCandidate(PAIR, CandidateSource.POLL))

        stats = detector.get_stats()
        assert stats.filtered == 1
        assert stats.early_signal == 0
        token_info.get_token_info.assert_not_awaited()
        notifier.send_pair_alert.assert_not_awaited()

    async def test_error_is_counted_and_reported(self, detector, collaborators):
        classifier, notifier, _, _ = collaborators
        classifier.analyze_pair.side_effect = RuntimeError("reserves unavailable")

        assert await detector.handle_candidate(PairCandidate(PAIR, CandidateSource.PUSH)) is None

        assert detector.get_stats().errors == 1
        notifier.send_error.assert_awaited_once()
        # Still marked processed: not retried by the other feeds
        assert detector.is_processed(PAIR)

    async def test_error_report_failure_is_swallowed(self, detector, collaborators):
        classifier, notifier, _, _ = collaborators
        classifier.analyze_pair.side_effect = RuntimeError("boom")
        notifier.send_error.side_effect = ConnectionError("telegram down")

        assert await detector.handle_candidate(PairCandidate(PAIR, CandidateSource.PUSH)) is None
        assert detector.get_stats().errors == 1


# ---------------------------------------------------------------------------
# Stats and shutdown
# ---------------------------------------------------------------------------


class TestShutdown:
    async def test_stats_include_pool_failovers(self, detector, rpc_pool):
        rpc_pool.failover_count = 3
        assert detector.get_stats().rpc_failovers == 3

    async def test_stop_reports_and_flushes(self, make_detector, collaborators):
        _, notifier, _, _ = collaborators
        detector = make_detector()
        await detector.start()
        await detector.handle_candidate(PairCandidate(PAIR, CandidateSource.PUSH))

        await detector.stop()

        notifier.send_shutdown.assert_awaited_once()
        stats = notifier.send_shutdown.await_args.args[0]
        assert stats.total == 1
        notifier.flush.assert_awaited_once()

    async def test_failed_shutdown_report_still_flushes(self, make_detector, collaborators):
        _, notifier, _, _ = collaborators
        notifier.send_shutdown.side_effect = ConnectionError("telegram down")
        detector = make_detector()
        await detector.start()

        await detector.stop()

        notifier.flush.assert_awaited_once()
