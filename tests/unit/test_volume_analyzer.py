"""
Unit tests for core/volume_analyzer.py.

Tests cover the indexer path (aggregate volume plus swap counts derived
from timestamps), fallback to the DexScreener pair lookup with the
hourly-to-15m estimate, and the zero-filled sample when both fail.
"""

from __future__ import annotations

import re
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aioresponses import aioresponses

from core.volume_analyzer import VolumeAnalyzer, no_volume_data
from shared.types import VolumeSource

PAIR = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
NOW = 1_700_000_000

SUBGRAPH_URL = "https://subgraph.example/pairs"
DEXSCREENER_URL = f"https://ds.example/pairs/bsc/{PAIR}"


@pytest.fixture
async def analyzer(mock_config_loader):
    with patch("core.volume_analyzer.get_config", return_value=mock_config_loader), \
         patch("core.volume_analyzer.setup_module_logger", return_value=MagicMock()):
        instance = VolumeAnalyzer(chain_id=56, clock=lambda: float(NOW), sleep=AsyncMock())
    yield instance
    await instance.close()


def _subgraph_payload(swap_ages, volume="18250.5", tx_count=42):
    return {
        "data": {
            "pair": {
                "volumeUSD": volume,
                "txCount": str(tx_count),
                "createdAtTimestamp": str(NOW - 3000),
                "token0": {"symbol": "NEW"},
                "token1": {"symbol": "WBNB"},
            },
            "swaps": [{"timestamp": str(NOW - age), "amountUSD": "100"} for age in swap_ages],
        }
    }


def _dexscreener_payload(h1_buys=30, h1_sells=13, volume="9100"):
    return {
        "pairs": [
            {
                "pairAddress": PAIR,
                "volume": {"h24": volume},
                "txns": {
                    "h1": {"buys": h1_buys, "sells": h1_sells},
                    "h24": {"buys": 70, "sells": 30},
                },
            }
        ]
    }


# ---------------------------------------------------------------------------
# Indexer path
# ---------------------------------------------------------------------------


class TestIndexer:
    async def test_counts_from_swap_timestamps(self, analyzer):
        with aioresponses() as mocked:
            mocked.post(SUBGRAPH_URL, payload=_subgraph_payload([60, 600, 899, 1200]))
            sample = await analyzer.analyze_pair(PAIR.upper().replace("0X", "0x"))

        assert sample.success
        assert sample.source is VolumeSource.INDEXER
        assert sample.volume_24h_usd == Decimal("18250.5")
        assert sample.swap_count_15m == 3
        assert sample.swap_count_1h == 4
        assert sample.total_tx_count == 42
        assert sample.avg_swap_size_usd == Decimal("100")

    async def test_query_uses_lowercased_pair_and_window(self, analyzer):
        with aioresponses() as mocked:
            mocked.post(SUBGRAPH_URL, payload=_subgraph_payload([]))
            sample = await analyzer.analyze_pair(PAIR)

        body = next(iter(mocked.requests.values()))[0].kwargs["json"]
        assert body["variables"] == {"pair": PAIR, "since": NOW - 900, "first": 100}
        assert sample.swap_count_15m == 0
        assert sample.avg_swap_size_usd == Decimal("0")


# ---------------------------------------------------------------------------
# Fallback path
# ---------------------------------------------------------------------------


class TestFallback:
    async def test_graphql_errors_fall_back_to_dexscreener(self, analyzer):
        with aioresponses() as mocked:
            mocked.post(SUBGRAPH_URL, payload={"errors": [{"message": "indexing lag"}]})
            mocked.get(DEXSCREENER_URL, payload=_dexscreener_payload())
            sample = await analyzer.analyze_pair(PAIR)

        assert sample.success
        assert sample.source is VolumeSource.AGGREGATOR
        assert sample.volume_24h_usd == Decimal("9100")
        assert sample.swap_count_1h == 43
        # floor(43 * 0.25)
        assert sample.swap_count_15m == 10
        assert sample.total_tx_count == 100
        assert sample.avg_swap_size_usd == Decimal("91")

    async def test_unindexed_pair_falls_back(self, analyzer):
        with aioresponses() as mocked:
            mocked.post(SUBGRAPH_URL, payload={"data": {"pair": None, "swaps": []}})
            mocked.get(DEXSCREENER_URL, payload=_dexscreener_payload(h1_buys=3, h1_sells=0))
            sample = await analyzer.analyze_pair(PAIR)

        assert sample.source is VolumeSource.AGGREGATOR
        assert sample.swap_count_15m == 0

    async def test_both_failing_yields_zero_sample(self, analyzer):
        with aioresponses() as mocked:
            mocked.post(SUBGRAPH_URL, status=502)
            mocked.get(DEXSCREENER_URL, payload={"pairs": None})
            sample = await analyzer.analyze_pair(PAIR)

        assert sample == no_volume_data()
        assert not sample.success
        assert sample.source is VolumeSource.NONE
        assert sample.reason == "no_volume_data"
        stats = analyzer.get_stats()
        assert stats["subgraph"]["failures"] == 1
        assert stats["dexscreener"]["failures"] == 1

    async def test_chain_without_subgraph_goes_straight_to_dexscreener(self, mock_config_loader):
        chain_cfg = dict(mock_config_loader.get_chain_config.return_value, subgraph_url="")
        mock_config_loader.get_chain_config.return_value = chain_cfg
        with patch("core.volume_analyzer.get_config", return_value=mock_config_loader), \
             patch("core.volume_analyzer.setup_module_logger", return_value=MagicMock()):
            analyzer = VolumeAnalyzer(chain_id=56, clock=lambda: float(NOW), sleep=AsyncMock())

        with aioresponses() as mocked:
            mocked.get(re.compile(r"https://ds\.example/pairs/.*"), payload=_dexscreener_payload())
            sample = await analyzer.analyze_pair(PAIR)
        await analyzer.close()

        assert sample.source is VolumeSource.AGGREGATOR

    async def test_chain_without_subgraph_never_waits_on_indexer_gate(self, mock_config_loader):
        chain_cfg = dict(mock_config_loader.get_chain_config.return_value, subgraph_url="")
        mock_config_loader.get_chain_config.return_value = chain_cfg
        mock_config_loader.get_volume_config.return_value = {
            "providers": [
                {"name": "subgraph", "min_interval_seconds": 30},
                {"name": "dexscreener", "base_url": "https://ds.example/pairs", "min_interval_seconds": 0},
            ],
        }
        sleep = AsyncMock()
        with patch("core.volume_analyzer.get_config", return_value=mock_config_loader), \
             patch("core.volume_analyzer.setup_module_logger", return_value=MagicMock()):
            analyzer = VolumeAnalyzer(chain_id=56, clock=lambda: float(NOW), sleep=sleep)

        with aioresponses() as mocked:
            mocked.get(re.compile(r"https://ds\.example/pairs/.*"), payload=_dexscreener_payload(), repeat=True)
            first = await analyzer.analyze_pair(PAIR)
            second = await analyzer.analyze_pair(PAIR)
        await analyzer.close()

        assert first.success and second.success
        sleep.assert_not_awaited()
        assert list(analyzer.get_stats()) == ["dexscreener"]
