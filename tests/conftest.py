"""
Shared pytest configuration and fixtures for DEX Pair Monitor tests.

Provides standard mock configs, sample addresses and a scriptable fake
AsyncWeb3 used by the RPC pool tests.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

# ---------------------------------------------------------------------------
# Decimal helper
# ---------------------------------------------------------------------------


def _d(v) -> Decimal:
    """Shorthand Decimal factory."""
    return Decimal(str(v))


# ---------------------------------------------------------------------------
# Sample addresses (lowercase, as the registry keys them)
# ---------------------------------------------------------------------------

WBNB = "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c"
USDT = "0x55d398326f99059ff775485246999027b3197955"
NEW_TOKEN = "0x1111111111111111111111111111111111111111"
OTHER_TOKEN = "0x2222222222222222222222222222222222222222"
SAMPLE_PAIR = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
FACTORY = "0xca143ce32fe78f1f7019d7d551a6402fc5350c73"


# ---------------------------------------------------------------------------
# Standard mock configs (can be overridden per test)
# ---------------------------------------------------------------------------

STANDARD_CHAIN_CONFIG = {
    "chain_id": 56,
    "rpc": {"http_urls": ["https://rpc-a.example", "https://rpc-b.example"], "ws_url": ""},
    "factory": {"name": "PancakeSwap V2", "address": FACTORY},
    "known_tokens": {
        WBNB: {
            "symbol": "WBNB",
            "decimals": 18,
            "pricing": {
                "type": "dynamic",
                "coingecko_id": "binancecoin",
                "ticker_symbol": "BNBUSDT",
                "fallback_price_usd": "600",
            },
        },
        USDT: {"symbol": "USDT", "decimals": 18, "pricing": {"type": "fixed", "price_usd": "1"}},
    },
    "dexscreener_chain": "bsc",
    "subgraph_url": "https://subgraph.example/pairs",
    "explorer": {"api_url": "https://explorer.example/api", "web_url": "https://bscscan.com"},
}

STANDARD_TIMING_CONFIG = {
    "rpc": {
        "health_check_interval_seconds": 60,
        "max_response_time_ms": 200,
        "connect_timeout_seconds": 1,
        "probe_timeout_seconds": 1,
        "slow_threshold_ms": 3000,
        "failure_threshold": 3,
        "probe_failure_threshold": 2,
        "latency_window": 10,
    },
    "detector": {
        "event_poll_interval_seconds": 30,
        "backfill_interval_seconds": 60,
        "stats_interval_seconds": 3600,
        "max_block_range": 2000,
        "shutdown_grace_seconds": 1,
    },
    "price": {"cache_ttl_seconds": 60, "refresh_interval_seconds": 300},
    "backoff": {"max_retries": 2, "initial_delay_seconds": 0.01, "max_delay_seconds": 0.05, "factor": 2},
    "notifier": {"public_flush_interval_seconds": 900, "request_timeout_seconds": 5},
    "collaborators": {"token_info_timeout_seconds": 1, "explorer_timeout_seconds": 1},
    "websocket": {
        "max_connection_attempts": 3,
        "subscription_response_timeout_seconds": 0.2,
        "message_receive_timeout_seconds": 0.2,
        "reconnect_base_delay_seconds": 0,
        "reconnect_max_delay_seconds": 0,
        "jitter_max_seconds": 0,
    },
}

STANDARD_TIERS_CONFIG = {
    "mega": {"min_liquidity_usd": "50000", "min_volume_usd": "50000"},
    "high_liquidity": {
        "channel_a_min_liquidity_usd": "10000",
        "channel_b_min_liquidity_usd": "35000",
        "min_volume_usd": "20000",
    },
    "early_signal": {"min_liquidity_usd": "1000", "min_volume_usd": "5000", "min_swaps_15m": 10},
}

STANDARD_PRICE_PROVIDERS_CONFIG = {
    "cache": {"redis_url": "", "key_prefix": "price:"},
    "sentinel_price_usd": "600",
    "providers": [
        {"name": "coingecko", "base_url": "https://cg.example/simple/price", "min_interval_seconds": 10},
        {"name": "dexscreener", "base_url": "https://ds.example/tokens", "min_interval_seconds": 2},
        {"name": "binance", "base_url": "https://bn.example/ticker/price", "min_interval_seconds": 1},
    ],
}

STANDARD_VOLUME_CONFIG = {
    "providers": [
        {"name": "subgraph", "min_interval_seconds": 0, "timeout_seconds": 5},
        {"name": "dexscreener", "base_url": "https://ds.example/pairs", "min_interval_seconds": 0},
    ],
    "recent_swaps_window_seconds": 900,
    "recent_swaps_limit": 100,
    "hourly_to_15m_factor": "0.25",
}

# Env vars read by the code under test; cleared so a developer's .env
# cannot change test outcomes.
_ENV_VARS = (
    "CHAIN_ID",
    "RPC_URL",
    "RPC_PRIMARY_URL",
    "RPC_SECONDARY_URL",
    "RPC_TERTIARY_URL",
    "RPC_WS_URL",
    "RPC_HEALTH_CHECK_INTERVAL",
    "RPC_MAX_RESPONSE_TIME",
    "FACTORY_ADDRESS",
    "REDIS_URL",
    "PRICE_CACHE_TTL",
    "PRICE_UPDATE_INTERVAL",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
    "TELEGRAM_CHAT_ID_VIP",
    "TELEGRAM_CHAT_ID_PUBLIC",
    "ETHERSCAN_API_KEY",
    "ETHERSCAN_API_URL",
    "EVENT_POLL_INTERVAL",
    "POLL_INTERVAL",
    "STATS_INTERVAL",
    "SEND_STATS",
    "INCLUDE_LINKS",
    "SECURITY_CHECKS",
    "LIQUIDITY_MEGA_MIN",
    "MIN_LIQUIDITY_VIP",
    "MIN_LIQUIDITY_PUBLIC",
    "LIQUIDITY_EARLY_GEMS_MIN",
    "VOLUME_EARLY_GEMS_MIN",
    "SWAPS_EARLY_GEMS_MIN",
    "VOLUME_HIGH_LIQ_MIN",
    "VOLUME_MEGA_MIN",
    "BACKOFF_MAX_RETRIES",
    "BACKOFF_INITIAL_DELAY",
    "BACKOFF_MAX_DELAY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Config loader fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            with patch("core.rpc_pool.get_config", return_value=mock_config_loader):
                ...
    """
    loader = MagicMock()
    loader.get_chain_id.return_value = 56
    loader.get_chain_config.return_value = STANDARD_CHAIN_CONFIG
    loader.get_timing_config.return_value = STANDARD_TIMING_CONFIG
    loader.get_tiers_config.return_value = STANDARD_TIERS_CONFIG
    loader.get_price_providers_config.return_value = STANDARD_PRICE_PROVIDERS_CONFIG
    loader.get_volume_config.return_value = STANDARD_VOLUME_CONFIG
    loader.get_app_config.return_value = {
        "logging": {"log_dir": "logs"},
        "features": {"send_stats": False, "include_links": True, "security_checks": True},
    }
    loader.get_rpc_urls.return_value = list(STANDARD_CHAIN_CONFIG["rpc"]["http_urls"])
    loader.get_ws_url.return_value = ""
    loader.get_factory_address.return_value = FACTORY
    loader.get_abi.return_value = []
    return loader


# ---------------------------------------------------------------------------
# Fake AsyncWeb3
# ---------------------------------------------------------------------------


class FakeEth:
    """``eth`` namespace whose awaitable properties hit the owning FakeW3."""

    def __init__(self, owner: FakeW3) -> None:
        self._owner = owner

    @property
    def chain_id(self):
        return self._owner._respond(self._owner.chain_id_value)

    @property
    def block_number(self):
        return self._owner._respond(self._owner.block_number_value)


class FakeW3:
    """
    Scriptable stand-in for AsyncWeb3.

    ``fail`` makes every call raise; ``hang`` makes every call sleep past
    any sensible timeout. ``calls`` counts attempted requests.
    """

    def __init__(self, url: str, chain_id: int = 56, block_number: int = 100) -> None:
        self.url = url
        self.chain_id_value = chain_id
        self.block_number_value = block_number
        self.fail = False
        self.hang = False
        self.calls = 0
        self.eth = FakeEth(self)

    async def _respond(self, value):
        self.calls += 1
        if self.hang:
            await asyncio.sleep(10)
        if self.fail:
            raise ConnectionError(f"{self.url} unavailable")
        return value


@pytest.fixture
def fake_w3s():
    """Three fake endpoints keyed by URL."""
    urls = ["https://rpc-a.example", "https://rpc-b.example", "https://rpc-c.example"]
    return {url: FakeW3(url) for url in urls}
