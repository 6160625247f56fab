"""
Volume / activity analyzer for newly created pairs.

Resolves recent trade volume and swap counts through a two-step cascade:

    1. Graph indexer (subgraph) -- pair aggregate volume / tx count plus
       the recent-swaps list filtered server-side to the swap window;
       15m and 1h counts are computed from the returned timestamps.
    2. DexScreener pair lookup -- 24h volume and hourly buy/sell txns;
       the 15m count is estimated as a quarter of the 1h count.

Both providers sit behind a WAIT rate gate (the caller sleeps rather
than skipping), since volume is a secondary signal off the alerting
critical path. When both fail the result is a zero-filled,
``success=False`` sample, never an exception.

Usage:
    analyzer = VolumeAnalyzer(chain_id=56)
    sample = await analyzer.analyze_pair("0xabc...")
    await analyzer.close()
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import Any

import aiohttp

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from core.provider_cascade import CascadeExhaustedError, CascadeProvider, ProviderCascade
from shared.constants import (
    DEFAULT_VOLUME_HTTP_TIMEOUT_SECONDS,
    DEFAULT_VOLUME_RATE_LIMIT_SECONDS,
    HOURLY_WINDOW_SECONDS,
    RECENT_SWAPS_QUERY_LIMIT,
    RECENT_SWAPS_WINDOW_SECONDS,
)
from shared.types import RateGatePolicy, VolumeSample, VolumeSource

_DEXSCREENER_PAIRS_URL = "https://api.dexscreener.com/latest/dex/pairs"

_PAIR_ACTIVITY_QUERY = """
query PairActivity($pair: String!, $since: Int!, $first: Int!) {
  pair(id: $pair) {
    volumeUSD
    txCount
    createdAtTimestamp
    token0 { symbol }
    token1 { symbol }
  }
  swaps(
    where: { pair: $pair, timestamp_gte: $since }
    orderBy: timestamp
    orderDirection: desc
    first: $first
  ) {
    timestamp
    amountUSD
  }
}
"""


class VolumeDataError(Exception):
    """A volume provider returned an unusable response."""


def _dec(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except (InvalidOperation, ValueError):
        return Decimal("0")


def no_volume_data() -> VolumeSample:
    """Zero-filled failure sample."""
    return VolumeSample(
        success=False,
        volume_24h_usd=Decimal("0"),
        swap_count_15m=0,
        swap_count_1h=0,
        source=VolumeSource.NONE,
        reason="no_volume_data",
    )


class VolumeAnalyzer:
    """Per-pair volume / swap-count lookup with provider fallback."""

    def __init__(
        self,
        chain_id: int | None = None,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        cfg = get_config()
        chain_id = chain_id if chain_id is not None else cfg.get_chain_id()
        chain_cfg = cfg.get_chain_config(chain_id)
        volume_cfg = cfg.get_volume_config()

        self._subgraph_url: str = chain_cfg.get("subgraph_url", "")
        self._dexscreener_chain: str = chain_cfg.get("dexscreener_chain", "")

        providers = {p["name"]: p for p in volume_cfg.get("providers", [])}
        subgraph_cfg = providers.get("subgraph", {})
        dexscreener_cfg = providers.get("dexscreener", {})
        self._dexscreener_url: str = dexscreener_cfg.get("base_url", _DEXSCREENER_PAIRS_URL)
        self._timeouts: dict[str, float] = {
            "subgraph": subgraph_cfg.get("timeout_seconds", DEFAULT_VOLUME_HTTP_TIMEOUT_SECONDS),
            "dexscreener": dexscreener_cfg.get("timeout_seconds", DEFAULT_VOLUME_HTTP_TIMEOUT_SECONDS),
        }
        self._swap_window: int = volume_cfg.get("recent_swaps_window_seconds", RECENT_SWAPS_WINDOW_SECONDS)
        self._swap_limit: int = volume_cfg.get("recent_swaps_limit", RECENT_SWAPS_QUERY_LIMIT)
        self._hourly_factor = Decimal(str(volume_cfg.get("hourly_to_15m_factor", "0.25")))

        self._logger = setup_module_logger(
            "volume_analyzer", "volume_analyzer.log", module_folder="Volume_Analyzer_Logs"
        )
        # Chains without an indexer use DexScreener only
        providers_chain: list[CascadeProvider[VolumeSample]] = []
        if self._subgraph_url:
            providers_chain.append(
                CascadeProvider(
                    "subgraph",
                    self._fetch_subgraph,
                    subgraph_cfg.get("min_interval_seconds", DEFAULT_VOLUME_RATE_LIMIT_SECONDS),
                )
            )
        providers_chain.append(
            CascadeProvider(
                "dexscreener",
                self._fetch_dexscreener,
                dexscreener_cfg.get("min_interval_seconds", DEFAULT_VOLUME_RATE_LIMIT_SECONDS),
            )
        )
        self._cascade: ProviderCascade[VolumeSample] = ProviderCascade(
            providers_chain,
            policy=RateGatePolicy.WAIT,
            label="volume",
            logger=self._logger,
            sleep=sleep,
        )

        self._clock = clock
        self._session = session
        self._owns_session = session is None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def analyze_pair(self, pair_address: str) -> VolumeSample:
        """Volume sample for ``pair_address``; zero-filled on total failure."""
        pair = pair_address.lower()
        try:
            provider, sample = await self._cascade.fetch(pair)
        except CascadeExhaustedError as exc:
            self._logger.warning("No volume data for %s: %s", pair, exc)
            return no_volume_data()
        self._logger.debug(
            "%s via %s: vol24h=$%s swaps15m=%d swaps1h=%d",
            pair,
            provider,
            sample.volume_24h_usd,
            sample.swap_count_15m,
            sample.swap_count_1h,
        )
        return sample

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def get_stats(self) -> dict[str, dict[str, int]]:
        return self._cascade.get_stats()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    async def _fetch_subgraph(self, pair: str) -> VolumeSample:
        if not self._subgraph_url:
            raise VolumeDataError("no subgraph configured for this chain")

        now = int(self._clock())
        body = {
            "query": _PAIR_ACTIVITY_QUERY,
            "variables": {"pair": pair, "since": now - self._swap_window, "first": self._swap_limit},
        }
        session = self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self._timeouts["subgraph"])
        async with session.post(self._subgraph_url, json=body, timeout=timeout) as resp:
            resp.raise_for_status()
            payload = await resp.json(content_type=None)

        if payload.get("errors"):
            raise VolumeDataError(f"subgraph errors: {payload['errors']}")
        data = payload.get("data") or {}
        pair_data = data.get("pair")
        if not pair_data:
            raise VolumeDataError("pair not indexed")

        swaps = data.get("swaps") or []
        swaps_15m = 0
        swaps_1h = 0
        swap_volume = Decimal("0")
        for swap in swaps:
            age = now - int(swap.get("timestamp", 0))
            if age <= self._swap_window:
                swaps_15m += 1
            if age <= HOURLY_WINDOW_SECONDS:
                swaps_1h += 1
            swap_volume += _dec(swap.get("amountUSD"))

        return VolumeSample(
            success=True,
            volume_24h_usd=_dec(pair_data.get("volumeUSD")),
            swap_count_15m=swaps_15m,
            swap_count_1h=swaps_1h,
            source=VolumeSource.INDEXER,
            total_tx_count=int(pair_data.get("txCount") or 0),
            avg_swap_size_usd=swap_volume / len(swaps) if swaps else Decimal("0"),
        )

    async def _fetch_dexscreener(self, pair: str) -> VolumeSample:
        if not self._dexscreener_chain:
            raise VolumeDataError("no DexScreener chain name configured")

        session = self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self._timeouts["dexscreener"])
        url = f"{self._dexscreener_url}/{self._dexscreener_chain}/{pair}"
        async with session.get(url, timeout=timeout) as resp:
            resp.raise_for_status()
            payload = await resp.json(content_type=None)

        pair_data = payload.get("pair") or next(iter(payload.get("pairs") or []), None)
        if not pair_data:
            raise VolumeDataError("pair not listed")

        volume_24h = _dec((pair_data.get("volume") or {}).get("h24"))
        h1 = (pair_data.get("txns") or {}).get("h1") or {}
        swaps_1h = int(h1.get("buys") or 0) + int(h1.get("sells") or 0)
        h24 = (pair_data.get("txns") or {}).get("h24") or {}
        tx_24h = int(h24.get("buys") or 0) + int(h24.get("sells") or 0)

        return VolumeSample(
            success=True,
            volume_24h_usd=volume_24h,
            swap_count_15m=math.floor(swaps_1h * self._hourly_factor),
            swap_count_1h=swaps_1h,
            source=VolumeSource.AGGREGATOR,
            total_tx_count=tx_24h,
            avg_swap_size_usd=volume_24h / tx_24h if tx_24h else Decimal("0"),
        )
