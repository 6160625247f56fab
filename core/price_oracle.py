"""
USD price oracle for known base tokens.

Only tokens in the chain's known-token registry are resolvable. Pegged
tokens return their fixed price with no I/O. Dynamic tokens are served
from the price cache (Redis when connected, else an in-process map)
and, on a miss, from the provider cascade:

    1. CoinGecko simple-price   (by asset id)
    2. DexScreener token pairs  (most liquid pair's priceUsd)
    3. Binance ticker           (by ticker symbol)

Each provider is behind a SKIP rate gate: a too-soon call counts as a
failure and the next provider is tried at once. When every provider
fails the last observed price is returned regardless of age, and with
no observation at all the sentinel default.

Usage:
    oracle = PriceOracle(chain_id=56)
    await oracle.initialize()
    price = await oracle.get_price_usd("0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c")
    await oracle.shutdown()
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any

import aiohttp
import redis.asyncio as redis

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config, get_env_var
from core.provider_cascade import CascadeExhaustedError, CascadeProvider, ProviderCascade
from shared.constants import (
    DEFAULT_PRICE_CACHE_TTL_SECONDS,
    DEFAULT_PRICE_HTTP_TIMEOUT_SECONDS,
    DEFAULT_PRICE_REFRESH_INTERVAL_SECONDS,
    DEFAULT_SENTINEL_PRICE_USD,
    PRICE_CACHE_KEY_PREFIX,
)
from shared.types import (
    CachedPrice,
    DynamicPrice,
    FixedPrice,
    KnownToken,
    PriceQuote,
    PriceSource,
    RateGatePolicy,
)

_DEFAULT_PROVIDER_URLS = {
    "coingecko": "https://api.coingecko.com/api/v3/simple/price",
    "dexscreener": "https://api.dexscreener.com/latest/dex/tokens",
    "binance": "https://api.binance.com/api/v3/ticker/price",
}
_DEFAULT_PROVIDER_INTERVALS = {"coingecko": 10.0, "dexscreener": 2.0, "binance": 1.0}


def build_known_tokens(chain_cfg: dict[str, Any]) -> dict[str, KnownToken]:
    """Build the address-keyed (lowercase) known-token registry from a chain config."""
    registry: dict[str, KnownToken] = {}
    for address, entry in chain_cfg.get("known_tokens", {}).items():
        pricing_cfg = entry.get("pricing", {})
        pricing: FixedPrice | DynamicPrice
        if pricing_cfg.get("type") == "fixed":
            pricing = FixedPrice(price_usd=Decimal(str(pricing_cfg["price_usd"])))
        else:
            fallback = pricing_cfg.get("fallback_price_usd")
            pricing = DynamicPrice(
                coingecko_id=pricing_cfg.get("coingecko_id", ""),
                ticker_symbol=pricing_cfg.get("ticker_symbol", ""),
                fallback_price_usd=Decimal(str(fallback)) if fallback is not None else None,
            )
        key = address.lower()
        registry[key] = KnownToken(
            address=key,
            symbol=entry["symbol"],
            decimals=int(entry.get("decimals", 18)),
            pricing=pricing,
        )
    return registry


def _to_price(value: Any) -> Decimal | None:
    """Parse a positive decimal price, or None."""
    if value is None:
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price


class PriceOracle:
    """
    Known-token USD price resolver with cache and provider cascade.

    The Redis backend is tried once at ``initialize``; if that fails the
    oracle stays in in-process mode for its lifetime. A single failed
    Redis write falls back to the in-process map for that entry only.
    """

    def __init__(
        self,
        chain_id: int | None = None,
        known_tokens: dict[str, KnownToken] | None = None,
        session: aiohttp.ClientSession | None = None,
        redis_url: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        cfg = get_config()
        chain_id = chain_id if chain_id is not None else cfg.get_chain_id()
        providers_cfg = cfg.get_price_providers_config()
        price_timing = cfg.get_timing_config().get("price", {})

        self._known_tokens: dict[str, KnownToken] = (
            known_tokens if known_tokens is not None else build_known_tokens(cfg.get_chain_config(chain_id))
        )

        # Cache settings (PRICE_* env vars: TTL seconds, interval ms)
        self._ttl: int = get_env_var(
            "PRICE_CACHE_TTL",
            price_timing.get("cache_ttl_seconds", DEFAULT_PRICE_CACHE_TTL_SECONDS),
            int,
        )
        self._refresh_interval: float = get_env_var(
            "PRICE_UPDATE_INTERVAL",
            price_timing.get("refresh_interval_seconds", DEFAULT_PRICE_REFRESH_INTERVAL_SECONDS) * 1000,
            float,
        ) / 1000
        cache_cfg = providers_cfg.get("cache", {})
        self._key_prefix: str = cache_cfg.get("key_prefix", PRICE_CACHE_KEY_PREFIX)
        self._redis_url: str = (
            redis_url if redis_url is not None else get_env_var("REDIS_URL", cache_cfg.get("redis_url", ""), str)
        )
        self._sentinel_price = Decimal(
            str(providers_cfg.get("sentinel_price_usd", DEFAULT_SENTINEL_PRICE_USD))
        )

        # Provider settings
        provider_entries = {p["name"]: p for p in providers_cfg.get("providers", [])}
        self._base_urls: dict[str, str] = {
            name: provider_entries.get(name, {}).get("base_url", url)
            for name, url in _DEFAULT_PROVIDER_URLS.items()
        }
        self._timeouts: dict[str, float] = {
            name: provider_entries.get(name, {}).get("timeout_seconds", DEFAULT_PRICE_HTTP_TIMEOUT_SECONDS)
            for name in _DEFAULT_PROVIDER_URLS
        }
        fetchers = {
            "coingecko": self._fetch_coingecko,
            "dexscreener": self._fetch_dexscreener,
            "binance": self._fetch_binance,
        }
        order = [p["name"] for p in providers_cfg.get("providers", []) if p.get("name") in fetchers]
        if not order:
            order = list(fetchers)

        self._logger = setup_module_logger(
            "price_oracle", "price_oracle.log", module_folder="Price_Oracle_Logs"
        )
        self._cascade: ProviderCascade[Decimal] = ProviderCascade(
            [
                CascadeProvider(
                    name,
                    fetchers[name],
                    provider_entries.get(name, {}).get(
                        "min_interval_seconds", _DEFAULT_PROVIDER_INTERVALS[name]
                    ),
                )
                for name in order
            ],
            policy=RateGatePolicy.SKIP,
            label="price",
            logger=self._logger,
        )

        self._clock = clock
        self._session = session
        self._owns_session = session is None
        self._redis: redis.Redis | None = None
        self._redis_available: bool = False

        # In-process store and last upstream observation per symbol
        self._memory_cache: dict[str, CachedPrice] = {}
        self._last_observed: dict[str, CachedPrice] = {}

        self._running: bool = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, warm: bool = True) -> None:
        """Connect the external cache (non-fatal) and optionally warm prices."""
        if self._redis_url:
            client = redis.Redis.from_url(self._redis_url, decode_responses=True)
            try:
                await client.ping()
            except Exception as exc:
                self._logger.warning(
                    "Redis unavailable (%s), using in-process price cache for this run", exc
                )
                await self._close_redis(client)
            else:
                self._redis = client
                self._redis_available = True
                self._logger.info("Redis price cache connected")
        else:
            self._logger.info("No REDIS_URL configured, using in-process price cache")

        if warm:
            await self.refresh_prices()

    async def run(self) -> None:
        """Periodic refresh loop, designed to be launched as an asyncio.Task."""
        self._running = True
        self._logger.info("Price refresh every %.0fs", self._refresh_interval)
        try:
            while self._running:
                await asyncio.sleep(self._refresh_interval)
                try:
                    await self.refresh_prices()
                    self.cleanup_memory_cache()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._logger.error("Price refresh failed: %s", exc)
        except asyncio.CancelledError:
            self._logger.info("Price refresh cancelled")
        finally:
            self._running = False

    def stop(self) -> None:
        """Signal the refresh loop to stop."""
        self._running = False

    async def shutdown(self) -> None:
        """Stop refreshing and release the Redis connection and HTTP session."""
        self.stop()
        if self._redis is not None:
            await self._close_redis(self._redis)
            self._redis = None
            self._redis_available = False
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _close_redis(self, client: redis.Redis) -> None:
        try:
            await client.aclose()
        except Exception as exc:
            self._logger.debug("Redis close failed: %s", exc)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_known_token(self, address: str) -> bool:
        return address.lower() in self._known_tokens

    def get_known_token(self, address: str) -> KnownToken | None:
        return self._known_tokens.get(address.lower())

    @property
    def known_tokens(self) -> dict[str, KnownToken]:
        return dict(self._known_tokens)

    @property
    def redis_available(self) -> bool:
        return self._redis_available

    async def get_price_usd(self, token_address: str) -> Decimal | None:
        """USD price of a known base token; None for unknown tokens."""
        quote = await self.get_price_quote(token_address)
        return quote.price_usd if quote is not None else None

    async def get_price_quote(self, token_address: str) -> PriceQuote | None:
        """Like ``get_price_usd`` but also reports where the price came from."""
        token = self.get_known_token(token_address)
        if token is None:
            return None

        pricing = token.pricing
        if isinstance(pricing, FixedPrice):
            return PriceQuote(pricing.price_usd, PriceSource.FIXED)

        cached = await self._read_cache(token.symbol)
        if cached is not None:
            return PriceQuote(cached.price_usd, PriceSource.CACHE)

        fresh = await self._fetch_and_store(token)
        if fresh is not None:
            return PriceQuote(fresh.price_usd, PriceSource.PROVIDER)

        stale = self._last_observed.get(token.symbol)
        if stale is not None:
            self._logger.warning(
                "Using stale %s price $%s (age %.0fs)",
                token.symbol,
                stale.price_usd,
                self._clock() - stale.observed_at,
            )
            return PriceQuote(stale.price_usd, PriceSource.STALE)

        sentinel = pricing.fallback_price_usd or self._sentinel_price
        self._logger.error("No %s price ever observed, using default $%s", token.symbol, sentinel)
        return PriceQuote(sentinel, PriceSource.SENTINEL)

    async def refresh_prices(self) -> dict[str, Decimal]:
        """Fetch every dynamic token through the cascade and store the results."""
        refreshed: dict[str, Decimal] = {}
        for token in self._known_tokens.values():
            if not isinstance(token.pricing, DynamicPrice):
                continue
            entry = await self._fetch_and_store(token)
            if entry is not None:
                refreshed[token.symbol] = entry.price_usd
        if refreshed:
            self._logger.info(
                "Prices refreshed: %s",
                ", ".join(f"{symbol}=${price}" for symbol, price in refreshed.items()),
            )
        return refreshed

    def cleanup_memory_cache(self) -> int:
        """Drop expired in-process entries. Returns the number removed."""
        now = self._clock()
        expired = [s for s, e in self._memory_cache.items() if now - e.observed_at >= self._ttl]
        for symbol in expired:
            del self._memory_cache[symbol]
        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        return {
            "redis_available": self._redis_available,
            "memory_entries": len(self._memory_cache),
            "last_observed": {s: e.price_usd for s, e in self._last_observed.items()},
            "providers": self._cascade.get_stats(),
        }

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cache_key(self, symbol: str) -> str:
        return f"{self._key_prefix}{symbol}"

    async def _read_cache(self, symbol: str) -> CachedPrice | None:
        if self._redis_available and self._redis is not None:
            try:
                raw = await self._redis.get(self._cache_key(symbol))
            except Exception as exc:
                self._logger.warning("Redis read failed for %s: %s", symbol, exc)
            else:
                if raw:
                    try:
                        payload = json.loads(raw)
                        return CachedPrice(
                            symbol=symbol,
                            price_usd=Decimal(str(payload["price"])),
                            observed_at=float(payload["observed_at"]),
                        )
                    except (ValueError, KeyError, TypeError, InvalidOperation) as exc:
                        self._logger.warning("Corrupt cached price for %s: %s", symbol, exc)

        entry = self._memory_cache.get(symbol)
        if entry is not None and self._clock() - entry.observed_at < self._ttl:
            return entry
        return None

    async def _write_cache(self, entry: CachedPrice) -> None:
        if self._redis_available and self._redis is not None:
            payload = json.dumps({"price": str(entry.price_usd), "observed_at": entry.observed_at})
            try:
                await self._redis.setex(self._cache_key(entry.symbol), self._ttl, payload)
                return
            except Exception as exc:
                self._logger.warning(
                    "Redis write failed for %s (%s), storing in process", entry.symbol, exc
                )
        self._memory_cache[entry.symbol] = entry

    async def _fetch_and_store(self, token: KnownToken) -> CachedPrice | None:
        try:
            provider, price = await self._cascade.fetch(token)
        except CascadeExhaustedError as exc:
            self._logger.warning("%s", exc)
            return None
        entry = CachedPrice(symbol=token.symbol, price_usd=price, observed_at=self._clock())
        self._last_observed[token.symbol] = entry
        await self._write_cache(entry)
        self._logger.debug("%s price $%s from %s", token.symbol, price, provider)
        return entry

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _get_json(self, provider: str, url: str, params: dict[str, str] | None = None) -> Any:
        session = self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self._timeouts[provider])
        async with session.get(url, params=params, timeout=timeout) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def _fetch_coingecko(self, token: KnownToken) -> Decimal | None:
        pricing = token.pricing
        if not isinstance(pricing, DynamicPrice) or not pricing.coingecko_id:
            return None
        data = await self._get_json(
            "coingecko",
            self._base_urls["coingecko"],
            params={"ids": pricing.coingecko_id, "vs_currencies": "usd"},
        )
        return _to_price(data.get(pricing.coingecko_id, {}).get("usd"))

    async def _fetch_dexscreener(self, token: KnownToken) -> Decimal | None:
        data = await self._get_json("dexscreener", f"{self._base_urls['dexscreener']}/{token.address}")
        pairs = data.get("pairs") or []
        # Prefer pairs where the token is the base side; priceUsd prices the base token
        own = [
            p for p in pairs
            if str(p.get("baseToken", {}).get("address", "")).lower() == token.address
        ]
        candidates = own or pairs
        candidates = sorted(
            candidates,
            key=lambda p: _to_price((p.get("liquidity") or {}).get("usd")) or Decimal("0"),
            reverse=True,
        )
        for pair in candidates:
            price = _to_price(pair.get("priceUsd"))
            if price is not None:
                return price
        return None

    async def _fetch_binance(self, token: KnownToken) -> Decimal | None:
        pricing = token.pricing
        if not isinstance(pricing, DynamicPrice) or not pricing.ticker_symbol:
            return None
        data = await self._get_json(
            "binance", self._base_urls["binance"], params={"symbol": pricing.ticker_symbol}
        )
        return _to_price(data.get("price"))
