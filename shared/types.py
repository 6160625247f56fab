"""
Shared data types for DEX Pair Monitor.

Centralized dataclasses and enums used across all modules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Union

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LiquidityTier(Enum):
    # Ascending priority
    BELOW_THRESHOLD = "below-threshold"
    EARLY_SIGNAL = "early-signal"
    HIGH_LIQUIDITY = "high-liquidity"
    MEGA = "mega"


class ClassificationReason(Enum):
    NO_KNOWN_TOKEN = "no_known_token"
    NO_PRICE_DATA = "no_price_data"


class VolumeSource(Enum):
    INDEXER = "indexer"  # graph-indexer (subgraph) query
    AGGREGATOR = "aggregator"  # DEX-aggregator pair lookup
    NONE = "none"  # both sources failed


class DetectionMode(Enum):
    PUSH = "push"  # eth_subscribe log stream (+ poll as defense-in-depth)
    POLL = "poll"  # block-range polling only, one-way fallback


class CandidateSource(Enum):
    PUSH = "push"
    POLL = "poll"
    BACKFILL = "backfill"


class RateGatePolicy(Enum):
    SKIP = "skip"  # too-soon call fails immediately
    WAIT = "wait"  # too-soon call sleeps until eligible


class PriceSource(Enum):
    FIXED = "fixed"
    CACHE = "cache"
    PROVIDER = "provider"
    STALE = "stale"
    SENTINEL = "sentinel"


# ---------------------------------------------------------------------------
# RPC Endpoint Pool Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EndpointSnapshot:
    index: int
    url: str
    healthy: bool
    is_current: bool
    last_checked_at: float | None
    last_response_time_ms: float | None
    avg_response_time_ms: float | None
    consecutive_failures: int


@dataclass(frozen=True)
class RpcPoolStats:
    requests: int
    failures: int
    failovers: int
    proactive_switches: int
    endpoints: list[EndpointSnapshot] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Known Base Token Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FixedPrice:
    """Pegged asset: price never fetched."""

    price_usd: Decimal


@dataclass(frozen=True)
class DynamicPrice:
    """Asset priced through the provider cascade."""

    coingecko_id: str
    ticker_symbol: str  # exchange ticker, e.g. BNBUSDT
    fallback_price_usd: Decimal | None = None


TokenPricing = Union[FixedPrice, DynamicPrice]


@dataclass(frozen=True)
class KnownToken:
    address: str  # lowercased registry key
    symbol: str
    decimals: int
    pricing: TokenPricing


@dataclass(frozen=True)
class CachedPrice:
    symbol: str
    price_usd: Decimal
    observed_at: float  # unix seconds


@dataclass(frozen=True)
class PriceQuote:
    price_usd: Decimal
    source: PriceSource


# ---------------------------------------------------------------------------
# Volume Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VolumeSample:
    success: bool
    volume_24h_usd: Decimal
    swap_count_15m: int
    swap_count_1h: int
    source: VolumeSource
    total_tx_count: int = 0
    avg_swap_size_usd: Decimal = Decimal("0")
    reason: str | None = None


# ---------------------------------------------------------------------------
# Classification Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TierThresholds:
    mega_min_usd: Decimal
    channel_a_min_usd: Decimal
    channel_b_min_usd: Decimal
    early_min_usd: Decimal
    early_volume_min_usd: Decimal
    early_swaps_min: int
    high_liquidity_volume_min_usd: Decimal
    mega_volume_min_usd: Decimal


@dataclass(frozen=True)
class TierChecks:
    """Per-check outcomes for display; None means the check does not apply."""

    liquidity: bool
    volume: bool | None = None
    swaps: bool | None = None
    channel_b_liquidity: bool | None = None


@dataclass(frozen=True)
class PairReserves:
    token0: str
    token1: str
    reserve0: int
    reserve1: int


@dataclass(frozen=True)
class PairClassification:
    pair_address: str
    success: bool
    tier: LiquidityTier
    checks: TierChecks
    liquidity_usd: Decimal
    alert_channel_a: bool
    alert_channel_b: bool
    reserves: PairReserves | None = None
    base_token: KnownToken | None = None
    token0_usd: Decimal | None = None
    token1_usd: Decimal | None = None
    volume: VolumeSample | None = None
    reason: ClassificationReason | None = None

    @property
    def activates_any_channel(self) -> bool:
        return self.alert_channel_a or self.alert_channel_b


# ---------------------------------------------------------------------------
# Detector Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PairCandidate:
    pair_address: str
    source: CandidateSource
    token0: str | None = None  # unknown for backfill candidates
    token1: str | None = None
    discovery_block: int | None = None
    discovery_tx_hash: str | None = None


@dataclass
class DetectorStats:
    total: int = 0
    duplicates: int = 0
    filtered: int = 0
    early_signal: int = 0
    high_liquidity: int = 0
    mega: int = 0
    channel_a_sent: int = 0
    channel_b_sent: int = 0
    errors: int = 0
    rpc_failovers: int = 0


# ---------------------------------------------------------------------------
# Collaborator Types (token metadata, security checks, alerts)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenInfo:
    address: str
    name: str
    symbol: str
    decimals: int
    total_supply: int


@dataclass(frozen=True)
class SecurityReport:
    verified: bool
    renounced: bool
    lp_locked: bool
    warnings: tuple[str, ...] = ()

    @property
    def score(self) -> int:
        return int(self.verified) + int(self.renounced) + int(self.lp_locked)


@dataclass(frozen=True)
class PairAlert:
    candidate: PairCandidate
    classification: PairClassification
    token_info: TokenInfo
    security: SecurityReport
