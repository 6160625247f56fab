"""
Shared constants for DEX Pair Monitor.

Addresses, numeric constants, and default values used across all modules.
"""

from decimal import Decimal

# ---------------------------------------------------------------------------
# Numeric Constants
# ---------------------------------------------------------------------------

ZERO_ADDRESS = "0x" + "00" * 20
DEFAULT_TOKEN_DECIMALS = 18

# ---------------------------------------------------------------------------
# Factory event signatures
# ---------------------------------------------------------------------------

PAIR_CREATED_SIGNATURE = "PairCreated(address,address,address,uint256)"

# ---------------------------------------------------------------------------
# RPC Endpoint Pool defaults
# ---------------------------------------------------------------------------

DEFAULT_RPC_MAX_RESPONSE_TIME_MS = 5000
DEFAULT_RPC_CONNECT_TIMEOUT_SECONDS = 10
DEFAULT_RPC_PROBE_TIMEOUT_SECONDS = 5
DEFAULT_RPC_HEALTH_CHECK_INTERVAL_SECONDS = 60
DEFAULT_RPC_SLOW_THRESHOLD_MS = 3000
DEFAULT_RPC_FAILURE_THRESHOLD = 3  # unhealthy once consecutive failures exceed this
DEFAULT_RPC_PROBE_FAILURE_THRESHOLD = 2
DEFAULT_RPC_LATENCY_WINDOW = 10

# ---------------------------------------------------------------------------
# Price Oracle defaults
# ---------------------------------------------------------------------------

DEFAULT_PRICE_CACHE_TTL_SECONDS = 60
DEFAULT_PRICE_REFRESH_INTERVAL_SECONDS = 300
DEFAULT_SENTINEL_PRICE_USD = Decimal("600")
DEFAULT_PRICE_HTTP_TIMEOUT_SECONDS = 5
PRICE_CACHE_KEY_PREFIX = "price:"

# ---------------------------------------------------------------------------
# Volume Analyzer defaults
# ---------------------------------------------------------------------------

DEFAULT_VOLUME_RATE_LIMIT_SECONDS = 2.0
DEFAULT_VOLUME_HTTP_TIMEOUT_SECONDS = 10
RECENT_SWAPS_WINDOW_SECONDS = 900  # 15 minutes
HOURLY_WINDOW_SECONDS = 3600
RECENT_SWAPS_QUERY_LIMIT = 100

# ---------------------------------------------------------------------------
# Tier thresholds (USD)
# ---------------------------------------------------------------------------

DEFAULT_MEGA_MIN_USD = Decimal("50000")
DEFAULT_CHANNEL_A_MIN_USD = Decimal("10000")
DEFAULT_CHANNEL_B_MIN_USD = Decimal("35000")
DEFAULT_EARLY_MIN_USD = Decimal("1000")
DEFAULT_EARLY_VOLUME_MIN_USD = Decimal("5000")
DEFAULT_EARLY_SWAPS_MIN = 10
DEFAULT_HIGH_LIQUIDITY_VOLUME_MIN_USD = Decimal("20000")
DEFAULT_MEGA_VOLUME_MIN_USD = Decimal("50000")

# ---------------------------------------------------------------------------
# Pair Event Detector defaults
# ---------------------------------------------------------------------------

DEFAULT_EVENT_POLL_INTERVAL_SECONDS = 30
DEFAULT_BACKFILL_INTERVAL_SECONDS = 60
DEFAULT_STATS_INTERVAL_SECONDS = 3600
DEFAULT_MAX_BLOCK_RANGE = 2000

# ---------------------------------------------------------------------------
# Retry / backoff defaults
# ---------------------------------------------------------------------------

DEFAULT_BACKOFF_MAX_RETRIES = 5
DEFAULT_BACKOFF_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_BACKOFF_MAX_DELAY_SECONDS = 60.0
DEFAULT_BACKOFF_FACTOR = 2

# ---------------------------------------------------------------------------
# Notification defaults
# ---------------------------------------------------------------------------

TELEGRAM_API_BASE_URL = "https://api.telegram.org"
DEFAULT_PUBLIC_FLUSH_INTERVAL_SECONDS = 900
PUBLIC_DIGEST_MAX_PAIRS = 10

# ---------------------------------------------------------------------------
# Security checks
# ---------------------------------------------------------------------------

# Known LP locker contracts (PinkLock, Unicrypt, Mudra, DxLock, Team Finance)
LP_LOCKER_ADDRESSES = (
    "0x407993575c91ce7643a4d4ccacc9a98c36ee1bbe",
    "0xc765bddb93b0d1c1a88282ba0fa6b2d00e3e0c83",
    "0x71b5759d73262fbb223956913ecf4ecc51057641",
    "0xe2fe530c047f2d85298b07d9333c05737f1435fb",
    "0x3f4d6bf08cb7a003488ef082102c2e6418a4551e",
    "0xeaed594b5926a7d5fbbc61985390baaf936a6b8d",
)
