"""
Tiered liquidity classifier.

Values a pair in USD from its reserves and the known-base-token prices,
then assigns the highest matching tier:

    mega            liquidity >= mega_min            -> channels A + B
    high-liquidity  liquidity >= channel_a_min       -> channel A, B if >= channel_b_min
    early-signal    liquidity >= early_min           -> channel A only if volume AND swaps pass
    below-threshold otherwise                        -> no channel

One known side is doubled as a balanced-pool estimate; two known sides
are summed. Unvaluable pairs yield a failed classification with a
reason code rather than an exception. RPC exhaustion propagates.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config, get_env_var
from shared.constants import (
    DEFAULT_CHANNEL_A_MIN_USD,
    DEFAULT_CHANNEL_B_MIN_USD,
    DEFAULT_EARLY_MIN_USD,
    DEFAULT_EARLY_SWAPS_MIN,
    DEFAULT_EARLY_VOLUME_MIN_USD,
    DEFAULT_HIGH_LIQUIDITY_VOLUME_MIN_USD,
    DEFAULT_MEGA_MIN_USD,
    DEFAULT_MEGA_VOLUME_MIN_USD,
)
from shared.types import (
    ClassificationReason,
    KnownToken,
    LiquidityTier,
    PairClassification,
    PairReserves,
    TierChecks,
    TierThresholds,
    VolumeSample,
)

if TYPE_CHECKING:
    from core.price_oracle import PriceOracle
    from core.rpc_pool import RpcEndpointPool
    from core.volume_analyzer import VolumeAnalyzer

_ZERO = Decimal("0")


def load_tier_thresholds() -> TierThresholds:
    """Tier thresholds from tiers.json with env overrides."""
    tiers = get_config().get_tiers_config()
    mega = tiers.get("mega", {})
    high = tiers.get("high_liquidity", {})
    early = tiers.get("early_signal", {})

    def _usd(env: str, value: object, default: Decimal) -> Decimal:
        return get_env_var(env, Decimal(str(value)) if value is not None else default, Decimal)

    return TierThresholds(
        mega_min_usd=_usd("LIQUIDITY_MEGA_MIN", mega.get("min_liquidity_usd"), DEFAULT_MEGA_MIN_USD),
        channel_a_min_usd=_usd(
            "MIN_LIQUIDITY_VIP", high.get("channel_a_min_liquidity_usd"), DEFAULT_CHANNEL_A_MIN_USD
        ),
        channel_b_min_usd=_usd(
            "MIN_LIQUIDITY_PUBLIC", high.get("channel_b_min_liquidity_usd"), DEFAULT_CHANNEL_B_MIN_USD
        ),
        early_min_usd=_usd(
            "LIQUIDITY_EARLY_GEMS_MIN", early.get("min_liquidity_usd"), DEFAULT_EARLY_MIN_USD
        ),
        early_volume_min_usd=_usd(
            "VOLUME_EARLY_GEMS_MIN", early.get("min_volume_usd"), DEFAULT_EARLY_VOLUME_MIN_USD
        ),
        early_swaps_min=get_env_var(
            "SWAPS_EARLY_GEMS_MIN", int(early.get("min_swaps_15m", DEFAULT_EARLY_SWAPS_MIN)), int
        ),
        high_liquidity_volume_min_usd=_usd(
            "VOLUME_HIGH_LIQ_MIN", high.get("min_volume_usd"), DEFAULT_HIGH_LIQUIDITY_VOLUME_MIN_USD
        ),
        mega_volume_min_usd=_usd("VOLUME_MEGA_MIN", mega.get("min_volume_usd"), DEFAULT_MEGA_VOLUME_MIN_USD),
    )


class LiquidityClassifier:
    """Combines reserves, oracle prices and volume into a tier decision."""

    def __init__(
        self,
        rpc_pool: RpcEndpointPool,
        price_oracle: PriceOracle,
        volume_analyzer: VolumeAnalyzer,
        thresholds: TierThresholds | None = None,
    ) -> None:
        self._rpc_pool = rpc_pool
        self._oracle = price_oracle
        self._volume = volume_analyzer
        self._thresholds = thresholds or load_tier_thresholds()
        self._pair_abi = get_config().get_abi("uniswap_v2_pair")

        self._logger = setup_module_logger(
            "liquidity_classifier",
            "liquidity_classifier.log",
            module_folder="Liquidity_Classifier_Logs",
        )

    @property
    def thresholds(self) -> TierThresholds:
        return self._thresholds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def analyze_pair(
        self,
        pair_address: str,
        volume: VolumeSample | None = None,
    ) -> PairClassification:
        """
        Classify a pair. ``volume`` may be precomputed by the caller;
        otherwise it is fetched once the pair proves valuable.
        """
        pair = pair_address.lower()
        reserves = await self.fetch_reserves(pair)

        known0 = self._oracle.get_known_token(reserves.token0)
        known1 = self._oracle.get_known_token(reserves.token1)
        if known0 is None and known1 is None:
            self._logger.info("%s has no known base token, cannot value", pair)
            return self._failure(pair, ClassificationReason.NO_KNOWN_TOKEN, reserves, volume)

        usd0 = await self._side_value(known0, reserves.reserve0)
        usd1 = await self._side_value(known1, reserves.reserve1)
        liquidity = self.combine_sides(usd0, usd1)
        base_token = known0 or known1

        if liquidity <= _ZERO:
            self._logger.info("%s valued at $0, no price data", pair)
            return self._failure(
                pair, ClassificationReason.NO_PRICE_DATA, reserves, volume, base_token=base_token
            )

        if volume is None:
            volume = await self._volume.analyze_pair(pair)

        tier, checks, channel_a, channel_b = self.determine_tier(liquidity, volume)
        self._logger.info(
            "%s liquidity=$%.2f tier=%s A=%s B=%s",
            pair,
            liquidity,
            tier.value,
            channel_a,
            channel_b,
        )
        return PairClassification(
            pair_address=pair,
            success=True,
            tier=tier,
            checks=checks,
            liquidity_usd=liquidity,
            alert_channel_a=channel_a,
            alert_channel_b=channel_b,
            reserves=reserves,
            base_token=base_token,
            token0_usd=usd0,
            token1_usd=usd1,
            volume=volume,
        )

    async def fetch_reserves(self, pair_address: str) -> PairReserves:
        """token0, token1 and reserves via the RPC pool, fetched concurrently."""
        token0, token1, raw = await asyncio.gather(
            self._rpc_pool.call_function(pair_address, self._pair_abi, "token0"),
            self._rpc_pool.call_function(pair_address, self._pair_abi, "token1"),
            self._rpc_pool.call_function(pair_address, self._pair_abi, "getReserves"),
        )
        return PairReserves(
            token0=str(token0).lower(),
            token1=str(token1).lower(),
            reserve0=int(raw[0]),
            reserve1=int(raw[1]),
        )

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    async def _side_value(self, token: KnownToken | None, reserve: int) -> Decimal | None:
        if token is None:
            return None
        price = await self._oracle.get_price_usd(token.address)
        if price is None:
            return None
        return Decimal(reserve).scaleb(-token.decimals) * price

    @staticmethod
    def combine_sides(usd0: Decimal | None, usd1: Decimal | None) -> Decimal:
        """Sum two known sides; double a single known side; zero when none."""
        if usd0 is not None and usd1 is not None:
            return usd0 + usd1
        if usd0 is not None:
            return usd0 * 2
        if usd1 is not None:
            return usd1 * 2
        return _ZERO

    # ------------------------------------------------------------------
    # Tier assignment
    # ------------------------------------------------------------------

    def determine_tier(
        self,
        liquidity: Decimal,
        volume: VolumeSample | None,
    ) -> tuple[LiquidityTier, TierChecks, bool, bool]:
        """Highest matching tier first. Returns (tier, checks, channel_a, channel_b)."""
        t = self._thresholds
        has_data = volume is not None and volume.success
        volume_usd = volume.volume_24h_usd if has_data else _ZERO
        swaps_15m = volume.swap_count_15m if has_data else 0

        if liquidity >= t.mega_min_usd:
            checks = TierChecks(liquidity=True, volume=has_data and volume_usd >= t.mega_volume_min_usd)
            return LiquidityTier.MEGA, checks, True, True

        if liquidity >= t.channel_a_min_usd:
            channel_b = liquidity >= t.channel_b_min_usd
            checks = TierChecks(
                liquidity=True,
                volume=has_data and volume_usd >= t.high_liquidity_volume_min_usd,
                channel_b_liquidity=channel_b,
            )
            return LiquidityTier.HIGH_LIQUIDITY, checks, True, channel_b

        if liquidity >= t.early_min_usd:
            volume_ok = has_data and volume_usd >= t.early_volume_min_usd
            swaps_ok = has_data and swaps_15m >= t.early_swaps_min
            checks = TierChecks(liquidity=True, volume=volume_ok, swaps=swaps_ok)
            return LiquidityTier.EARLY_SIGNAL, checks, volume_ok and swaps_ok, False

        return LiquidityTier.BELOW_THRESHOLD, TierChecks(liquidity=False), False, False

    def _failure(
        self,
        pair: str,
        reason: ClassificationReason,
        reserves: PairReserves,
        volume: VolumeSample | None,
        base_token: KnownToken | None = None,
    ) -> PairClassification:
        return PairClassification(
            pair_address=pair,
            success=False,
            tier=LiquidityTier.BELOW_THRESHOLD,
            checks=TierChecks(liquidity=False),
            liquidity_usd=_ZERO,
            alert_channel_a=False,
            alert_channel_b=False,
            reserves=reserves,
            base_token=base_token,
            volume=volume,
            reason=reason,
        )
