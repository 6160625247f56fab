"""
DEX Pair Monitor: main entrypoint.

Single-process asyncio runner that wires the resilience layer and the
pair detector together:
    1. RpcEndpointPool   -- ordered RPC endpoints, failover, health checks
    2. PriceOracle       -- known-token USD prices, cache + provider cascade
    3. PairEventDetector -- push/poll/backfill discovery, classify, notify
    4. TelegramNotifier  -- instant channel A alerts, aggregated channel B digest

Shutdown stops the detector first (it flushes pending notifications),
then releases the oracle, HTTP clients and the RPC pool.

Usage:
    python main.py
"""

from __future__ import annotations

import asyncio
import signal
import sys

from dotenv import load_dotenv

from bot_logging.logger_manager import create_module_log_directories, setup_module_logger
from config.loader import get_config, get_env_var
from config.validate import ConfigValidationError, validate_all_configs

# ---------------------------------------------------------------------------
# Module logger
# ---------------------------------------------------------------------------
create_module_log_directories()
_logger = setup_module_logger("main", "main.log", module_folder="Main_Logs")


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _log_banner(chain_id: int, rpc_urls: list[str], factory: str, ws_url: str, redis_url: str) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("DEX Pair Monitor starting")
    _logger.info("=" * 60)
    _logger.info("  chain_id        : %d", chain_id)
    _logger.info("  rpc endpoints   : %d", len(rpc_urls))
    for url in rpc_urls:
        _logger.info("    - %s...%s", url[:25], url[-6:] if len(url) > 31 else "")
    _logger.info("  factory         : %s", factory)
    _logger.info("  push stream     : %s", "enabled" if ws_url else "(not set, poll only)")
    _logger.info("  price cache     : %s", "redis" if redis_url else "in-process")
    _logger.info("=" * 60)


# ---------------------------------------------------------------------------
# Task done callback -- detect unhandled exceptions
# ---------------------------------------------------------------------------


def _task_done_callback(
    task: asyncio.Task[None],
    shutdown_event: asyncio.Event,
) -> None:
    """Called when a long-running task finishes (normally or with error)."""
    try:
        exc = task.exception()
    except asyncio.CancelledError:
        _logger.info("Task %s cancelled", task.get_name())
        return

    if exc is not None:
        _logger.critical(
            "Task %s failed with unhandled exception: %s",
            task.get_name(),
            exc,
            exc_info=exc,
        )
        shutdown_event.set()


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _run() -> None:
    """Wire all components and run until a shutdown signal."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        sys.exit(1)

    cfg = get_config()
    chain_id = cfg.get_chain_id()
    rpc_urls = cfg.get_rpc_urls(chain_id)
    factory = cfg.get_factory_address(chain_id)
    ws_url = cfg.get_ws_url(chain_id)
    redis_url: str = get_env_var("REDIS_URL", "", str)
    security_enabled: bool = get_env_var(
        "SECURITY_CHECKS", cfg.get_app_config().get("features", {}).get("security_checks", True), bool
    )

    _log_banner(chain_id, rpc_urls, factory, ws_url, redis_url)

    # ------------------------------------------------------------------
    # 2. RPC endpoint pool (shared across all components)
    # ------------------------------------------------------------------
    from core.rpc_pool import RpcEndpointPool, RpcPoolInitError

    rpc_pool = RpcEndpointPool(rpc_urls, chain_id=chain_id)
    try:
        await rpc_pool.initialize()
    except RpcPoolInitError as exc:
        _logger.critical("Cannot connect to any RPC endpoint: %s", exc)
        sys.exit(1)
    _logger.info("Connected to chain %d via %s", chain_id, rpc_pool.current_url[:40])

    # ------------------------------------------------------------------
    # 3. Initialize shared instances (dependency order)
    # ------------------------------------------------------------------
    import aiohttp

    from alerts.telegram_notifier import TelegramNotifier
    from checks.explorer_client import ExplorerClient
    from checks.security_checks import SecurityChecks
    from checks.token_info import TokenInfoService
    from core.liquidity_classifier import LiquidityClassifier
    from core.pair_detector import PairEventDetector
    from core.price_oracle import PriceOracle
    from core.volume_analyzer import VolumeAnalyzer

    http_session = aiohttp.ClientSession()

    price_oracle = PriceOracle(chain_id=chain_id, session=http_session, redis_url=redis_url)
    await price_oracle.initialize()

    volume_analyzer = VolumeAnalyzer(chain_id=chain_id, session=http_session)
    classifier = LiquidityClassifier(rpc_pool, price_oracle, volume_analyzer)
    token_info = TokenInfoService(rpc_pool)
    explorer = ExplorerClient(chain_id=chain_id, session=http_session)
    security_checks = SecurityChecks(rpc_pool, explorer) if security_enabled else None
    notifier = TelegramNotifier(chain_id=chain_id, session=http_session)

    detector = PairEventDetector(
        rpc_pool,
        classifier,
        notifier,
        token_info,
        security_checks,
        factory_address=factory,
        ws_url=ws_url,
        chain_id=chain_id,
    )

    # ------------------------------------------------------------------
    # 4. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 5. Launch background loops and the detector
    # ------------------------------------------------------------------
    task_health = rpc_pool.start_health_checks()
    task_prices = asyncio.create_task(price_oracle.run(), name="price_refresh")
    task_digest = asyncio.create_task(notifier.run(), name="public_digest")
    tasks = [task_health, task_prices, task_digest]

    for t in tasks:
        t.add_done_callback(lambda done_task: _task_done_callback(done_task, shutdown_event))

    # ------------------------------------------------------------------
    # 6. Start the detector, wait for shutdown signal, then stop in order
    # ------------------------------------------------------------------
    try:
        try:
            await detector.start()
        except Exception as exc:
            _logger.critical("Detector failed to start: %s", exc)
            sys.exit(1)
        _logger.info("All tasks launched: rpc_health, price_refresh, public_digest, detector")

        try:
            await notifier.send_startup(
                {
                    "Chain": chain_id,
                    "Factory": factory,
                    "Mode": detector.mode.value.upper(),
                    "RPC endpoints": len(rpc_urls),
                    "Price cache": "redis" if price_oracle.redis_available else "in-process",
                }
            )
        except Exception as exc:
            _logger.warning("Startup notification failed: %s", exc)

        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down, stopping detector")

        await detector.stop()

        price_oracle.stop()
        notifier.stop()
        rpc_pool.stop()
        for t in tasks:
            if not t.done():
                t.cancel()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for t, result in zip(tasks, results, strict=False):
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                _logger.error("Task %s exited with error: %s", t.get_name(), result)

        # Cleanup resources
        await price_oracle.shutdown()
        await notifier.close()
        await explorer.close()
        await volume_analyzer.close()
        await http_session.close()
        await rpc_pool.close()
        _logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
