"""
Unit tests for main.py wiring.

Tests cover the shutdown path when the detector cannot start: resources
opened before the failure (HTTP session, RPC pool, background loops) are
still released and the process exits with status 1.

Mock strategy: every component class is patched at its defining module
(main imports them inside ``_run``); config validation and loading are
patched on ``main``.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import main


@pytest.fixture
def app_config():
    cfg = MagicMock()
    cfg.get_chain_id.return_value = 56
    cfg.get_rpc_urls.return_value = ["https://rpc.example"]
    cfg.get_factory_address.return_value = "0xca143ce32fe78f1f7019d7d551a6402fc5350c73"
    cfg.get_ws_url.return_value = ""
    cfg.get_app_config.return_value = {}
    return cfg


@pytest.fixture
def components():
    health_tasks = []

    def _start_health_checks():
        task = asyncio.create_task(asyncio.sleep(3600), name="rpc_health")
        health_tasks.append(task)
        return task

    rpc_pool = MagicMock()
    rpc_pool.initialize = AsyncMock()
    rpc_pool.current_url = "https://rpc.example"
    rpc_pool.start_health_checks = MagicMock(side_effect=_start_health_checks)
    rpc_pool.close = AsyncMock()

    oracle = MagicMock()
    oracle.initialize = AsyncMock()
    oracle.run = AsyncMock()
    oracle.shutdown = AsyncMock()

    notifier = MagicMock()
    notifier.run = AsyncMock()
    notifier.close = AsyncMock()
    notifier.send_startup = AsyncMock()

    detector = MagicMock()
    detector.start = AsyncMock(side_effect=ConnectionError("initial block number failed"))
    detector.stop = AsyncMock()

    session = MagicMock()
    session.close = AsyncMock()

    explorer = MagicMock()
    explorer.close = AsyncMock()
    analyzer = MagicMock()
    analyzer.close = AsyncMock()

    with patch("core.rpc_pool.RpcEndpointPool", return_value=rpc_pool), \
         patch("core.price_oracle.PriceOracle", return_value=oracle), \
         patch("core.volume_analyzer.VolumeAnalyzer", return_value=analyzer), \
         patch("core.liquidity_classifier.LiquidityClassifier"), \
         patch("checks.token_info.TokenInfoService"), \
         patch("checks.explorer_client.ExplorerClient", return_value=explorer), \
         patch("checks.security_checks.SecurityChecks"), \
         patch("alerts.telegram_notifier.TelegramNotifier", return_value=notifier), \
         patch("core.pair_detector.PairEventDetector", return_value=detector), \
         patch("aiohttp.ClientSession", return_value=session):
        yield {
            "rpc_pool": rpc_pool,
            "oracle": oracle,
            "notifier": notifier,
            "detector": detector,
            "session": session,
            "explorer": explorer,
            "analyzer": analyzer,
            "health_tasks": health_tasks,
        }


# ---------------------------------------------------------------------------
# Startup failure
# ---------------------------------------------------------------------------


class TestDetectorStartFailure:
    async def test_resources_released_and_exit_code(self, app_config, components):
        loop = asyncio.get_running_loop()
        with patch("main.validate_all_configs"), \
             patch("main.get_config", return_value=app_config), \
             patch.object(loop, "add_signal_handler"):
            with pytest.raises(SystemExit) as excinfo:
                await main._run()

        assert excinfo.value.code == 1
        components["detector"].stop.assert_awaited_once()
        components["oracle"].shutdown.assert_awaited_once()
        components["notifier"].close.assert_awaited_once()
        components["explorer"].close.assert_awaited_once()
        components["analyzer"].close.assert_awaited_once()
        components["session"].close.assert_awaited_once()
        components["rpc_pool"].close.assert_awaited_once()
        assert all(task.done() for task in components["health_tasks"])
        components["notifier"].send_startup.assert_not_awaited()
