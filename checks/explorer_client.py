"""
Etherscan-family block-explorer client (V2 multichain API).

Thin request/response wrapper: every call goes through ``BackoffRetry``
and a ``status == "0"`` response raises ``ExplorerClientError``.

Usage:
    explorer = ExplorerClient(chain_id=56)
    verified = await explorer.is_verified("0xabc...")
    await explorer.close()
"""

from __future__ import annotations

import json
from typing import Any

import aiohttp

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config, get_env_var
from core.retry import BackoffRetry


class ExplorerClientError(Exception):
    """Explorer API returned an error status."""


class ExplorerClient:
    def __init__(
        self,
        chain_id: int | None = None,
        api_key: str | None = None,
        api_url: str | None = None,
        session: aiohttp.ClientSession | None = None,
        retry: BackoffRetry | None = None,
    ) -> None:
        cfg = get_config()
        self._chain_id: int = chain_id if chain_id is not None else cfg.get_chain_id()
        explorer_cfg = cfg.get_chain_config(self._chain_id).get("explorer", {})

        self._api_key: str = api_key if api_key is not None else get_env_var("ETHERSCAN_API_KEY", "", str)
        self._api_url: str = api_url or get_env_var(
            "ETHERSCAN_API_URL", explorer_cfg.get("api_url", "https://api.etherscan.io/v2/api"), str
        )
        self._timeout: float = (
            cfg.get_timing_config().get("collaborators", {}).get("explorer_timeout_seconds", 10)
        )
        self._retry = retry or BackoffRetry(max_retries=3)
        self._session = session
        self._owns_session = session is None

        self._logger = setup_module_logger("explorer_client", "explorer_client.log", module_folder="Checks_Logs")

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_source_code(self, address: str) -> dict[str, Any]:
        result = await self._request("getsourcecode", {"address": address})
        if isinstance(result, list) and result:
            return result[0]
        return {}

    async def get_abi(self, address: str) -> list[Any]:
        result = await self._request("getabi", {"address": address})
        return json.loads(result) if isinstance(result, str) else result

    async def get_contract_creation(self, address: str) -> dict[str, Any] | None:
        result = await self._request("getcontractcreation", {"contractaddresses": address})
        if isinstance(result, list) and result:
            return result[0]
        return None

    async def is_verified(self, address: str) -> bool:
        source = await self.get_source_code(address)
        return bool(source.get("SourceCode"))

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(self, action: str, extra: dict[str, str]) -> Any:
        params = {
            "chainid": str(self._chain_id),
            "module": "contract",
            "action": action,
            "apikey": self._api_key,
            **extra,
        }
        return await self._retry.execute(lambda: self._get(params), f"explorer {action}")

    async def _get(self, params: dict[str, str]) -> Any:
        session = self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        async with session.get(self._api_url, params=params, timeout=timeout) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)
        if str(data.get("status")) == "0":
            raise ExplorerClientError(f"{params['action']}: {data.get('result') or data.get('message')}")
        return data.get("result")
