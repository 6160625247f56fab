"""
ERC-20 metadata reader with per-field defaults.

Each field is read independently through the RPC pool under its own
timeout; a failed read falls back to its default rather than failing
the whole lookup.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import DEFAULT_TOKEN_DECIMALS
from shared.types import TokenInfo

if TYPE_CHECKING:
    from core.rpc_pool import RpcEndpointPool

_DEFAULTS: dict[str, Any] = {
    "name": "Unknown",
    "symbol": "???",
    "decimals": DEFAULT_TOKEN_DECIMALS,
    "totalSupply": 0,
}


class TokenInfoService:
    def __init__(self, rpc_pool: RpcEndpointPool) -> None:
        self._rpc_pool = rpc_pool
        cfg = get_config()
        self._abi = cfg.get_abi("erc20")
        self._timeout: float = (
            cfg.get_timing_config().get("collaborators", {}).get("token_info_timeout_seconds", 5)
        )
        self._logger = setup_module_logger("token_info", "token_info.log", module_folder="Checks_Logs")

    async def get_token_info(self, address: str) -> TokenInfo:
        name, symbol, decimals, total_supply = await asyncio.gather(
            *(self._read(address, fn) for fn in ("name", "symbol", "decimals", "totalSupply"))
        )
        return TokenInfo(
            address=address.lower(),
            name=str(name),
            symbol=str(symbol),
            decimals=int(decimals),
            total_supply=int(total_supply),
        )

    async def _read(self, address: str, fn_name: str) -> Any:
        try:
            return await asyncio.wait_for(
                self._rpc_pool.call_function(address, self._abi, fn_name), timeout=self._timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.debug("%s() failed for %s: %s", fn_name, address, exc)
            return _DEFAULTS[fn_name]
