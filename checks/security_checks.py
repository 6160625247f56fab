"""
Lightweight token safety checks.

Three independent checks, each degrading to ``False`` with a warning
instead of raising:

    verified   -- explorer reports non-empty source code
    renounced  -- owner() (or getOwner()) is the zero address
    lp_locked  -- a known LP locker holds a non-zero LP balance
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from web3 import Web3

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import LP_LOCKER_ADDRESSES, ZERO_ADDRESS
from shared.types import SecurityReport

if TYPE_CHECKING:
    from checks.explorer_client import ExplorerClient
    from core.rpc_pool import RpcEndpointPool


class SecurityChecks:
    def __init__(self, rpc_pool: RpcEndpointPool, explorer: ExplorerClient | None = None) -> None:
        self._rpc_pool = rpc_pool
        self._explorer = explorer
        cfg = get_config()
        self._ownable_abi = cfg.get_abi("ownable")
        self._pair_abi = cfg.get_abi("uniswap_v2_pair")
        self._logger = setup_module_logger("security_checks", "security_checks.log", module_folder="Checks_Logs")

    async def perform_checks(self, token_address: str, pair_address: str) -> SecurityReport:
        (verified, w1), (renounced, w2), (locked, w3) = await asyncio.gather(
            self.check_verified(token_address),
            self.check_renounced(token_address),
            self.check_lp_locked(pair_address),
        )
        report = SecurityReport(
            verified=verified,
            renounced=renounced,
            lp_locked=locked,
            warnings=tuple(w for w in (w1, w2, w3) if w),
        )
        self._logger.info(
            "%s security score %d/3 (verified=%s renounced=%s lp_locked=%s)",
            token_address,
            report.score,
            verified,
            renounced,
            locked,
        )
        return report

    async def check_verified(self, token_address: str) -> tuple[bool, str | None]:
        if self._explorer is None or not self._explorer.configured:
            return False, "Verification unknown (no explorer API key)"
        try:
            if await self._explorer.is_verified(token_address):
                return True, None
            return False, "Contract not verified"
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning("Verification lookup failed for %s: %s", token_address, exc)
            return False, "Verification lookup failed"

    async def check_renounced(self, token_address: str) -> tuple[bool, str | None]:
        for fn_name in ("owner", "getOwner"):
            try:
                owner = await self._rpc_pool.call_function(token_address, self._ownable_abi, fn_name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.debug("%s() unavailable on %s: %s", fn_name, token_address, exc)
                continue
            if str(owner).lower() == ZERO_ADDRESS:
                return True, None
            return False, "Ownership not renounced"
        return False, "Could not determine owner"

    async def check_lp_locked(self, pair_address: str) -> tuple[bool, str | None]:
        for locker in LP_LOCKER_ADDRESSES:
            try:
                balance = await self._rpc_pool.call_function(
                    pair_address, self._pair_abi, "balanceOf", Web3.to_checksum_address(locker)
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.debug("LP balance lookup failed for locker %s: %s", locker, exc)
                continue
            if int(balance) > 0:
                return True, None
        return False, "LP not locked"
