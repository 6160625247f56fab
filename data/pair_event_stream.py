"""
Factory PairCreated event decoding and push-mode subscription.

Push mode connects to a websocket RPC endpoint, issues
``eth_subscribe("logs", {address: factory, topics: [PairCreated]})`` and
forwards every decoded PairCreated log as a ``PairCandidate``. Dropped
connections are re-established with exponential backoff plus jitter;
once ``max_connection_attempts`` consecutive attempts fail the stream
ends with ``SubscriptionLostError`` and the detector falls back to
polling for good.

``decode_pair_created`` is shared with poll mode, which feeds it logs
returned by ``eth_getLogs``.

Usage:
    stream = PairEventStream(ws_url, factory_address, on_candidate=detector.submit)
    await stream.subscribe()          # raises SubscriptionRejectedError if unsupported
    task = asyncio.create_task(stream.run())
    ...
    await stream.close()
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
from eth_abi.abi import decode as abi_decode
from web3 import Web3

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import PAIR_CREATED_SIGNATURE
from shared.types import CandidateSource, PairCandidate

PAIR_CREATED_TOPIC = Web3.to_hex(Web3.keccak(text=PAIR_CREATED_SIGNATURE)).lower()

CandidateHandler = Callable[[PairCandidate], Awaitable[None]]


class SubscriptionRejectedError(Exception):
    """The endpoint refused (or never confirmed) the log subscription."""


class SubscriptionLostError(Exception):
    """Reconnect attempts were exhausted after the stream had been running."""


# ============================================================================
# LOG DECODING
# ============================================================================


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text, 16) if text.startswith("0x") else int(text)


def _topic_address(topic: Any) -> str:
    return "0x" + _to_bytes(topic)[-20:].hex()


def decode_pair_created(log: Any, source: CandidateSource) -> PairCandidate | None:
    """
    Decode a raw PairCreated log (websocket dict or web3 AttributeDict).

    Returns None for logs that are not PairCreated or cannot be decoded.
    """
    try:
        topics = log.get("topics") or []
        if len(topics) < 3:
            return None
        if "0x" + _to_bytes(topics[0]).hex() != PAIR_CREATED_TOPIC:
            return None

        pair, _index = abi_decode(["address", "uint256"], _to_bytes(log.get("data", b"")))

        tx_hash = log.get("transactionHash")
        return PairCandidate(
            pair_address=str(pair).lower(),
            token0=_topic_address(topics[1]),
            token1=_topic_address(topics[2]),
            source=source,
            discovery_block=_to_int(log.get("blockNumber")),
            discovery_tx_hash=("0x" + _to_bytes(tx_hash).hex()) if tx_hash is not None else None,
        )
    except Exception:
        return None


# ============================================================================
# PUSH-MODE STREAM
# ============================================================================


class PairEventStream:
    """Websocket ``eth_subscribe`` client for factory PairCreated logs."""

    def __init__(
        self,
        ws_url: str,
        factory_address: str,
        on_candidate: CandidateHandler,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._ws_url = ws_url
        self._factory_address = Web3.to_checksum_address(factory_address)
        self._on_candidate = on_candidate
        self._connect = connect

        ws_cfg = get_config().get_timing_config().get("websocket", {})
        self._max_attempts: int = ws_cfg.get("max_connection_attempts", 10)
        self._ping_interval: float = ws_cfg.get("ping_interval_seconds", 20)
        self._ping_timeout: float = ws_cfg.get("ping_timeout_seconds", 30)
        self._close_timeout: float = ws_cfg.get("close_timeout_seconds", 10)
        self._subscription_timeout: float = ws_cfg.get("subscription_response_timeout_seconds", 15.0)
        self._message_timeout: float = ws_cfg.get("message_receive_timeout_seconds", 60.0)
        self._base_delay: float = ws_cfg.get("reconnect_base_delay_seconds", 2)
        self._max_delay: float = ws_cfg.get("reconnect_max_delay_seconds", 60)
        self._jitter_max: float = ws_cfg.get("jitter_max_seconds", 1.0)

        self._ws: Any = None
        self._subscription_id: str | None = None
        self._running: bool = False
        self.events_received: int = 0

        self._logger = setup_module_logger(
            "pair_event_stream", "pair_event_stream.log", module_folder="Event_Stream_Logs"
        )

    @property
    def subscription_id(self) -> str | None:
        return self._subscription_id

    def build_subscription_params(self) -> dict[str, Any]:
        """eth_subscribe JSON-RPC payload for the factory's PairCreated logs."""
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": [
                "logs",
                {"address": self._factory_address, "topics": [PAIR_CREATED_TOPIC]},
            ],
        }

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    async def subscribe(self) -> str:
        """
        Connect and confirm the subscription. Returns the subscription id.

        Raises ``SubscriptionRejectedError`` on connection failure, an
        error response, or no confirmation within the timeout.
        """
        self._logger.info("[WEBSOCKET] Connecting to %s...", self._ws_url)
        try:
            ws = await self._connect(
                self._ws_url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
                close_timeout=self._close_timeout,
                max_size=10 * 1024 * 1024,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise SubscriptionRejectedError(f"connect failed: {exc}") from exc

        try:
            await ws.send(json.dumps(self.build_subscription_params()))
            raw = await asyncio.wait_for(ws.recv(), timeout=self._subscription_timeout)
            response = json.loads(raw)
        except asyncio.CancelledError:
            await self._safe_close(ws)
            raise
        except (asyncio.TimeoutError, TimeoutError) as exc:
            await self._safe_close(ws)
            raise SubscriptionRejectedError("subscription response timed out") from exc
        except Exception as exc:
            await self._safe_close(ws)
            raise SubscriptionRejectedError(f"subscription failed: {exc}") from exc

        if not isinstance(response, dict) or "error" in response or not response.get("result"):
            await self._safe_close(ws)
            raise SubscriptionRejectedError(f"subscription rejected: {response.get('error', response)}")

        self._ws = ws
        self._subscription_id = str(response["result"])
        self._logger.info("[WEBSOCKET] Subscribed. Subscription ID: %s", self._subscription_id)
        return self._subscription_id

    # ------------------------------------------------------------------
    # Message loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Receive notifications until ``close``. Reconnects on drops;
        raises ``SubscriptionLostError`` once reconnects are exhausted.
        """
        self._running = True
        retry_count = 0
        try:
            while self._running:
                if self._ws is None:
                    try:
                        await self.subscribe()
                        retry_count = 0
                    except SubscriptionRejectedError as exc:
                        retry_count += 1
                        if retry_count >= self._max_attempts:
                            self._logger.critical(
                                "[WEBSOCKET] Exhausted %d connection attempts: %s",
                                self._max_attempts,
                                exc,
                            )
                            raise SubscriptionLostError(str(exc)) from exc
                        delay = min(
                            self._base_delay * (2**retry_count) + random.uniform(0, self._jitter_max),
                            self._max_delay,
                        )
                        self._logger.warning(
                            "[WEBSOCKET] %s. Retry %d/%d in %.1fs",
                            exc,
                            retry_count,
                            self._max_attempts,
                            delay,
                        )
                        await asyncio.sleep(delay)
                        continue

                try:
                    raw = await asyncio.wait_for(self._ws.recv(), timeout=self._message_timeout)
                except (asyncio.TimeoutError, TimeoutError):
                    if not await self._connection_alive():
                        self._logger.warning("[WEBSOCKET] Ping failed, reconnecting...")
                        await self._drop_connection()
                    continue
                except websockets.exceptions.ConnectionClosed as exc:
                    self._logger.warning("[WEBSOCKET] Connection closed: %s", exc)
                    await self._drop_connection()
                    continue

                await self.handle_message(raw)
        finally:
            self._running = False

    async def handle_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._logger.warning("[WEBSOCKET] Invalid JSON message: %s", exc)
            return

        # eth_subscribe notifications have method "eth_subscription"
        if not isinstance(message, dict) or message.get("method") != "eth_subscription":
            return
        params = message.get("params")
        if not isinstance(params, dict):
            return
        log = params.get("result")
        if not log:
            return

        candidate = decode_pair_created(log, CandidateSource.PUSH)
        if candidate is None:
            self._logger.debug("[WEBSOCKET] Ignored non-PairCreated log")
            return

        self.events_received += 1
        try:
            await self._on_candidate(candidate)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("Candidate handler failed for %s: %s", candidate.pair_address, exc)

    async def _connection_alive(self) -> bool:
        try:
            pong_waiter = await self._ws.ping()
            await asyncio.wait_for(pong_waiter, timeout=self._ping_timeout)
            return True
        except asyncio.CancelledError:
            raise
        except Exception:
            return False

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def _drop_connection(self) -> None:
        ws, self._ws = self._ws, None
        self._subscription_id = None
        if ws is not None:
            await self._safe_close(ws)

    async def _safe_close(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as exc:
            self._logger.debug("[WEBSOCKET] Close failed: %s", exc)

    async def close(self) -> None:
        """Cancel the subscription and close the connection."""
        self._running = False
        if self._ws is not None and self._subscription_id is not None:
            try:
                await self._ws.send(
                    json.dumps(
                        {
                            "jsonrpc": "2.0",
                            "id": 2,
                            "method": "eth_unsubscribe",
                            "params": [self._subscription_id],
                        }
                    )
                )
            except Exception as exc:
                self._logger.debug("[WEBSOCKET] Unsubscribe failed: %s", exc)
        await self._drop_connection()
        self._logger.info("[WEBSOCKET] Stream closed after %d event(s)", self.events_received)
