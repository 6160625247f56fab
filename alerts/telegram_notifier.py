"""
Telegram notification collaborator.

Channel A (VIP) receives every qualifying pair instantly as a detailed
alert. Channel B (public) receives an aggregated digest: pairs are
queued and flushed every ``public_flush_interval_seconds`` and on
``flush()``. A failed digest send keeps the queue for the next flush.

Usage:
    notifier = TelegramNotifier()
    task = asyncio.create_task(notifier.run())
    await notifier.send_pair_alert(alert)
    await notifier.flush()
    await notifier.close()
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from alerts.formatting import (
    build_error_message,
    build_pair_alert,
    build_public_digest,
    build_startup_message,
    build_stats_message,
)
from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config, get_env_var
from core.retry import BackoffRetry
from shared.constants import (
    DEFAULT_PUBLIC_FLUSH_INTERVAL_SECONDS,
    PUBLIC_DIGEST_MAX_PAIRS,
    TELEGRAM_API_BASE_URL,
)
from shared.types import DetectorStats, PairAlert, RpcPoolStats


class TelegramNotifierError(Exception):
    """Telegram rejected a message."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


def normalize_public_chat_id(chat_id: str) -> str:
    """Bare channel usernames get an ``@`` prefix; numeric ids pass through."""
    chat_id = chat_id.strip()
    if not chat_id or chat_id.startswith("@") or chat_id.lstrip("-").isdigit():
        return chat_id
    return f"@{chat_id}"


class TelegramNotifier:
    """Two-channel Telegram notifier over the Bot HTTP API."""

    def __init__(
        self,
        bot_token: str | None = None,
        chat_id_a: str | None = None,
        chat_id_b: str | None = None,
        chain_id: int | None = None,
        session: aiohttp.ClientSession | None = None,
        retry: BackoffRetry | None = None,
    ) -> None:
        cfg = get_config()
        chain_id = chain_id if chain_id is not None else cfg.get_chain_id()
        chain_cfg = cfg.get_chain_config(chain_id)
        notifier_cfg = cfg.get_timing_config().get("notifier", {})
        features = cfg.get_app_config().get("features", {})

        self._bot_token: str = bot_token if bot_token is not None else get_env_var("TELEGRAM_BOT_TOKEN", "", str)
        if chat_id_a is None:
            chat_id_a = get_env_var("TELEGRAM_CHAT_ID_VIP", get_env_var("TELEGRAM_CHAT_ID", "", str), str)
        if chat_id_b is None:
            chat_id_b = get_env_var("TELEGRAM_CHAT_ID_PUBLIC", "", str)
        self._chat_a: str = chat_id_a
        self._chat_b: str = normalize_public_chat_id(chat_id_b)

        self._include_links: bool = get_env_var("INCLUDE_LINKS", features.get("include_links", True), bool)
        self._explorer_web_url: str = chain_cfg.get("explorer", {}).get("web_url", "")
        self._dexscreener_chain: str = chain_cfg.get("dexscreener_chain", "")
        self._flush_interval: float = notifier_cfg.get(
            "public_flush_interval_seconds", DEFAULT_PUBLIC_FLUSH_INTERVAL_SECONDS
        )
        self._timeout: float = notifier_cfg.get("request_timeout_seconds", 10)

        self._retry = retry or BackoffRetry(max_retries=3)
        self._session = session
        self._owns_session = session is None
        self._queue: list[PairAlert] = []
        self._flush_lock = asyncio.Lock()
        self._running: bool = False

        self._logger = setup_module_logger(
            "telegram_notifier", "telegram_notifier.log", module_folder="Notifier_Logs"
        )

    @property
    def channel_a_enabled(self) -> bool:
        return bool(self._chat_a)

    @property
    def channel_b_enabled(self) -> bool:
        return bool(self._chat_b)

    @property
    def pending(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Pair alerts
    # ------------------------------------------------------------------

    async def send_pair_alert(self, alert: PairAlert) -> tuple[bool, bool]:
        """
        Route one pair. Returns ``(sent_to_a, queued_for_b)``.

        Channel B is queued before channel A is sent, so a channel A send
        failure (which propagates) never drops the digest entry.
        """
        c = alert.classification
        sent_a = False
        queued_b = False
        if c.alert_channel_b and self.channel_b_enabled:
            self._queue.append(alert)
            queued_b = True
        if c.alert_channel_a and self.channel_a_enabled:
            text = build_pair_alert(
                alert,
                include_links=self._include_links,
                explorer_web_url=self._explorer_web_url,
                dexscreener_chain=self._dexscreener_chain,
            )
            await self._send_message(self._chat_a, text)
            sent_a = True
        return sent_a, queued_b

    async def flush(self) -> int:
        """Send the aggregated channel-B digest. Returns the number of pairs sent."""
        async with self._flush_lock:
            pending = list(self._queue)
            if not pending or not self.channel_b_enabled:
                return 0
            text = build_public_digest(pending, max_pairs=PUBLIC_DIGEST_MAX_PAIRS)
            try:
                await self._send_message(self._chat_b, text)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error("Digest send failed, keeping %d queued pair(s): %s", len(pending), exc)
                return 0
            del self._queue[: len(pending)]
            self._logger.info("Digest sent with %d pair(s)", len(pending))
            return len(pending)

    async def run(self) -> None:
        """Periodic digest loop, designed to be launched as an asyncio.Task."""
        self._running = True
        try:
            while self._running:
                await asyncio.sleep(self._flush_interval)
                await self.flush()
        except asyncio.CancelledError:
            self._logger.info("Digest loop cancelled")
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False

    # ------------------------------------------------------------------
    # Status messages (channel A)
    # ------------------------------------------------------------------

    async def send_startup(self, details: dict[str, Any]) -> None:
        await self._send_status(build_startup_message(details))

    async def send_error(self, context: str, error: BaseException | str) -> None:
        await self._send_status(build_error_message(context, error))

    async def send_statistics(
        self,
        stats: DetectorStats,
        rpc_stats: RpcPoolStats | None = None,
        uptime_seconds: float | None = None,
    ) -> None:
        await self._send_status(build_stats_message(stats, rpc_stats, uptime_seconds))

    async def send_shutdown(
        self,
        stats: DetectorStats,
        rpc_stats: RpcPoolStats | None = None,
        uptime_seconds: float | None = None,
    ) -> None:
        await self._send_status(
            build_stats_message(stats, rpc_stats, uptime_seconds, title="🔴 Pair monitor stopped")
        )

    async def _send_status(self, text: str) -> None:
        if not self.channel_a_enabled:
            return
        await self._send_message(self._chat_a, text)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _send_message(self, chat_id: str, text: str) -> None:
        await self._retry.execute(lambda: self._post_message(chat_id, text), f"telegram send to {chat_id}")

    async def _post_message(self, chat_id: str, text: str) -> None:
        session = self._ensure_session()
        url = f"{TELEGRAM_API_BASE_URL}/bot{self._bot_token}/sendMessage"
        body = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        async with session.post(url, json=body, timeout=timeout) as resp:
            data = await resp.json(content_type=None)
        if resp.status == 429:
            retry_after = float((data.get("parameters") or {}).get("retry_after", 1))
            self._logger.warning("Telegram rate limited, waiting %.0fs", retry_after)
            await asyncio.sleep(retry_after)
            raise TelegramNotifierError("rate limited", retry_after=retry_after)
        if not data.get("ok", False):
            raise TelegramNotifierError(str(data.get("description", f"HTTP {resp.status}")))

    async def close(self) -> None:
        self.stop()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
