"""
Message formatting for pair alerts, digests and status reports.

All output is Telegram HTML: dynamic text is escaped with ``html.escape``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from html import escape
from typing import Any

from shared.types import (
    DetectorStats,
    LiquidityTier,
    PairAlert,
    RpcPoolStats,
    SecurityReport,
)

TIER_LABELS = {
    LiquidityTier.MEGA: "🚀 MEGA PAIR",
    LiquidityTier.HIGH_LIQUIDITY: "💎 HIGH LIQUIDITY",
    LiquidityTier.EARLY_SIGNAL: "🌟 EARLY SIGNAL",
    LiquidityTier.BELOW_THRESHOLD: "Below threshold",
}

_DEXSCREENER_WEB = "https://dexscreener.com"


def format_usd(value: Decimal | float | int) -> str:
    """$1.23M / $12.3k / $950."""
    amount = Decimal(str(value))
    if amount >= 1_000_000:
        return f"${amount / 1_000_000:.2f}M"
    if amount >= 1_000:
        return f"${amount / 1_000:.1f}k"
    return f"${amount:.0f}"


def format_volume(value: Decimal | float | int) -> str:
    """Same scale as ``format_usd``; zero volume reads as "n/a"."""
    if Decimal(str(value)) <= 0:
        return "n/a"
    return format_usd(value)


def activity_level(swaps_15m: int) -> str:
    if swaps_15m >= 50:
        return "Very High"
    if swaps_15m >= 20:
        return "High"
    if swaps_15m >= 10:
        return "Medium"
    if swaps_15m >= 5:
        return "Low"
    return "Very Low"


def _check(value: bool | None) -> str:
    if value is None:
        return "➖"
    return "✅" if value else "❌"


def format_security_short(report: SecurityReport) -> str:
    return f"{_check(report.verified)}{_check(report.renounced)}{_check(report.lp_locked)}"


def format_security_long(report: SecurityReport) -> str:
    lines = [
        f"{_check(report.verified)} Contract verified",
        f"{_check(report.renounced)} Ownership renounced",
        f"{_check(report.lp_locked)} LP locked",
        f"Score: {report.score}/3",
    ]
    for warning in report.warnings:
        lines.append(f"⚠️ {escape(warning)}")
    return "\n".join(lines)


def build_pair_alert(
    alert: PairAlert,
    include_links: bool = True,
    explorer_web_url: str = "",
    dexscreener_chain: str = "",
) -> str:
    """Detailed single-pair alert (channel A)."""
    c = alert.classification
    info = alert.token_info
    lines = [
        f"<b>{TIER_LABELS[c.tier]}</b>",
        "",
        f"<b>{escape(info.name)}</b> ({escape(info.symbol)})",
        f"Pair: <code>{escape(c.pair_address)}</code>",
        f"Token: <code>{escape(info.address)}</code>",
    ]
    if c.base_token is not None:
        lines.append(f"Base: {escape(c.base_token.symbol)}")
    lines.append(f"Liquidity: <b>{format_usd(c.liquidity_usd)}</b>")

    if c.volume is not None and c.volume.success:
        lines.append(f"Volume 24h: {format_volume(c.volume.volume_24h_usd)}")
        lines.append(
            f"Swaps 15m: {c.volume.swap_count_15m} ({activity_level(c.volume.swap_count_15m)})"
        )
    else:
        lines.append("Volume: no data")

    lines.append("")
    lines.append(format_security_long(alert.security))

    if alert.candidate.discovery_block is not None:
        lines.append(f"Block: {alert.candidate.discovery_block}")

    if include_links:
        links = []
        if dexscreener_chain:
            links.append(f'<a href="{_DEXSCREENER_WEB}/{dexscreener_chain}/{c.pair_address}">Chart</a>')
        if explorer_web_url:
            links.append(f'<a href="{explorer_web_url}/token/{info.address}">Token</a>')
            links.append(f'<a href="{explorer_web_url}/address/{c.pair_address}">Pair</a>')
        if links:
            lines.append("")
            lines.append(" | ".join(links))
    return "\n".join(lines)


def build_public_digest(alerts: list[PairAlert], max_pairs: int = 10) -> str:
    """Aggregated digest (channel B): first ``max_pairs`` listed, rest counted."""
    lines = [f"<b>📊 {len(alerts)} new pair(s)</b>", ""]
    for alert in alerts[:max_pairs]:
        c = alert.classification
        lines.append(
            f"• <b>{escape(alert.token_info.symbol)}</b> {format_usd(c.liquidity_usd)} "
            f"{TIER_LABELS[c.tier]} {format_security_short(alert.security)}"
        )
        lines.append(f"  <code>{escape(c.pair_address)}</code>")
    remaining = len(alerts) - max_pairs
    if remaining > 0:
        lines.append("")
        lines.append(f"...and {remaining} more")
    return "\n".join(lines)


def build_stats_message(
    stats: DetectorStats,
    rpc_stats: RpcPoolStats | None = None,
    uptime_seconds: float | None = None,
    title: str = "📈 Monitor statistics",
) -> str:
    lines = [f"<b>{escape(title)}</b>", ""]
    if uptime_seconds is not None:
        hours, rem = divmod(int(uptime_seconds), 3600)
        lines.append(f"Uptime: {hours}h {rem // 60}m")
    lines.extend(
        [
            f"Pairs seen: {stats.total}",
            f"Filtered: {stats.filtered}",
            f"Mega: {stats.mega} | High: {stats.high_liquidity} | Early: {stats.early_signal}",
            f"Sent A: {stats.channel_a_sent} | Queued B: {stats.channel_b_sent}",
            f"Errors: {stats.errors}",
            f"RPC failovers: {stats.rpc_failovers}",
        ]
    )
    if rpc_stats is not None:
        healthy = sum(1 for ep in rpc_stats.endpoints if ep.healthy)
        lines.append(f"RPC endpoints healthy: {healthy}/{len(rpc_stats.endpoints)}")
    return "\n".join(lines)


def build_startup_message(details: dict[str, Any]) -> str:
    lines = ["<b>🟢 Pair monitor started</b>", ""]
    for key, value in details.items():
        lines.append(f"{escape(str(key))}: {escape(str(value))}")
    lines.append(datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"))
    return "\n".join(lines)


def build_error_message(context: str, error: BaseException | str) -> str:
    return f"<b>⚠️ Error</b>\n{escape(context)}\n<code>{escape(str(error))[:500]}</code>"
