"""
Configuration schema validation for DEX Pair Monitor.

Validates that all required config files exist and contain required keys,
and that the environment carries the secrets the bot cannot run without.
Run at startup to fail fast on misconfiguration.
"""

import os
from typing import Any

from config.loader import get_config


class ConfigValidationError(ValueError):
    """Raised when a required config key is missing or invalid."""

    pass


def _check_keys(config: dict[str, Any], required_keys: list[str], config_name: str) -> list[str]:
    """Check that all required keys exist in a config dict. Returns list of missing keys."""
    missing = []
    for key in required_keys:
        parts = key.split(".")
        current = config
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                missing.append(key)
                break
            current = current[part]
    return missing


def validate_chain_config(config: dict[str, Any]) -> list[str]:
    """Validate chains/<id>.json has required fields."""
    errors = _check_keys(
        config,
        [
            "chain_id",
            "rpc.http_urls",
            "factory.address",
            "known_tokens",
            "dexscreener_chain",
        ],
        "chains/<id>.json",
    )
    for address, token in config.get("known_tokens", {}).items():
        pricing_type = token.get("pricing", {}).get("type")
        if pricing_type not in ("fixed", "dynamic"):
            errors.append(f"known_tokens.{address}.pricing.type: must be 'fixed' or 'dynamic'")
    return errors


def validate_timing_config(config: dict[str, Any]) -> list[str]:
    """Validate timing.json has required fields."""
    return _check_keys(
        config,
        [
            "rpc.health_check_interval_seconds",
            "rpc.max_response_time_ms",
            "detector.event_poll_interval_seconds",
            "detector.backfill_interval_seconds",
            "price.cache_ttl_seconds",
            "backoff.max_retries",
        ],
        "timing.json",
    )


def validate_tiers_config(config: dict[str, Any]) -> list[str]:
    """Validate tiers.json has required fields."""
    return _check_keys(
        config,
        [
            "mega.min_liquidity_usd",
            "high_liquidity.channel_a_min_liquidity_usd",
            "high_liquidity.channel_b_min_liquidity_usd",
            "early_signal.min_liquidity_usd",
            "early_signal.min_volume_usd",
            "early_signal.min_swaps_15m",
        ],
        "tiers.json",
    )


def validate_price_providers_config(config: dict[str, Any]) -> list[str]:
    """Validate price_providers.json has required fields."""
    errors = _check_keys(config, ["providers"], "price_providers.json")
    if not errors:
        providers = config.get("providers", [])
        if not isinstance(providers, list) or len(providers) == 0:
            errors.append("providers: must be a non-empty list")
    return errors


def validate_environment(chain_id: int) -> list[str]:
    """Check required secrets and endpoints. Returns list of problems."""
    loader = get_config()
    errors = []
    if not os.getenv("TELEGRAM_BOT_TOKEN"):
        errors.append("TELEGRAM_BOT_TOKEN")
    if not any(
        os.getenv(name)
        for name in ("TELEGRAM_CHAT_ID_VIP", "TELEGRAM_CHAT_ID_PUBLIC", "TELEGRAM_CHAT_ID")
    ):
        errors.append("TELEGRAM_CHAT_ID_VIP / TELEGRAM_CHAT_ID_PUBLIC / TELEGRAM_CHAT_ID")
    if not loader.get_rpc_urls(chain_id):
        errors.append("RPC_URL (or rpc.http_urls in the chain config)")
    if not loader.get_factory_address(chain_id):
        errors.append("FACTORY_ADDRESS (or factory.address in the chain config)")
    return errors


def validate_all_configs() -> None:
    """
    Validate all config files and the environment. Raises
    ConfigValidationError with details if anything required is missing.
    """
    loader = get_config()
    chain_id = loader.get_chain_id()
    all_errors: dict[str, list[str]] = {}

    validators = {
        f"chains/{chain_id}.json": (lambda: loader.get_chain_config(chain_id), validate_chain_config),
        "timing.json": (loader.get_timing_config, validate_timing_config),
        "tiers.json": (loader.get_tiers_config, validate_tiers_config),
        "price_providers.json": (loader.get_price_providers_config, validate_price_providers_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    env_errors = validate_environment(chain_id)
    if env_errors:
        all_errors["environment"] = env_errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - missing: {error}")
        raise ConfigValidationError("\n".join(lines))
