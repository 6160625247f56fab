"""
Configuration loader for DEX Pair Monitor.

Provides centralized configuration management with .env overrides.
Static settings live in JSON files under config/; secrets and
per-deployment values come from the environment.

Usage:
    from config.loader import get_config, get_env_var

    config = get_config()
    chain_config = config.get_chain_config(56)
    poll_interval_ms = get_env_var("EVENT_POLL_INTERVAL", 30000, int)
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

# Resolve config directory relative to this file
_CONFIG_DIR = Path(__file__).parent
_PROJECT_ROOT = _CONFIG_DIR.parent

DEFAULT_CHAIN_ID = 56

# Env vars holding ordered RPC endpoint URLs (primary first)
RPC_URL_ENV_VARS = ("RPC_URL", "RPC_PRIMARY_URL", "RPC_SECONDARY_URL", "RPC_TERTIARY_URL")


def _load_json(filepath: Path) -> Dict[str, Any]:
    """Load a JSON config file. Returns empty dict if file doesn't exist."""
    try:
        with open(filepath, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"[CONFIG_WARN] Config file not found: {filepath}")
        return {}
    except json.JSONDecodeError as e:
        print(f"[CONFIG_ERROR] Invalid JSON in {filepath}: {e}")
        return {}


def get_env_var(var_name: str, default_value: Any, var_type: type) -> Any:
    """Get environment variable with type conversion and fallback."""
    value = os.getenv(var_name, None)
    if value is None or value == "":
        return default_value
    try:
        if var_type == bool:
            return value.lower() in ("true", "1", "yes")
        return var_type(value)
    except (ValueError, TypeError, ArithmeticError):
        return default_value


class ConfigLoader:
    """
    Central configuration manager for DEX Pair Monitor.

    Loads configuration from JSON files in the config/ directory with .env overrides.
    All accessor methods are cached via @lru_cache for performance.
    """

    _instance: Optional["ConfigLoader"] = None

    def __init__(self):
        self._config_dir = _CONFIG_DIR
        self._project_root = _PROJECT_ROOT

    @classmethod
    def get_instance(cls) -> "ConfigLoader":
        """Singleton accessor."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    # ------------------------------------------------------------------
    # Core config file loaders (cached)
    # ------------------------------------------------------------------

    @lru_cache(maxsize=8)
    def get_chain_config(self, chain_id: int = DEFAULT_CHAIN_ID) -> Dict[str, Any]:
        """Load chain-specific config (BSC = 56, Ethereum = 1)."""
        return _load_json(self._config_dir / "chains" / f"{chain_id}.json")

    @lru_cache(maxsize=1)
    def get_app_config(self) -> Dict[str, Any]:
        """Load general application settings (logging, features)."""
        return _load_json(self._config_dir / "app.json")

    @lru_cache(maxsize=1)
    def get_timing_config(self) -> Dict[str, Any]:
        """Load timing intervals and timeouts."""
        return _load_json(self._config_dir / "timing.json")

    @lru_cache(maxsize=1)
    def get_tiers_config(self) -> Dict[str, Any]:
        """Load liquidity tier thresholds."""
        return _load_json(self._config_dir / "tiers.json")

    @lru_cache(maxsize=1)
    def get_price_providers_config(self) -> Dict[str, Any]:
        """Load price provider cascade settings (URLs, rate limits, timeouts)."""
        return _load_json(self._config_dir / "price_providers.json")

    @lru_cache(maxsize=1)
    def get_volume_config(self) -> Dict[str, Any]:
        """Load volume analyzer provider settings."""
        return _load_json(self._config_dir / "volume.json")

    # ------------------------------------------------------------------
    # ABI loader
    # ------------------------------------------------------------------

    @lru_cache(maxsize=32)
    def get_abi(self, abi_name: str) -> list:
        """Load ABI from config/abis/<abi_name>.json."""
        data = _load_json(self._config_dir / "abis" / f"{abi_name}.json")
        # ABI files are either raw arrays or {"abi": [...]}
        if isinstance(data, list):
            return data
        return data.get("abi", [])

    # ------------------------------------------------------------------
    # Environment-resolved settings
    # ------------------------------------------------------------------

    def get_chain_id(self) -> int:
        """Active chain id (CHAIN_ID env var, default BSC)."""
        return get_env_var("CHAIN_ID", DEFAULT_CHAIN_ID, int)

    def get_rpc_urls(self, chain_id: int) -> List[str]:
        """
        Ordered HTTP RPC endpoint URLs.

        Env vars win when any are set (blank entries dropped, duplicates
        removed); otherwise the chain file's rpc.http_urls list is used.
        """
        urls: List[str] = []
        for var_name in RPC_URL_ENV_VARS:
            url = os.getenv(var_name, "").strip()
            if url and url not in urls:
                urls.append(url)
        if urls:
            return urls
        return list(self.get_chain_config(chain_id).get("rpc", {}).get("http_urls", []))

    def get_ws_url(self, chain_id: int) -> str:
        """Websocket RPC URL for push mode; empty string when none is configured."""
        default = self.get_chain_config(chain_id).get("rpc", {}).get("ws_url", "")
        return get_env_var("RPC_WS_URL", default, str)

    def get_factory_address(self, chain_id: int) -> str:
        default = self.get_chain_config(chain_id).get("factory", {}).get("address", "")
        return get_env_var("FACTORY_ADDRESS", default, str)

    # ------------------------------------------------------------------
    # Arbitrary config file loader
    # ------------------------------------------------------------------

    @lru_cache(maxsize=16)
    def get_config_file(self, config_name: str) -> Dict[str, Any]:
        """Load an arbitrary JSON config file from config/ directory."""
        return _load_json(self._config_dir / f"{config_name}.json")

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        """Clear all cached configurations (useful for testing)."""
        for method_name in dir(self):
            method = getattr(self, method_name)
            if hasattr(method, "cache_clear"):
                method.cache_clear()


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

def get_config() -> ConfigLoader:
    """Get the singleton ConfigLoader instance."""
    return ConfigLoader.get_instance()
