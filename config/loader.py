"""
Configuration loader for BSC Alpha Engine.

Provides centralized configuration management with .env overrides.
Every JSON file under config/ has one cached accessor.

Usage:
    from config.loader import get_config

    config = get_config()
    tiers = config.get_strategy_config()["tiers"]
    chain_config = config.get_chain_config(56)
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

# Resolve config directory relative to this file
_CONFIG_DIR = Path(__file__).parent
_PROJECT_ROOT = _CONFIG_DIR.parent


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
    if value is None:
        return default_value
    try:
        if var_type == bool:
            return value.lower() in ("true", "1", "yes")
        return var_type(value)
    except (ValueError, TypeError):
        return default_value


class ConfigLoader:
    """
    Central configuration manager for the BSC Alpha Engine.

    Loads configuration from JSON files in the config/ directory with .env overrides.
    All accessor methods are cached via @lru_cache.
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
    def get_chain_config(self, chain_id: int = 56) -> Dict[str, Any]:
        """Load chain-specific config (BSC = 56)."""
        return _load_json(self._config_dir / "chains" / f"{chain_id}.json")

    @lru_cache(maxsize=1)
    def get_app_config(self) -> Dict[str, Any]:
        """Load general application settings (logging folders, ledger path)."""
        return _load_json(self._config_dir / "app.json")

    @lru_cache(maxsize=1)
    def get_timing_config(self) -> Dict[str, Any]:
        """Load loop intervals, timeouts and retry backoff."""
        return _load_json(self._config_dir / "timing.json")

    @lru_cache(maxsize=1)
    def get_strategy_config(self) -> Dict[str, Any]:
        """Load the capital tier table and projection settings."""
        return _load_json(self._config_dir / "strategy.json")

    @lru_cache(maxsize=1)
    def get_signals_config(self) -> Dict[str, Any]:
        """Load market-data sources, candidate floors and scoring buckets."""
        return _load_json(self._config_dir / "signals.json")

    @lru_cache(maxsize=1)
    def get_positions_config(self) -> Dict[str, Any]:
        """Load sizing limits and safety switches (dry run, caps, cooldown)."""
        return _load_json(self._config_dir / "positions.json")

    @lru_cache(maxsize=1)
    def get_exit_config(self) -> Dict[str, Any]:
        """Load exit heuristic thresholds."""
        return _load_json(self._config_dir / "exits.json")

    @lru_cache(maxsize=1)
    def get_aggregator_config(self) -> Dict[str, Any]:
        """Load swap router provider definitions."""
        return _load_json(self._config_dir / "aggregator.json")

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
    # Arbitrary config file loader
    # ------------------------------------------------------------------

    @lru_cache(maxsize=16)
    def get_config_file(self, config_name: str) -> Dict[str, Any]:
        """Load an arbitrary JSON config file from config/ directory."""
        return _load_json(self._config_dir / f"{config_name}.json")

    def resolve_path(self, relative: str) -> Path:
        """Resolve a project-relative path from config (e.g. the ledger DB)."""
        path = Path(relative)
        if path.is_absolute():
            return path
        return self._project_root / path

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
