"""
Configuration schema validation for BSC Alpha Engine.

Validates that all required config files exist and contain required keys.
Run at startup to fail fast on misconfiguration.
"""

from decimal import Decimal, InvalidOperation
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
    """Validate chains/56.json has required fields."""
    return _check_keys(
        config,
        [
            "chain_id",
            "rpc.http_url",
            "quote_token.address",
            "quote_token.symbol",
            "chainlink_feeds",
        ],
        "chains/56.json",
    )


def validate_strategy_config(config: dict[str, Any]) -> list[str]:
    """Validate strategy.json: a non-empty tier table with numeric thresholds."""
    errors = _check_keys(config, ["tiers"], "strategy.json")
    if errors:
        return errors
    tiers = config.get("tiers")
    if not isinstance(tiers, list) or len(tiers) == 0:
        return ["tiers: must be a non-empty list"]
    for i, tier in enumerate(tiers):
        for key in (
            "name",
            "min_balance",
            "max_position_percent",
            "risk_multiplier",
            "compounding_rate",
            "min_confidence",
        ):
            if key not in tier:
                errors.append(f"tiers[{i}].{key}")
        try:
            Decimal(str(tier.get("min_balance", "")))
        except InvalidOperation:
            errors.append(f"tiers[{i}].min_balance: not a number")
    return errors


def validate_signals_config(config: dict[str, Any]) -> list[str]:
    """Validate signals.json has required fields."""
    errors = _check_keys(
        config,
        [
            "sources",
            "floors.min_market_cap",
            "floors.min_liquidity",
            "scoring.buckets",
        ],
        "signals.json",
    )
    if not errors:
        enabled = [s for s in config.get("sources", []) if s.get("enabled", False)]
        if len(enabled) == 0:
            errors.append("sources: at least one source must be enabled")
    return errors


def validate_positions_config(config: dict[str, Any]) -> list[str]:
    """Validate positions.json has required fields."""
    return _check_keys(
        config,
        [
            "dry_run",
            "max_position_usd",
            "max_allocation_percent",
            "min_trade_amount",
            "max_open_positions",
            "starting_capital",
            "max_gas_price_gwei",
        ],
        "positions.json",
    )


def validate_exit_config(config: dict[str, Any]) -> list[str]:
    """Validate exits.json has required fields."""
    return _check_keys(
        config,
        [
            "trailing_stop.ladder",
            "volatility.window",
            "volatility.threshold_percent",
            "time_rules",
            "momentum.severe_drop_percent",
            "risk.stop_loss_percent",
        ],
        "exits.json",
    )


def validate_aggregator_config(config: dict[str, Any]) -> list[str]:
    """Validate aggregator.json has required fields."""
    errors = _check_keys(config, ["providers"], "aggregator.json")
    if not errors:
        providers = config.get("providers", [])
        if not isinstance(providers, list) or len(providers) == 0:
            errors.append("providers: must be a non-empty list")
        else:
            enabled = [p for p in providers if p.get("enabled", False)]
            if len(enabled) == 0:
                errors.append("providers: at least one provider must be enabled")
    return errors


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        "chains/56.json": (loader.get_chain_config, validate_chain_config),
        "strategy.json": (loader.get_strategy_config, validate_strategy_config),
        "signals.json": (loader.get_signals_config, validate_signals_config),
        "positions.json": (loader.get_positions_config, validate_positions_config),
        "exits.json": (loader.get_exit_config, validate_exit_config),
        "aggregator.json": (loader.get_aggregator_config, validate_aggregator_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - missing: {error}")
        raise ConfigValidationError("\n".join(lines))
