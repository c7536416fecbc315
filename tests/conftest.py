"""
Shared pytest configuration and fixtures for BSC Alpha Engine tests.

Provides config dictionaries mirroring the shipped JSON files plus small
factories for quotes, candidates, tiers and positions.
"""

from __future__ import annotations

import time
from collections import deque
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from shared.types import Candidate, Position, StrategyTier, TokenQuote

# ---------------------------------------------------------------------------
# Decimal helper
# ---------------------------------------------------------------------------


def _d(v) -> Decimal:
    """Shorthand Decimal factory."""
    return Decimal(str(v))


# ---------------------------------------------------------------------------
# Standard mock configs
# ---------------------------------------------------------------------------

SAMPLE_USER_ADDRESS = "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"
TOKEN_USDT = "0x55d398326f99059fF775485246999027B3197955"
TOKEN_CAKE = "0x0E09FaBB73Bd3Ade0a17ECC321fD13a19e81cE82"

STANDARD_POSITIONS_CONFIG = {
    "dry_run": True,
    "starting_capital": "300",
    "max_position_usd": 10000,
    "max_allocation_percent": "30",
    "max_confidence_multiplier": "2.0",
    "confidence_divisor": "50",
    "min_trade_amount": "10",
    "max_open_positions": 10,
    "max_gas_price_gwei": 10,
    "max_slippage_bps": 100,
    "cooldown_between_actions_seconds": 0,
    "max_transactions_per_24h": 50,
}

STANDARD_STRATEGY_CONFIG = {
    "tiers": [
        {
            "name": "Conservative Growth",
            "min_balance": "0",
            "max_position_percent": "5",
            "risk_multiplier": "1.0",
            "compounding_rate": "0.05",
            "min_confidence": "60",
            "stop_loss_percent": "15",
        },
        {
            "name": "Moderate Scaling",
            "min_balance": "500",
            "max_position_percent": "8",
            "risk_multiplier": "1.3",
            "compounding_rate": "0.04",
            "min_confidence": "55",
        },
        {
            "name": "Aggressive Expansion",
            "min_balance": "5000",
            "max_position_percent": "12",
            "risk_multiplier": "1.6",
            "compounding_rate": "0.03",
            "min_confidence": "50",
        },
    ]
}

STANDARD_EXIT_CONFIG = {
    "trailing_stop": {
        "base_percent": "8",
        "ladder": [
            {"min_roi": "100", "percent": "15"},
            {"min_roi": "50", "percent": "12"},
            {"min_roi": "25", "percent": "10"},
        ],
    },
    "volatility": {
        "window": 20,
        "min_samples": 10,
        "threshold_percent": "25",
        "exit_percent": "30",
    },
    "time_rules": [
        {"max_held_minutes": 30, "min_roi": "50", "percent": "50", "urgency": "medium",
         "reason": "fast gain"},
        {"min_held_minutes": 240, "min_roi": "20", "percent": "25", "urgency": "low",
         "informational": True, "reason": "long hold gain"},
        {"min_held_minutes": 720, "min_roi": "5", "percent": "40", "urgency": "medium",
         "reason": "very long hold"},
    ],
    "momentum": {
        "severe_drop_percent": "-15",
        "drop_percent": "-8",
        "volume_to_market_cap": "0.1",
        "partial_percent": "60",
    },
    "risk": {
        "stop_loss_percent": "20",
        "profit_rules": [
            {"min_roi": "200", "percent": "75", "urgency": "high"},
            {"min_roi": "100", "percent": "50", "urgency": "medium"},
            {"min_roi": "50", "min_held_minutes": 120, "percent": "30", "urgency": "low",
             "informational": True},
        ],
    },
}

STANDARD_TIMING_CONFIG = {
    "scan": {"interval_seconds": 0.01, "queue_timeout_seconds": 0.05},
    "monitor": {"interval_seconds": 0.01, "price_timeout_seconds": 0.2},
    "sources": {"fetch_timeout_seconds": 0.2},
    "execution": {
        "quote_timeout_seconds": 0.2,
        "submit_timeout_seconds": 0.2,
        "max_retries": 2,
        "backoff_base_seconds": 0,
        "confirmation_interval_seconds": 0.01,
        "confirmation_deadline_seconds": 300,
        "receipt_timeout_seconds": 0.2,
    },
    "transaction": {"confirmation_timeout_seconds": 1, "simulation_timeout_seconds": 1},
    "aggregator": {"quote_cache_ttl_seconds": 10},
}

STANDARD_CHAIN_CONFIG = {
    "chain_id": 56,
    "rpc": {"http_url": "https://bsc-dataseed1.binance.org/"},
    "quote_token": {"symbol": "USDT", "address": TOKEN_USDT, "decimals": 18},
    "chainlink_feeds": {},
}


def make_loader(**overrides) -> MagicMock:
    """MagicMock ConfigLoader returning the standard configs (override by accessor name)."""
    loader = MagicMock()
    loader.get_positions_config.return_value = dict(STANDARD_POSITIONS_CONFIG)
    loader.get_strategy_config.return_value = STANDARD_STRATEGY_CONFIG
    loader.get_exit_config.return_value = STANDARD_EXIT_CONFIG
    loader.get_timing_config.return_value = STANDARD_TIMING_CONFIG
    loader.get_chain_config.return_value = STANDARD_CHAIN_CONFIG
    loader.get_signals_config.return_value = {"floors": {}, "max_candidates": 10}
    loader.get_aggregator_config.return_value = {"max_slippage_bps": 100, "providers": []}
    loader.get_app_config.return_value = {"logging": {"log_dir": "logs"}}
    loader.get_abi.return_value = []
    for name, value in overrides.items():
        getattr(loader, name).return_value = value
    return loader


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            mock_config_loader.get_positions_config.return_value = {...}
    """
    return make_loader()


# ---------------------------------------------------------------------------
# Domain factories
# ---------------------------------------------------------------------------


def make_quote(
    symbol: str = "CAKE",
    asset_id: str = TOKEN_CAKE,
    source: str = "dexscreener",
    price="2.5",
    volume="1000000",
    market_cap="5000000",
    change="5",
    liquidity="800000",
    holders=None,
) -> TokenQuote:
    return TokenQuote(
        symbol=symbol,
        asset_id=asset_id,
        source=source,
        price=_d(price) if price is not None else None,
        volume_24h=_d(volume) if volume is not None else None,
        market_cap=_d(market_cap) if market_cap is not None else None,
        price_change_24h=_d(change) if change is not None else None,
        holders=holders,
        liquidity=_d(liquidity) if liquidity is not None else None,
    )


def make_candidate(confidence="92", **quote_kwargs) -> Candidate:
    return Candidate(quote=make_quote(**quote_kwargs), confidence=_d(confidence))


def make_tier(
    name="Moderate Scaling",
    min_balance="500",
    max_position_percent="8",
    risk_multiplier="1.3",
    compounding_rate="0.04",
    min_confidence="55",
    stop_loss_percent=None,
) -> StrategyTier:
    return StrategyTier(
        name=name,
        min_balance=_d(min_balance),
        max_position_percent=_d(max_position_percent),
        risk_multiplier=_d(risk_multiplier),
        compounding_rate=_d(compounding_rate),
        min_confidence=_d(min_confidence),
        stop_loss_percent=_d(stop_loss_percent) if stop_loss_percent is not None else None,
    )


def make_position(
    symbol: str = "CAKE",
    entry_price="1",
    current_price="1",
    quantity="100",
    held_minutes: float = 10,
    trailing_stop="0",
    samples=None,
    change=None,
    volume=None,
    market_cap=None,
    stale: bool = False,
) -> Position:
    entry = _d(entry_price)
    qty = _d(quantity)
    position = Position(
        id="pos-1",
        symbol=symbol,
        asset_id=TOKEN_CAKE,
        entry_price=entry,
        current_price=entry,
        quantity=qty,
        entry_time=time.time() - held_minutes * 60,
        entry_value=entry * qty,
        current_value=entry * qty,
        peak_price=entry,
        trailing_stop_price=_d(trailing_stop),
        stale=stale,
        price_samples=deque((_d(s) for s in (samples or [])), maxlen=20),
        price_change_24h=_d(change) if change is not None else None,
        volume_24h=_d(volume) if volume is not None else None,
        market_cap=_d(market_cap) if market_cap is not None else None,
    )
    position.revalue(_d(current_price))
    return position
