"""
Risk-adjusted position sizing for BSC Alpha Engine.

Pure policy: a candidate, the active strategy tier and the current balance
go in, an allocation or a rejection comes out. No I/O and no state, so the
engine, tests and what-if tooling can call it freely.

    multiplier = min(max_confidence_multiplier, confidence / confidence_divisor)
    percent    = tier.max_position_percent x multiplier x tier.risk_multiplier
    percent    = min(percent, max_allocation_percent)        # absolute ceiling
    allocation = min(balance x percent / 100, balance, max_position_usd)

Example: confidence 92, Moderate Scaling (8%, 1.3x), balance 1000
    8 x 1.84 x 1.3 = 19.136% -> 191.36

Usage:
    from core.sizing import SizingPolicy

    policy = SizingPolicy()
    decision = policy.size(candidate, tier, balance, has_active_position=False)
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Any

from config.loader import get_config
from shared.constants import (
    DEFAULT_MAX_ALLOCATION_PERCENT,
    DEFAULT_MAX_CONFIDENCE_MULTIPLIER,
    DEFAULT_MAX_OPEN_POSITIONS,
    DEFAULT_MAX_POSITION_USD,
    DEFAULT_MIN_TRADE_AMOUNT,
    HUNDRED,
)
from shared.types import Candidate, SizingDecision, StrategyTier

_ZERO = Decimal("0")
_CENT = Decimal("0.01")


def _reject(reason: str) -> SizingDecision:
    return SizingDecision(approved=False, allocation=_ZERO, allocation_percent=_ZERO, reason=reason)


class SizingPolicy:
    """Bounded allocation from confidence and tier."""

    def __init__(self, positions_cfg: dict[str, Any] | None = None) -> None:
        if positions_cfg is None:
            positions_cfg = get_config().get_positions_config()

        self.max_allocation_percent = Decimal(
            str(positions_cfg.get("max_allocation_percent", DEFAULT_MAX_ALLOCATION_PERCENT))
        )
        self.max_confidence_multiplier = Decimal(
            str(positions_cfg.get("max_confidence_multiplier", DEFAULT_MAX_CONFIDENCE_MULTIPLIER))
        )
        self.confidence_divisor = Decimal(str(positions_cfg.get("confidence_divisor", "50")))
        self.min_trade_amount = Decimal(
            str(positions_cfg.get("min_trade_amount", DEFAULT_MIN_TRADE_AMOUNT))
        )
        self.max_position_usd = Decimal(
            str(positions_cfg.get("max_position_usd", DEFAULT_MAX_POSITION_USD))
        )
        self.max_open_positions: int = int(
            positions_cfg.get("max_open_positions", DEFAULT_MAX_OPEN_POSITIONS)
        )

    def confidence_multiplier(self, confidence: Decimal) -> Decimal:
        """Monotone in confidence, never above the configured cap, never negative."""
        if confidence <= 0:
            return _ZERO
        return min(self.max_confidence_multiplier, confidence / self.confidence_divisor)

    def allocation_percent(self, confidence: Decimal, tier: StrategyTier) -> Decimal:
        raw = (
            tier.max_position_percent
            * self.confidence_multiplier(confidence)
            * tier.risk_multiplier
        )
        return min(raw, self.max_allocation_percent)

    def size(
        self,
        candidate: Candidate,
        tier: StrategyTier,
        balance: Decimal,
        *,
        has_active_position: bool = False,
        open_positions: int = 0,
    ) -> SizingDecision:
        """Allocation in quote currency for ``candidate``, or a rejection."""
        if candidate.confidence < tier.min_confidence:
            return _reject(
                f"confidence {candidate.confidence} below {tier.name} minimum {tier.min_confidence}"
            )
        if has_active_position:
            return _reject(f"{candidate.symbol} already has an active position or execution")
        if open_positions >= self.max_open_positions:
            return _reject(f"open positions at limit ({self.max_open_positions})")
        if balance <= 0:
            return _reject("no capital available")

        percent = self.allocation_percent(candidate.confidence, tier)
        allocation = balance * percent / HUNDRED
        allocation = min(allocation, balance, self.max_position_usd)
        allocation = allocation.quantize(_CENT, rounding=ROUND_DOWN)

        if allocation < self.min_trade_amount:
            return _reject(f"allocation {allocation} below minimum trade {self.min_trade_amount}")

        return SizingDecision(
            approved=True,
            allocation=allocation,
            allocation_percent=percent,
            reason=(
                f"{tier.name}: {tier.max_position_percent}% x "
                f"{self.confidence_multiplier(candidate.confidence)} x {tier.risk_multiplier}"
            ),
        )
