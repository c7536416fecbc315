"""
Capital-based strategy tier selection for BSC Alpha Engine.

Maps the current capital balance onto an ordered table of risk profiles.
The active tier is the highest one whose minimum balance the capital meets;
below the lowest threshold the lowest tier still applies so sizing always
has a profile to work with.

Also projects compounding growth day by day, re-selecting the tier each
time the projected balance crosses a threshold.

Usage:
    from core.strategy_tiers import StrategyTierSelector

    selector = StrategyTierSelector()
    tier = selector.active_tier(Decimal("1250"))
    projected = selector.project_balance(Decimal("1250"), days=30)
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.types import StrategyTier

_CENT = Decimal("0.01")


class StrategyTierError(Exception):
    """Raised when the tier table is empty or malformed."""


def _parse_tier(raw: dict[str, Any]) -> StrategyTier:
    stop_loss = raw.get("stop_loss_percent")
    return StrategyTier(
        name=str(raw["name"]),
        min_balance=Decimal(str(raw["min_balance"])),
        max_position_percent=Decimal(str(raw["max_position_percent"])),
        risk_multiplier=Decimal(str(raw["risk_multiplier"])),
        compounding_rate=Decimal(str(raw.get("compounding_rate", "0"))),
        min_confidence=Decimal(str(raw.get("min_confidence", "0"))),
        stop_loss_percent=Decimal(str(stop_loss)) if stop_loss is not None else None,
    )


class StrategyTierSelector:
    """Pure lookup over the ordered tier table."""

    def __init__(self, tiers: list[StrategyTier] | None = None) -> None:
        if tiers is None:
            raw_tiers = get_config().get_strategy_config().get("tiers", [])
            try:
                tiers = [_parse_tier(t) for t in raw_tiers]
            except (KeyError, TypeError, InvalidOperation) as exc:
                raise StrategyTierError(f"Malformed tier table: {exc}") from exc

        if not tiers:
            raise StrategyTierError("Tier table is empty; sizing has no default tier")

        self._tiers: list[StrategyTier] = sorted(tiers, key=lambda t: t.min_balance)

        names = [t.name for t in self._tiers]
        if len(set(names)) != len(names):
            raise StrategyTierError(f"Duplicate tier names: {names}")

        self._logger = setup_module_logger("sizing", "sizing.log", module_folder="Sizing_Logs")
        self._logger.info(
            "Tier table loaded: %s",
            ", ".join(f"{t.name}>={t.min_balance}" for t in self._tiers),
        )

    @property
    def tiers(self) -> list[StrategyTier]:
        return list(self._tiers)

    def active_tier(self, balance: Decimal) -> StrategyTier:
        """Highest tier whose threshold ``balance`` meets; the lowest tier otherwise."""
        selected = self._tiers[0]
        for tier in self._tiers:
            if balance >= tier.min_balance:
                selected = tier
            else:
                break
        return selected

    def next_milestone(self, balance: Decimal) -> StrategyTier | None:
        """The next tier above the current balance, or None at the top tier."""
        for tier in self._tiers:
            if tier.min_balance > balance:
                return tier
        return None

    def project_balance(self, balance: Decimal, days: int) -> Decimal:
        """Compound ``balance`` daily at the target rate of whichever tier is active."""
        projected = balance
        for _ in range(max(days, 0)):
            tier = self.active_tier(projected)
            projected = projected * (Decimal("1") + tier.compounding_rate)
        return projected.quantize(_CENT)
