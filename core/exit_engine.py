"""
Exit decision engine for BSC Alpha Engine.

Five independent heuristics each look at one open position and return an
ExitSignal; one combination rule folds them into the single decision the
engine acts on.

Heuristics (evaluated in this order, order matters for ties):
    1. Trailing stop  - price below the ratcheted stop -> full exit, critical
    2. Volatility     - std dev of recent samples over a threshold -> partial
    3. Time           - holding-period / ROI rules, first match wins
    4. Momentum       - 24h collapse, optionally confirmed by heavy volume
    5. Risk           - stop loss on the downside, profit ladder on the upside

Combination:
    - any critical signal wins outright (the first one, unchanged)
    - otherwise any high signal: mean of the high percentages, full exit
      when that mean exceeds 50, else partial
    - otherwise two or more non-hold medium signals: partial exit at their
      mean percentage, capped at 50
    - otherwise the single most urgent signal (first one on a tie)

The trailing stop reports a low-urgency hold first, so a low-urgency exit
rule never wins a tie. Such rules are marked ``informational`` in config and
only show up in the log.

All thresholds live in config/exits.json.

Usage:
    from core.exit_engine import ExitDecisionEngine

    engine = ExitDecisionEngine()
    signal = engine.evaluate(position, tier)
    stop = engine.next_trailing_stop(position)
"""

from __future__ import annotations

import statistics
import time
from decimal import Decimal
from typing import Any

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import HUNDRED
from shared.types import ExitAction, ExitSignal, Position, StrategyTier, Urgency

_ZERO = Decimal("0")
_FIFTY = Decimal("50")

HOLD = ExitSignal(ExitAction.HOLD, _ZERO, Urgency.LOW, "hold")


def _hold(reason: str) -> ExitSignal:
    return ExitSignal(ExitAction.HOLD, _ZERO, Urgency.LOW, reason)


def _d(value: Any) -> Decimal:
    return Decimal(str(value))


class ExitDecisionEngine:
    """Stateless exit evaluator; positions carry everything it needs."""

    def __init__(self, exit_cfg: dict[str, Any] | None = None) -> None:
        if exit_cfg is None:
            exit_cfg = get_config().get_exit_config()

        trailing = exit_cfg.get("trailing_stop", {})
        self.trailing_base_percent = _d(trailing.get("base_percent", "8"))
        # Highest threshold first so the first match is the widest stop.
        self.trailing_ladder: list[tuple[Decimal, Decimal]] = sorted(
            ((_d(step["min_roi"]), _d(step["percent"])) for step in trailing.get("ladder", [])),
            key=lambda step: step[0],
            reverse=True,
        )

        volatility = exit_cfg.get("volatility", {})
        self.volatility_window: int = int(volatility.get("window", 20))
        self.volatility_min_samples: int = int(volatility.get("min_samples", 10))
        self.volatility_threshold = _d(volatility.get("threshold_percent", "25"))
        self.volatility_exit_percent = _d(volatility.get("exit_percent", "30"))

        self.time_rules: list[dict[str, Any]] = list(exit_cfg.get("time_rules", []))

        momentum = exit_cfg.get("momentum", {})
        self.severe_drop = _d(momentum.get("severe_drop_percent", "-15"))
        self.drop = _d(momentum.get("drop_percent", "-8"))
        self.volume_to_market_cap = _d(momentum.get("volume_to_market_cap", "0.1"))
        self.momentum_partial_percent = _d(momentum.get("partial_percent", "60"))

        risk = exit_cfg.get("risk", {})
        self.stop_loss_percent = _d(risk.get("stop_loss_percent", "20"))
        self.profit_rules: list[dict[str, Any]] = sorted(
            risk.get("profit_rules", []),
            key=lambda rule: _d(rule["min_roi"]),
            reverse=True,
        )

        self._logger = setup_module_logger(
            "exit_engine", "exit_engine.log", module_folder="Exit_Engine_Logs"
        )
        # A low-urgency exit loses every tie to the low trailing-stop hold
        # evaluated first, so it can only ever be reported.
        for rule in self.time_rules + self.profit_rules:
            if rule.get("urgency", "low") == "low" and not rule.get("informational", False):
                self._logger.warning(
                    "Exit rule %s is low urgency and never decides; mark it informational",
                    rule,
                )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate(
        self,
        position: Position,
        tier: StrategyTier | None = None,
        now: float | None = None,
    ) -> ExitSignal:
        """Run every heuristic against ``position`` and combine the results."""
        if position.stale:
            return _hold("price stale, not evaluated")

        if now is None:
            now = time.time()

        signals = [
            self.trailing_stop_signal(position),
            self.volatility_signal(position),
            self.time_signal(position, now),
            self.momentum_signal(position),
            self.risk_signal(position, tier, now),
        ]
        decision = self.combine(signals)

        if decision.action is not ExitAction.HOLD:
            self._logger.info(
                "%s: %s %s%% (%s) roi=%.2f%% - %s",
                position.symbol,
                decision.action.value,
                decision.percentage,
                decision.urgency.value,
                position.roi_percent,
                decision.reason,
            )
        else:
            self._logger.debug("%s: hold (roi=%.2f%%)", position.symbol, position.roi_percent)
            for signal in signals:
                if signal.action is not ExitAction.HOLD and signal.urgency is Urgency.LOW:
                    self._logger.info(
                        "%s: informational %s %s%% - %s",
                        position.symbol,
                        signal.action.value,
                        signal.percentage,
                        signal.reason,
                    )
        return decision

    def next_trailing_stop(self, position: Position) -> Decimal:
        """Ratcheted stop for the current price; never lower than the existing stop."""
        if position.current_price <= 0:
            return position.trailing_stop_price
        percent = self.trailing_percent(position.roi_percent)
        candidate = position.current_price * (1 - percent / HUNDRED)
        return max(position.trailing_stop_price, candidate)

    def trailing_percent(self, roi_percent: Decimal) -> Decimal:
        for min_roi, percent in self.trailing_ladder:
            if roi_percent > min_roi:
                return percent
        return self.trailing_base_percent

    def initial_stop(self, entry_price: Decimal) -> Decimal:
        return entry_price * (1 - self.trailing_base_percent / HUNDRED)

    # ------------------------------------------------------------------
    # Combination
    # ------------------------------------------------------------------

    @staticmethod
    def combine(signals: list[ExitSignal]) -> ExitSignal:
        """Fold heuristic outputs into one decision (see module docstring)."""
        if not signals:
            return HOLD

        for signal in signals:
            if signal.urgency is Urgency.CRITICAL:
                return signal

        high = [s for s in signals if s.urgency is Urgency.HIGH]
        if high:
            mean = sum((s.percentage for s in high), _ZERO) / len(high)
            mean = min(mean, HUNDRED)
            action = ExitAction.FULL_EXIT if mean > _FIFTY else ExitAction.PARTIAL_EXIT
            return ExitSignal(
                action=action,
                percentage=mean,
                urgency=Urgency.HIGH,
                reason="; ".join(s.reason for s in high),
            )

        medium = [
            s for s in signals if s.urgency is Urgency.MEDIUM and s.action is not ExitAction.HOLD
        ]
        if len(medium) >= 2:
            mean = sum((s.percentage for s in medium), _ZERO) / len(medium)
            return ExitSignal(
                action=ExitAction.PARTIAL_EXIT,
                percentage=min(_FIFTY, mean),
                urgency=Urgency.MEDIUM,
                reason="; ".join(s.reason for s in medium),
            )

        best = signals[0]
        for signal in signals[1:]:
            if signal.urgency.rank > best.urgency.rank:
                best = signal
        return best

    # ------------------------------------------------------------------
    # Heuristics
    # ------------------------------------------------------------------

    def trailing_stop_signal(self, position: Position) -> ExitSignal:
        stop = position.trailing_stop_price
        if stop > 0 and position.current_price < stop:
            return ExitSignal(
                ExitAction.FULL_EXIT,
                HUNDRED,
                Urgency.CRITICAL,
                f"Trailing stop hit: price {position.current_price} below stop {stop:.8f}",
            )
        return _hold("trailing stop intact")

    def volatility_signal(self, position: Position) -> ExitSignal:
        samples = list(position.price_samples)[-self.volatility_window :]
        if len(samples) < self.volatility_min_samples:
            return _hold("not enough price samples")
        mean = statistics.fmean(float(s) for s in samples)
        if mean <= 0:
            return _hold("non-positive mean price")
        std = statistics.pstdev(float(s) for s in samples)
        volatility = Decimal(str(std / mean * 100))
        if volatility > self.volatility_threshold:
            return ExitSignal(
                ExitAction.PARTIAL_EXIT,
                self.volatility_exit_percent,
                Urgency.HIGH,
                f"High volatility {volatility:.1f}% over {len(samples)} samples",
            )
        return _hold("volatility normal")

    def time_signal(self, position: Position, now: float) -> ExitSignal:
        held = position.held_minutes(now)
        roi = position.roi_percent
        for rule in self.time_rules:
            if "max_held_minutes" in rule and not held < _d(rule["max_held_minutes"]):
                continue
            if "min_held_minutes" in rule and not held > _d(rule["min_held_minutes"]):
                continue
            if roi > _d(rule["min_roi"]):
                return ExitSignal(
                    ExitAction.PARTIAL_EXIT,
                    _d(rule["percent"]),
                    Urgency(rule.get("urgency", "low")),
                    rule.get("reason", f"time rule: held {held:.0f}m, roi {roi:.1f}%"),
                )
        return _hold("no time rule matched")

    def momentum_signal(self, position: Position) -> ExitSignal:
        change = position.price_change_24h
        if change is None:
            return _hold("no 24h change data")
        if change < self.severe_drop:
            return ExitSignal(
                ExitAction.FULL_EXIT,
                HUNDRED,
                Urgency.CRITICAL,
                f"Severe 24h drop {change}%",
            )
        if change < self.drop:
            volume, market_cap = position.volume_24h, position.market_cap
            if volume is None or market_cap is None or market_cap <= 0:
                return _hold("24h drop without volume data")
            if volume > market_cap * self.volume_to_market_cap:
                return ExitSignal(
                    ExitAction.PARTIAL_EXIT,
                    self.momentum_partial_percent,
                    Urgency.HIGH,
                    f"24h drop {change}% on heavy volume",
                )
        return _hold("momentum intact")

    def risk_signal(
        self, position: Position, tier: StrategyTier | None, now: float
    ) -> ExitSignal:
        stop_loss = self.stop_loss_percent
        if tier is not None and tier.stop_loss_percent is not None:
            stop_loss = tier.stop_loss_percent

        roi = position.roi_percent
        if roi < -stop_loss:
            return ExitSignal(
                ExitAction.FULL_EXIT,
                HUNDRED,
                Urgency.CRITICAL,
                f"Stop loss: roi {roi:.2f}% below -{stop_loss}%",
            )

        held = position.held_minutes(now)
        for rule in self.profit_rules:
            if "min_held_minutes" in rule and not held > _d(rule["min_held_minutes"]):
                continue
            if roi > _d(rule["min_roi"]):
                return ExitSignal(
                    ExitAction.PARTIAL_EXIT,
                    _d(rule["percent"]),
                    Urgency(rule.get("urgency", "low")),
                    f"Profit taking at roi {roi:.1f}%",
                )
        return _hold("within risk limits")
