"""
Safety gate-keeper for BSC Alpha Engine.

Kill switches checked before new entries and before every on-chain
submission. Default-to-safe: if the positions config is missing or corrupt,
the gate locks down (paper trading, zero position size, zero transactions).

Entries are blocked by the global pause; exits are not, so a pause can
always be followed by an orderly unwind.

Usage:
    from core.safety import SafetyState

    safety = SafetyState()
    check = safety.can_open_position(amount_usd=Decimal("191.36"))
    if not check.can_proceed:
        print(f"Blocked: {check.reason}")
"""

from __future__ import annotations

import time
from collections import deque
from decimal import Decimal
from pathlib import Path

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import (
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_DRY_RUN,
    DEFAULT_MAX_GAS_PRICE_GWEI,
    DEFAULT_MAX_POSITION_USD,
    DEFAULT_MAX_TX_PER_24H,
)
from shared.types import SafetyCheck

_PROJECT_ROOT = Path(__file__).parent.parent
_SENTINEL_FILE = _PROJECT_ROOT / "PAUSE"

_SECONDS_PER_DAY = 86400


class SafetyState:
    """
    Centralized safety controls for entries and transaction submission.

    Two tiers of defaults:
    - Config present but key missing: DEFAULT_* constants
    - Config file missing/empty: lockdown (dry_run=True, max_position=0, no tx)
    """

    def __init__(self) -> None:
        cfg = get_config().get_positions_config()

        if cfg:
            self._dry_run: bool = cfg.get("dry_run", DEFAULT_DRY_RUN)
            self._max_position_usd = Decimal(
                str(cfg.get("max_position_usd", DEFAULT_MAX_POSITION_USD))
            )
            self._max_gas_price_gwei: int = cfg.get(
                "max_gas_price_gwei", DEFAULT_MAX_GAS_PRICE_GWEI
            )
            self._cooldown_seconds: int = cfg.get(
                "cooldown_between_actions_seconds", DEFAULT_COOLDOWN_SECONDS
            )
            self._max_tx_per_24h: int = cfg.get(
                "max_transactions_per_24h", DEFAULT_MAX_TX_PER_24H
            )
        else:
            self._dry_run = True
            self._max_position_usd = Decimal("0")
            self._max_gas_price_gwei = 0
            self._cooldown_seconds = DEFAULT_COOLDOWN_SECONDS
            self._max_tx_per_24h = 0

        self._global_pause = False
        self._pause_reason = ""
        self._last_action_time: float = 0.0
        self._action_timestamps: deque[float] = deque()

        self._logger = setup_module_logger("safety", "safety.log", module_folder="Safety_Logs")
        self._logger.info(
            "SafetyState initialized: dry_run=%s max_position=$%s "
            "max_gas=%d gwei cooldown=%ds max_tx_24h=%d",
            self._dry_run,
            self._max_position_usd,
            self._max_gas_price_gwei,
            self._cooldown_seconds,
            self._max_tx_per_24h,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_paused(self) -> bool:
        """Check if entries are globally paused (includes sentinel file)."""
        self.check_pause_sentinel()
        return self._global_pause

    @property
    def is_dry_run(self) -> bool:
        return self._dry_run

    @property
    def pause_reason(self) -> str:
        return self._pause_reason

    # ------------------------------------------------------------------
    # Gate checks
    # ------------------------------------------------------------------

    def can_open_position(self, amount_usd: Decimal) -> SafetyCheck:
        """Check whether a new entry of ``amount_usd`` may be submitted."""
        if self.is_paused:
            return SafetyCheck(
                can_proceed=False,
                reason=f"Global pause active: {self._pause_reason}",
            )

        if amount_usd > self._max_position_usd:
            return SafetyCheck(
                can_proceed=False,
                reason=f"Position ${amount_usd} exceeds max ${self._max_position_usd}",
            )

        # Cooldown check (monotonic clock, immune to NTP adjustments)
        elapsed = time.monotonic() - self._last_action_time
        if self._last_action_time > 0 and elapsed < self._cooldown_seconds:
            remaining = self._cooldown_seconds - elapsed
            return SafetyCheck(
                can_proceed=False,
                reason=f"Cooldown active: {remaining:.0f}s remaining",
            )

        self._prune_old_timestamps()
        if len(self._action_timestamps) >= self._max_tx_per_24h:
            return SafetyCheck(
                can_proceed=False,
                reason=(
                    f"24h tx limit reached: {len(self._action_timestamps)}"
                    f"/{self._max_tx_per_24h}"
                ),
            )

        return SafetyCheck(can_proceed=True, reason="All checks passed")

    def can_submit_tx(self, gas_price_gwei: int) -> SafetyCheck:
        """Gas gate for live submissions. Exits must pass it too, pause does not apply."""
        if gas_price_gwei > self._max_gas_price_gwei:
            return SafetyCheck(
                can_proceed=False,
                reason=(
                    f"Gas price {gas_price_gwei} gwei exceeds "
                    f"max {self._max_gas_price_gwei} gwei"
                ),
            )
        return SafetyCheck(can_proceed=True, reason="Gas price acceptable")

    # ------------------------------------------------------------------
    # State mutations
    # ------------------------------------------------------------------

    def record_action(self) -> None:
        """Record a confirmed execution (for cooldown and rate limiting)."""
        self._last_action_time = time.monotonic()
        self._action_timestamps.append(time.time())
        self._logger.debug("Action recorded; 24h count: %d", len(self._action_timestamps))

    def trigger_global_pause(self, reason: str) -> None:
        """Activate the emergency kill switch for new entries."""
        self._global_pause = True
        self._pause_reason = reason
        self._logger.critical("GLOBAL PAUSE TRIGGERED: %s", reason)

    def resume(self) -> None:
        """Clear the global pause (manual recovery)."""
        self._global_pause = False
        self._pause_reason = ""
        self._logger.warning("Global pause CLEARED, manual resume invoked")

    def check_pause_sentinel(self) -> bool:
        """Check for PAUSE file in project root (emergency manual override)."""
        exists = _SENTINEL_FILE.exists()
        if exists and not self._global_pause:
            self.trigger_global_pause("PAUSE sentinel file detected")
        return exists

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _prune_old_timestamps(self) -> None:
        cutoff = time.time() - _SECONDS_PER_DAY
        while self._action_timestamps and self._action_timestamps[0] < cutoff:
            self._action_timestamps.popleft()
