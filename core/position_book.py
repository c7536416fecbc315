"""
In-memory position table for BSC Alpha Engine.

The single shared mutable structure between the execution submitter, the
position monitor and the exit engine. All writes happen under one
``asyncio.Lock`` and every read hands out a copy, so no caller can observe a
half-applied update.

Writers:
    - ExecutionSubmitter confirmation handler: open_position, reduce_position,
      mark_exiting
    - PositionMonitor tick: apply_market_update

Usage:
    book = PositionBook()
    position = await book.open_position("CAKE", asset, qty, price, cost, stop)
    snapshot = book.get("CAKE")
"""

from __future__ import annotations

import asyncio
import copy
import time
import uuid
from collections import deque
from decimal import Decimal

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import HUNDRED
from shared.types import Position, PositionInvariantError, PositionStatus, TokenQuote

_ZERO = Decimal("0")


class PositionBook:
    """Symbol-keyed table of live positions."""

    def __init__(self, price_window: int | None = None) -> None:
        exit_cfg = get_config().get_exit_config()
        self._initial_stop_percent = Decimal(
            str(exit_cfg.get("trailing_stop", {}).get("base_percent", "8"))
        )
        if price_window is None:
            price_window = int(exit_cfg.get("volatility", {}).get("window", 20))

        self._positions: dict[str, Position] = {}
        self._lock = asyncio.Lock()
        self._price_window = price_window
        self._logger = setup_module_logger(
            "position_monitor", "position_monitor.log", module_folder="Position_Monitor_Logs"
        )

    # ------------------------------------------------------------------
    # Reads (copies only)
    # ------------------------------------------------------------------

    def get(self, symbol: str) -> Position | None:
        position = self._positions.get(symbol)
        return copy.deepcopy(position) if position is not None else None

    def snapshot(self) -> list[Position]:
        return [copy.deepcopy(p) for p in self._positions.values()]

    def active_positions(self) -> list[Position]:
        return [p for p in self.snapshot() if p.status is PositionStatus.ACTIVE]

    def has_position(self, symbol: str) -> bool:
        """True while a position for ``symbol`` has not reached closed."""
        return symbol in self._positions

    def count(self) -> int:
        return len(self._positions)

    def unrealized_pnl(self) -> Decimal:
        return sum((p.unrealized_pnl for p in self._positions.values()), _ZERO)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def open_position(
        self,
        symbol: str,
        asset_id: str,
        quantity: Decimal,
        entry_price: Decimal,
        entry_value: Decimal,
        trailing_stop_price: Decimal | None = None,
    ) -> Position:
        """
        Create a position from a confirmed buy. Duplicate symbols are invariant
        errors. Without an explicit stop the base trailing percent below entry
        is used.
        """
        if quantity <= 0 or entry_price <= 0:
            raise PositionInvariantError(
                f"{symbol}: cannot open with quantity={quantity} price={entry_price}"
            )
        async with self._lock:
            if symbol in self._positions:
                raise PositionInvariantError(f"{symbol}: an open position already exists")
            if trailing_stop_price is None:
                trailing_stop_price = entry_price * (1 - self._initial_stop_percent / HUNDRED)
            now = time.time()
            position = Position(
                id=uuid.uuid4().hex[:12],
                symbol=symbol,
                asset_id=asset_id,
                entry_price=entry_price,
                current_price=entry_price,
                quantity=quantity,
                entry_time=now,
                entry_value=entry_value,
                current_value=entry_price * quantity,
                peak_price=entry_price,
                trailing_stop_price=trailing_stop_price,
                price_samples=deque([entry_price], maxlen=self._price_window),
                last_updated=now,
            )
            position.revalue(entry_price)
            self._positions[symbol] = position
            self._logger.info(
                "Opened %s: qty=%s entry=%s value=%s stop=%s",
                symbol,
                quantity,
                entry_price,
                entry_value,
                trailing_stop_price,
            )
            return copy.deepcopy(position)

    async def reduce_position(
        self, symbol: str, quantity_sold: Decimal, proceeds: Decimal
    ) -> tuple[Position, Decimal]:
        """
        Apply a confirmed sell.

        Entry value shrinks pro-rata with quantity; the difference between
        proceeds and the released entry value is realized P&L. Selling the
        whole quantity closes the position and removes it from the table.

        Returns (position after the update, realized P&L of this sale).
        """
        if quantity_sold <= 0:
            raise PositionInvariantError(f"{symbol}: sell quantity must be positive")
        async with self._lock:
            position = self._positions.get(symbol)
            if position is None:
                raise PositionInvariantError(f"{symbol}: no open position to reduce")
            if quantity_sold > position.quantity:
                # Dust from rounding on the router side; never let quantity go negative.
                self._logger.warning(
                    "%s: sold %s exceeds held %s, clamping",
                    symbol,
                    quantity_sold,
                    position.quantity,
                )
                quantity_sold = position.quantity

            fraction = quantity_sold / position.quantity
            released_cost = position.entry_value * fraction
            realized = proceeds - released_cost

            position.quantity -= quantity_sold
            position.entry_value -= released_cost
            position.realized_pnl += realized
            position.last_updated = time.time()

            if position.quantity <= 0:
                position.quantity = _ZERO
                position.entry_value = _ZERO
                position.advance(PositionStatus.CLOSED)
                position.revalue(position.current_price)
                del self._positions[symbol]
                self._logger.info(
                    "Closed %s: proceeds=%s realized=%s total_realized=%s",
                    symbol,
                    proceeds,
                    realized,
                    position.realized_pnl,
                )
            else:
                position.revalue(position.current_price)
                self._logger.info(
                    "Reduced %s by %s: remaining=%s realized=%s",
                    symbol,
                    quantity_sold,
                    position.quantity,
                    realized,
                )
            return copy.deepcopy(position), realized

    async def mark_exiting(self, symbol: str) -> None:
        async with self._lock:
            position = self._positions.get(symbol)
            if position is None:
                raise PositionInvariantError(f"{symbol}: no open position to exit")
            position.advance(PositionStatus.EXITING)
            position.last_updated = time.time()

    async def apply_market_update(
        self,
        symbol: str,
        quote: TokenQuote | None,
        trailing_stop_price: Decimal | None = None,
    ) -> Position | None:
        """
        Monitor tick write. A quote refreshes price, value, P&L, peak and
        samples and clears the stale flag; ``None`` keeps the last price and
        marks the position stale. Returns the updated copy, or None if the
        position closed in the meantime.
        """
        async with self._lock:
            position = self._positions.get(symbol)
            if position is None:
                return None
            if quote is None or quote.price is None or quote.price <= 0:
                position.stale = True
                return copy.deepcopy(position)

            position.revalue(quote.price)
            position.price_samples.append(quote.price)
            if quote.price_change_24h is not None:
                position.price_change_24h = quote.price_change_24h
            if quote.volume_24h is not None:
                position.volume_24h = quote.volume_24h
            if quote.market_cap is not None:
                position.market_cap = quote.market_cap
            if trailing_stop_price is not None and trailing_stop_price > position.trailing_stop_price:
                position.trailing_stop_price = trailing_stop_price
            position.stale = False
            position.last_updated = time.time()
            return copy.deepcopy(position)
