"""
Position monitor for BSC Alpha Engine.

Keeps every open position priced. One tick fetches a fresh quote per
position, recomputes value / P&L / ROI / peak, appends the price to the
volatility window, copies the market stats the momentum heuristic needs and
ratchets the trailing stop.

A failed or timed-out price fetch never drops a position: the last known
price is kept and the position is flagged stale so the exit engine skips it
until a fresh price arrives.

Usage:
    monitor = PositionMonitor(book, aggregator, exit_engine)
    positions = await monitor.tick()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from bot_logging.logger_manager import setup_module_logger
from shared.types import Position

if TYPE_CHECKING:
    from core.exit_engine import ExitDecisionEngine
    from core.position_book import PositionBook
    from core.signal_aggregator import SignalAggregator


class PositionMonitor:
    def __init__(
        self,
        book: PositionBook,
        aggregator: SignalAggregator,
        exit_engine: ExitDecisionEngine,
    ) -> None:
        self._book = book
        self._aggregator = aggregator
        self._exit_engine = exit_engine
        self._logger = setup_module_logger(
            "position_monitor", "position_monitor.log", module_folder="Position_Monitor_Logs"
        )

    async def tick(self) -> list[Position]:
        """Refresh every open position; returns the updated copies."""
        updated: list[Position] = []
        for position in self._book.snapshot():
            quote = await self._aggregator.fetch_quote(position.asset_id)

            stop = None
            if quote is not None and quote.price is not None and quote.price > 0:
                # Evaluate the stop ladder at the new price before writing it.
                position.revalue(quote.price)
                stop = self._exit_engine.next_trailing_stop(position)
            else:
                self._logger.warning(
                    "%s: no fresh price, keeping %s and marking stale",
                    position.symbol,
                    position.current_price,
                )

            result = await self._book.apply_market_update(position.symbol, quote, stop)
            if result is None:
                # Closed by a confirmation between snapshot and update.
                continue
            updated.append(result)
            self._logger.debug(
                "%s: price=%s roi=%.2f%% stop=%s stale=%s",
                result.symbol,
                result.current_price,
                result.roi_percent,
                result.trailing_stop_price,
                result.stale,
            )
        return updated
