"""
Trade ledger for BSC Alpha Engine.

Append-only record of every confirmed execution, persisted in SQLite, plus
the balance view the entry loop sizes against:

    balance = starting_capital - sum(buy amounts) + sum(sell amounts)

Paper-mode fills are recorded the same way as live ones (flagged
``dry_run``) so the paper balance compounds exactly like a live one would.

Usage:
    from core.trade_ledger import TradeLedger

    ledger = TradeLedger()
    await ledger.record_trade(record)
    balance = ledger.get_balance()
"""

from __future__ import annotations

import sqlite3
import time
from decimal import Decimal
from pathlib import Path
from typing import Any

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config, get_env_var
from shared.constants import DEFAULT_STARTING_CAPITAL
from shared.types import ExecutionDirection, TradeRecord, TradingStats

_ZERO = Decimal("0")


class TradeLedger:
    """SQLite-backed trade history and capital accounting."""

    def __init__(
        self,
        db_path: str | None = None,
        starting_capital: Decimal | None = None,
    ) -> None:
        cfg = get_config()
        if db_path is None:
            relative = get_env_var(
                "LEDGER_DB_PATH",
                cfg.get_app_config().get("ledger", {}).get("db_path", "data/trades.db"),
                str,
            )
            db_path = str(cfg.resolve_path(relative))
        if starting_capital is None:
            starting_capital = Decimal(
                str(
                    cfg.get_positions_config().get(
                        "starting_capital", DEFAULT_STARTING_CAPITAL
                    )
                )
            )

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db_path = db_path
        self._starting_capital = starting_capital
        self._db = sqlite3.connect(db_path)
        self._db.row_factory = sqlite3.Row
        self._create_tables()

        self._logger = setup_module_logger(
            "trade_ledger", "trade_ledger.log", module_folder="Trade_Ledger_Logs"
        )

    @property
    def starting_capital(self) -> Decimal:
        return self._starting_capital

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _create_tables(self) -> None:
        self._db.executescript("""
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL UNIQUE,
                direction TEXT NOT NULL,
                symbol TEXT NOT NULL,
                asset_id TEXT NOT NULL,
                quantity TEXT NOT NULL,
                price TEXT NOT NULL,
                amount TEXT NOT NULL,
                realized_pnl TEXT NOT NULL,
                tx_reference TEXT NOT NULL,
                router TEXT NOT NULL,
                timestamp REAL NOT NULL,
                dry_run BOOLEAN NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol);
        """)
        self._db.commit()

    # ------------------------------------------------------------------
    # Record operations
    # ------------------------------------------------------------------

    async def record_trade(self, record: TradeRecord) -> int:
        """Append one confirmed trade. Returns the row id."""
        cursor = self._db.execute(
            """INSERT INTO trades
               (execution_id, direction, symbol, asset_id, quantity, price, amount,
                realized_pnl, tx_reference, router, timestamp, dry_run)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.execution_id,
                record.direction.value,
                record.symbol,
                record.asset_id,
                str(record.quantity),
                str(record.price),
                str(record.amount),
                str(record.realized_pnl),
                record.tx_reference,
                record.router,
                record.timestamp,
                record.dry_run,
            ),
        )
        self._db.commit()
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to obtain trade ID after INSERT")

        self._logger.info(
            "Trade recorded: %s %s qty=%s price=%s amount=%s pnl=%s tx=%s%s",
            record.direction.value,
            record.symbol,
            record.quantity,
            record.price,
            record.amount,
            record.realized_pnl,
            record.tx_reference,
            " (paper)" if record.dry_run else "",
            extra={"symbol": record.symbol, "execution_id": record.execution_id},
        )
        return row_id

    # ------------------------------------------------------------------
    # Query operations
    # ------------------------------------------------------------------

    def get_balance(self) -> Decimal:
        """Capital available for new entries."""
        spent = _ZERO
        received = _ZERO
        for row in self._db.execute("SELECT direction, amount FROM trades").fetchall():
            amount = Decimal(row["amount"])
            if row["direction"] == ExecutionDirection.BUY.value:
                spent += amount
            else:
                received += amount
        return self._starting_capital - spent + received

    async def recent_trades(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent trades first."""
        rows = self._db.execute(
            "SELECT * FROM trades ORDER BY timestamp DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [dict(r) for r in rows]

    async def get_trading_stats(self, window_days: int | None = None) -> TradingStats:
        """Win/loss statistics over sell trades (the ones that realize P&L)."""
        query = "SELECT realized_pnl FROM trades WHERE direction = ?"
        params: tuple[Any, ...] = (ExecutionDirection.SELL.value,)
        if window_days is not None:
            query += " AND timestamp >= ?"
            params += (time.time() - window_days * 86400,)
        rows = self._db.execute(query, params).fetchall()

        pnls = [Decimal(r["realized_pnl"]) for r in rows]
        total = len(pnls)
        if total == 0:
            return TradingStats(
                total_trades=0,
                winning_trades=0,
                losing_trades=0,
                total_pnl_usd=_ZERO,
                avg_pnl_per_trade_usd=_ZERO,
                win_rate=_ZERO,
            )

        winning = sum(1 for p in pnls if p > 0)
        losing = sum(1 for p in pnls if p < 0)
        total_pnl = sum(pnls, _ZERO)
        return TradingStats(
            total_trades=total,
            winning_trades=winning,
            losing_trades=losing,
            total_pnl_usd=total_pnl,
            avg_pnl_per_trade_usd=total_pnl / Decimal(total),
            win_rate=Decimal(winning) / Decimal(total),
        )

    def close(self) -> None:
        self._db.close()
