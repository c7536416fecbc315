"""
Unit tests for core/trade_ledger.py.

Tests verify trade persistence, the balance formula, duplicate execution
ids, recent-trade ordering, and win/loss statistics.
"""

from __future__ import annotations

import sqlite3
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from shared.types import ExecutionDirection, TradeRecord
from tests.conftest import TOKEN_CAKE, make_loader


def _make_ledger(db_path: str = ":memory:", starting_capital: str = "1000"):
    """Create a TradeLedger with patched config and logger."""
    with (
        patch("core.trade_ledger.get_config") as mock_cfg,
        patch("core.trade_ledger.setup_module_logger") as mock_logger,
    ):
        mock_cfg.return_value = make_loader()
        mock_logger.return_value = MagicMock()

        from core.trade_ledger import TradeLedger

        return TradeLedger(db_path=db_path, starting_capital=Decimal(starting_capital))


def _record(
    execution_id: str,
    direction: ExecutionDirection,
    amount: str,
    pnl: str = "0",
    timestamp: float | None = None,
) -> TradeRecord:
    return TradeRecord(
        execution_id=execution_id,
        direction=direction,
        symbol="CAKE",
        asset_id=TOKEN_CAKE,
        quantity=Decimal("10"),
        price=Decimal("2"),
        amount=Decimal(amount),
        realized_pnl=Decimal(pnl),
        tx_reference=f"dry-run:{execution_id}",
        router="1inch",
        timestamp=timestamp if timestamp is not None else time.time(),
        dry_run=True,
    )


@pytest.fixture
def ledger():
    led = _make_ledger()
    yield led
    led.close()


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


class TestBalance:

    def test_starting_balance(self, ledger):
        assert ledger.get_balance() == Decimal("1000")
        assert ledger.starting_capital == Decimal("1000")

    async def test_buys_and_sells_move_balance(self, ledger):
        await ledger.record_trade(_record("a", ExecutionDirection.BUY, "191.36"))
        await ledger.record_trade(_record("b", ExecutionDirection.SELL, "220", pnl="28.64"))
        assert ledger.get_balance() == Decimal("1028.64")

    async def test_duplicate_execution_id_rejected(self, ledger):
        await ledger.record_trade(_record("a", ExecutionDirection.BUY, "10"))
        with pytest.raises(sqlite3.IntegrityError):
            await ledger.record_trade(_record("a", ExecutionDirection.BUY, "10"))
        assert ledger.get_balance() == Decimal("990")

    async def test_persists_to_disk(self, tmp_path):
        path = str(tmp_path / "sub" / "trades.db")
        first = _make_ledger(path)
        await first.record_trade(_record("a", ExecutionDirection.BUY, "100"))
        first.close()

        second = _make_ledger(path)
        assert second.get_balance() == Decimal("900")
        second.close()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:

    async def test_recent_trades_newest_first(self, ledger):
        await ledger.record_trade(_record("old", ExecutionDirection.BUY, "10", timestamp=1.0))
        await ledger.record_trade(_record("new", ExecutionDirection.SELL, "12", timestamp=2.0))
        trades = await ledger.recent_trades()
        assert [t["execution_id"] for t in trades] == ["new", "old"]
        assert trades[0]["amount"] == "12"

    async def test_stats_empty(self, ledger):
        stats = await ledger.get_trading_stats()
        assert stats.total_trades == 0
        assert stats.win_rate == Decimal("0")

    async def test_stats_count_sells_only(self, ledger):
        await ledger.record_trade(_record("b1", ExecutionDirection.BUY, "100"))
        await ledger.record_trade(_record("s1", ExecutionDirection.SELL, "120", pnl="20"))
        await ledger.record_trade(_record("s2", ExecutionDirection.SELL, "90", pnl="-10"))
        stats = await ledger.get_trading_stats()
        assert stats.total_trades == 2
        assert stats.winning_trades == 1
        assert stats.losing_trades == 1
        assert stats.total_pnl_usd == Decimal("10")
        assert stats.avg_pnl_per_trade_usd == Decimal("5")
        assert stats.win_rate == Decimal("0.5")

    async def test_stats_window(self, ledger):
        old = time.time() - 10 * 86400
        await ledger.record_trade(_record("s1", ExecutionDirection.SELL, "120", "20", old))
        await ledger.record_trade(_record("s2", ExecutionDirection.SELL, "90", "-10"))
        stats = await ledger.get_trading_stats(window_days=7)
        assert stats.total_trades == 1
        assert stats.total_pnl_usd == Decimal("-10")
