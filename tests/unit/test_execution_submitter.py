"""
Unit tests for core/execution_submitter.py.

Routers, wallet and ERC-20 helper are mocks; the position book and trade
ledger are real (ledger in-memory) so confirmations are checked end to end.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shared.types import ExecutionDirection, ExecutionStatus, PositionStatus, SwapQuote
from tests.conftest import SAMPLE_USER_ADDRESS, TOKEN_CAKE, TOKEN_USDT, make_loader

WEI = 10**18


@pytest.fixture(autouse=True)
def _no_trace():
    with patch("core.execution_submitter.log_trace"):
        yield


def _quote(from_token=TOKEN_USDT, to_token=TOKEN_CAKE, from_human=100, to_human=50, provider="1inch"):
    return SwapQuote(
        provider=provider,
        from_token=from_token,
        to_token=to_token,
        from_amount=from_human * WEI,
        to_amount=to_human * WEI,
        to_amount_min=to_human * WEI * 99 // 100,
        calldata=b"\x12\x34",
        router_address="0x1111111254EEB25477B68fb85Ed929f73A960582",
        spender="0x1111111254EEB25477B68fb85Ed929f73A960582",
        gas_estimate=250000,
    )


def _router(name: str, priority: int, quote=None, tx_hashes=None) -> MagicMock:
    router = MagicMock()
    router.name = name
    router.priority = priority
    router.quote = AsyncMock(return_value=quote)
    router.execute = AsyncMock(side_effect=tx_hashes or ["0xaaa"])
    return router


def _make_book():
    with (
        patch("core.position_book.get_config") as mock_cfg,
        patch("core.position_book.setup_module_logger") as mock_logger,
    ):
        mock_cfg.return_value = make_loader()
        mock_logger.return_value = MagicMock()

        from core.position_book import PositionBook

        return PositionBook()


def _make_ledger():
    with (
        patch("core.trade_ledger.get_config") as mock_cfg,
        patch("core.trade_ledger.setup_module_logger") as mock_logger,
    ):
        mock_cfg.return_value = make_loader()
        mock_logger.return_value = MagicMock()

        from core.trade_ledger import TradeLedger

        return TradeLedger(db_path=":memory:", starting_capital=Decimal("1000"))


def _make_submitter(routers, book=None, ledger=None, wallet=None, erc20=None, dry_run=True):
    """Create an ExecutionSubmitter with patched config and logger."""
    with (
        patch("core.execution_submitter.get_config") as mock_cfg,
        patch("core.execution_submitter.setup_module_logger") as mock_logger,
    ):
        mock_cfg.return_value = make_loader()
        mock_logger.return_value = MagicMock()

        from core.execution_submitter import ExecutionSubmitter

        safety = MagicMock()
        safety.is_dry_run = dry_run
        return ExecutionSubmitter(
            routers,
            book or _make_book(),
            ledger or _make_ledger(),
            safety,
            wallet=wallet,
            erc20=erc20,
            dry_run=dry_run,
        )


async def _drain(submitter) -> None:
    """Wait for every routing task (including re-routes) and ledger write."""
    while submitter._route_tasks:
        await asyncio.gather(*list(submitter._route_tasks), return_exceptions=True)
    if submitter._ledger_tasks:
        await asyncio.gather(*list(submitter._ledger_tasks), return_exceptions=True)


def _wallet(receipts) -> MagicMock:
    wallet = MagicMock()
    wallet.address = SAMPLE_USER_ADDRESS
    wallet.get_receipt = AsyncMock(side_effect=receipts)
    return wallet


async def _buy(submitter, amount="100"):
    return await submitter.submit(
        ExecutionDirection.BUY, "CAKE", TOKEN_CAKE, Decimal(amount), Decimal("2"), "test"
    )


# ---------------------------------------------------------------------------
# Submission rules
# ---------------------------------------------------------------------------


class TestSubmit:

    async def test_second_submit_for_symbol_rejected(self):
        from core.execution_submitter import ExecutionInFlightError

        submitter = _make_submitter([_router("1inch", 1, _quote())])
        await _buy(submitter)
        with pytest.raises(ExecutionInFlightError):
            await _buy(submitter)
        assert submitter.pending_count() == 1
        await _drain(submitter)
        assert submitter.pending_count() == 0

    async def test_pending_buy_amount_counts_unsettled_buys(self):
        wallet = _wallet([None])
        submitter = _make_submitter(
            [_router("1inch", 1, _quote(), tx_hashes=["0xa1", "0xa2"])],
            wallet=wallet,
            erc20=MagicMock(),
            dry_run=False,
        )

        await _buy(submitter, amount="120")
        await submitter.submit(
            ExecutionDirection.SELL, "XVS", TOKEN_CAKE, Decimal("40"), Decimal("3")
        )
        await _drain(submitter)

        assert submitter.pending_count() == 2
        assert submitter.pending_buy_amount() == Decimal("120")
        await submitter.close()

    async def test_non_positive_amount_rejected(self):
        from core.execution_submitter import ExecutionSubmitterError

        submitter = _make_submitter([_router("1inch", 1, _quote())])
        with pytest.raises(ExecutionSubmitterError):
            await _buy(submitter, amount="0")
        assert not submitter.in_flight("CAKE")

    async def test_live_without_wallet_rejected(self):
        from core.execution_submitter import ExecutionSubmitterError

        submitter = _make_submitter([_router("1inch", 1, _quote())], dry_run=False)
        with pytest.raises(ExecutionSubmitterError):
            await _buy(submitter)


# ---------------------------------------------------------------------------
# Paper mode
# ---------------------------------------------------------------------------


class TestDryRun:

    async def test_buy_confirms_from_quote(self):
        book, ledger = _make_book(), _make_ledger()
        router = _router("1inch", 1, _quote())
        submitter = _make_submitter([router], book=book, ledger=ledger)

        request = await _buy(submitter)
        await _drain(submitter)

        assert request.status is ExecutionStatus.CONFIRMED
        assert request.tx_reference == f"dry-run:{request.id}"
        assert request.router == "1inch"
        router.quote.assert_awaited_once_with(TOKEN_USDT, TOKEN_CAKE, Decimal("100"))
        router.execute.assert_not_awaited()

        position = book.get("CAKE")
        assert position.quantity == Decimal("50")
        assert position.entry_price == Decimal("2")
        assert position.entry_value == Decimal("100")
        assert ledger.get_balance() == Decimal("900")
        assert not submitter.in_flight("CAKE")
        submitter._safety.record_action.assert_called_once()

    async def test_sell_closes_position(self):
        book, ledger = _make_book(), _make_ledger()
        await book.open_position("CAKE", TOKEN_CAKE, Decimal("50"), Decimal("2"), Decimal("100"))
        router = _router("1inch", 1, _quote(TOKEN_CAKE, TOKEN_USDT, 50, 120))
        submitter = _make_submitter([router], book=book, ledger=ledger)

        request = await submitter.submit(
            ExecutionDirection.SELL, "CAKE", TOKEN_CAKE, Decimal("50"), Decimal("1.2")
        )
        await _drain(submitter)

        assert request.status is ExecutionStatus.CONFIRMED
        assert not book.has_position("CAKE")
        trades = await ledger.recent_trades()
        assert trades[0]["direction"] == "sell"
        assert Decimal(trades[0]["realized_pnl"]) == Decimal("20")
        assert ledger.get_balance() == Decimal("1120")

    async def test_sell_without_position_fails(self):
        router = _router("1inch", 1, _quote(TOKEN_CAKE, TOKEN_USDT, 50, 60))
        submitter = _make_submitter([router])

        request = await submitter.submit(
            ExecutionDirection.SELL, "CAKE", TOKEN_CAKE, Decimal("50"), Decimal("1.2")
        )
        await _drain(submitter)

        assert request.status is ExecutionStatus.FAILED
        assert "invariant" in request.error
        assert not submitter.in_flight("CAKE")

    async def test_ledger_failure_keeps_position(self):
        book = _make_book()
        ledger = MagicMock()
        ledger.record_trade = AsyncMock(side_effect=RuntimeError("disk full"))
        submitter = _make_submitter([_router("1inch", 1, _quote())], book=book, ledger=ledger)

        request = await _buy(submitter)
        await _drain(submitter)

        ledger.record_trade.assert_awaited_once()
        assert request.status is ExecutionStatus.CONFIRMED
        assert book.get("CAKE").status is PositionStatus.ACTIVE


# ---------------------------------------------------------------------------
# Routing fallback and retries
# ---------------------------------------------------------------------------


class TestRouting:

    async def test_falls_back_to_alternate_router(self):
        primary = _router("1inch", 1, None)
        alternate = _router("openocean", 2, _quote(provider="openocean"))
        submitter = _make_submitter([alternate, primary])

        request = await _buy(submitter)
        await _drain(submitter)

        assert request.status is ExecutionStatus.CONFIRMED
        assert request.router == "openocean"
        primary.quote.assert_awaited_once()

    async def test_submit_error_before_signing_falls_back(self):
        quote = _quote()
        primary = _router("1inch", 1, quote)
        primary.execute = AsyncMock(side_effect=RuntimeError("nonce too low"))
        alternate = _router("openocean", 2, _quote(provider="openocean"))
        submitter = _make_submitter(
            [primary, alternate], wallet=_wallet([None]), erc20=MagicMock(), dry_run=False
        )

        request = await _buy(submitter)
        await _drain(submitter)

        assert request.router == "openocean"
        assert request.tx_reference == "0xaaa"
        primary.invalidate.assert_called_once_with(quote)
        await submitter.close()

    async def test_no_fallback_once_swap_signed(self):
        signed_hash = "0x" + "cd" * 32

        async def _sign_then_hang(quote, wallet, on_broadcast=None):
            on_broadcast(signed_hash)
            await asyncio.sleep(10)

        quote = _quote()
        primary = _router("1inch", 1, quote)
        primary.execute = AsyncMock(side_effect=_sign_then_hang)
        alternate = _router("openocean", 2, _quote(provider="openocean"))
        erc20 = MagicMock()
        erc20.sent_amount.return_value = 0
        erc20.received_amount.return_value = 0
        book = _make_book()
        submitter = _make_submitter(
            [primary, alternate],
            book=book,
            wallet=_wallet([{"status": 1, "logs": []}]),
            erc20=erc20,
            dry_run=False,
        )

        request = await _buy(submitter)
        await _drain(submitter)

        # Submit timed out after signing: the swap may be live, so it is awaited.
        alternate.quote.assert_not_awaited()
        alternate.execute.assert_not_awaited()
        assert request.status is ExecutionStatus.PENDING
        assert request.tx_reference == signed_hash
        assert submitter.in_flight("CAKE")
        primary.invalidate.assert_called_once_with(quote)

        await submitter.poll_confirmations()
        await _drain(submitter)
        assert request.status is ExecutionStatus.CONFIRMED
        assert book.get("CAKE").quantity == Decimal("50")

    async def test_signed_swap_without_receipt_fails_at_deadline(self):
        async def _sign_then_fail(quote, wallet, on_broadcast=None):
            on_broadcast("0xdead")
            raise ConnectionError("rpc dropped")

        primary = _router("1inch", 1, _quote())
        primary.execute = AsyncMock(side_effect=_sign_then_fail)
        alternate = _router("openocean", 2, _quote(provider="openocean"))
        submitter = _make_submitter(
            [primary, alternate], wallet=_wallet([None]), erc20=MagicMock(), dry_run=False
        )

        request = await _buy(submitter)
        await _drain(submitter)
        alternate.execute.assert_not_awaited()
        submitter._submitted_at[request.id] -= 1000

        await submitter.poll_confirmations()

        assert request.status is ExecutionStatus.FAILED
        assert "no receipt for 0xdead" in request.error

    async def test_only_two_routers_per_attempt(self):
        routers = [_router("a", 1), _router("b", 2), _router("c", 3, _quote())]
        submitter = _make_submitter(routers)

        request = await _buy(submitter)
        await _drain(submitter)

        assert request.status is ExecutionStatus.FAILED
        routers[2].quote.assert_not_awaited()

    async def test_retries_then_fails(self):
        router = _router("1inch", 1, None)
        submitter = _make_submitter([router])

        request = await _buy(submitter)
        await _drain(submitter)

        assert request.status is ExecutionStatus.FAILED
        assert "routing failed after 3 attempts" in request.error
        assert router.quote.await_count == 3
        assert request.retry_count == 2
        assert [r.id for r in submitter.failed_executions()] == [request.id]
        assert not submitter.in_flight("CAKE")

    async def test_backoff_doubles(self):
        submitter = _make_submitter([_router("1inch", 1, None)])
        submitter._backoff_base = 1.0
        with patch("core.execution_submitter.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            await _buy(submitter)
            await _drain(submitter)
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    async def test_quote_timeout_counts_as_failure(self):
        async def _hang(*args):
            await asyncio.sleep(10)

        router = _router("1inch", 1)
        router.quote = AsyncMock(side_effect=_hang)
        submitter = _make_submitter([router])
        submitter._quote_timeout = 0.01
        submitter._max_retries = 0

        request = await _buy(submitter)
        await _drain(submitter)

        assert request.status is ExecutionStatus.FAILED
        assert "quote timed out" in request.error

    async def test_recent_executions_newest_first(self):
        submitter = _make_submitter([_router("1inch", 1, _quote())])
        first = await _buy(submitter)
        await _drain(submitter)
        second = await _buy(submitter)
        await _drain(submitter)

        # Second buy fails on the position invariant, but both are recorded.
        assert [r.id for r in submitter.recent_executions()] == [second.id, first.id]


# ---------------------------------------------------------------------------
# Live mode confirmation
# ---------------------------------------------------------------------------


class TestConfirmation:

    async def test_tx_recorded_then_confirmed_from_logs(self):
        book = _make_book()
        wallet = _wallet([None, {"status": 1, "logs": []}])
        erc20 = MagicMock()
        erc20.sent_amount.return_value = 100 * WEI
        erc20.received_amount.return_value = 49 * WEI
        router = _router("1inch", 1, _quote())
        submitter = _make_submitter(
            [router], book=book, wallet=wallet, erc20=erc20, dry_run=False
        )

        request = await _buy(submitter)
        await _drain(submitter)
        assert request.status is ExecutionStatus.PENDING
        assert request.tx_reference == "0xaaa"
        assert submitter.in_flight("CAKE")

        await submitter.poll_confirmations()
        assert request.status is ExecutionStatus.PENDING

        await submitter.poll_confirmations()
        await _drain(submitter)
        assert request.status is ExecutionStatus.CONFIRMED
        assert request.filled_output == Decimal("49")
        assert book.get("CAKE").quantity == Decimal("49")
        erc20.received_amount.assert_called_with(
            {"status": 1, "logs": []}, TOKEN_CAKE, SAMPLE_USER_ADDRESS
        )

    async def test_missing_transfer_logs_fall_back_to_quote(self):
        book = _make_book()
        wallet = _wallet([{"status": 1, "logs": []}])
        erc20 = MagicMock()
        erc20.sent_amount.return_value = 0
        erc20.received_amount.return_value = 0
        submitter = _make_submitter(
            [_router("1inch", 1, _quote())], book=book, wallet=wallet, erc20=erc20, dry_run=False
        )

        await _buy(submitter)
        await _drain(submitter)
        await submitter.poll_confirmations()

        assert book.get("CAKE").quantity == Decimal("50")

    async def test_revert_reroutes_until_retries_exhausted(self):
        reverted = {"status": 0, "logs": []}
        wallet = _wallet([reverted, reverted, reverted])
        router = _router("1inch", 1, _quote(), tx_hashes=["0xa1", "0xa2", "0xa3"])
        submitter = _make_submitter([router], wallet=wallet, erc20=MagicMock(), dry_run=False)

        request = await _buy(submitter)
        await _drain(submitter)

        await submitter.poll_confirmations()
        await _drain(submitter)
        assert request.retry_count == 1
        assert request.tx_reference == "0xa2"
        assert request.status is ExecutionStatus.PENDING

        await submitter.poll_confirmations()
        await _drain(submitter)
        assert request.tx_reference == "0xa3"

        await submitter.poll_confirmations()
        assert request.status is ExecutionStatus.FAILED
        assert "no retries remain" in request.error
        assert not submitter.in_flight("CAKE")

    async def test_revert_drops_cached_quote(self):
        quote = _quote()
        router = _router("1inch", 1, quote, tx_hashes=["0xa1", "0xa2"])
        submitter = _make_submitter(
            [router], wallet=_wallet([{"status": 0, "logs": []}]), erc20=MagicMock(), dry_run=False
        )

        await _buy(submitter)
        await _drain(submitter)
        await submitter.poll_confirmations()
        await _drain(submitter)

        router.invalidate.assert_called_once_with(quote)
        assert router.quote.await_count == 2
        await submitter.close()

    async def test_receipt_without_quote_fails_request(self):
        book = _make_book()
        submitter = _make_submitter(
            [_router("1inch", 1, _quote())],
            book=book,
            wallet=_wallet([{"status": 1, "logs": []}]),
            erc20=MagicMock(),
            dry_run=False,
        )

        request = await _buy(submitter)
        await _drain(submitter)
        request.quote = None

        await submitter.poll_confirmations()

        assert request.status is ExecutionStatus.FAILED
        assert "no quote to settle" in request.error
        assert book.get("CAKE") is None
        assert not submitter.in_flight("CAKE")

    async def test_deadline_without_receipt_fails(self):
        wallet = _wallet([None])
        submitter = _make_submitter(
            [_router("1inch", 1, _quote())], wallet=wallet, erc20=MagicMock(), dry_run=False
        )

        request = await _buy(submitter)
        await _drain(submitter)
        submitter._submitted_at[request.id] -= 1000

        await submitter.poll_confirmations()

        assert request.status is ExecutionStatus.FAILED
        assert "no receipt" in request.error


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:

    async def test_close_cancels_routing(self):
        gate = asyncio.Event()

        async def _blocked(*args):
            await gate.wait()

        router = _router("1inch", 1)
        router.quote = AsyncMock(side_effect=_blocked)
        submitter = _make_submitter([router])
        submitter._quote_timeout = 10

        await _buy(submitter)
        await asyncio.sleep(0)
        await submitter.close()

        assert not submitter._route_tasks
        assert submitter.is_running is False

    async def test_run_loop_stops(self):
        submitter = _make_submitter([_router("1inch", 1, _quote())])
        task = asyncio.create_task(submitter.run())
        await asyncio.sleep(0.02)
        assert submitter.is_running is True
        submitter.stop()
        await asyncio.wait_for(task, timeout=1)
