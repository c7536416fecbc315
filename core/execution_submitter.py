"""
Execution submitter for BSC Alpha Engine.

Accepts buy/sell requests from the engine, routes each one through the DEX
aggregator routers in the background, and turns confirmed fills into
position-book updates and ledger records.

Lifecycle of one request:
    submit()          -> pending, symbol locked, routing task spawned
    routing attempt   -> primary router, then at most one alternate
                         (quote + execute, each under a hard timeout)
    retries           -> exponential backoff, then failed
    paper mode        -> confirmed straight from the quote
    live mode         -> tx hash recorded when signed; poll_confirmations()
                         settles it. Once a swap is signed the request never
                         falls back to another router.
    confirmation      -> book updated under its lock, TradeRecord written
                         in its own task, symbol unlocked

A symbol carries at most one in-flight request. A second submit for the
same symbol is rejected, never queued.

Usage:
    submitter = ExecutionSubmitter(routers, book, ledger, safety, wallet, erc20)
    request = await submitter.submit(ExecutionDirection.BUY, "CAKE", addr,
                                     Decimal("191.36"), Decimal("2.41"))
"""

from __future__ import annotations

import asyncio
import copy
import time
import uuid
from collections import deque
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from bot_logging.logger_manager import log_trace, setup_module_logger
from config.loader import get_config
from shared.constants import TOKEN_USDT
from shared.types import (
    ExecutionDirection,
    ExecutionRequest,
    ExecutionStatus,
    PositionInvariantError,
    TradeRecord,
)

if TYPE_CHECKING:
    from core.position_book import PositionBook
    from core.safety import SafetyState
    from core.trade_ledger import TradeLedger
    from execution.erc20 import Erc20Client
    from execution.swap_router import SwapRouter
    from execution.tx_submitter import TxSubmitter

_ZERO = Decimal("0")


class ExecutionSubmitterError(Exception):
    """Base error for execution submission."""


class ExecutionInFlightError(ExecutionSubmitterError):
    """Raised when a symbol already has a pending execution."""


class ExecutionSubmitter:
    """Background router with per-symbol in-flight locking."""

    def __init__(
        self,
        routers: list[SwapRouter],
        book: PositionBook,
        ledger: TradeLedger,
        safety: SafetyState,
        wallet: TxSubmitter | None = None,
        erc20: Erc20Client | None = None,
        dry_run: bool | None = None,
    ) -> None:
        self._routers = sorted(routers, key=lambda r: r.priority)
        self._book = book
        self._ledger = ledger
        self._safety = safety
        self._wallet = wallet
        self._erc20 = erc20
        self._dry_run = safety.is_dry_run if dry_run is None else dry_run

        cfg = get_config()
        exec_cfg = cfg.get_timing_config().get("execution", {})
        self._quote_timeout: float = exec_cfg.get("quote_timeout_seconds", 8)
        self._submit_timeout: float = exec_cfg.get("submit_timeout_seconds", 30)
        self._max_retries: int = int(exec_cfg.get("max_retries", 2))
        self._backoff_base: float = float(exec_cfg.get("backoff_base_seconds", 2))
        self._confirmation_interval: float = exec_cfg.get("confirmation_interval_seconds", 3)
        self._confirmation_deadline: float = exec_cfg.get("confirmation_deadline_seconds", 300)

        self._quote_token: str = (
            cfg.get_chain_config(56).get("quote_token", {}).get("address", TOKEN_USDT)
        )

        # symbol -> pending request
        self._in_flight: dict[str, ExecutionRequest] = {}
        # request id -> monotonic time its tx was broadcast
        self._submitted_at: dict[str, float] = {}
        self._history: deque[ExecutionRequest] = deque(maxlen=500)
        self._failed: deque[ExecutionRequest] = deque(maxlen=200)

        self._route_tasks: set[asyncio.Task[None]] = set()
        self._ledger_tasks: set[asyncio.Task[None]] = set()
        self._running = False

        self._logger = setup_module_logger(
            "execution_submitter", "execution_submitter.log", module_folder="Execution_Logs"
        )
        self._logger.info(
            "ExecutionSubmitter ready: routers=%s dry_run=%s max_retries=%d",
            [r.name for r in self._routers],
            self._dry_run,
            self._max_retries,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_dry_run(self) -> bool:
        return self._dry_run

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(
        self,
        direction: ExecutionDirection,
        symbol: str,
        asset_id: str,
        amount: Decimal,
        price_hint: Decimal,
        reason: str = "",
    ) -> ExecutionRequest:
        """
        Register a request and start routing it. Returns the pending
        request at once; its status changes as routing progresses.

        ``amount`` is quote currency for buys and token quantity for sells.
        """
        if symbol in self._in_flight:
            raise ExecutionInFlightError(
                f"{symbol} already has execution {self._in_flight[symbol].id} in flight"
            )
        if amount <= 0:
            raise ExecutionSubmitterError(f"{symbol}: amount must be positive, got {amount}")
        if not self._dry_run and self._wallet is None:
            raise ExecutionSubmitterError("Live execution requires a wallet")

        request = ExecutionRequest(
            id=uuid.uuid4().hex[:12],
            direction=direction,
            symbol=symbol,
            asset_id=asset_id,
            requested_amount=amount,
            price_hint=price_hint,
            reason=reason,
            dry_run=self._dry_run,
        )
        self._in_flight[symbol] = request
        self._history.append(request)

        self._logger.info(
            "Submitted %s %s amount=%s hint=%s reason=%s",
            direction.value,
            symbol,
            amount,
            price_hint,
            reason or "-",
            extra={"symbol": symbol, "execution_id": request.id},
        )
        self._spawn_route(request, first_attempt=0)
        return request

    def in_flight(self, symbol: str) -> bool:
        return symbol in self._in_flight

    def pending_count(self) -> int:
        return len(self._in_flight)

    def pending_buy_amount(self) -> Decimal:
        """Quote currency committed to buys that have not settled yet."""
        return sum(
            (
                r.requested_amount
                for r in self._in_flight.values()
                if r.direction is ExecutionDirection.BUY
            ),
            _ZERO,
        )

    def recent_executions(self, limit: int = 20) -> list[ExecutionRequest]:
        """Most recent requests first (copies)."""
        recent = list(self._history)[-limit:]
        return [copy.copy(r) for r in reversed(recent)]

    def failed_executions(self) -> list[ExecutionRequest]:
        return [copy.copy(r) for r in self._failed]

    async def run(self) -> None:
        """Confirmation loop for live-mode requests."""
        self._running = True
        self._logger.info(
            "Confirmation loop started (interval=%.1fs deadline=%.0fs)",
            self._confirmation_interval,
            self._confirmation_deadline,
        )
        while self._running:
            try:
                await self.poll_confirmations()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error("Confirmation poll failed: %s", exc, exc_info=True)
            await asyncio.sleep(self._confirmation_interval)

    def stop(self) -> None:
        self._running = False

    async def close(self) -> None:
        """Cancel outstanding routing and let pending ledger writes finish."""
        self.stop()
        tasks = list(self._route_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._ledger_tasks:
            await asyncio.gather(*list(self._ledger_tasks), return_exceptions=True)
        self._logger.info("ExecutionSubmitter closed (%d routing tasks cancelled)", len(tasks))

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _spawn_route(self, request: ExecutionRequest, first_attempt: int) -> None:
        task = asyncio.create_task(
            self._route(request, first_attempt), name=f"route-{request.symbol}-{request.id}"
        )
        self._route_tasks.add(task)
        task.add_done_callback(self._route_tasks.discard)

    def _backoff(self, attempt: int) -> float:
        return self._backoff_base * (2**attempt)

    async def _route(self, request: ExecutionRequest, first_attempt: int) -> None:
        last_error = ""
        try:
            for attempt in range(first_attempt, self._max_retries + 1):
                if attempt > 0:
                    delay = self._backoff(attempt - 1)
                    self._logger.info(
                        "%s: retry %d/%d in %.1fs (%s)",
                        request.symbol,
                        attempt,
                        self._max_retries,
                        delay,
                        last_error,
                        extra={"symbol": request.symbol, "execution_id": request.id},
                    )
                    await asyncio.sleep(delay)
                request.retry_count = attempt
                error = await self._attempt(request)
                if error is None:
                    return
                last_error = error
                request.error = error
                request.updated_at = time.time()

            self._fail(
                request, f"routing failed after {self._max_retries + 1} attempts: {last_error}"
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("%s: routing crashed: %s", request.symbol, exc, exc_info=True)
            self._fail(request, f"routing error: {exc}")

    async def _attempt(self, request: ExecutionRequest) -> str | None:
        """One pass over the primary and alternate router. Returns an error or None."""
        if not self._routers:
            return "no routers configured"

        if request.direction is ExecutionDirection.BUY:
            from_token, to_token = self._quote_token, request.asset_id
        else:
            from_token, to_token = request.asset_id, self._quote_token

        errors: list[str] = []
        for router in self._routers[:2]:
            try:
                quote = await asyncio.wait_for(
                    router.quote(from_token, to_token, request.requested_amount),
                    timeout=self._quote_timeout,
                )
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                errors.append(f"{router.name}: quote timed out")
                continue
            except Exception as exc:
                errors.append(f"{router.name}: quote error {exc}")
                continue
            if quote is None:
                errors.append(f"{router.name}: no quote")
                continue

            request.router = router.name
            request.quote = quote

            if request.dry_run:
                await self._on_confirmed(
                    request, quote.from_human, quote.to_human, f"dry-run:{request.id}"
                )
                return None

            def _record_signed(tx_hash: str) -> None:
                request.tx_reference = tx_hash
                self._submitted_at[request.id] = time.monotonic()

            try:
                tx_hash = await asyncio.wait_for(
                    router.execute(quote, self._wallet, on_broadcast=_record_signed),
                    timeout=self._submit_timeout,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                router.invalidate(quote)
                if request.tx_reference is not None:
                    # The swap may be live; only its receipt or the deadline settles it.
                    self._logger.warning(
                        "%s: submit via %s did not return (%s); awaiting %s",
                        request.symbol,
                        router.name,
                        exc.__class__.__name__,
                        request.tx_reference,
                        extra={
                            "symbol": request.symbol,
                            "execution_id": request.id,
                            "tx_hash": request.tx_reference,
                        },
                    )
                    return None
                if isinstance(exc, asyncio.TimeoutError):
                    errors.append(f"{router.name}: submit timed out")
                else:
                    errors.append(f"{router.name}: submit error {exc}")
                continue

            request.tx_reference = tx_hash
            request.updated_at = time.time()
            self._submitted_at[request.id] = time.monotonic()
            self._logger.info(
                "%s %s sent via %s: tx=%s",
                request.direction.value,
                request.symbol,
                router.name,
                tx_hash,
                extra={
                    "symbol": request.symbol,
                    "execution_id": request.id,
                    "tx_hash": tx_hash,
                },
            )
            return None

        return "; ".join(errors)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def poll_confirmations(self) -> None:
        """Check the receipt of every broadcast request once."""
        if self._wallet is None:
            return
        for request in list(self._in_flight.values()):
            if request.dry_run or request.tx_reference is None or request.is_terminal:
                continue
            try:
                receipt = await self._wallet.get_receipt(request.tx_reference)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.warning(
                    "%s: receipt lookup failed: %s", request.symbol, exc
                )
                receipt = None

            if receipt is None:
                sent_at = self._submitted_at.get(request.id, time.monotonic())
                if time.monotonic() - sent_at > self._confirmation_deadline:
                    self._fail(
                        request,
                        f"no receipt for {request.tx_reference} within "
                        f"{self._confirmation_deadline:.0f}s",
                    )
                continue

            if receipt.get("status") == 1:
                try:
                    filled_input, filled_output = self._fill_amounts(request, receipt)
                except ExecutionSubmitterError as exc:
                    self._fail(request, str(exc))
                    continue
                await self._on_confirmed(
                    request, filled_input, filled_output, request.tx_reference
                )
            else:
                self._on_reverted(request)

    def _on_reverted(self, request: ExecutionRequest) -> None:
        tx = request.tx_reference
        self._submitted_at.pop(request.id, None)
        # The reverted calldata must not be re-sent from a router's quote cache.
        for router in self._routers:
            if router.name == request.router and request.quote is not None:
                router.invalidate(request.quote)
        if request.retry_count < self._max_retries:
            self._logger.warning(
                "%s: tx %s reverted, re-routing (attempt %d/%d)",
                request.symbol,
                tx,
                request.retry_count + 1,
                self._max_retries,
                extra={"symbol": request.symbol, "execution_id": request.id, "tx_hash": tx},
            )
            request.tx_reference = None
            request.error = f"tx {tx} reverted"
            self._spawn_route(request, first_attempt=request.retry_count + 1)
        else:
            self._fail(request, f"tx {tx} reverted and no retries remain")

    def _fill_amounts(
        self, request: ExecutionRequest, receipt: dict[str, Any]
    ) -> tuple[Decimal, Decimal]:
        """(input spent, output received) in human units from Transfer logs."""
        quote = request.quote
        if quote is None:
            raise ExecutionSubmitterError(
                f"{request.symbol}: receipt for {request.tx_reference} has no quote to settle"
            )
        fallback = (quote.from_human, quote.to_human)
        if self._erc20 is None or self._wallet is None:
            return fallback

        wallet = self._wallet.address
        sent_raw = self._erc20.sent_amount(receipt, quote.from_token, wallet)
        received_raw = self._erc20.received_amount(receipt, quote.to_token, wallet)
        sent = (
            Decimal(sent_raw) / Decimal(10**quote.from_decimals)
            if sent_raw > 0
            else fallback[0]
        )
        received = (
            Decimal(received_raw) / Decimal(10**quote.to_decimals)
            if received_raw > 0
            else fallback[1]
        )
        return sent, received

    async def _on_confirmed(
        self,
        request: ExecutionRequest,
        filled_input: Decimal,
        filled_output: Decimal,
        tx_reference: str,
    ) -> None:
        request.tx_reference = tx_reference
        request.filled_input = filled_input
        request.filled_output = filled_output

        try:
            if request.direction is ExecutionDirection.BUY:
                if filled_output <= 0:
                    raise PositionInvariantError(f"{request.symbol}: buy filled zero tokens")
                quantity, amount = filled_output, filled_input
                price = amount / quantity
                await self._book.open_position(
                    request.symbol, request.asset_id, quantity, price, amount
                )
                realized = _ZERO
            else:
                quantity, amount = filled_input, filled_output
                price = amount / quantity if quantity > 0 else _ZERO
                _, realized = await self._book.reduce_position(request.symbol, quantity, amount)
        except PositionInvariantError as exc:
            self._fail(request, f"position invariant violated: {exc}")
            return

        request.finish(ExecutionStatus.CONFIRMED)
        self._release(request)
        self._safety.record_action()

        self._logger.info(
            "Confirmed %s %s: qty=%s price=%s amount=%s pnl=%s via %s tx=%s",
            request.direction.value,
            request.symbol,
            quantity,
            price,
            amount,
            realized,
            request.router,
            tx_reference,
            extra={"symbol": request.symbol, "execution_id": request.id, "tx_hash": tx_reference},
        )
        log_trace(
            "execution_confirmed",
            request.id,
            "execution_submitter",
            {
                "direction": request.direction.value,
                "symbol": request.symbol,
                "quantity": quantity,
                "price": price,
                "amount": amount,
                "realized_pnl": realized,
                "router": request.router,
                "tx_reference": tx_reference,
                "dry_run": request.dry_run,
            },
            next_stage="trade_ledger",
        )

        record = TradeRecord(
            execution_id=request.id,
            direction=request.direction,
            symbol=request.symbol,
            asset_id=request.asset_id,
            quantity=quantity,
            price=price,
            amount=amount,
            realized_pnl=realized,
            tx_reference=tx_reference,
            router=request.router or "",
            timestamp=time.time(),
            dry_run=request.dry_run,
        )
        task = asyncio.create_task(self._write_ledger(record), name=f"ledger-{request.id}")
        self._ledger_tasks.add(task)
        task.add_done_callback(self._ledger_tasks.discard)

    async def _write_ledger(self, record: TradeRecord) -> None:
        try:
            await self._ledger.record_trade(record)
        except Exception as exc:
            self._logger.error(
                "Ledger write failed for %s (%s); position state kept: %s",
                record.execution_id,
                record.symbol,
                exc,
                exc_info=True,
                extra={"symbol": record.symbol, "execution_id": record.execution_id},
            )

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _fail(self, request: ExecutionRequest, error: str) -> None:
        if request.is_terminal:
            return
        request.finish(ExecutionStatus.FAILED, error)
        self._release(request)
        self._failed.append(request)
        self._logger.error(
            "Execution %s %s %s failed: %s",
            request.id,
            request.direction.value,
            request.symbol,
            error,
            extra={"symbol": request.symbol, "execution_id": request.id, "error": error},
        )

    def _release(self, request: ExecutionRequest) -> None:
        if self._in_flight.get(request.symbol) is request:
            del self._in_flight[request.symbol]
        self._submitted_at.pop(request.id, None)

