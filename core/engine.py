"""
Alpha engine orchestrator for BSC Alpha Engine.

One explicit instance owns every component and runs four independent
asyncio loops:

    scan      - SignalAggregator.scan() on an interval; ranked batches go on
                an asyncio.Queue
    entry     - consumes batches: ledger balance less unsettled buys ->
                strategy tier -> sizing -> safety gate -> buy submission
    monitor   - PositionMonitor.tick() -> ExitDecisionEngine.evaluate() ->
                sell submission; exiting positions with nothing in flight get
                their full exit re-submitted
    confirm   - ExecutionSubmitter.run(), settling live transactions

A failure inside one iteration is logged and the loop carries on. A loop
task that dies outright is reported as a degraded engine status.

Usage:
    engine = AlphaEngine(aggregator, selector, sizing, submitter, book,
                         monitor, exit_engine, ledger, safety)
    await engine.start()
    status = engine.status()
    await engine.stop()
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING

from bot_logging.logger_manager import log_trace, setup_module_logger
from config.loader import get_config
from core.execution_submitter import ExecutionInFlightError, ExecutionSubmitterError
from shared.constants import HUNDRED
from shared.types import (
    Candidate,
    EngineState,
    EngineStatus,
    ExecutionDirection,
    ExecutionRequest,
    ExitAction,
    Position,
    PositionInvariantError,
    PositionStatus,
    StrategyTier,
)

if TYPE_CHECKING:
    from core.execution_submitter import ExecutionSubmitter
    from core.exit_engine import ExitDecisionEngine
    from core.position_book import PositionBook
    from core.position_monitor import PositionMonitor
    from core.safety import SafetyState
    from core.signal_aggregator import SignalAggregator
    from core.sizing import SizingPolicy
    from core.strategy_tiers import StrategyTierSelector
    from core.trade_ledger import TradeLedger


class AlphaEngine:
    """Owns the position lifecycle from scan to exit."""

    def __init__(
        self,
        aggregator: SignalAggregator,
        selector: StrategyTierSelector,
        sizing: SizingPolicy,
        submitter: ExecutionSubmitter,
        book: PositionBook,
        monitor: PositionMonitor,
        exit_engine: ExitDecisionEngine,
        ledger: TradeLedger,
        safety: SafetyState,
    ) -> None:
        self._aggregator = aggregator
        self._selector = selector
        self._sizing = sizing
        self._submitter = submitter
        self._book = book
        self._monitor = monitor
        self._exit_engine = exit_engine
        self._ledger = ledger
        self._safety = safety

        timing_cfg = get_config().get_timing_config()
        self._scan_interval: float = timing_cfg.get("scan", {}).get("interval_seconds", 30)
        self._queue_timeout: float = timing_cfg.get("scan", {}).get("queue_timeout_seconds", 60)
        self._monitor_interval: float = timing_cfg.get("monitor", {}).get("interval_seconds", 15)

        self._queue: asyncio.Queue[list[Candidate]] = asyncio.Queue(maxsize=1)
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

        self._logger = setup_module_logger("engine", "engine.log", module_folder="Engine_Logs")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def tasks(self) -> list[asyncio.Task[None]]:
        """The running loop tasks (empty while stopped)."""
        return list(self._tasks)

    async def start(self) -> None:
        """Launch the scan, entry, monitor and confirmation loops."""
        if self._running:
            self._logger.warning("start() called while already running")
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._scan_loop(), name="scan"),
            asyncio.create_task(self._entry_loop(), name="entry"),
            asyncio.create_task(self._monitor_loop(), name="monitor"),
            asyncio.create_task(self._submitter.run(), name="confirmations"),
        ]
        for task in self._tasks:
            task.add_done_callback(self._task_done)
        self._logger.info(
            "Engine started (scan=%ss monitor=%ss dry_run=%s)",
            self._scan_interval,
            self._monitor_interval,
            self._submitter.is_dry_run,
        )

    async def stop(self) -> None:
        """Cooperative stop, then cancel and gather every loop."""
        if not self._running and not self._tasks:
            return
        self._running = False
        self._submitter.stop()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, result in zip(self._tasks, results, strict=False):
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                self._logger.error("Loop %s exited with error: %s", task.get_name(), result)
        self._tasks = []
        self._logger.info("Engine stopped")

    def _task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.critical(
                "Loop %s died: %s", task.get_name(), exc, exc_info=exc
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def positions(self) -> list[Position]:
        return self._book.snapshot()

    def recent_executions(self, limit: int = 20) -> list[ExecutionRequest]:
        return self._submitter.recent_executions(limit)

    def status(self) -> EngineStatus:
        balance = self._ledger.get_balance()
        tier = self._selector.active_tier(balance)
        sources_down = self._aggregator.sources_down()
        dead_loops = [t.get_name() for t in self._tasks if t.done()]

        if not self._running:
            state = EngineState.STOPPED
        elif sources_down or dead_loops or self._aggregator.used_fallback:
            state = EngineState.DEGRADED
        else:
            state = EngineState.HEALTHY

        return EngineStatus(
            state=state,
            running=self._running,
            open_positions=self._book.count(),
            unrealized_pnl=self._book.unrealized_pnl(),
            balance=balance,
            active_tier=tier.name,
            target_daily_rate=tier.compounding_rate,
            projected_balance_30d=self._selector.project_balance(balance, 30),
            sources_down=sources_down + [f"loop:{name}" for name in dead_loops],
            pending_executions=self._submitter.pending_count(),
            failed_executions=len(self._submitter.failed_executions()),
            last_scan_at=self._aggregator.last_scan_at,
            paused=self._safety.is_paused,
        )

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------

    async def force_exit_all(self, reason: str) -> list[ExecutionRequest]:
        """Pause new entries and submit a full exit for every open position."""
        self._safety.trigger_global_pause(f"force exit: {reason}")
        requests: list[ExecutionRequest] = []
        for position in self._book.snapshot():
            request = await self._submit_full_exit(position, f"force exit: {reason}")
            if request is not None:
                requests.append(request)
        self._logger.warning(
            "Force exit (%s): %d exits submitted for %d positions",
            reason,
            len(requests),
            self._book.count(),
        )
        return requests

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _scan_loop(self) -> None:
        while self._running:
            try:
                candidates = await self._aggregator.scan()
                if candidates:
                    self._offer_batch(candidates)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error("Scan failed: %s", exc, exc_info=True)
            await asyncio.sleep(self._scan_interval)

    def _offer_batch(self, candidates: list[Candidate]) -> None:
        """Keep only the freshest batch; an unconsumed older one is dropped."""
        if self._queue.full():
            self._queue.get_nowait()
            self._logger.debug("Dropped an unconsumed candidate batch")
        self._queue.put_nowait(candidates)

    async def _entry_loop(self) -> None:
        while self._running:
            try:
                batch = await asyncio.wait_for(self._queue.get(), timeout=self._queue_timeout)
            except asyncio.TimeoutError:
                continue
            try:
                await self.process_candidates(batch)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error("Entry processing failed: %s", exc, exc_info=True)

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.monitor_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error("Monitor cycle failed: %s", exc, exc_info=True)
            await asyncio.sleep(self._monitor_interval)

    # ------------------------------------------------------------------
    # Entry path
    # ------------------------------------------------------------------

    async def process_candidates(self, candidates: list[Candidate]) -> list[ExecutionRequest]:
        """
        Size and submit buys for one ranked batch.

        Buys still in flight hold their amount until they settle, so a new
        batch only sizes against capital no pending buy has claimed.
        """
        balance = self._ledger.get_balance()
        tier = self._selector.active_tier(balance)
        reserved = self._submitter.pending_buy_amount()
        available = balance - reserved
        if available <= 0:
            self._logger.info(
                "Skipping batch of %d: %s of %s USDT reserved by pending buys",
                len(candidates),
                reserved,
                balance,
            )
            return []
        submitted: list[ExecutionRequest] = []

        for candidate in candidates:
            symbol = candidate.symbol
            has_active = self._book.has_position(symbol) or self._submitter.in_flight(symbol)
            open_positions = self._book.count() + len(submitted)
            decision = self._sizing.size(
                candidate,
                tier,
                available,
                has_active_position=has_active,
                open_positions=open_positions,
            )
            if not decision.approved:
                self._logger.debug("%s rejected by sizing: %s", symbol, decision.reason)
                log_trace(
                    "sizing_decision",
                    candidate.asset_id,
                    "engine",
                    {"symbol": symbol, "approved": False, "reason": decision.reason},
                )
                continue

            check = self._safety.can_open_position(decision.allocation)
            if not check.can_proceed:
                self._logger.info("%s blocked by safety: %s", symbol, check.reason)
                continue

            try:
                request = await self._submitter.submit(
                    ExecutionDirection.BUY,
                    symbol,
                    candidate.asset_id,
                    decision.allocation,
                    candidate.price,
                    reason=f"confidence {candidate.confidence} ({tier.name})",
                )
            except ExecutionInFlightError:
                continue
            except ExecutionSubmitterError as exc:
                self._logger.error("Buy submission for %s refused: %s", symbol, exc)
                continue

            available -= decision.allocation
            submitted.append(request)
            log_trace(
                "sizing_decision",
                request.id,
                "engine",
                {
                    "symbol": symbol,
                    "approved": True,
                    "confidence": candidate.confidence,
                    "tier": tier.name,
                    "available": available + decision.allocation,
                    "allocation": decision.allocation,
                    "allocation_percent": decision.allocation_percent,
                    "reason": decision.reason,
                },
                next_stage="execution_submitter",
            )
            self._logger.info(
                "Entry %s: %s USDT (%.2f%% of %s) confidence=%s tier=%s",
                symbol,
                decision.allocation,
                decision.allocation_percent,
                balance,
                candidate.confidence,
                tier.name,
                extra={"symbol": symbol, "execution_id": request.id},
            )
        return submitted

    # ------------------------------------------------------------------
    # Exit path
    # ------------------------------------------------------------------

    async def monitor_once(self) -> list[ExecutionRequest]:
        """One monitor tick plus exit evaluation."""
        positions = await self._monitor.tick()
        tier = self._selector.active_tier(self._ledger.get_balance())
        submitted: list[ExecutionRequest] = []

        for position in positions:
            if self._submitter.in_flight(position.symbol):
                continue
            if position.status is PositionStatus.EXITING:
                request = await self._submit_full_exit(position, "retrying full exit")
            elif position.stale:
                continue
            else:
                request = await self._act_on_exit(position, tier)
            if request is not None:
                submitted.append(request)
        return submitted

    async def _act_on_exit(
        self, position: Position, tier: StrategyTier
    ) -> ExecutionRequest | None:
        signal = self._exit_engine.evaluate(position, tier)
        if signal.action is ExitAction.HOLD:
            return None
        if signal.action is ExitAction.FULL_EXIT:
            return await self._submit_full_exit(position, signal.reason)

        quantity = position.quantity * signal.percentage / HUNDRED
        if quantity <= 0:
            return None
        return await self._submit_sell(
            position, quantity, f"partial {signal.percentage}%: {signal.reason}"
        )

    async def _submit_full_exit(self, position: Position, reason: str) -> ExecutionRequest | None:
        if self._submitter.in_flight(position.symbol):
            return None
        if position.status is PositionStatus.ACTIVE:
            try:
                await self._book.mark_exiting(position.symbol)
            except PositionInvariantError as exc:
                self._logger.warning("%s: cannot mark exiting: %s", position.symbol, exc)
                return None
        return await self._submit_sell(position, position.quantity, reason)

    async def _submit_sell(
        self, position: Position, quantity: Decimal, reason: str
    ) -> ExecutionRequest | None:
        try:
            return await self._submitter.submit(
                ExecutionDirection.SELL,
                position.symbol,
                position.asset_id,
                quantity,
                position.current_price,
                reason=reason,
            )
        except ExecutionInFlightError:
            return None
        except ExecutionSubmitterError as exc:
            self._logger.error("Sell submission for %s refused: %s", position.symbol, exc)
            return None
