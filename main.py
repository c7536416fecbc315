"""
BSC Alpha Engine, main entrypoint.

Single-process asyncio runner. Wires one AlphaEngine instance from config
and runs it until SIGINT/SIGTERM:

    market data sources -> SignalAggregator -> sizing -> ExecutionSubmitter
        -> PositionBook <- PositionMonitor -> ExitDecisionEngine -> sells

All components share one in-memory position book and communicate through
an asyncio.Queue of candidate batches. No multiprocessing or external IPC.

Usage:
    python main.py          # paper trading by default (set EXECUTOR_DRY_RUN=false)
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys

from dotenv import load_dotenv

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config, get_env_var
from config.validate import ConfigValidationError, validate_all_configs
from shared.constants import DEFAULT_RPC_URL

# ---------------------------------------------------------------------------
# Module logger (logged to logs/ root, no sub-folder)
# ---------------------------------------------------------------------------
_logger = setup_module_logger("main", "Main_Logs")


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _log_banner(
    dry_run: bool,
    rpc_url: str,
    user_address: str,
    starting_capital: str,
    routers: list[str],
    sources: list[str],
) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("BSC Alpha Engine starting")
    _logger.info("=" * 60)
    _logger.info("  dry_run         : %s", dry_run)
    _logger.info(
        "  rpc             : %s...%s", rpc_url[:25], rpc_url[-6:] if len(rpc_url) > 31 else ""
    )
    _logger.info("  wallet          : %s", user_address or "(paper, none)")
    _logger.info("  starting capital: %s USDT", starting_capital)
    _logger.info("  routers         : %s", ", ".join(routers) or "(none)")
    _logger.info("  sources         : %s", ", ".join(sources) or "(none)")
    _logger.info("=" * 60)


# ---------------------------------------------------------------------------
# Task done callback, detect unhandled exceptions
# ---------------------------------------------------------------------------


def _task_done_callback(
    task: asyncio.Task[None],
    shutdown_event: asyncio.Event,
) -> None:
    """Shut the process down when an engine loop dies instead of running half an engine."""
    if task.cancelled():
        _logger.info("Task %s cancelled", task.get_name())
        return

    exc = task.exception()
    if exc is not None:
        _logger.critical(
            "Task %s failed with unhandled exception: %s",
            task.get_name(),
            exc,
            exc_info=exc,
        )
        shutdown_event.set()


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _run() -> None:
    """Wire all components and run the engine until shutdown."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        sys.exit(1)

    cfg = get_config()
    positions_cfg = cfg.get_positions_config()
    chain_cfg = cfg.get_chain_config(56)

    rpc_url: str = os.getenv(
        "BSC_RPC_URL_HTTP", chain_cfg.get("rpc", {}).get("http_url", DEFAULT_RPC_URL)
    )
    user_address: str = os.getenv("USER_WALLET_ADDRESS", "")
    private_key: str = os.getenv("EXECUTOR_PRIVATE_KEY", "")
    dry_run: bool = get_env_var("EXECUTOR_DRY_RUN", positions_cfg.get("dry_run", True), bool)

    if not dry_run and not (user_address and private_key):
        _logger.critical("Live mode needs USER_WALLET_ADDRESS and EXECUTOR_PRIVATE_KEY")
        sys.exit(1)

    # ------------------------------------------------------------------
    # 2. Initialize AsyncWeb3 provider (shared across all components)
    # ------------------------------------------------------------------
    from web3 import AsyncWeb3
    from web3.providers import AsyncHTTPProvider

    w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
    if not await w3.is_connected():
        _logger.critical("Cannot connect to BSC RPC at %s", rpc_url)
        sys.exit(1)
    chain_id = await w3.eth.chain_id
    _logger.info("Connected to chain %d via %s", chain_id, rpc_url[:40])

    # ------------------------------------------------------------------
    # 3. Initialize shared instances (dependency order)
    # ------------------------------------------------------------------
    import aiohttp

    from core.engine import AlphaEngine
    from core.execution_submitter import ExecutionSubmitter
    from core.exit_engine import ExitDecisionEngine
    from core.market_data import build_candidate_cache, build_sources
    from core.position_book import PositionBook
    from core.position_monitor import PositionMonitor
    from core.safety import SafetyState
    from core.signal_aggregator import SignalAggregator
    from core.sizing import SizingPolicy
    from core.strategy_tiers import StrategyTierSelector
    from core.trade_ledger import TradeLedger
    from execution.erc20 import Erc20Client
    from execution.swap_router import build_routers
    from execution.tx_submitter import TxSubmitter

    http_session = aiohttp.ClientSession()

    safety = SafetyState()
    ledger = TradeLedger()
    book = PositionBook()
    erc20 = Erc20Client(w3)

    wallet = None
    # Paper mode quotes on behalf of the zero address when no wallet is configured.
    quote_address = user_address or "0x" + "00" * 20
    if not dry_run:
        wallet = TxSubmitter(w3, safety, private_key, user_address)
        quote_address = wallet.address
    routers = build_routers(erc20, quote_address)

    sources = build_sources(http_session, w3)
    aggregator = SignalAggregator(sources, cache=build_candidate_cache())
    selector = StrategyTierSelector()
    sizing = SizingPolicy()
    exit_engine = ExitDecisionEngine()
    monitor = PositionMonitor(book, aggregator, exit_engine)
    submitter = ExecutionSubmitter(
        routers, book, ledger, safety, wallet=wallet, erc20=erc20, dry_run=dry_run
    )

    engine = AlphaEngine(
        aggregator, selector, sizing, submitter, book, monitor, exit_engine, ledger, safety
    )

    _log_banner(
        dry_run,
        rpc_url,
        user_address,
        str(ledger.starting_capital),
        [r.name for r in routers],
        [s.name for s in sources],
    )

    # ------------------------------------------------------------------
    # 4. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 5. Run until shutdown
    # ------------------------------------------------------------------
    await engine.start()
    for task in engine.tasks:
        task.add_done_callback(lambda done_task: _task_done_callback(done_task, shutdown_event))

    status = engine.status()
    _logger.info(
        "Engine %s: balance=%s tier=%s target_daily=%s projected_30d=%s",
        status.state.value,
        status.balance,
        status.active_tier,
        status.target_daily_rate,
        status.projected_balance_30d,
    )

    try:
        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down, stopping engine")
        await engine.stop()
        await submitter.close()
        await aggregator.close()
        for router in routers:
            await router.close()
        if wallet is not None:
            await wallet.close()
        await http_session.close()

        final = engine.status()
        _logger.info(
            "Shutdown complete: open_positions=%d balance=%s failed_executions=%d",
            final.open_positions,
            final.balance,
            final.failed_executions,
        )
        ledger.close()


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
