"""
Shared data types for BSC Alpha Engine.

Centralized dataclasses and enums used across all modules.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ExecutionDirection(Enum):
    BUY = "buy"  # quote currency -> token
    SELL = "sell"  # token -> quote currency


class ExecutionStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PositionStatus(Enum):
    ACTIVE = "active"
    EXITING = "exiting"
    CLOSED = "closed"

    @property
    def rank(self) -> int:
        return _POSITION_STATUS_ORDER[self]


_POSITION_STATUS_ORDER = {
    PositionStatus.ACTIVE: 0,
    PositionStatus.EXITING: 1,
    PositionStatus.CLOSED: 2,
}


class ExitAction(Enum):
    HOLD = "hold"
    PARTIAL_EXIT = "partial_exit"
    FULL_EXIT = "full_exit"


class Urgency(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _URGENCY_ORDER[self]


_URGENCY_ORDER = {
    Urgency.LOW: 0,
    Urgency.MEDIUM: 1,
    Urgency.HIGH: 2,
    Urgency.CRITICAL: 3,
}


class EngineState(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # running on partial data or with a dead loop
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Errors shared across layers
# ---------------------------------------------------------------------------


class PositionInvariantError(Exception):
    """Raised when an operation would break a position invariant."""


# ---------------------------------------------------------------------------
# Market Data Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenQuote:
    """Normalized token snapshot from one market-data source."""

    symbol: str
    asset_id: str  # checksummed token address
    source: str
    price: Decimal | None
    volume_24h: Decimal | None = None
    market_cap: Decimal | None = None
    price_change_24h: Decimal | None = None  # percent
    holders: int | None = None
    liquidity: Decimal | None = None
    name: str = ""

    @property
    def completeness(self) -> int:
        """Number of populated optional market fields."""
        return sum(
            value is not None
            for value in (
                self.price,
                self.volume_24h,
                self.market_cap,
                self.price_change_24h,
                self.holders,
                self.liquidity,
            )
        )


@dataclass(frozen=True)
class Candidate:
    quote: TokenQuote
    confidence: Decimal  # 0-100
    score_breakdown: dict[str, Decimal] = field(default_factory=dict)

    @property
    def symbol(self) -> str:
        return self.quote.symbol

    @property
    def asset_id(self) -> str:
        return self.quote.asset_id

    @property
    def price(self) -> Decimal:
        return self.quote.price or Decimal("0")

    @property
    def volume_24h(self) -> Decimal:
        return self.quote.volume_24h or Decimal("0")


@dataclass(frozen=True)
class SourceHealth:
    name: str
    healthy: bool
    last_success: float | None
    consecutive_failures: int
    last_error: str = ""


# ---------------------------------------------------------------------------
# Strategy / Sizing Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StrategyTier:
    name: str
    min_balance: Decimal
    max_position_percent: Decimal
    risk_multiplier: Decimal
    compounding_rate: Decimal  # target daily growth, fraction
    min_confidence: Decimal
    stop_loss_percent: Decimal | None = None


@dataclass(frozen=True)
class SizingDecision:
    approved: bool
    allocation: Decimal
    allocation_percent: Decimal
    reason: str


@dataclass(frozen=True)
class SafetyCheck:
    can_proceed: bool
    reason: str


# ---------------------------------------------------------------------------
# Position Types
# ---------------------------------------------------------------------------


@dataclass
class Position:
    id: str
    symbol: str
    asset_id: str
    entry_price: Decimal
    current_price: Decimal
    quantity: Decimal
    entry_time: float
    entry_value: Decimal
    current_value: Decimal
    unrealized_pnl: Decimal = Decimal("0")
    roi_percent: Decimal = Decimal("0")
    peak_price: Decimal = Decimal("0")
    trailing_stop_price: Decimal = Decimal("0")
    status: PositionStatus = PositionStatus.ACTIVE
    stale: bool = False
    price_samples: deque[Decimal] = field(default_factory=lambda: deque(maxlen=20))
    price_change_24h: Decimal | None = None
    volume_24h: Decimal | None = None
    market_cap: Decimal | None = None
    realized_pnl: Decimal = Decimal("0")
    last_updated: float = 0.0

    def held_minutes(self, now: float | None = None) -> Decimal:
        if now is None:
            now = time.time()
        return Decimal(str(max(now - self.entry_time, 0.0))) / Decimal("60")

    def advance(self, status: PositionStatus) -> None:
        """Move status forward; backward or sideways moves are invariant errors."""
        if status.rank < self.status.rank:
            raise PositionInvariantError(
                f"{self.symbol}: status cannot move {self.status.value} -> {status.value}"
            )
        self.status = status

    def revalue(self, price: Decimal) -> None:
        """Recompute value, P&L and ROI at ``price``."""
        self.current_price = price
        self.current_value = price * self.quantity
        self.unrealized_pnl = self.current_value - self.entry_value
        if self.entry_value > 0:
            self.roi_percent = self.unrealized_pnl / self.entry_value * Decimal("100")
        else:
            self.roi_percent = Decimal("0")
        if price > self.peak_price:
            self.peak_price = price


# ---------------------------------------------------------------------------
# Exit Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExitSignal:
    action: ExitAction
    percentage: Decimal
    urgency: Urgency
    reason: str

    def __post_init__(self) -> None:
        if self.action is ExitAction.HOLD and self.percentage != 0:
            raise ValueError("hold signals must carry a zero percentage")
        if not Decimal("0") <= self.percentage <= Decimal("100"):
            raise ValueError(f"percentage out of range: {self.percentage}")


# ---------------------------------------------------------------------------
# Swap / Execution Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SwapQuote:
    provider: str
    from_token: str
    to_token: str
    from_amount: int  # raw token units
    to_amount: int
    to_amount_min: int
    calldata: bytes  # Raw calldata for aggregator router
    router_address: str  # Address to call() with calldata
    spender: str  # Address that needs the ERC-20 allowance
    gas_estimate: int
    from_decimals: int = 18
    to_decimals: int = 18
    value: int = 0

    @property
    def from_human(self) -> Decimal:
        return Decimal(self.from_amount) / Decimal(10**self.from_decimals)

    @property
    def to_human(self) -> Decimal:
        return Decimal(self.to_amount) / Decimal(10**self.to_decimals)


@dataclass
class ExecutionRequest:
    id: str
    direction: ExecutionDirection
    symbol: str
    asset_id: str
    requested_amount: Decimal  # USDT for buys, token quantity for sells
    price_hint: Decimal
    status: ExecutionStatus = ExecutionStatus.PENDING
    tx_reference: str | None = None
    retry_count: int = 0
    router: str | None = None
    quote: SwapQuote | None = None
    filled_input: Decimal | None = None
    filled_output: Decimal | None = None
    reason: str = ""
    error: str = ""
    dry_run: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status is not ExecutionStatus.PENDING

    def finish(self, status: ExecutionStatus, error: str = "") -> None:
        """Terminal transition; a finished request never changes status again."""
        if self.is_terminal:
            raise PositionInvariantError(
                f"Execution {self.id} already {self.status.value}, cannot become {status.value}"
            )
        if status is ExecutionStatus.PENDING:
            raise ValueError("finish() requires a terminal status")
        self.status = status
        self.error = error
        self.updated_at = time.time()


@dataclass(frozen=True)
class TradeRecord:
    execution_id: str
    direction: ExecutionDirection
    symbol: str
    asset_id: str
    quantity: Decimal
    price: Decimal
    amount: Decimal  # quote currency spent (buy) or received (sell)
    realized_pnl: Decimal
    tx_reference: str
    router: str
    timestamp: float
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Reporting Types
# ---------------------------------------------------------------------------


@dataclass
class TradingStats:
    total_trades: int
    winning_trades: int
    losing_trades: int
    total_pnl_usd: Decimal
    avg_pnl_per_trade_usd: Decimal
    win_rate: Decimal


@dataclass(frozen=True)
class EngineStatus:
    state: EngineState
    running: bool
    open_positions: int
    unrealized_pnl: Decimal
    balance: Decimal
    active_tier: str
    target_daily_rate: Decimal
    projected_balance_30d: Decimal
    sources_down: list[str]
    pending_executions: int
    failed_executions: int
    last_scan_at: float | None
    paused: bool
