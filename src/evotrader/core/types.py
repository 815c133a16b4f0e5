"""Event types and DTOs for the decision-execution-governance loop."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EventType(str, Enum):
    """Event type enumeration."""

    # Risk events
    RISK_HALTED = "risk_halted"
    RISK_RESET = "risk_reset"
    HALTED_CYCLE_SKIPPED = "halted_cycle_skipped"

    # Execution events
    ORDER_FILLED = "order_filled"
    ORDER_REJECTED = "order_rejected"
    ORDER_FAILED = "order_failed"

    # Evolution events
    TRADE_CLOSED = "trade_closed"
    LESSON_WRITTEN = "lesson_written"

    # System events
    STARTUP = "startup"
    STATUS_REPORT = "status_report"


@dataclass
class Event:
    """Base event class."""

    event_type: EventType
    timestamp: datetime = field(default_factory=datetime.utcnow)
    data: dict[str, Any] = field(default_factory=dict)


class Direction(str, Enum):
    """Direction of a proposed trade."""

    LONG = "long"
    SHORT = "short"
    FLAT = "flat"

    @property
    def order_side(self) -> str:
        """Exchange side that opens a position in this direction."""
        if self is Direction.LONG:
            return "buy"
        if self is Direction.SHORT:
            return "sell"
        raise ValueError("FLAT has no order side")

    @property
    def close_side(self) -> str:
        """Exchange side that reduces a position in this direction."""
        if self is Direction.LONG:
            return "sell"
        if self is Direction.SHORT:
            return "buy"
        raise ValueError("FLAT has no position to close")


class OutcomeTag(str, Enum):
    """Classification of a lesson."""

    PAST_MISTAKE = "PAST_MISTAKE"
    MISSED_OPPORTUNITY = "MISSED_OPPORTUNITY"


class ExecutionStatus(str, Enum):
    """Terminal state of a submission."""

    FILLED = "filled"
    REJECTED = "rejected"
    FAILED = "failed"


class OrderStatus(str, Enum):
    """Order status as tracked in the journal and reported by the exchange."""

    IN_FLIGHT = "in_flight"
    LIVE = "live"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    FAILED = "failed"
    NOT_PLACED = "not_placed"


class GovernorState(str, Enum):
    """Risk governor state."""

    ACTIVE = "ACTIVE"
    HALTED = "HALTED"


# ---------------------------------------------------------------------------
# Market context
# ---------------------------------------------------------------------------

class Indicators(BaseModel):
    """Technical indicators computed over recent candles."""

    rsi_14: float = 50.0
    atr_14: float = 0.0
    ema_20: float = 0.0
    ema_50: float = 0.0
    trend_signal: str = "Neutral"


class PriceBar(BaseModel):
    """One OHLCV candle."""

    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class MarketContext(BaseModel):
    """Technical + sentiment snapshot handed to the decision source."""

    symbol: str
    price: float
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    indicators: Indicators = Field(default_factory=Indicators)
    funding_rate: float = 0.0
    open_interest: float = 0.0
    sentiment_score: float = Field(default=0.0, ge=-1.0, le=1.0)
    news_summary: str = ""
    social_summary: str = ""

    @property
    def volatility_metric(self) -> float:
        """ATR expressed as a percentage of price (0 when price is unknown)."""
        if self.price <= 0:
            return 0.0
        return self.indicators.atr_14 / self.price * 100.0

    def to_context_string(self) -> str:
        """Narrative summary used as the similarity-retrieval query."""
        rsi = self.indicators.rsi_14
        if rsi > 70.0:
            rsi_desc = "Overbought"
        elif rsi < 30.0:
            rsi_desc = "Oversold"
        else:
            rsi_desc = "Neutral"

        if self.price > self.indicators.ema_20:
            ema_desc = "Above short-term trend"
        else:
            ema_desc = "Below short-term trend"

        funding_pct = self.funding_rate * 100.0
        if funding_pct > 0.01:
            funding_desc = "High Positive Funding (Longs paying Shorts)"
        elif funding_pct < -0.01:
            funding_desc = "High Negative Funding (Shorts paying Longs)"
        else:
            funding_desc = "Neutral Funding"

        return (
            f"Market Context for {self.symbol}:\n"
            f"- Price Action: ${self.price:.2f}, Trend is {self.indicators.trend_signal}. "
            f"Price is {ema_desc}.\n"
            f"- Momentum: RSI is {rsi:.2f} ({rsi_desc}), Volatility (ATR) is "
            f"{self.indicators.atr_14:.2f} ({self.volatility_metric:.2f}% of price).\n"
            f"- Derivatives: {funding_desc}, Open Interest is {self.open_interest:.0f}.\n"
            f"- Sentiment score: {self.sentiment_score:+.2f}\n"
            f"[News Headlines]: {self.news_summary[:2000]}\n"
            f"[Social Discussion]: {self.social_summary[:2000]}"
        )

    def fingerprint(self) -> dict[str, Any]:
        """JSON-safe snapshot stored with trades and lessons."""
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Decision → sizing → execution
# ---------------------------------------------------------------------------

class TradeIntent(BaseModel):
    """Proposed action before sizing. Immutable."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    direction: Direction
    win_probability: float = Field(default=0.0, ge=0.0, le=1.0)
    payoff_ratio: float = Field(default=0.0, ge=0.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    stop_loss_pct: float | None = Field(default=None, gt=0.0, lt=1.0)
    take_profit_pct: float | None = Field(default=None, gt=0.0)
    leverage: int = Field(default=1, ge=1)
    rationale: str = ""
    # Close the existing position in ``direction`` instead of opening one.
    reduce_only: bool = False

    @property
    def is_actionable(self) -> bool:
        """Whether the intent proposes an order (open or close)."""
        return self.direction is not Direction.FLAT


def _new_client_order_id() -> str:
    # OKX clOrdId: alphanumeric, at most 32 characters.
    return uuid.uuid4().hex


class SizedOrder(BaseModel):
    """TradeIntent plus capital fraction and absolute size. Consumed once."""

    model_config = ConfigDict(frozen=True)

    intent: TradeIntent
    capital_fraction: float = Field(ge=0.0, le=1.0)
    size: float = Field(ge=0.0)
    reference_price: float = Field(gt=0.0)
    stop_distance: float = Field(ge=0.0)
    risk_amount: float = Field(default=0.0, ge=0.0)
    client_order_id: str = Field(default_factory=_new_client_order_id)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def symbol(self) -> str:
        return self.intent.symbol

    @property
    def direction(self) -> Direction:
        return self.intent.direction

    @property
    def leverage(self) -> int:
        return self.intent.leverage

    @property
    def reduce_only(self) -> bool:
        return self.intent.reduce_only

    @property
    def side(self) -> str:
        """Exchange order side: opening side, or the closing side for reduce-only orders."""
        if self.intent.reduce_only:
            return self.direction.close_side
        return self.direction.order_side

    @property
    def notional(self) -> float:
        return self.size * self.reference_price

    @property
    def initial_margin(self) -> float:
        """Collateral posted for the position (notional / leverage)."""
        return self.notional / self.leverage

    @property
    def is_sendable(self) -> bool:
        """Size 0 means no order is sent."""
        return self.size > 0 and self.intent.is_actionable


class ExchangeOrder(BaseModel):
    """Order state as reported by an exchange adapter."""

    client_order_id: str
    symbol: str
    status: OrderStatus
    order_id: str | None = None
    filled_size: float = 0.0
    avg_price: float | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    """Outcome of ``ExecutionEngine.submit``."""

    status: ExecutionStatus
    order: SizedOrder
    attempts: int = 0
    order_id: str | None = None
    filled_size: float = 0.0
    avg_price: float | None = None
    reason: str = ""
    reconciled: bool = False

    @property
    def is_filled(self) -> bool:
        return self.status is ExecutionStatus.FILLED


# ---------------------------------------------------------------------------
# Positions, trades and lessons
# ---------------------------------------------------------------------------

class OpenPosition(BaseModel):
    """A filled entry awaiting its close."""

    position_id: str
    symbol: str
    direction: Direction
    size: float
    entry_price: float
    initial_margin: float
    order_id: str
    strategy_version: str
    context_snapshot: dict[str, Any] = Field(default_factory=dict)
    opened_at: datetime = Field(default_factory=datetime.utcnow)


class PositionSnapshot(BaseModel):
    """A live position as the exchange reports it."""

    symbol: str
    direction: Direction
    size: float
    entry_price: float = 0.0
    notional: float = 0.0
    margin: float = 0.0
    unrealized_pnl: float = 0.0
    leverage: int = 1

    def describe(self) -> str:
        return (
            f"{self.direction.value.capitalize()}: {self.size:g} @ {self.entry_price:.2f} "
            f"(PnL ${self.unrealized_pnl:+.2f}, {self.leverage}x)"
        )


class ClosedPosition(BaseModel):
    """A position close reported by the exchange."""

    close_id: str
    symbol: str
    direction: Direction
    realized_pnl: float
    fee: float = 0.0
    closed_at: datetime

    @property
    def net_pnl(self) -> float:
        # OKX reports fees as negative amounts.
        return self.realized_pnl + self.fee


class TradeRecord(BaseModel):
    """Closed-trade ledger entry.

    ``realized_pnl`` is an absolute currency amount. Return on equity is
    always derived from it and ``initial_margin``; it is never stored.
    """

    trade_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    symbol: str
    direction: Direction
    realized_pnl: float
    initial_margin: float = Field(ge=0.0)
    context_snapshot: dict[str, Any] = Field(default_factory=dict)
    order_id: str
    strategy_version: str
    reviewed: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def roe(self) -> float | None:
        """Realized P&L divided by initial margin (None without margin)."""
        if self.initial_margin == 0:
            return None
        return self.realized_pnl / self.initial_margin

    @property
    def is_loss(self) -> bool:
        return self.realized_pnl < 0


class LessonRecord(BaseModel):
    """Structured lesson produced by Autopsy or the Opportunity Scanner."""

    model_config = ConfigDict(frozen=True)

    lesson_id: str
    outcome_tag: OutcomeTag
    context_fingerprint: dict[str, Any]
    rationale: str
    source_ref: str
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def validate_rationale(self) -> "LessonRecord":
        if not self.rationale.strip():
            raise ValueError("LessonRecord requires a rationale")
        return self

    def to_memory_text(self) -> str:
        """Text form stored in the memory store and shown to the decision source."""
        label = "PAST MISTAKE" if self.outcome_tag is OutcomeTag.PAST_MISTAKE else "MISSED OPPORTUNITY"
        return f"[{label}] {self.rationale}"


# ---------------------------------------------------------------------------
# Mutable process state
# ---------------------------------------------------------------------------

@dataclass
class RiskState:
    """Process-wide risk ledger owned by the RiskGovernor."""

    starting_equity: float
    current_equity: float
    peak_equity: float
    halted: bool = False
    halt_reason: str = ""
    halted_at: datetime | None = None

    @property
    def drawdown(self) -> float:
        """Fractional decline of current equity from its peak."""
        if self.peak_equity <= 0:
            return 0.0
        return max(0.0, (self.peak_equity - self.current_equity) / self.peak_equity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "starting_equity": self.starting_equity,
            "current_equity": self.current_equity,
            "peak_equity": self.peak_equity,
            "drawdown": self.drawdown,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "halted_at": self.halted_at.isoformat() if self.halted_at else None,
        }


@dataclass
class HeartbeatState:
    """Current polling interval and last observed volatility."""

    interval: float
    last_volatility: float | None = None
