"""Builders for domain objects used across tests."""

from datetime import datetime, timedelta

from evotrader.core.types import (
    Direction,
    Indicators,
    MarketContext,
    PriceBar,
    SizedOrder,
    TradeIntent,
    TradeRecord,
)

SYMBOL = "BTC-USDT-SWAP"


def make_intent(**overrides) -> TradeIntent:
    fields = {
        "symbol": SYMBOL,
        "direction": Direction.LONG,
        "win_probability": 0.6,
        "payoff_ratio": 2.0,
        "confidence": 0.6,
        "stop_loss_pct": 0.02,
        "take_profit_pct": 0.04,
        "leverage": 3,
        "rationale": "EMA20 above EMA50, RSI neutral",
    }
    fields.update(overrides)
    return TradeIntent(**fields)


def make_context(price: float = 50_000.0, atr: float = 250.0, **overrides) -> MarketContext:
    fields = {
        "symbol": SYMBOL,
        "price": price,
        "indicators": Indicators(rsi_14=55.0, atr_14=atr, ema_20=price * 0.99, ema_50=price * 0.98,
                                 trend_signal="Bullish"),
        "funding_rate": 0.0001,
        "open_interest": 12_000.0,
    }
    fields.update(overrides)
    return MarketContext(**fields)


def make_order(size: float = 0.01, price: float = 50_000.0, **intent_overrides) -> SizedOrder:
    intent = make_intent(**intent_overrides)
    return SizedOrder(
        intent=intent,
        capital_fraction=0.1,
        size=size,
        reference_price=price,
        stop_distance=price * (intent.stop_loss_pct or 0.02),
        risk_amount=size * price * (intent.stop_loss_pct or 0.02),
    )


def make_trade(realized_pnl: float = -150.0, initial_margin: float = 1000.0, **overrides) -> TradeRecord:
    fields = {
        "symbol": SYMBOL,
        "direction": Direction.LONG,
        "realized_pnl": realized_pnl,
        "initial_margin": initial_margin,
        "context_snapshot": {
            "context": make_context().fingerprint(),
            "intent": make_intent().model_dump(mode="json"),
            "risk_amount": 100.0,
        },
        "order_id": "ord-1",
        "strategy_version": "test",
    }
    fields.update(overrides)
    return TradeRecord(**fields)


def make_bars(closes: list[float], start: datetime, step: timedelta = timedelta(hours=1)) -> list[PriceBar]:
    bars = []
    prev = closes[0]
    for i, close in enumerate(closes):
        bars.append(PriceBar(
            open_time=start + step * i,
            open=prev,
            high=max(prev, close) * 1.001,
            low=min(prev, close) * 0.999,
            close=close,
            volume=100.0,
        ))
        prev = close
    return bars


