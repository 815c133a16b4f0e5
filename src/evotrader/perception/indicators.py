"""Technical indicators over candle history (oldest first)."""

from evotrader.core.types import Indicators, PriceBar


def calculate_ema(data: list[float], period: int) -> float:
    """Latest EMA value, seeded with the SMA of the first ``period`` points.

    With fewer points than ``period`` the last value is returned.
    """
    if not data:
        return 0.0
    if period <= 0 or len(data) < period:
        return data[-1]

    ema = sum(data[:period]) / period
    multiplier = 2 / (period + 1)
    for value in data[period:]:
        ema = (value - ema) * multiplier + ema
    return ema


def calculate_rsi(data: list[float], period: int = 14) -> float:
    """Latest RSI using Wilder smoothing (50 when history is too short)."""
    if period <= 0 or len(data) < period + 1:
        return 50.0

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        change = data[i] - data[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period

    for i in range(period + 1, len(data)):
        change = data[i] - data[i - 1]
        avg_gain = (avg_gain * (period - 1) + max(change, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-change, 0.0)) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def true_range(bar: PriceBar, prev_close: float) -> float:
    return max(bar.high - bar.low, abs(bar.high - prev_close), abs(bar.low - prev_close))


def calculate_atr(bars: list[PriceBar], period: int = 14) -> float:
    """Latest ATR with Wilder smoothing (0 when history is too short)."""
    if period <= 0 or len(bars) < period + 1:
        return 0.0

    ranges = [true_range(bars[i], bars[i - 1].close) for i in range(1, len(bars))]
    atr = sum(ranges[:period]) / period
    for tr in ranges[period:]:
        atr = (atr * (period - 1) + tr) / period
    return atr


def compute_indicators(bars: list[PriceBar]) -> Indicators:
    """RSI(14), ATR(14), EMA(20/50) and the EMA trend label."""
    closes = [bar.close for bar in bars]
    ema_20 = calculate_ema(closes, 20)
    ema_50 = calculate_ema(closes, 50)
    if ema_20 > ema_50:
        trend = "Bullish"
    elif ema_20 < ema_50:
        trend = "Bearish"
    else:
        trend = "Neutral"
    return Indicators(
        rsi_14=calculate_rsi(closes, 14),
        atr_14=calculate_atr(bars, 14),
        ema_20=ema_20,
        ema_50=ema_50,
        trend_signal=trend,
    )
