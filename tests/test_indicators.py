"""Tests for technical indicators."""

from datetime import datetime, timedelta

import pytest

from evotrader.core.types import PriceBar
from evotrader.perception.indicators import (
    calculate_atr,
    calculate_ema,
    calculate_rsi,
    compute_indicators,
)
from factories import make_bars


def flat_range_bars(count: int, width: float = 2.0) -> list[PriceBar]:
    start = datetime(2024, 1, 1)
    return [
        PriceBar(open_time=start + timedelta(hours=i), open=100.0, high=100.0 + width / 2,
                 low=100.0 - width / 2, close=100.0)
        for i in range(count)
    ]


def test_ema_seeded_with_sma() -> None:
    assert calculate_ema([1.0, 2.0, 3.0, 4.0, 5.0], 5) == pytest.approx(3.0)
    # One step after the seed: (6 - 3) * 2/6 + 3
    assert calculate_ema([1.0, 2.0, 3.0, 4.0, 5.0, 6.0], 5) == pytest.approx(4.0)


def test_ema_short_history_returns_last() -> None:
    assert calculate_ema([10.0, 11.0], 20) == 11.0
    assert calculate_ema([], 20) == 0.0


def test_rsi_extremes() -> None:
    rising = [float(i) for i in range(1, 30)]
    falling = list(reversed(rising))

    assert calculate_rsi(rising) == 100.0
    assert calculate_rsi(falling) == pytest.approx(0.0)
    assert calculate_rsi([100.0] * 30) == 50.0
    assert calculate_rsi([1.0, 2.0]) == 50.0


def test_atr_constant_range() -> None:
    assert calculate_atr(flat_range_bars(30, width=2.0)) == pytest.approx(2.0)
    assert calculate_atr(flat_range_bars(10)) == 0.0


def test_compute_indicators_trend() -> None:
    start = datetime(2024, 1, 1)
    up = make_bars([100.0 + i for i in range(60)], start)
    down = make_bars([200.0 - i for i in range(60)], start)

    assert compute_indicators(up).trend_signal == "Bullish"
    assert compute_indicators(down).trend_signal == "Bearish"
    assert compute_indicators(up).atr_14 > 0
