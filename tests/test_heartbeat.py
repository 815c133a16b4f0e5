"""Tests for the volatility-adaptive heartbeat."""

import asyncio
import math

import pytest

from evotrader.core.heartbeat import HeartbeatConfig, HeartbeatController, next_interval
from evotrader.observability.metrics import HEARTBEAT_INTERVAL, SystemMetrics

CONFIG = HeartbeatConfig(
    base_interval=300.0,
    min_interval=60.0,
    max_interval=900.0,
    reference_volatility=0.5,
    max_growth=2.0,
)


def test_reference_volatility_gives_base_interval() -> None:
    assert next_interval(0.5, 300.0, CONFIG) == pytest.approx(300.0)


def test_higher_volatility_never_lengthens_interval() -> None:
    readings = [0.0, 0.1, 0.25, 0.5, 0.75, 1.0, 2.0, 5.0, 50.0]
    intervals = [next_interval(v, 300.0, CONFIG) for v in readings]
    for longer, shorter in zip(intervals, intervals[1:]):
        assert shorter <= longer


@pytest.mark.parametrize("volatility", [0.0, 1e-9, 0.5, 3.0, 1e6])
@pytest.mark.parametrize("previous", [60.0, 300.0, 900.0])
def test_interval_stays_in_band(volatility: float, previous: float) -> None:
    interval = next_interval(volatility, previous, CONFIG)
    assert CONFIG.min_interval <= interval <= CONFIG.max_interval


def test_calm_market_grows_gradually() -> None:
    # Target is 600s but growth is limited to 2x the previous interval.
    assert next_interval(0.0, 100.0, CONFIG) == pytest.approx(200.0)
    assert next_interval(0.0, 400.0, CONFIG) == pytest.approx(600.0)


def test_spike_shortens_immediately() -> None:
    assert next_interval(10.0, 900.0, CONFIG) == pytest.approx(60.0)


@pytest.mark.parametrize("volatility", [-0.1, math.nan])
def test_invalid_volatility_raises(volatility: float) -> None:
    with pytest.raises(ValueError):
        next_interval(volatility, 300.0, CONFIG)


def test_invalid_band_rejected() -> None:
    with pytest.raises(ValueError):
        HeartbeatConfig(min_interval=600.0, max_interval=300.0)


def test_controller_keeps_interval_without_reading() -> None:
    sink = SystemMetrics()
    controller = HeartbeatController(CONFIG, metrics_sink=sink)
    controller.observe(1.0)
    assert controller.interval == pytest.approx(150.0)
    assert sink.get_gauges()[HEARTBEAT_INTERVAL] == pytest.approx(150.0)

    assert controller.observe(None) == pytest.approx(150.0)
    assert controller.state.last_volatility == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_wait_returns_early_on_stop() -> None:
    controller = HeartbeatController(CONFIG)
    stop = asyncio.Event()
    stop.set()
    assert await controller.wait(stop) is True
