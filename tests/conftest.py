"""Shared test fixtures."""

import pytest

from evotrader.core.bus import EventBus
from evotrader.observability.metrics import SystemMetrics
from evotrader.risk.risk_governor import RiskGovernor
from evotrader.storage.trade_log import TradeLogStore


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def metrics_sink() -> SystemMetrics:
    return SystemMetrics()


@pytest.fixture
async def store(tmp_path):
    """SQLite trade log in a temp directory."""
    trade_log = TradeLogStore(tmp_path / "evotrader.db")
    await trade_log.connect()
    yield trade_log
    await trade_log.close()


@pytest.fixture
async def governor(bus, store, metrics_sink) -> RiskGovernor:
    gov = RiskGovernor(
        bus,
        store=store,
        max_drawdown_limit=0.10,
        win_probability_cap=0.75,
        starting_equity=1000.0,
        metrics_sink=metrics_sink,
    )
    await gov.initialize()
    return gov
