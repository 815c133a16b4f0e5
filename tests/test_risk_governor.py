"""Tests for the drawdown governor: latch, persistence and manual reset."""

from unittest.mock import AsyncMock

import pytest

from evotrader.core.types import EventType, GovernorState
from evotrader.risk.risk_governor import RiskGovernor
from factories import make_trade


@pytest.mark.asyncio
async def test_halts_when_drawdown_reaches_limit(governor, bus) -> None:
    handler = AsyncMock()
    bus.subscribe(EventType.RISK_HALTED, handler)

    await governor.record_trade_close(make_trade(realized_pnl=-50.0))
    assert governor.may_trade()

    await governor.record_trade_close(make_trade(realized_pnl=-50.0))

    assert governor.state is GovernorState.HALTED
    assert not governor.may_trade()
    handler.assert_awaited_once()
    event = handler.await_args.args[0]
    assert event.data["drawdown"] == pytest.approx(0.10)


@pytest.mark.asyncio
async def test_drawdown_measured_from_peak(governor) -> None:
    await governor.update_equity(1200.0)
    await governor.update_equity(1090.0)
    assert governor.may_trade()

    await governor.update_equity(1070.0)
    assert not governor.may_trade()
    assert governor.snapshot().peak_equity == pytest.approx(1200.0)


@pytest.mark.asyncio
async def test_halt_is_latched(governor) -> None:
    await governor.update_equity(850.0)
    assert not governor.may_trade()

    # Recovery does not clear the halt.
    await governor.update_equity(2000.0)
    await governor.record_trade_close(make_trade(realized_pnl=500.0))
    assert governor.state is GovernorState.HALTED


@pytest.mark.asyncio
async def test_halt_survives_restart(governor, bus, store) -> None:
    await governor.update_equity(800.0)

    restored = RiskGovernor(bus, store=store, max_drawdown_limit=0.10, starting_equity=1000.0)
    await restored.initialize(current_equity=5000.0)

    assert restored.state is GovernorState.HALTED
    assert restored.current_equity == pytest.approx(800.0)


@pytest.mark.asyncio
async def test_manual_reset_rebaselines_peak(governor, bus, store) -> None:
    handler = AsyncMock()
    bus.subscribe(EventType.RISK_RESET, handler)
    await governor.update_equity(850.0)

    result = await governor.reset(operator="alice", reason="reviewed losses")

    assert result["status"] == "reset"
    assert governor.may_trade()
    assert governor.snapshot().peak_equity == pytest.approx(850.0)
    handler.assert_awaited_once()
    audit = await store.list_risk_audit()
    assert audit[-1]["operator"] == "alice"

    # A further 5% loss from the new peak does not re-trigger.
    await governor.update_equity(810.0)
    assert governor.may_trade()


@pytest.mark.asyncio
async def test_reset_requires_operator(governor) -> None:
    await governor.update_equity(800.0)
    with pytest.raises(ValueError):
        await governor.reset(operator="  ")
    assert not governor.may_trade()


@pytest.mark.asyncio
async def test_reset_when_active_is_noop(governor) -> None:
    result = await governor.reset(operator="alice")
    assert result["status"] == "not_halted"


@pytest.mark.asyncio
async def test_halted_cycles_are_counted(governor, bus) -> None:
    handler = AsyncMock()
    bus.subscribe(EventType.HALTED_CYCLE_SKIPPED, handler)
    await governor.update_equity(800.0)

    assert await governor.observe_halted_cycle() == 1
    assert await governor.observe_halted_cycle() == 2
    assert handler.await_count == 2


def test_win_probability_cap_cannot_be_raised(bus) -> None:
    with pytest.raises(ValueError):
        RiskGovernor(bus, win_probability_cap=0.9)


@pytest.mark.asyncio
async def test_cap_win_probability(governor) -> None:
    assert governor.cap_win_probability(0.95) == pytest.approx(0.75)
    assert governor.cap_win_probability(0.55) == pytest.approx(0.55)


@pytest.mark.asyncio
async def test_non_positive_equity_reading_ignored(governor) -> None:
    await governor.update_equity(0.0)
    assert governor.current_equity == pytest.approx(1000.0)
    assert governor.may_trade()


@pytest.mark.asyncio
async def test_marked_close_does_not_double_count(governor) -> None:
    # Exchange equity already includes the realized +125.
    await governor.update_equity(1125.0)
    await governor.record_trade_close(make_trade(realized_pnl=125.0), marked_equity=1125.0)

    assert governor.current_equity == pytest.approx(1125.0)
    assert governor.snapshot().peak_equity == pytest.approx(1125.0)

    await governor.update_equity(1125.0)
    assert governor.state is GovernorState.ACTIVE
    assert governor.snapshot().drawdown == 0.0


@pytest.mark.asyncio
async def test_non_positive_marked_equity_keeps_ledger(governor) -> None:
    await governor.record_trade_close(make_trade(realized_pnl=-40.0), marked_equity=0.0)

    assert governor.current_equity == pytest.approx(1000.0)


@pytest.mark.asyncio
async def test_trade_applied_once(governor, store) -> None:
    record = make_trade(realized_pnl=-40.0)

    await governor.record_trade_close(record)
    await governor.record_trade_close(record)

    assert governor.current_equity == pytest.approx(960.0)
    assert await store.is_trade_applied(record.trade_id)
