"""Tests for the realized-PnL monitor."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from evotrader.core.types import ClosedPosition, Direction, OpenPosition
from evotrader.evolution.pnl_monitor import PnlMonitor
from factories import SYMBOL

T0 = datetime(2024, 4, 1, 9, 0, 0)


def position(position_id: str, opened_at: datetime, margin: float = 500.0) -> OpenPosition:
    return OpenPosition(
        position_id=position_id,
        symbol=SYMBOL,
        direction=Direction.LONG,
        size=0.01,
        entry_price=50_000.0,
        initial_margin=margin,
        order_id=f"ord-{position_id}",
        strategy_version="v-test",
        context_snapshot={"context": {"symbol": SYMBOL}, "risk_amount": 20.0},
        opened_at=opened_at,
    )


def close(close_id: str, closed_at: datetime, pnl: float = -30.0, fee: float = -1.0) -> ClosedPosition:
    return ClosedPosition(
        close_id=close_id,
        symbol=SYMBOL,
        direction=Direction.LONG,
        realized_pnl=pnl,
        fee=fee,
        closed_at=closed_at,
    )


@pytest.fixture
def client() -> MagicMock:
    exchange = MagicMock()
    exchange.get_closed_positions = AsyncMock(return_value=[])
    return exchange


@pytest.mark.asyncio
async def test_close_matches_oldest_position(client, store) -> None:
    await store.add_open_position(position("newer", T0 + timedelta(hours=1), margin=900.0))
    await store.add_open_position(position("older", T0, margin=500.0))
    client.get_closed_positions.return_value = [close("c1", T0 + timedelta(hours=2))]
    monitor = PnlMonitor(client, store)

    records = await monitor.sync()

    assert len(records) == 1
    record = records[0]
    assert record.realized_pnl == pytest.approx(-31.0)
    assert record.initial_margin == 500.0
    assert record.roe == pytest.approx(-0.062)
    assert record.order_id == "ord-older"
    assert record.context_snapshot["risk_amount"] == 20.0
    assert [p.position_id for p in await store.list_open_positions()] == ["newer"]


@pytest.mark.asyncio
async def test_same_close_recorded_once(client, store) -> None:
    client.get_closed_positions.return_value = [close("c1", T0)]
    monitor = PnlMonitor(client, store)

    await monitor.sync()
    assert await monitor.sync() == []
    assert len(await store.list_trades()) == 1


@pytest.mark.asyncio
async def test_cursor_advances(client, store) -> None:
    client.get_closed_positions.return_value = [close("c2", T0 + timedelta(hours=3)), close("c1", T0)]
    monitor = PnlMonitor(client, store)

    await monitor.sync()
    await monitor.sync()

    client.get_closed_positions.assert_awaited_with(T0 + timedelta(hours=3))
    assert await store.get_value("pnl_sync.last_closed_at") == (T0 + timedelta(hours=3)).isoformat()


@pytest.mark.asyncio
async def test_unmatched_close_recorded_without_margin(client, store) -> None:
    client.get_closed_positions.return_value = [close("c9", T0, pnl=12.0, fee=0.0)]
    monitor = PnlMonitor(client, store, strategy_version="v-test")

    records = await monitor.sync()

    assert records[0].initial_margin == 0.0
    assert records[0].roe is None
    assert records[0].order_id == "c9"
    assert records[0].strategy_version == "v-test"


@pytest.mark.asyncio
async def test_callback_receives_new_records(client, store) -> None:
    handler = AsyncMock()
    client.get_closed_positions.return_value = [close("c1", T0), close("c2", T0 + timedelta(minutes=5))]
    monitor = PnlMonitor(client, store)
    monitor.set_handler(handler)

    await monitor.sync()

    assert handler.await_count == 2
    first = handler.await_args_list[0].args[0]
    assert first.created_at == T0


@pytest.mark.asyncio
async def test_failed_apply_is_retried_next_pass(client, store, governor) -> None:
    calls = 0

    async def flaky(record):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("ledger unavailable")
        await governor.record_trade_close(record)

    client.get_closed_positions.return_value = [close("c1", T0, pnl=-50.0, fee=0.0)]
    monitor = PnlMonitor(client, store, on_trade_closed=flaky)

    assert len(await monitor.sync()) == 1
    assert governor.current_equity == pytest.approx(1000.0)
    assert len(await store.list_unapplied_trades()) == 1

    assert await monitor.sync() == []
    assert governor.current_equity == pytest.approx(950.0)
    assert await store.list_unapplied_trades() == []

    await monitor.sync()
    assert calls == 2
    assert governor.current_equity == pytest.approx(950.0)


@pytest.mark.asyncio
async def test_failing_record_does_not_block_later_ones(client, store) -> None:
    async def handler(record):
        if record.realized_pnl < 0:
            raise ValueError("bad record")

    on_closed = AsyncMock(side_effect=handler)
    client.get_closed_positions.return_value = [
        close("c1", T0, pnl=-30.0, fee=0.0),
        close("c2", T0 + timedelta(minutes=5), pnl=20.0, fee=0.0),
    ]
    monitor = PnlMonitor(client, store, on_trade_closed=on_closed)

    await monitor.sync()

    assert on_closed.await_count == 2
    pending = await store.list_unapplied_trades()
    assert [r.realized_pnl for r in pending] == [-30.0]


@pytest.mark.asyncio
async def test_trade_recorded_before_restart_is_applied_once(client, store, governor) -> None:
    client.get_closed_positions.return_value = [close("c1", T0, pnl=-30.0, fee=-1.0)]
    await PnlMonitor(client, store).sync()
    assert governor.current_equity == pytest.approx(1000.0)

    client.get_closed_positions.return_value = []
    restarted = PnlMonitor(client, store, on_trade_closed=governor.record_trade_close)

    assert await restarted.deliver_pending() == 1
    assert await restarted.deliver_pending() == 0
    assert governor.current_equity == pytest.approx(969.0)
