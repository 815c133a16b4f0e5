"""Tests for the opportunity scanner."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from evotrader.brain.memory import InMemoryMemoryStore
from evotrader.core.types import OutcomeTag
from evotrader.evolution.scanner import OpportunityScanner, bar_seconds, window_key
from evotrader.evolution.writer import EvolutionWriter
from factories import SYMBOL, make_bars, make_order

NOW = datetime(2024, 3, 1, 12, 0, 0)
START = NOW - timedelta(hours=30)


def closes_with_jump(jump_at: int, jump: float = 1.06, count: int = 30) -> list[float]:
    closes = []
    price = 100.0
    for i in range(count):
        if i == jump_at:
            price *= jump
        else:
            price *= 1.001
        closes.append(round(price, 6))
    return closes


@pytest.fixture
def market() -> MagicMock:
    data = MagicMock()
    data.get_candles = AsyncMock(return_value=make_bars(closes_with_jump(20), START))
    return data


@pytest.fixture
def writer(bus, store, metrics_sink) -> EvolutionWriter:
    return EvolutionWriter(InMemoryMemoryStore(), bus, store=store, write_timeout=1.0, metrics_sink=metrics_sink)


def build(market, store, writer, **overrides) -> OpportunityScanner:
    params = {
        "symbols": [SYMBOL],
        "window_hours": 24,
        "threshold": 0.05,
        "lookback_hours": 4,
        "bar": "1H",
        "interval": 3600,
    }
    params.update(overrides)
    return OpportunityScanner(market, store, writer, **params)


@pytest.mark.asyncio
async def test_unanswered_move_creates_lesson(market, store, writer) -> None:
    scanner = build(market, store, writer)

    lessons = await scanner.scan(now=NOW)

    assert len(lessons) == 1
    lesson = lessons[0]
    key = window_key(SYMBOL, START + timedelta(hours=20))
    assert lesson.lesson_id == f"missed:{key}"
    assert lesson.outcome_tag is OutcomeTag.MISSED_OPPORTUNITY
    assert lesson.source_ref == f"scan:{key}"
    assert "rallied +6." in lesson.rationale
    # Fingerprint describes the bar before the move.
    assert lesson.context_fingerprint["timestamp"].startswith((START + timedelta(hours=19)).isoformat())
    assert await store.has_scan_key(key)


@pytest.mark.asyncio
async def test_repeat_scan_reports_move_once(market, store, writer) -> None:
    scanner = build(market, store, writer)

    await scanner.scan(now=NOW)
    assert await scanner.scan(now=NOW + timedelta(hours=1)) == []
    assert await store.count_lessons(OutcomeTag.MISSED_OPPORTUNITY) == 1


@pytest.mark.asyncio
async def test_move_with_activity_is_not_missed(market, store, writer) -> None:
    order = make_order().model_copy(update={"created_at": START + timedelta(hours=18)})
    await store.journal_order(order)
    scanner = build(market, store, writer)

    assert await scanner.scan(now=NOW) == []


@pytest.mark.asyncio
async def test_move_outside_window_is_ignored(store, writer) -> None:
    market = MagicMock()
    market.get_candles = AsyncMock(return_value=make_bars(closes_with_jump(3), START))
    scanner = build(market, store, writer)

    assert await scanner.scan(now=NOW) == []


@pytest.mark.asyncio
async def test_drop_counts_as_move(store, writer) -> None:
    market = MagicMock()
    market.get_candles = AsyncMock(return_value=make_bars(closes_with_jump(25, jump=0.92), START))
    scanner = build(market, store, writer)

    lessons = await scanner.scan(now=NOW)

    assert len(lessons) == 1
    assert "dropped -8." in lessons[0].rationale
    assert "SHORT" in lessons[0].rationale


@pytest.mark.asyncio
async def test_failing_symbol_does_not_stop_others(store, writer) -> None:
    market = MagicMock()
    good = make_bars(closes_with_jump(20), START)

    async def candles(symbol, bar, limit):
        if symbol == "ETH-USDT-SWAP":
            raise ConnectionError("timeout")
        return good

    market.get_candles = AsyncMock(side_effect=candles)
    scanner = build(market, store, writer, symbols=["ETH-USDT-SWAP", SYMBOL])

    lessons = await scanner.scan(now=NOW)

    assert [lesson.lesson_id.split(":")[1] for lesson in lessons] == [SYMBOL]


@pytest.mark.parametrize(
    ("bar", "seconds"),
    [("1m", 60), ("15m", 900), ("1H", 3600), ("4H", 14400), ("1D", 86400), ("1W", 604800)],
)
def test_bar_seconds(bar: str, seconds: int) -> None:
    assert bar_seconds(bar) == seconds


@pytest.mark.parametrize("bar", ["", "H", "1h", "xH"])
def test_bar_seconds_rejects_unknown(bar: str) -> None:
    with pytest.raises(ValueError):
        bar_seconds(bar)
