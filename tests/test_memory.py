"""Tests for the in-process lesson memory."""

from datetime import datetime, timedelta

import pytest

from evotrader.brain.memory import InMemoryMemoryStore, fingerprint_distance
from evotrader.core.types import Indicators, LessonRecord, OutcomeTag
from factories import make_context


def lesson(lesson_id: str, rsi: float, trend: str = "Bullish", **extra) -> LessonRecord:
    context = make_context(indicators=Indicators(rsi_14=rsi, atr_14=250.0, ema_20=49_500.0,
                                                 ema_50=49_000.0, trend_signal=trend))
    return LessonRecord(
        lesson_id=lesson_id,
        outcome_tag=OutcomeTag.PAST_MISTAKE,
        context_fingerprint=context.fingerprint(),
        rationale=f"lesson {lesson_id}",
        source_ref=f"trade:{lesson_id}",
        **extra,
    )


def test_distance_zero_for_same_context() -> None:
    fingerprint = make_context().fingerprint()
    assert fingerprint_distance(fingerprint, fingerprint) == 0.0


def test_distance_penalises_trend_and_symbol() -> None:
    base = make_context().fingerprint()
    other_trend = make_context(indicators=Indicators(rsi_14=55.0, atr_14=250.0, ema_20=49_500.0,
                                                     ema_50=49_000.0, trend_signal="Bearish")).fingerprint()
    other_symbol = make_context(symbol="ETH-USDT-SWAP").fingerprint()

    assert fingerprint_distance(base, other_trend) >= 0.5
    assert fingerprint_distance(base, other_symbol) == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_query_returns_nearest_first() -> None:
    memory = InMemoryMemoryStore()
    await memory.write(lesson("far", rsi=90.0, trend="Bearish"))
    await memory.write(lesson("near", rsi=56.0))
    await memory.write(lesson("mid", rsi=70.0))

    ranked = await memory.query_similar(make_context(), limit=2)

    assert [item.lesson_id for item in ranked] == ["near", "mid"]
    assert await memory.query_similar(make_context(), limit=0) == []


@pytest.mark.asyncio
async def test_duplicate_id_keeps_first_copy() -> None:
    memory = InMemoryMemoryStore()
    await memory.write(lesson("a", rsi=50.0))
    assert await memory.write(lesson("a", rsi=10.0)) is True

    assert len(memory) == 1
    stored = await memory.query_similar(make_context(), limit=1)
    assert stored[0].context_fingerprint["indicators"]["rsi_14"] == 50.0


@pytest.mark.asyncio
async def test_oldest_lesson_evicted_at_capacity() -> None:
    memory = InMemoryMemoryStore(max_lessons=2)
    now = datetime.utcnow()
    await memory.load([
        lesson("old", rsi=50.0, created_at=now - timedelta(days=2)),
        lesson("newer", rsi=50.0, created_at=now - timedelta(days=1)),
        lesson("newest", rsi=50.0, created_at=now),
    ])

    ids = {item.lesson_id for item in await memory.query_similar(make_context(), limit=5)}
    assert ids == {"newer", "newest"}
