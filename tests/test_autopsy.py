"""Tests for the outcome reviewer."""

from unittest.mock import AsyncMock

import pytest

from evotrader.brain.memory import InMemoryMemoryStore
from evotrader.core.types import LessonRecord, OutcomeTag
from evotrader.evolution.autopsy import OutcomeReviewer, build_rationale, lesson_id_for
from evotrader.evolution.writer import EvolutionWriter
from factories import make_trade


@pytest.fixture
def memory() -> InMemoryMemoryStore:
    return InMemoryMemoryStore()


@pytest.fixture
def writer(memory, bus, store, metrics_sink) -> EvolutionWriter:
    return EvolutionWriter(memory, bus, store=store, write_timeout=1.0, metrics_sink=metrics_sink)


@pytest.mark.asyncio
async def test_losing_trade_produces_one_lesson(store, writer, memory) -> None:
    record = make_trade(realized_pnl=-150.0, initial_margin=1000.0)
    await store.append_trade(record)
    reviewer = OutcomeReviewer(store, writer)

    lesson = await reviewer.review(record)

    assert lesson is not None
    assert lesson.lesson_id == lesson_id_for(record.trade_id)
    assert lesson.outcome_tag is OutcomeTag.PAST_MISTAKE
    assert lesson.source_ref == f"trade:{record.trade_id}"
    assert lesson.context_fingerprint["symbol"] == record.symbol
    assert "ROE -15.00%" in lesson.rationale
    assert await store.is_reviewed(record.trade_id)
    assert len(memory) == 1


@pytest.mark.asyncio
async def test_second_review_is_noop(store, writer, memory) -> None:
    record = make_trade()
    await store.append_trade(record)
    reviewer = OutcomeReviewer(store, writer)

    await reviewer.review(record)
    assert await reviewer.review(record) is None
    # A fresh reviewer relies on the persisted flag.
    assert await OutcomeReviewer(store, writer).review(record) is None

    assert await store.count_lessons() == 1
    assert len(memory) == 1
    assert await store.is_reviewed(record.trade_id)


@pytest.mark.asyncio
async def test_winning_trade_is_skipped(store, writer) -> None:
    record = make_trade(realized_pnl=42.0)
    await store.append_trade(record)

    assert await OutcomeReviewer(store, writer).review(record) is None
    assert await store.count_lessons() == 0


@pytest.mark.asyncio
async def test_memory_outage_still_sets_review_flag(store, bus, metrics_sink) -> None:
    memory = AsyncMock()
    memory.write = AsyncMock(side_effect=ConnectionError("down"))
    writer = EvolutionWriter(memory, bus, store=store, write_timeout=1.0, metrics_sink=metrics_sink)
    record = make_trade()
    await store.append_trade(record)

    lesson = await OutcomeReviewer(store, writer).review(record)

    assert lesson is not None
    assert await store.is_reviewed(record.trade_id)
    assert writer.pending_count == 1
    assert [item.lesson_id for item in await store.list_unstored_lessons()] == [lesson.lesson_id]


@pytest.mark.asyncio
async def test_review_pending_resumes_interrupted_review(store, writer, memory) -> None:
    # Lesson recorded but the flag never set: a crash between the two steps.
    record = make_trade()
    await store.append_trade(record)
    await writer.write(LessonRecord(
        lesson_id=lesson_id_for(record.trade_id),
        outcome_tag=OutcomeTag.PAST_MISTAKE,
        context_fingerprint={},
        rationale="partial",
        source_ref=f"trade:{record.trade_id}",
    ))
    reviewer = OutcomeReviewer(store, writer)

    assert await reviewer.review_pending() == 1
    assert await reviewer.review_pending() == 0
    assert await store.list_unreviewed_losses() == []
    assert await store.count_lessons() == 1
    assert len(memory) == 1


def test_rationale_compares_prediction_with_outcome() -> None:
    text = build_rationale(make_trade(realized_pnl=-150.0))

    assert "Predicted win probability 0.60 with payoff 2.00R" in text
    assert "Realized -1.50R against 100.00 at risk." in text
    assert "Loss exceeded the planned stop" in text
    assert "Original thesis: EMA20 above EMA50" in text


def test_rationale_without_snapshot() -> None:
    text = build_rationale(make_trade(realized_pnl=-5.0, initial_margin=0.0, context_snapshot={}))

    assert "ROE n/a" in text
    assert "Predicted" not in text
