"""Lesson memory: similarity retrieval over stored lesson fingerprints."""

import asyncio
import math
from typing import Any, Protocol, runtime_checkable

from evotrader.core.types import LessonRecord, MarketContext
from evotrader.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class MemoryStore(Protocol):
    """Similarity-search store for LessonRecords."""

    async def query_similar(self, context: MarketContext, limit: int = 5) -> list[LessonRecord]:
        """Return at most ``limit`` lessons, nearest first."""
        ...

    async def write(self, lesson: LessonRecord) -> bool:
        """Store a lesson; False on failure."""
        ...


def _features(fingerprint: dict[str, Any]) -> dict[str, float | str]:
    indicators = fingerprint.get("indicators") or {}
    price = float(fingerprint.get("price") or 0.0)
    atr = float(indicators.get("atr_14") or 0.0)
    return {
        "symbol": str(fingerprint.get("symbol", "")),
        "trend": str(indicators.get("trend_signal", "Neutral")),
        "rsi": float(indicators.get("rsi_14", 50.0)) / 100.0,
        "volatility": min((atr / price * 100.0) if price > 0 else 0.0, 5.0) / 5.0,
        "funding": max(-1.0, min(1.0, float(fingerprint.get("funding_rate") or 0.0) * 1000.0)),
        "sentiment": float(fingerprint.get("sentiment_score") or 0.0),
        "ema_gap": max(
            -1.0,
            min(1.0, ((price - float(indicators.get("ema_20") or price)) / price * 20.0) if price > 0 else 0.0),
        ),
    }


def fingerprint_distance(a: dict[str, Any], b: dict[str, Any]) -> float:
    """Distance between two context fingerprints (0 = identical setup)."""
    fa, fb = _features(a), _features(b)
    numeric = ("rsi", "volatility", "funding", "sentiment", "ema_gap")
    distance = math.sqrt(sum((float(fa[k]) - float(fb[k])) ** 2 for k in numeric))
    if fa["trend"] != fb["trend"]:
        distance += 0.5
    if fa["symbol"] != fb["symbol"]:
        distance += 0.25
    return distance


class InMemoryMemoryStore:
    """Process-local lesson memory ranked by fingerprint distance.

    Lessons are keyed by ``lesson_id``; writing the same id twice keeps
    the first copy.
    """

    def __init__(self, max_lessons: int = 5000) -> None:
        self._lessons: dict[str, LessonRecord] = {}
        self._max_lessons = max_lessons
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._lessons)

    async def write(self, lesson: LessonRecord) -> bool:
        async with self._lock:
            if lesson.lesson_id in self._lessons:
                return True
            if len(self._lessons) >= self._max_lessons:
                oldest = min(self._lessons.values(), key=lambda item: item.created_at)
                del self._lessons[oldest.lesson_id]
            self._lessons[lesson.lesson_id] = lesson
        logger.debug(f"Memory stored {lesson.lesson_id} ({lesson.outcome_tag.value})")
        return True

    async def query_similar(self, context: MarketContext, limit: int = 5) -> list[LessonRecord]:
        if limit <= 0:
            return []
        query = context.fingerprint()
        async with self._lock:
            lessons = list(self._lessons.values())
        ranked = sorted(
            lessons,
            key=lambda lesson: (fingerprint_distance(query, lesson.context_fingerprint), lesson.lesson_id),
        )
        return ranked[:limit]

    async def load(self, lessons: list[LessonRecord]) -> int:
        """Warm the store from persisted lessons. Returns the number loaded."""
        count = 0
        for lesson in lessons:
            if await self.write(lesson):
                count += 1
        return count
