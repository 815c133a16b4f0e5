"""Opportunity Scanner: finds large moves the system sat out."""

import asyncio
from datetime import datetime, timedelta

from evotrader.config import settings
from evotrader.core.types import LessonRecord, MarketContext, OutcomeTag, PriceBar
from evotrader.evolution.writer import EvolutionWriter
from evotrader.exchange.base import MarketDataClient
from evotrader.logging import get_logger
from evotrader.perception.indicators import compute_indicators
from evotrader.storage.trade_log import TradeLogStore

logger = get_logger(__name__)

_BAR_UNITS = {"m": 60, "H": 3600, "D": 86400, "W": 604800}

# Extra bars fetched ahead of the window so pre-move indicators are warmed up.
_INDICATOR_WARMUP_BARS = 60


def bar_seconds(bar: str) -> int:
    """Length of an OKX bar string ("1m", "1H", "4H", "1D") in seconds."""
    unit = bar[-1:]
    if unit not in _BAR_UNITS or not bar[:-1].isdigit():
        raise ValueError(f"Unsupported bar: {bar!r}")
    return int(bar[:-1]) * _BAR_UNITS[unit]


def window_key(symbol: str, move_start: datetime) -> str:
    """Stable key for a move: symbol plus the open time of the moving bar."""
    return f"{symbol}:{move_start.isoformat()}"


class OpportunityScanner:
    """Scans trailing price history for moves with no matching activity.

    A move is one bar whose close-to-close change exceeds the threshold.
    It counts as missed when no order was journaled and no position was
    open on the symbol between ``lookback_hours`` before the move and the
    move's end. Each move is reported once: the window key is persisted
    after its lesson is recorded, so overlapping scans skip it.
    """

    def __init__(
        self,
        market: MarketDataClient,
        store: TradeLogStore,
        writer: EvolutionWriter,
        symbols: list[str] | None = None,
        window_hours: float | None = None,
        threshold: float | None = None,
        lookback_hours: float | None = None,
        bar: str | None = None,
        interval: float | None = None,
    ) -> None:
        self._market = market
        self._store = store
        self._writer = writer
        self._symbols = list(symbols) if symbols is not None else list(settings.symbols)
        self._window = timedelta(
            hours=window_hours if window_hours is not None else settings.scanner_window_hours
        )
        self._threshold = threshold if threshold is not None else settings.scanner_move_threshold_pct
        self._lookback = timedelta(
            hours=lookback_hours if lookback_hours is not None else settings.scanner_activity_lookback_hours
        )
        self._bar = bar or settings.scanner_bar
        self._bar_length = timedelta(seconds=bar_seconds(self._bar))
        self._interval = interval if interval is not None else settings.scanner_interval_sec
        self._lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def scan(self, now: datetime | None = None) -> list[LessonRecord]:
        """Scan every configured symbol once.

        A failure on one symbol is logged and does not stop the others.
        """
        lessons: list[LessonRecord] = []
        async with self._lock:
            for symbol in self._symbols:
                try:
                    lessons.extend(await self._scan_symbol(symbol, now or datetime.utcnow()))
                except Exception as e:
                    logger.error(f"Opportunity scan failed for {symbol}: {e}", exc_info=True)
        if lessons:
            logger.info(f"Opportunity scan produced {len(lessons)} missed-opportunity lesson(s)")
        return lessons

    async def _scan_symbol(self, symbol: str, now: datetime) -> list[LessonRecord]:
        window_bars = int(self._window / self._bar_length)
        bars = await self._market.get_candles(
            symbol, bar=self._bar, limit=min(window_bars + _INDICATOR_WARMUP_BARS, 300)
        )
        window_start = now - self._window
        lessons: list[LessonRecord] = []
        for i in range(1, len(bars)):
            prev, bar = bars[i - 1], bars[i]
            if bar.open_time < window_start or prev.close <= 0:
                continue
            change = (bar.close - prev.close) / prev.close
            if abs(change) <= self._threshold:
                continue

            key = window_key(symbol, bar.open_time)
            if await self._store.has_scan_key(key):
                continue
            move_end = bar.open_time + self._bar_length
            if await self._store.has_activity(symbol, prev.open_time - self._lookback, move_end):
                logger.debug(f"Move {key} ({change:+.2%}) had activity; not a missed opportunity")
                continue

            lesson = self._build_lesson(symbol, key, bars[:i], bar, change)
            await self._writer.write(lesson)
            await self._store.add_scan_key(key, lesson.lesson_id)
            lessons.append(lesson)
            logger.info(f"Missed opportunity on {symbol}: {change:+.2%} at {bar.open_time.isoformat()}")
        return lessons

    def _build_lesson(
        self, symbol: str, key: str, before: list[PriceBar], bar: PriceBar, change: float
    ) -> LessonRecord:
        # Snapshot of the state before the move, not after it.
        pre = before[-1]
        context = MarketContext(
            symbol=symbol,
            price=pre.close,
            timestamp=pre.open_time,
            indicators=compute_indicators(before),
        )
        direction = "rallied" if change > 0 else "dropped"
        side = "LONG" if change > 0 else "SHORT"
        rationale = (
            f"{symbol} {direction} {change:+.2%} in one {self._bar} bar "
            f"({pre.close:.4f} -> {bar.close:.4f}) while the system held no position. "
            f"A {side} from this setup would have caught it. Pre-move state: "
            f"{context.to_context_string()}"
        )
        return LessonRecord(
            lesson_id=f"missed:{key}",
            outcome_tag=OutcomeTag.MISSED_OPPORTUNITY,
            context_fingerprint=context.fingerprint(),
            rationale=rationale,
            source_ref=f"scan:{key}",
        )

    async def start(self) -> None:
        """Start periodic scanning."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._scan_loop())
        logger.info(
            f"Opportunity scanner started (every {self._interval:.0f}s, window={self._window}, "
            f"threshold={self._threshold:.2%})"
        )

    async def stop(self) -> None:
        """Stop periodic scanning."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Opportunity scanner stopped")

    async def _scan_loop(self) -> None:
        while self._running:
            try:
                await self.scan()
            except Exception as e:
                logger.error(f"Opportunity scan pass failed: {e}", exc_info=True)
            await asyncio.sleep(self._interval)
