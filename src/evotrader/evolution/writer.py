"""Evolution writer: the single write path from lessons into memory."""

import asyncio
from typing import TYPE_CHECKING

from evotrader.brain.memory import MemoryStore
from evotrader.config import settings
from evotrader.core.bus import EventBus
from evotrader.core.types import Event, EventType, LessonRecord
from evotrader.logging import get_logger
from evotrader.observability.metrics import LESSONS_QUEUED, LESSONS_WRITTEN, SystemMetrics, metrics

if TYPE_CHECKING:
    from evotrader.storage.trade_log import TradeLogStore

logger = get_logger(__name__)


class EvolutionWriter:
    """Persists LessonRecords into the memory store.

    Every lesson is first recorded in the local trade log, then written to
    memory under a per-call timeout. A failed write is queued and retried
    by a background task on a coarse schedule; callers never wait longer
    than one write timeout. All writes are serialized through one lock and
    a lesson id is written at most once.
    """

    def __init__(
        self,
        memory: MemoryStore,
        bus: EventBus,
        store: "TradeLogStore | None" = None,
        write_timeout: float | None = None,
        retry_interval: float | None = None,
        metrics_sink: SystemMetrics | None = None,
    ) -> None:
        self._memory = memory
        self._bus = bus
        self._store = store
        self._write_timeout = (
            write_timeout if write_timeout is not None else settings.memory_write_timeout_sec
        )
        self._retry_interval = (
            retry_interval if retry_interval is not None else settings.memory_write_retry_interval_sec
        )
        self._metrics = metrics_sink or metrics
        self._lock = asyncio.Lock()
        self._written: set[str] = set()
        self._pending: dict[str, LessonRecord] = {}
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def write(self, lesson: LessonRecord) -> bool:
        """Write a lesson, queueing it for retry on failure.

        Returns:
            True if the lesson is in memory (now or from an earlier call).
        """
        async with self._lock:
            if lesson.lesson_id in self._written:
                logger.debug(f"Lesson {lesson.lesson_id} already written; skipping")
                return True
            if self._store is not None:
                await self._store.save_lesson(lesson)
            return await self._write_locked(lesson)

    async def _write_locked(self, lesson: LessonRecord) -> bool:
        try:
            ok = await asyncio.wait_for(self._memory.write(lesson), timeout=self._write_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Memory write timed out for {lesson.lesson_id}; queued for retry")
            ok = False
        except Exception as e:
            logger.warning(f"Memory write failed for {lesson.lesson_id}: {e}; queued for retry")
            ok = False
        else:
            if not ok:
                logger.warning(f"Memory store refused {lesson.lesson_id}; queued for retry")

        if not ok:
            if lesson.lesson_id not in self._pending:
                self._metrics.increment(LESSONS_QUEUED)
            self._pending[lesson.lesson_id] = lesson
            return False

        self._pending.pop(lesson.lesson_id, None)
        self._written.add(lesson.lesson_id)
        if self._store is not None:
            await self._store.mark_lesson_stored(lesson.lesson_id)
        self._metrics.increment(LESSONS_WRITTEN)
        logger.info(f"Lesson written: {lesson.lesson_id} [{lesson.outcome_tag.value}]")
        await self._bus.publish(Event(
            event_type=EventType.LESSON_WRITTEN,
            data={
                "lesson_id": lesson.lesson_id,
                "outcome_tag": lesson.outcome_tag.value,
                "source_ref": lesson.source_ref,
            },
        ))
        return True

    async def retry_pending(self) -> int:
        """Retry queued lessons (and any left unstored by a previous run).

        Returns:
            Number of lessons written by this pass.
        """
        async with self._lock:
            candidates = dict(self._pending)
            if self._store is not None:
                for lesson in await self._store.list_unstored_lessons():
                    candidates.setdefault(lesson.lesson_id, lesson)
            written = 0
            for lesson in candidates.values():
                if lesson.lesson_id in self._written:
                    self._pending.pop(lesson.lesson_id, None)
                    continue
                if await self._write_locked(lesson):
                    written += 1
        if candidates:
            logger.info(f"Memory retry pass: {written}/{len(candidates)} written, {self.pending_count} pending")
        return written

    async def start(self) -> None:
        """Start the background retry loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._retry_loop())
        logger.info(f"Evolution writer started (retry every {self._retry_interval:.0f}s)")

    async def stop(self) -> None:
        """Stop the background retry loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Evolution writer stopped")

    async def _retry_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._retry_interval)
            try:
                await self.retry_pending()
            except Exception as e:
                logger.error(f"Memory retry pass failed: {e}", exc_info=True)
