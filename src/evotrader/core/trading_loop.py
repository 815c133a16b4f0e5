"""Evaluation loop: heartbeat -> context -> decision -> sizing -> execution."""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any

from evotrader.brain.decision import DecisionSource
from evotrader.brain.memory import MemoryStore
from evotrader.config import settings
from evotrader.core.bus import EventBus
from evotrader.core.heartbeat import HeartbeatController
from evotrader.core.types import (
    Event,
    EventType,
    ExecutionResult,
    LessonRecord,
    MarketContext,
    OpenPosition,
    PositionSnapshot,
    SizedOrder,
    TradeIntent,
    TradeRecord,
)
from evotrader.evolution.autopsy import OutcomeReviewer
from evotrader.evolution.pnl_monitor import PnlMonitor
from evotrader.evolution.scanner import OpportunityScanner
from evotrader.evolution.writer import EvolutionWriter
from evotrader.exchange.base import ExchangeClient
from evotrader.execution.engine import ExecutionEngine
from evotrader.logging import clear_trading_context, get_logger, log_exception, set_trading_context
from evotrader.notify.status_report import StatusReporter
from evotrader.observability.metrics import (
    CYCLES_RUN,
    CYCLES_SKIPPED_BUSY,
    TRADES_CLOSED,
    SystemMetrics,
    metrics,
)
from evotrader.perception.context import ContextSource
from evotrader.risk.position_sizer import PositionSizer
from evotrader.risk.risk_governor import RiskGovernor
from evotrader.storage.trade_log import TradeLogStore

logger = get_logger(__name__)


@dataclass
class CycleReport:
    """What one call to ``run_cycle`` did."""

    cycle_id: int
    skipped: str | None = None
    results: list[ExecutionResult] = field(default_factory=list)
    volatility: float | None = None
    interval: float = 0.0


class TradingLoop:
    """Single-flight evaluation loop plus the background evolution tasks.

    ``run_cycle`` is guarded by a lock: a call made while a cycle is in
    flight returns at once with ``skipped="busy"``. A halted governor
    short-circuits the cycle before any context is gathered, and the
    heartbeat interval is left unchanged.
    """

    def __init__(
        self,
        bus: EventBus,
        store: TradeLogStore,
        client: ExchangeClient,
        governor: RiskGovernor,
        sizer: PositionSizer,
        engine: ExecutionEngine,
        heartbeat: HeartbeatController,
        context_source: ContextSource,
        decision_source: DecisionSource,
        memory: MemoryStore,
        writer: EvolutionWriter,
        reviewer: OutcomeReviewer,
        scanner: OpportunityScanner | None = None,
        pnl_monitor: PnlMonitor | None = None,
        status_reporter: StatusReporter | None = None,
        symbols: list[str] | None = None,
        memory_query_limit: int | None = None,
        strategy_version: str | None = None,
        mark_to_market: bool = True,
        metrics_sink: SystemMetrics | None = None,
    ) -> None:
        self._bus = bus
        self._store = store
        self._client = client
        self._governor = governor
        self._sizer = sizer
        self._engine = engine
        self._heartbeat = heartbeat
        self._context_source = context_source
        self._decision_source = decision_source
        self._memory = memory
        self._writer = writer
        self._reviewer = reviewer
        self._scanner = scanner
        self._pnl_monitor = pnl_monitor
        if pnl_monitor is not None:
            pnl_monitor.set_handler(self.on_trade_closed)
        self._status_reporter = status_reporter
        self._symbols = list(symbols) if symbols is not None else list(settings.symbols)
        self._memory_query_limit = memory_query_limit or settings.memory_query_limit
        self._strategy_version = strategy_version or settings.strategy_version
        self._mark_to_market = mark_to_market
        self._metrics = metrics_sink or metrics

        self._cycle_lock = asyncio.Lock()
        self._cycle_id = 0
        self._running = False
        self._stop_event = asyncio.Event()

    @property
    def heartbeat(self) -> HeartbeatController:
        return self._heartbeat

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore state, reconcile the previous run and start background tasks."""
        if self._running:
            return
        equity = await self._fetch_equity()
        await self._governor.initialize(equity)
        if self._pnl_monitor is not None:
            await self._pnl_monitor.deliver_pending()

        for result in await self._engine.recover_in_flight():
            if not result.order.reduce_only:
                await self._open_position(result.order, result, context=None)

        await self._reviewer.review_pending()
        await self._writer.retry_pending()

        await self._writer.start()
        if self._scanner is not None:
            await self._scanner.start()
        if self._pnl_monitor is not None:
            await self._pnl_monitor.start()
        if self._status_reporter is not None:
            await self._status_reporter.start()
        self._running = True

        risk = self._governor.snapshot()
        logger.info(
            f"Trading loop started: symbols={self._symbols}, equity={risk.current_equity:.2f}, "
            f"state={self._governor.state.value}"
        )
        await self._bus.publish(Event(
            event_type=EventType.STARTUP,
            data={
                "symbols": ", ".join(self._symbols),
                "equity": round(risk.current_equity, 2),
                "risk_state": self._governor.state.value,
                "strategy_version": self._strategy_version,
                "heartbeat_interval": self._heartbeat.interval,
            },
        ))

    async def stop(self) -> None:
        """Stop background tasks. An in-flight cycle is allowed to finish."""
        self._stop_event.set()
        if self._status_reporter is not None:
            await self._status_reporter.stop()
        if self._pnl_monitor is not None:
            await self._pnl_monitor.stop()
        if self._scanner is not None:
            await self._scanner.stop()
        await self._writer.stop()
        self._running = False
        logger.info("Trading loop stopped")

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Run cycles until ``stop_event`` (or ``stop()``) fires."""
        stop_event = stop_event or self._stop_event
        await self.start()
        try:
            while not stop_event.is_set():
                try:
                    await self.run_cycle()
                except Exception as e:
                    log_exception(logger, e, {"cycle_id": self._cycle_id})
                if await self._heartbeat.wait(stop_event):
                    break
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Evaluation cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one evaluation cycle unless one is already in flight."""
        if self._cycle_lock.locked():
            self._metrics.increment(CYCLES_SKIPPED_BUSY)
            logger.warning("Evaluation cycle already in flight; skipping tick")
            return CycleReport(cycle_id=self._cycle_id, skipped="busy", interval=self._heartbeat.interval)

        async with self._cycle_lock:
            self._cycle_id += 1
            report = CycleReport(cycle_id=self._cycle_id)
            set_trading_context(cycle_id=self._cycle_id)
            try:
                if not self._governor.may_trade():
                    await self._governor.observe_halted_cycle()
                    report.skipped = "halted"
                    report.interval = self._heartbeat.observe(None)
                    return report

                self._metrics.increment(CYCLES_RUN)
                if self._mark_to_market:
                    equity = await self._fetch_equity()
                    if equity is not None:
                        await self._governor.update_equity(equity)
                    if not self._governor.may_trade():
                        report.skipped = "halted"
                        report.interval = self._heartbeat.observe(None)
                        return report

                positions = await self._fetch_positions()
                volatilities: list[float] = []
                for symbol in self._symbols:
                    set_trading_context(symbol=symbol)
                    held = [p for p in positions if p.symbol == symbol]
                    try:
                        result = await self._evaluate(symbol, volatilities, held)
                    except Exception as e:
                        log_exception(logger, e, {"symbol": symbol, "cycle_id": self._cycle_id})
                        continue
                    finally:
                        clear_trading_context()
                    if result is not None:
                        report.results.append(result)

                report.volatility = max(volatilities) if volatilities else None
                report.interval = self._heartbeat.observe(report.volatility)
                logger.info(
                    f"Cycle {self._cycle_id} done: orders={len(report.results)}, "
                    f"volatility={report.volatility if report.volatility is not None else 'n/a'}, "
                    f"next in {report.interval:.0f}s"
                )
                return report
            finally:
                clear_trading_context()

    async def _evaluate(
        self,
        symbol: str,
        volatilities: list[float],
        held: list[PositionSnapshot],
    ) -> ExecutionResult | None:
        context = await self._context_source.get_context(symbol)
        volatilities.append(context.volatility_metric)

        lessons = await self._recall(context)
        intent = await self._decision_source.decide(context, lessons, held)
        if intent is None:
            logger.info(f"No trade for {symbol} this cycle")
            return None

        if intent.reduce_only:
            return await self._close(intent, context, held)

        order = self._sizer.size(intent, context)
        if order is None or not order.is_sendable:
            logger.info(f"{symbol} {intent.direction.value} sized to zero; no order sent")
            return None
        if not self._governor.may_trade():
            logger.warning(f"Governor halted before {symbol} order; dropping")
            return None

        result = await self._engine.submit(order)
        if result.is_filled:
            await self._open_position(order, result, context)
        return result

    async def _close(
        self,
        intent: TradeIntent,
        context: MarketContext,
        held: list[PositionSnapshot],
    ) -> ExecutionResult | None:
        """Send a reduce-only order for the whole position on the intent's side.

        The fill is not recorded as a position; the realized P&L reaches the
        ledger through the PnL sync like any other close.
        """
        open_size = sum(p.size for p in held if p.direction is intent.direction)
        if open_size <= 0:
            logger.info(f"No {intent.direction.value} position on {intent.symbol} to close")
            return None

        order = self._sizer.size_close(intent, context, open_size)
        if order is None or not order.is_sendable:
            return None
        if not self._governor.may_trade():
            logger.warning(f"Governor halted before {intent.symbol} close; dropping")
            return None

        logger.info(
            f"Closing {intent.direction.value} {intent.symbol} size={open_size:.6f}"
            + (f": {intent.rationale}" if intent.rationale else "")
        )
        return await self._engine.submit(order)

    async def _recall(self, context: MarketContext) -> list[LessonRecord]:
        try:
            return await self._memory.query_similar(context, limit=self._memory_query_limit)
        except Exception as e:
            logger.warning(f"Memory query failed for {context.symbol}: {e}; deciding without lessons")
            return []

    async def _fetch_equity(self) -> float | None:
        try:
            return await self._client.get_equity()
        except Exception as e:
            logger.warning(f"Equity fetch failed: {e}; keeping ledger equity")
            return None

    async def _fetch_positions(self) -> list[PositionSnapshot]:
        try:
            return await self._client.get_positions()
        except Exception as e:
            logger.warning(f"Position fetch failed: {e}; deciding without position info")
            return []

    async def _open_position(
        self,
        order: SizedOrder,
        result: ExecutionResult,
        context: MarketContext | None,
    ) -> OpenPosition:
        size = result.filled_size or order.size
        price = result.avg_price or order.reference_price
        snapshot: dict[str, Any] = {
            "context": context.fingerprint() if context is not None else {},
            "intent": order.intent.model_dump(mode="json"),
            "risk_amount": order.risk_amount,
            "capital_fraction": order.capital_fraction,
            "client_order_id": order.client_order_id,
        }
        position = OpenPosition(
            position_id=uuid.uuid4().hex,
            symbol=order.symbol,
            direction=order.direction,
            size=size,
            entry_price=price,
            initial_margin=size * price / order.leverage,
            order_id=result.order_id or order.client_order_id,
            strategy_version=self._strategy_version,
            context_snapshot=snapshot,
        )
        await self._store.add_open_position(position)
        logger.info(
            f"Position opened: {position.direction.value} {position.symbol} size={size:.6f} "
            f"@ {price:.4f} margin={position.initial_margin:.2f}"
        )
        return position

    # ------------------------------------------------------------------
    # Trade close path
    # ------------------------------------------------------------------

    async def on_trade_closed(self, record: TradeRecord) -> None:
        """Apply a closed trade to the risk ledger and review it if it lost.

        With mark-to-market on, the ledger takes the exchange equity, which
        already includes this trade's P&L. If that read fails the ledger
        equity is kept as is and the next cycle marks it.
        """
        marked_equity: float | None = None
        if self._mark_to_market:
            marked_equity = await self._fetch_equity()
            if marked_equity is None:
                marked_equity = self._governor.current_equity
        await self._governor.record_trade_close(record, marked_equity=marked_equity)
        self._metrics.increment(TRADES_CLOSED)
        await self._bus.publish(Event(
            event_type=EventType.TRADE_CLOSED,
            data={
                "trade_id": record.trade_id,
                "symbol": record.symbol,
                "direction": record.direction.value,
                "realized_pnl": record.realized_pnl,
                "roe": record.roe,
            },
        ))
        if record.is_loss:
            try:
                await self._reviewer.review(record)
            except Exception as e:
                # Review flag stays unset; review_pending picks it up on restart.
                log_exception(logger, e, {"trade_id": record.trade_id})

    def get_state(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "cycle_id": self._cycle_id,
            "cycle_in_flight": self._cycle_lock.locked(),
            "symbols": self._symbols,
            "heartbeat_interval": self._heartbeat.interval,
            "governor": self._governor.get_state(),
            "lessons_pending": self._writer.pending_count,
        }
