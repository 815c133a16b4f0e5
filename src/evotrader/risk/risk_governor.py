"""Risk Governor - drawdown circuit breaker with a latched halt.

Two states:
- ACTIVE: new risk may be taken
- HALTED: drawdown from peak equity reached ``max_drawdown_limit``; no new
  risk until an operator resets the governor explicitly

The halt never clears on its own: neither recovered equity nor elapsed
time re-enables trading. All ledger mutations happen under a single lock
and are persisted, so a halt survives a process restart.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from evotrader.config import WIN_PROBABILITY_CEILING, settings
from evotrader.core.bus import EventBus
from evotrader.core.types import (
    Event,
    EventType,
    ExecutionResult,
    GovernorState,
    RiskState,
    TradeRecord,
)
from evotrader.logging import get_logger
from evotrader.observability.metrics import (
    CYCLES_SKIPPED_HALTED,
    DRAWDOWN,
    EQUITY,
    SystemMetrics,
    metrics,
)

if TYPE_CHECKING:
    from evotrader.storage.trade_log import TradeLogStore

logger = get_logger(__name__)


class RiskGovernor:
    """Owns the process-wide ``RiskState`` and the trade gate.

    The governor is passed by reference to every component that needs the
    gate or the ledger; nothing else mutates ``RiskState``.
    """

    def __init__(
        self,
        bus: EventBus,
        store: "TradeLogStore | None" = None,
        max_drawdown_limit: float | None = None,
        win_probability_cap: float | None = None,
        starting_equity: float | None = None,
        metrics_sink: SystemMetrics | None = None,
    ) -> None:
        """Initialize risk governor.

        Args:
            bus: Event bus for publishing state changes
            store: Persistence for the risk ledger (None = in-memory only)
            max_drawdown_limit: Drawdown fraction that latches HALTED
            win_probability_cap: Ceiling applied to model win probabilities
            starting_equity: Baseline equity when no persisted ledger exists
            metrics_sink: Metrics registry
        """
        self._bus = bus
        self._store = store
        self._metrics = metrics_sink or metrics
        self._max_drawdown_limit = (
            max_drawdown_limit if max_drawdown_limit is not None else settings.max_drawdown_limit
        )
        cap = win_probability_cap if win_probability_cap is not None else settings.win_probability_cap
        if not 0 < cap <= WIN_PROBABILITY_CEILING:
            raise ValueError(
                f"win_probability_cap must be in (0, {WIN_PROBABILITY_CEILING}], got {cap}"
            )
        self._win_probability_cap = cap
        if not 0 < self._max_drawdown_limit <= 1:
            raise ValueError(f"max_drawdown_limit must be in (0, 1], got {self._max_drawdown_limit}")

        equity = starting_equity if starting_equity is not None else settings.starting_equity
        self._ledger = RiskState(
            starting_equity=equity,
            current_equity=equity,
            peak_equity=equity,
        )
        self._lock = asyncio.Lock()
        self._halted_cycles = 0
        self._execution_failures = 0

        logger.info(
            f"Risk Governor initialized: max_drawdown={self._max_drawdown_limit:.2%}, "
            f"win_probability_cap={self._win_probability_cap:.2f}"
        )

    async def initialize(self, current_equity: float | None = None) -> RiskState:
        """Load the persisted ledger or create a fresh one.

        Args:
            current_equity: Exchange-reported equity used as the baseline when
                no ledger was persisted yet

        Returns:
            Snapshot of the ledger after loading.
        """
        async with self._lock:
            loaded = await self._store.load_risk_state() if self._store else None
            if loaded is not None:
                self._ledger = loaded
                logger.info(
                    f"Risk ledger restored: equity={loaded.current_equity:.2f}, "
                    f"peak={loaded.peak_equity:.2f}, halted={loaded.halted}"
                )
                if loaded.halted:
                    logger.critical(
                        f"Governor restored in HALTED state ({loaded.halt_reason}); "
                        "manual reset required before trading resumes"
                    )
            else:
                if current_equity is not None and current_equity > 0:
                    self._ledger = RiskState(
                        starting_equity=current_equity,
                        current_equity=current_equity,
                        peak_equity=current_equity,
                    )
                await self._persist()
                logger.info(f"Risk ledger created: equity={self._ledger.current_equity:.2f}")
            self._publish_gauges()
            return replace(self._ledger)

    @property
    def state(self) -> GovernorState:
        return GovernorState.HALTED if self._ledger.halted else GovernorState.ACTIVE

    @property
    def current_equity(self) -> float:
        return self._ledger.current_equity

    @property
    def max_drawdown_limit(self) -> float:
        return self._max_drawdown_limit

    @property
    def win_probability_cap(self) -> float:
        return self._win_probability_cap

    def snapshot(self) -> RiskState:
        """Copy of the ledger."""
        return replace(self._ledger)

    def may_trade(self) -> bool:
        """Gate check: False whenever the governor is HALTED."""
        return not self._ledger.halted

    def cap_win_probability(self, win_probability: float) -> float:
        """Clamp a model-reported win probability to the configured ceiling."""
        return max(0.0, min(win_probability, self._win_probability_cap))

    async def record_trade_close(
        self, record: TradeRecord, marked_equity: float | None = None
    ) -> RiskState:
        """Apply a closed trade to the ledger, once per trade.

        Without ``marked_equity`` the realized P&L is added to the ledger
        equity. When equity is marked to the exchange, the exchange figure
        already contains the realized P&L; pass it as ``marked_equity`` and
        it replaces the ledger equity instead, so the P&L is never counted
        twice.

        Args:
            record: Closed trade
            marked_equity: Exchange-reported equity taken after the close

        Returns:
            Snapshot of the ledger after the update.
        """
        async with self._lock:
            if self._store is not None and await self._store.is_trade_applied(record.trade_id):
                logger.info(f"Trade {record.trade_id} already applied to the ledger; skipping")
                return replace(self._ledger)

            before = self._ledger.current_equity
            if marked_equity is None:
                self._ledger.current_equity = before + record.realized_pnl
            elif marked_equity > 0:
                self._ledger.current_equity = marked_equity
            else:
                logger.warning(f"Ignoring non-positive equity reading {marked_equity} for trade {record.trade_id}")
            logger.info(
                f"Trade {record.trade_id} closed: pnl={record.realized_pnl:+.2f}, "
                f"equity {before:.2f} -> {self._ledger.current_equity:.2f}"
                + (" (marked to exchange)" if marked_equity is not None else "")
            )
            event = self._apply_equity_change(f"trade {record.trade_id}")
            await self._persist(applied_trade_id=record.trade_id)
            snapshot = replace(self._ledger)
        await self._publish_halt(event)
        return snapshot

    async def update_equity(self, equity: float) -> RiskState:
        """Mark the ledger to an exchange-reported equity value.

        Args:
            equity: Current account equity

        Returns:
            Snapshot of the ledger after the update.
        """
        if equity <= 0:
            logger.warning(f"Ignoring non-positive equity reading: {equity}")
            return self.snapshot()
        async with self._lock:
            self._ledger.current_equity = equity
            event = self._apply_equity_change("mark-to-market")
            await self._persist()
            snapshot = replace(self._ledger)
        await self._publish_halt(event)
        return snapshot

    async def record_execution_failure(self, result: ExecutionResult) -> None:
        """Register a submission that exhausted its retries.

        A failed order changes no equity; it is counted and logged so it is
        never silently dropped.
        """
        async with self._lock:
            self._execution_failures += 1
            count = self._execution_failures
        logger.error(
            f"Execution failure #{count} for {result.order.symbol} "
            f"(client_order_id={result.order.client_order_id}): {result.reason}; equity unchanged"
        )

    async def observe_halted_cycle(self) -> int:
        """Record an evaluation cycle skipped because of the halt.

        Returns:
            Number of cycles skipped since the halt latched.
        """
        async with self._lock:
            self._halted_cycles += 1
            count = self._halted_cycles
            reason = self._ledger.halt_reason
        self._metrics.increment(CYCLES_SKIPPED_HALTED)
        logger.warning(f"Cycle skipped: governor HALTED ({reason}); skipped={count}")
        await self._bus.publish(Event(
            event_type=EventType.HALTED_CYCLE_SKIPPED,
            data={"skipped_cycles": count, "halt_reason": reason},
        ))
        return count

    async def reset(self, operator: str, reason: str = "") -> dict[str, Any]:
        """Clear the halt. The only path from HALTED back to ACTIVE.

        The peak is re-baselined to current equity so the drawdown that
        caused the halt does not immediately re-trigger it.

        Args:
            operator: Who authorised the reset
            reason: Free-form justification recorded in the audit log

        Returns:
            Status dictionary
        """
        if not operator.strip():
            raise ValueError("operator is required to reset the risk governor")

        async with self._lock:
            if not self._ledger.halted:
                return {"status": "not_halted", "risk_state": self.state.value}

            previous_reason = self._ledger.halt_reason
            previous_drawdown = self._ledger.drawdown
            self._ledger.halted = False
            self._ledger.halt_reason = ""
            self._ledger.halted_at = None
            self._ledger.peak_equity = self._ledger.current_equity
            self._halted_cycles = 0
            await self._persist()
            if self._store is not None:
                await self._store.append_risk_audit(
                    action="reset",
                    operator=operator,
                    reason=reason,
                    detail={"previous_reason": previous_reason, "drawdown": previous_drawdown},
                )
            equity = self._ledger.current_equity

        logger.warning(
            f"Risk Governor reset by {operator}: HALTED -> ACTIVE "
            f"(was: {previous_reason}; reason: {reason or 'n/a'})"
        )
        self._publish_gauges()
        await self._bus.publish(Event(
            event_type=EventType.RISK_RESET,
            data={
                "operator": operator,
                "reason": reason,
                "previous_reason": previous_reason,
                "equity": equity,
            },
        ))
        return {"status": "reset", "risk_state": self.state.value, "equity": equity}

    def get_state(self) -> dict[str, Any]:
        """Get current risk governor state.

        Returns:
            Risk state dictionary
        """
        return {
            "risk_state": self.state.value,
            "max_drawdown_limit": self._max_drawdown_limit,
            "win_probability_cap": self._win_probability_cap,
            "halted_cycles": self._halted_cycles,
            "execution_failures": self._execution_failures,
            **self._ledger.to_dict(),
        }

    def _apply_equity_change(self, source: str) -> Event | None:
        # Caller holds the lock.
        ledger = self._ledger
        ledger.peak_equity = max(ledger.peak_equity, ledger.current_equity)
        drawdown = ledger.drawdown
        self._publish_gauges()

        if ledger.halted or drawdown < self._max_drawdown_limit:
            return None

        ledger.halted = True
        ledger.halted_at = datetime.utcnow()
        ledger.halt_reason = (
            f"drawdown {drawdown:.2%} >= limit {self._max_drawdown_limit:.2%} after {source}"
        )
        self._halted_cycles = 0
        logger.critical(
            f"Risk Governor HALTED: {ledger.halt_reason} "
            f"(peak={ledger.peak_equity:.2f}, equity={ledger.current_equity:.2f})"
        )
        return Event(
            event_type=EventType.RISK_HALTED,
            data={
                "reason": ledger.halt_reason,
                "drawdown": drawdown,
                "limit": self._max_drawdown_limit,
                "peak_equity": ledger.peak_equity,
                "current_equity": ledger.current_equity,
            },
        )

    async def _publish_halt(self, event: Event | None) -> None:
        if event is not None:
            await self._bus.publish(event)

    async def _persist(self, applied_trade_id: str | None = None) -> None:
        if self._store is not None:
            await self._store.save_risk_state(self._ledger, applied_trade_id=applied_trade_id)

    def _publish_gauges(self) -> None:
        self._metrics.set_gauge(EQUITY, self._ledger.current_equity)
        self._metrics.set_gauge(DRAWDOWN, self._ledger.drawdown)
