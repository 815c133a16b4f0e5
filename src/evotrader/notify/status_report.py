"""Periodic account status report: equity, total P&L and open positions."""

import asyncio
from typing import Any

from evotrader.config import settings
from evotrader.core.bus import EventBus
from evotrader.core.types import Event, EventType
from evotrader.exchange.base import ExchangeClient
from evotrader.logging import get_logger
from evotrader.risk.risk_governor import RiskGovernor

logger = get_logger(__name__)


class StatusReporter:
    """Publishes a ``STATUS_REPORT`` event every ``interval`` seconds.

    Equity comes from the exchange when marking to market and the read
    succeeds, and from the risk ledger otherwise. Total P&L is measured
    against the ledger starting equity. A failed position read reports no
    positions for that pass.
    """

    def __init__(
        self,
        client: ExchangeClient,
        governor: RiskGovernor,
        bus: EventBus,
        interval: float | None = None,
        mark_to_market: bool = True,
    ) -> None:
        self._client = client
        self._governor = governor
        self._bus = bus
        self._mark_to_market = mark_to_market
        self._interval = interval if interval is not None else settings.status_report_interval_sec
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def report(self) -> dict[str, Any]:
        """Build and publish one status report.

        Returns:
            The report payload.
        """
        equity = self._governor.current_equity
        if self._mark_to_market:
            try:
                equity = await self._client.get_equity()
            except Exception as e:
                logger.warning(f"Status report equity fetch failed: {e}; using ledger equity")

        try:
            positions = await self._client.get_positions()
        except Exception as e:
            logger.warning(f"Status report position fetch failed: {e}")
            positions = []

        ledger = self._governor.snapshot()
        starting = ledger.starting_equity
        total_pnl_pct = (equity - starting) / starting * 100 if starting > 0 else 0.0
        data: dict[str, Any] = {
            "equity": equity,
            "starting_equity": starting,
            "total_pnl_pct": total_pnl_pct,
            "drawdown": ledger.drawdown,
            "risk_state": self._governor.state.value,
            "positions": [
                {
                    "symbol": p.symbol,
                    "direction": p.direction.value,
                    "size": p.size,
                    "notional": p.notional,
                    "margin": p.margin,
                    "unrealized_pnl": p.unrealized_pnl,
                    "leverage": p.leverage,
                }
                for p in positions
            ],
        }
        logger.info(
            f"Status: equity={equity:.2f} total_pnl={total_pnl_pct:+.2f}% "
            f"positions={len(positions)} state={data['risk_state']}"
        )
        await self._bus.publish(Event(event_type=EventType.STATUS_REPORT, data=data))
        return data

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._report_loop())
        logger.info(f"Status reporter started (every {self._interval:.0f}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Status reporter stopped")

    async def _report_loop(self) -> None:
        # First report after one full interval; startup already announces equity.
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self.report()
            except Exception as e:
                logger.error(f"Status report failed: {e}", exc_info=True)
