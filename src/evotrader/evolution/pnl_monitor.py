"""Realized-PnL sync: turns exchange position closes into TradeRecords."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime

from evotrader.config import settings
from evotrader.core.types import ClosedPosition, TradeRecord
from evotrader.exchange.base import ExchangeClient
from evotrader.logging import get_logger
from evotrader.storage.trade_log import TradeLogStore

logger = get_logger(__name__)

TradeClosedCallback = Callable[[TradeRecord], Awaitable[None]]

_CURSOR_KEY = "pnl_sync.last_closed_at"


class PnlMonitor:
    """Polls closed-position history and records each close exactly once.

    A close is matched to the oldest open position with the same symbol and
    direction; that position supplies the entry snapshot, initial margin
    and order id. Closes with no matching position (opened outside this
    process) are still recorded so their P&L reaches the risk ledger.

    Recording and applying are separate steps. Every recorded trade that
    has not reached the risk ledger yet is handed to the handler on each
    pass until the handler succeeds, so a failing handler or a crash
    between the two steps delays a close but never drops it.
    """

    def __init__(
        self,
        client: ExchangeClient,
        store: TradeLogStore,
        on_trade_closed: TradeClosedCallback | None = None,
        interval: float | None = None,
        strategy_version: str | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._on_trade_closed = on_trade_closed
        self._interval = interval if interval is not None else settings.pnl_sync_interval_sec
        self._strategy_version = strategy_version or settings.strategy_version
        self._lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    def set_handler(self, on_trade_closed: TradeClosedCallback) -> None:
        self._on_trade_closed = on_trade_closed

    async def sync(self) -> list[TradeRecord]:
        """Fetch new closes, record them and apply every pending trade.

        Returns:
            TradeRecords created by this pass, oldest first.
        """
        async with self._lock:
            raw_cursor = await self._store.get_value(_CURSOR_KEY)
            since = datetime.fromisoformat(raw_cursor) if raw_cursor else None
            closes = await self._client.get_closed_positions(since)
            records: list[TradeRecord] = []
            for close in sorted(closes, key=lambda c: c.closed_at):
                record = await self._record(close)
                if record is not None:
                    records.append(record)
                if since is None or close.closed_at > since:
                    since = close.closed_at
                    await self._store.set_value(_CURSOR_KEY, since.isoformat())

            if records:
                logger.info(f"PnL sync recorded {len(records)} closed trade(s)")
            await self._deliver_pending()
        return records

    async def deliver_pending(self) -> int:
        """Hand recorded trades that never reached the risk ledger to the handler.

        Returns:
            Number of trades the handler accepted.
        """
        async with self._lock:
            return await self._deliver_pending()

    async def _deliver_pending(self) -> int:
        if self._on_trade_closed is None:
            return 0
        delivered = 0
        for record in await self._store.list_unapplied_trades():
            try:
                await self._on_trade_closed(record)
            except Exception as e:
                logger.error(
                    f"Applying trade {record.trade_id} ({record.symbol} pnl={record.realized_pnl:+.2f}) "
                    f"failed: {e}; retrying next pass",
                    exc_info=True,
                )
                continue
            await self._store.mark_trade_applied(record.trade_id)
            delivered += 1
        return delivered

    async def _record(self, close: ClosedPosition) -> TradeRecord | None:
        if await self._store.is_close_processed(close.close_id):
            return None

        positions = await self._store.list_open_positions(close.symbol, close.direction)
        position = positions[0] if positions else None
        if position is None:
            logger.warning(
                f"Close {close.close_id} on {close.symbol} ({close.direction.value}) "
                "has no matching open position; recording without entry snapshot"
            )

        record = TradeRecord(
            symbol=close.symbol,
            direction=close.direction,
            realized_pnl=close.net_pnl,
            initial_margin=position.initial_margin if position else 0.0,
            context_snapshot=position.context_snapshot if position else {},
            order_id=position.order_id if position else close.close_id,
            strategy_version=position.strategy_version if position else self._strategy_version,
            created_at=close.closed_at,
        )
        if not await self._store.record_closed_trade(
            record, close.close_id, position.position_id if position else None
        ):
            return None
        roe = record.roe
        logger.info(
            f"Trade closed: {record.direction.value} {record.symbol} pnl={record.realized_pnl:+.2f}"
            + (f" roe={roe:+.2%}" if roe is not None else "")
        )
        return record

    async def start(self) -> None:
        """Start periodic syncing."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sync_loop())
        logger.info(f"PnL monitor started (every {self._interval:.0f}s)")

    async def stop(self) -> None:
        """Stop periodic syncing."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("PnL monitor stopped")

    async def _sync_loop(self) -> None:
        while self._running:
            try:
                await self.sync()
            except Exception as e:
                logger.error(f"PnL sync failed: {e}", exc_info=True)
            await asyncio.sleep(self._interval)
