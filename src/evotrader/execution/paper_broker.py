"""Paper trading broker used when ``dry_run`` is enabled."""

import uuid
from dataclasses import dataclass
from datetime import datetime

from evotrader.config import settings
from evotrader.core.types import (
    ClosedPosition,
    Direction,
    ExchangeOrder,
    OrderStatus,
    PositionSnapshot,
    SizedOrder,
)
from evotrader.exchange.base import MarketDataClient
from evotrader.execution.errors import DuplicateOrderError, OrderRejectedError
from evotrader.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _PaperPosition:
    position_id: str
    symbol: str
    direction: Direction
    size: float
    entry_price: float
    stop_price: float
    target_price: float
    opened_at: datetime
    leverage: int = 1


class PaperBroker:
    """In-process broker with fee and slippage simulation.

    Market orders fill immediately at the reference price adjusted by
    slippage. Each fill opens a simulated position with a stop at the
    order's stop distance and a target from the intent's take-profit (or
    ``stop_distance * payoff_ratio``). ``get_closed_positions`` replays
    candles since entry and closes positions whose stop or target was
    touched; when both are inside one candle the stop wins. A reduce-only
    order closes every simulated position on its side at once.
    """

    def __init__(
        self,
        market: MarketDataClient,
        starting_equity: float | None = None,
        taker_fee: float = 0.0005,
        slippage_bps: float = 5.0,
        bar: str = "1m",
    ) -> None:
        self._market = market
        self._equity = starting_equity if starting_equity is not None else settings.starting_equity
        self._taker_fee = taker_fee
        self._slippage_bps = slippage_bps
        self._bar = bar
        self._orders: dict[str, ExchangeOrder] = {}
        self._positions: dict[str, _PaperPosition] = {}
        self._closed: list[ClosedPosition] = []

    def _fill_price(self, side: str, price: float) -> float:
        slip = price * self._slippage_bps / 10_000
        return price + slip if side == "buy" else price - slip

    async def place_order(self, order: SizedOrder) -> ExchangeOrder:
        if order.client_order_id in self._orders:
            raise DuplicateOrderError(order.client_order_id)
        if not order.is_sendable:
            raise OrderRejectedError(f"Paper order for {order.symbol} has no size", code="min_size")

        if order.reduce_only:
            return self._reduce(order)

        fill_price = self._fill_price(order.side, order.reference_price)
        fee = order.size * fill_price * self._taker_fee
        self._equity -= fee

        intent = order.intent
        sign = 1 if order.direction is Direction.LONG else -1
        stop_distance = order.stop_distance or fill_price * 0.01
        if intent.take_profit_pct:
            target_distance = fill_price * intent.take_profit_pct
        else:
            target_distance = stop_distance * max(intent.payoff_ratio, 1.0)

        position = _PaperPosition(
            position_id=uuid.uuid4().hex,
            symbol=order.symbol,
            direction=order.direction,
            size=order.size,
            entry_price=fill_price,
            stop_price=fill_price - sign * stop_distance,
            target_price=fill_price + sign * target_distance,
            opened_at=datetime.utcnow(),
            leverage=order.leverage,
        )
        self._positions[position.position_id] = position

        ack = ExchangeOrder(
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            status=OrderStatus.FILLED,
            order_id=f"paper-{position.position_id[:12]}",
            filled_size=order.size,
            avg_price=fill_price,
        )
        self._orders[order.client_order_id] = ack
        logger.info(
            f"[PAPER] Filled {order.direction.value} {order.symbol} size={order.size:.6f} "
            f"@ {fill_price:.4f} (stop={position.stop_price:.4f}, target={position.target_price:.4f})"
        )
        return ack

    def _reduce(self, order: SizedOrder) -> ExchangeOrder:
        held = [
            p for p in self._positions.values()
            if p.symbol == order.symbol and p.direction is order.direction
        ]
        if not held:
            raise OrderRejectedError(
                f"No {order.direction.value} paper position on {order.symbol} to reduce", code="no_position"
            )

        fill_price = self._fill_price(order.side, order.reference_price)
        closed_at = datetime.utcnow()
        size = 0.0
        for position in held:
            size += position.size
            self._close(position, fill_price, closed_at)

        ack = ExchangeOrder(
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            status=OrderStatus.FILLED,
            order_id=f"paper-close-{uuid.uuid4().hex[:12]}",
            filled_size=size,
            avg_price=fill_price,
        )
        self._orders[order.client_order_id] = ack
        return ack

    async def get_order(self, symbol: str, client_order_id: str) -> ExchangeOrder | None:
        return self._orders.get(client_order_id)

    async def cancel_order(self, symbol: str, client_order_id: str) -> None:
        order = self._orders.get(client_order_id)
        if order is None:
            raise OrderRejectedError(f"Unknown paper order {client_order_id}", code="not_found")
        if order.status is OrderStatus.LIVE:
            self._orders[client_order_id] = order.model_copy(update={"status": OrderStatus.CANCELLED})

    async def get_equity(self) -> float:
        return self._equity

    async def get_positions(self) -> list[PositionSnapshot]:
        """Simulated positions marked to the latest candle close."""
        marks: dict[str, float] = {}
        snapshots: list[PositionSnapshot] = []
        for position in list(self._positions.values()):
            if position.symbol not in marks:
                bars = await self._market.get_candles(position.symbol, bar=self._bar, limit=1)
                marks[position.symbol] = bars[-1].close if bars else position.entry_price
            mark = marks[position.symbol]
            sign = 1 if position.direction is Direction.LONG else -1
            snapshots.append(PositionSnapshot(
                symbol=position.symbol,
                direction=position.direction,
                size=position.size,
                entry_price=position.entry_price,
                notional=position.size * mark,
                margin=position.size * position.entry_price / position.leverage,
                unrealized_pnl=(mark - position.entry_price) * position.size * sign,
                leverage=position.leverage,
            ))
        return snapshots

    async def get_closed_positions(self, since: datetime | None = None) -> list[ClosedPosition]:
        for position in list(self._positions.values()):
            await self._settle(position)
        if since is None:
            return list(self._closed)
        return [c for c in self._closed if c.closed_at > since]

    async def _settle(self, position: _PaperPosition) -> None:
        bars = await self._market.get_candles(position.symbol, bar=self._bar, limit=300)
        is_long = position.direction is Direction.LONG
        for bar in bars:
            if bar.open_time < position.opened_at.replace(second=0, microsecond=0):
                continue
            stop_hit = bar.low <= position.stop_price if is_long else bar.high >= position.stop_price
            target_hit = bar.high >= position.target_price if is_long else bar.low <= position.target_price
            if stop_hit:
                self._close(position, position.stop_price, bar.open_time)
                return
            if target_hit:
                self._close(position, position.target_price, bar.open_time)
                return

    def _close(self, position: _PaperPosition, exit_price: float, closed_at: datetime) -> None:
        sign = 1 if position.direction is Direction.LONG else -1
        pnl = (exit_price - position.entry_price) * position.size * sign
        fee = -(position.size * exit_price * self._taker_fee)
        self._equity += pnl + fee
        del self._positions[position.position_id]
        closed = ClosedPosition(
            close_id=f"paper:{position.position_id}",
            symbol=position.symbol,
            direction=position.direction,
            realized_pnl=pnl,
            fee=fee,
            closed_at=max(closed_at, position.opened_at),
        )
        self._closed.append(closed)
        logger.info(
            f"[PAPER] Closed {position.direction.value} {position.symbol} @ {exit_price:.4f}: "
            f"pnl={closed.net_pnl:+.2f}"
        )

    async def close(self) -> None:
        return None
