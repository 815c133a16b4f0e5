"""Exchange adapter contracts consumed by the execution and evolution layers."""

from datetime import datetime
from typing import Protocol, runtime_checkable

from evotrader.core.types import ClosedPosition, ExchangeOrder, PositionSnapshot, PriceBar, SizedOrder


@runtime_checkable
class MarketDataClient(Protocol):
    """Read-only market data."""

    async def get_candles(self, symbol: str, bar: str = "1H", limit: int = 100) -> list[PriceBar]:
        """Return up to ``limit`` candles, oldest first."""
        ...

    async def get_funding_rate(self, symbol: str) -> float:
        ...

    async def get_open_interest(self, symbol: str) -> float:
        ...


@runtime_checkable
class ExchangeClient(Protocol):
    """Order routing and account state.

    ``place_order`` raises ``TransientExchangeError`` for retryable
    failures, ``OrderRejectedError`` for business rejections and
    ``DuplicateOrderError`` when the client order id was already used.
    ``get_order`` returns None when the exchange has no order under the
    client order id. Reduce-only orders (``order.reduce_only``) close the
    position held in ``order.direction``.
    """

    async def place_order(self, order: SizedOrder) -> ExchangeOrder:
        ...

    async def get_order(self, symbol: str, client_order_id: str) -> ExchangeOrder | None:
        ...

    async def cancel_order(self, symbol: str, client_order_id: str) -> None:
        ...

    async def get_equity(self) -> float:
        ...

    async def get_positions(self) -> list[PositionSnapshot]:
        """Open positions with a non-zero size, sizes in base-asset units."""
        ...

    async def get_closed_positions(self, since: datetime | None = None) -> list[ClosedPosition]:
        """Return closes after ``since``, oldest first."""
        ...

    async def close(self) -> None:
        ...
