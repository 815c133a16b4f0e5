"""Market-context sources."""

import asyncio
from typing import Protocol, runtime_checkable

from evotrader.core.types import MarketContext
from evotrader.exchange.base import MarketDataClient
from evotrader.execution.errors import TransientExchangeError
from evotrader.logging import get_logger
from evotrader.perception.indicators import compute_indicators
from evotrader.utils.retry import retry_with_backoff

logger = get_logger(__name__)


@runtime_checkable
class ContextSource(Protocol):
    """Supplies a market snapshot on demand, without side effects."""

    async def get_context(self, symbol: str) -> MarketContext:
        ...


class KlineContextSource:
    """Builds MarketContext from exchange candles, funding rate and open interest.

    Candles are required; funding and open interest degrade to 0 when
    their endpoints fail.
    """

    def __init__(self, market: MarketDataClient, bar: str = "1H", limit: int = 100) -> None:
        self._market = market
        self._bar = bar
        self._limit = limit

    async def get_context(self, symbol: str) -> MarketContext:
        candles, funding, open_interest = await asyncio.gather(
            retry_with_backoff(
                self._market.get_candles,
                symbol,
                bar=self._bar,
                limit=self._limit,
                max_retries=2,
                initial_delay=1.0,
                exceptions=(TransientExchangeError,),
            ),
            self._market.get_funding_rate(symbol),
            self._market.get_open_interest(symbol),
            return_exceptions=True,
        )
        if isinstance(candles, BaseException):
            raise candles
        if not candles:
            raise ValueError(f"No candles returned for {symbol}")

        if isinstance(funding, BaseException):
            logger.warning(f"Funding rate unavailable for {symbol}: {funding}")
            funding = 0.0
        if isinstance(open_interest, BaseException):
            logger.warning(f"Open interest unavailable for {symbol}: {open_interest}")
            open_interest = 0.0

        last = candles[-1]
        return MarketContext(
            symbol=symbol,
            price=last.close,
            indicators=compute_indicators(candles),
            funding_rate=funding,
            open_interest=open_interest,
        )
