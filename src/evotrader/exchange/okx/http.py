"""OKX v5 REST client for USDT-margined perpetual swaps."""

import base64
import hashlib
import hmac
import json
from datetime import UTC, datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from evotrader.config import settings
from evotrader.core.types import (
    ClosedPosition,
    Direction,
    ExchangeOrder,
    OrderStatus,
    PositionSnapshot,
    PriceBar,
    SizedOrder,
)
from evotrader.execution.errors import (
    DuplicateOrderError,
    ExchangeError,
    OrderRejectedError,
    TransientExchangeError,
)
from evotrader.logging import get_logger

logger = get_logger(__name__)

# Service unavailable, request timeout, rate limit, system busy, system error
TRANSIENT_CODES = frozenset({"50001", "50004", "50011", "50013", "50026"})
DUPLICATE_CLIENT_ORDER_ID = "51016"
ORDER_NOT_FOUND = "51603"

_STATE_MAP = {
    "live": OrderStatus.LIVE,
    "partially_filled": OrderStatus.PARTIALLY_FILLED,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "mmp_canceled": OrderStatus.CANCELLED,
}


class InstrumentMeta(BaseModel):
    """Contract specification used for size and price formatting."""

    inst_id: str
    ct_val: float
    lot_sz: float
    min_sz: float
    tick_sz: float


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


def _from_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC).replace(tzinfo=None)


def _format_step(value: Decimal, step: Decimal) -> str:
    exponent = step.normalize().as_tuple().exponent
    decimals = -exponent if isinstance(exponent, int) and exponent < 0 else 0
    return f"{value:.{decimals}f}"


class OKXHTTPClient:
    """Signed OKX v5 client.

    Failures are mapped onto the execution error taxonomy:
    ``TransientExchangeError`` for network errors, HTTP 429/5xx and the
    exchange's busy/rate-limit codes; ``DuplicateOrderError`` for a reused
    ``clOrdId``; ``OrderRejectedError`` for everything else.
    """

    def __init__(
        self,
        api_key: str | None = None,
        secret_key: str | None = None,
        passphrase: str | None = None,
        base_url: str | None = None,
        simulated: bool | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the OKX HTTP client.

        Args:
            api_key: API key (defaults to settings)
            secret_key: API secret (defaults to settings)
            passphrase: API passphrase (defaults to settings)
            base_url: REST endpoint root
            simulated: Send ``x-simulated-trading: 1`` (demo trading)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self._api_key = api_key if api_key is not None else settings.okx_api_key
        self._secret_key = secret_key if secret_key is not None else settings.okx_secret_key
        self._passphrase = passphrase if passphrase is not None else settings.okx_passphrase
        self._base_url = (base_url or settings.okx_base_url).rstrip("/")
        self._simulated = settings.okx_simulated if simulated is None else simulated
        self._timeout = timeout or settings.http_timeout_sec
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._instruments: dict[str, InstrumentMeta] = {}
        self._leverage_set: dict[str, int] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @staticmethod
    def _timestamp() -> str:
        now = datetime.now(UTC)
        return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

    def _sign(self, timestamp: str, method: str, request_path: str, body: str) -> str:
        """Base64 HMAC-SHA256 of ``timestamp + method + requestPath + body``."""
        message = f"{timestamp}{method.upper()}{request_path}{body}"
        digest = hmac.new(
            self._secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
        ).digest()
        return base64.b64encode(digest).decode("utf-8")

    def _headers(self, method: str, request_path: str, body: str) -> dict[str, str]:
        if not (self._api_key and self._secret_key and self._passphrase):
            raise OrderRejectedError("OKX API credentials not configured", code="credentials")
        timestamp = self._timestamp()
        headers = {
            "OK-ACCESS-KEY": self._api_key,
            "OK-ACCESS-SIGN": self._sign(timestamp, method, request_path, body),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": self._passphrase,
            "Content-Type": "application/json",
        }
        if self._simulated:
            headers["x-simulated-trading"] = "1"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        signed: bool = True,
    ) -> list[dict[str, Any]]:
        """Send a request and return the ``data`` array.

        Raises:
            TransientExchangeError: Retryable failure
            DuplicateOrderError: ``clOrdId`` already used
            OrderRejectedError: Any other exchange-side error
        """
        method = method.upper()
        query = urlencode({k: v for k, v in (params or {}).items() if v is not None})
        request_path = f"{path}?{query}" if query else path
        body_str = json.dumps(body, separators=(",", ":")) if body is not None else ""
        headers = self._headers(method, request_path, body_str) if signed else {}

        try:
            response = await self._get_client().request(
                method, request_path, content=body_str or None, headers=headers
            )
        except httpx.TransportError as e:
            raise TransientExchangeError(f"{method} {path}: {type(e).__name__}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientExchangeError(
                f"{method} {path}: HTTP {response.status_code}", code=str(response.status_code)
            )

        try:
            payload = response.json()
        except ValueError as e:
            if response.status_code >= 400:
                raise OrderRejectedError(
                    f"{method} {path}: HTTP {response.status_code}", code=str(response.status_code)
                ) from e
            raise TransientExchangeError(f"{method} {path}: malformed response body") from e

        code = str(payload.get("code", ""))
        data = payload.get("data") or []
        if code == "0":
            return data

        # Batch-style endpoints report the per-item code in data[].sCode
        message = payload.get("msg", "")
        if data and isinstance(data[0], dict) and data[0].get("sCode") not in (None, "", "0"):
            code = str(data[0]["sCode"])
            message = data[0].get("sMsg") or message
        self._raise_for_code(code, f"{method} {path}: {message} (code {code})")
        return data

    @staticmethod
    def _raise_for_code(code: str, message: str, client_order_id: str | None = None) -> None:
        if code in TRANSIENT_CODES:
            raise TransientExchangeError(message, code=code)
        if code == DUPLICATE_CLIENT_ORDER_ID:
            raise DuplicateOrderError(client_order_id or "", message, code=code)
        raise OrderRejectedError(message, code=code)

    # ------------------------------------------------------------------
    # Instruments
    # ------------------------------------------------------------------

    async def get_instrument(self, symbol: str) -> InstrumentMeta:
        """Contract metadata for ``symbol`` (cached)."""
        cached = self._instruments.get(symbol)
        if cached is not None:
            return cached
        data = await self._request(
            "GET",
            "/api/v5/public/instruments",
            params={"instType": "SWAP", "instId": symbol},
            signed=False,
        )
        if not data:
            raise OrderRejectedError(f"Unknown instrument {symbol}", code="instrument")
        item = data[0]
        meta = InstrumentMeta(
            inst_id=symbol,
            ct_val=_to_float(item.get("ctVal"), 1.0) or 1.0,
            lot_sz=_to_float(item.get("lotSz"), 1.0) or 1.0,
            min_sz=_to_float(item.get("minSz"), 0.0),
            tick_sz=_to_float(item.get("tickSz"), 0.01) or 0.01,
        )
        self._instruments[symbol] = meta
        return meta

    def contracts_for(self, meta: InstrumentMeta, size: float) -> str:
        """Convert a base-asset size to a lot-aligned contract count string."""
        lot = Decimal(str(meta.lot_sz))
        contracts = Decimal(str(size)) / Decimal(str(meta.ct_val))
        aligned = (contracts / lot).to_integral_value(rounding=ROUND_DOWN) * lot
        return _format_step(aligned, lot)

    def price_for(self, meta: InstrumentMeta, price: float) -> str:
        tick = Decimal(str(meta.tick_sz))
        aligned = (Decimal(str(price)) / tick).to_integral_value(rounding=ROUND_DOWN) * tick
        return _format_step(aligned, tick)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def _ensure_leverage(self, symbol: str, leverage: int) -> None:
        if self._leverage_set.get(symbol) == leverage:
            return
        try:
            await self._request(
                "POST",
                "/api/v5/account/set-leverage",
                body={"instId": symbol, "lever": str(leverage), "mgnMode": settings.okx_margin_mode},
            )
        except OrderRejectedError as e:
            # Open orders or positions can block the change; the order still uses the current lever.
            logger.warning(f"Could not set leverage {leverage}x on {symbol}: {e}")
            return
        self._leverage_set[symbol] = leverage

    def _order_body(self, order: SizedOrder, meta: InstrumentMeta, sz: str) -> dict[str, Any]:
        intent = order.intent
        body: dict[str, Any] = {
            "instId": order.symbol,
            "tdMode": settings.okx_margin_mode,
            "side": order.side,
            "ordType": "market",
            "sz": sz,
            "clOrdId": order.client_order_id,
        }
        if settings.okx_position_mode == "long_short":
            body["posSide"] = order.direction.value
        if order.reduce_only:
            body["reduceOnly"] = True
            return body

        if intent.take_profit_pct and intent.stop_loss_pct:
            price = order.reference_price
            if order.direction is Direction.LONG:
                tp_price = price * (1 + intent.take_profit_pct)
                sl_price = price * (1 - intent.stop_loss_pct)
            else:
                tp_price = price * (1 - intent.take_profit_pct)
                sl_price = price * (1 + intent.stop_loss_pct)
            if tp_price > 0 and sl_price > 0:
                body["attachAlgoOrds"] = [{
                    "tpTriggerPx": self.price_for(meta, tp_price),
                    "tpOrdPx": "-1",
                    "slTriggerPx": self.price_for(meta, sl_price),
                    "slOrdPx": "-1",
                }]
            else:
                logger.warning(f"TP/SL skipped for {order.symbol}: tp={tp_price}, sl={sl_price}")
        return body

    async def place_order(self, order: SizedOrder) -> ExchangeOrder:
        """Place a market order tagged with the order's client id.

        Raises:
            OrderRejectedError: Size rounds below the minimum lot, or the
                exchange rejects the order
            DuplicateOrderError: The client order id was already accepted
            TransientExchangeError: Retryable failure
        """
        meta = await self.get_instrument(order.symbol)
        sz = self.contracts_for(meta, order.size)
        if Decimal(sz) <= 0 or float(sz) < meta.min_sz:
            raise OrderRejectedError(
                f"Order size {order.size} for {order.symbol} is below the minimum lot "
                f"(contracts={sz}, minSz={meta.min_sz})",
                code="min_size",
            )

        if not order.reduce_only:
            await self._ensure_leverage(order.symbol, order.leverage)
        body = self._order_body(order, meta, sz)
        logger.info(
            f"Placing {body['side']} {order.symbol} sz={sz} (clOrdId={order.client_order_id})"
        )
        try:
            data = await self._request("POST", "/api/v5/trade/order", body=body)
        except DuplicateOrderError as e:
            raise DuplicateOrderError(order.client_order_id, str(e), code=e.code) from e

        item = data[0] if data else {}
        return ExchangeOrder(
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            status=OrderStatus.LIVE,
            order_id=item.get("ordId") or None,
            raw=item,
        )

    async def get_order(self, symbol: str, client_order_id: str) -> ExchangeOrder | None:
        """Look up an order by client id; None if the exchange never saw it."""
        try:
            data = await self._request(
                "GET", "/api/v5/trade/order", params={"instId": symbol, "clOrdId": client_order_id}
            )
        except OrderRejectedError as e:
            if e.code == ORDER_NOT_FOUND:
                return None
            raise
        if not data:
            return None

        item = data[0]
        meta = await self.get_instrument(symbol)
        status = _STATE_MAP.get(item.get("state", ""), OrderStatus.LIVE)
        avg_px = _to_float(item.get("avgPx"), 0.0)
        return ExchangeOrder(
            client_order_id=client_order_id,
            symbol=symbol,
            status=status,
            order_id=item.get("ordId") or None,
            filled_size=_to_float(item.get("accFillSz")) * meta.ct_val,
            avg_price=avg_px or None,
            raw=item,
        )

    async def cancel_order(self, symbol: str, client_order_id: str) -> None:
        await self._request(
            "POST", "/api/v5/trade/cancel-order", body={"instId": symbol, "clOrdId": client_order_id}
        )
        logger.info(f"Cancelled {symbol} order {client_order_id}")

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_equity(self) -> float:
        """USDT equity of the trading account."""
        data = await self._request("GET", "/api/v5/account/balance", params={"ccy": "USDT"})
        if not data:
            raise ExchangeError("Empty balance response")
        account = data[0]
        for detail in account.get("details", []):
            if detail.get("ccy") == "USDT":
                return _to_float(detail.get("eq"))
        return _to_float(account.get("totalEq"))

    async def get_positions(self) -> list[PositionSnapshot]:
        """Open swap positions; contract counts are converted to base-asset size."""
        data = await self._request("GET", "/api/v5/account/positions", params={"instType": "SWAP"})
        positions: list[PositionSnapshot] = []
        for item in data:
            contracts = _to_float(item.get("pos"))
            if contracts == 0:
                continue
            side = item.get("posSide", "net")
            if side == "net":
                # Net mode reports direction through the sign of ``pos``.
                side = Direction.LONG.value if contracts > 0 else Direction.SHORT.value
            symbol = item.get("instId", "")
            meta = await self.get_instrument(symbol)
            positions.append(PositionSnapshot(
                symbol=symbol,
                direction=Direction(side),
                size=abs(contracts) * meta.ct_val,
                entry_price=_to_float(item.get("avgPx")),
                notional=_to_float(item.get("notionalUsd")),
                margin=_to_float(item.get("mgn")) or _to_float(item.get("imr")),
                unrealized_pnl=_to_float(item.get("upl")),
                leverage=int(_to_float(item.get("lever"), 1.0)) or 1,
            ))
        return positions

    async def get_closed_positions(self, since: datetime | None = None) -> list[ClosedPosition]:
        """Closed swap positions, oldest first."""
        params: dict[str, Any] = {"instType": "SWAP"}
        if since is not None:
            params["before"] = str(int(since.replace(tzinfo=UTC).timestamp() * 1000))
        data = await self._request("GET", "/api/v5/account/positions-history", params=params)

        closes: list[ClosedPosition] = []
        for item in data:
            side = item.get("direction") or item.get("posSide")
            if side not in (Direction.LONG.value, Direction.SHORT.value):
                logger.debug(f"Skipping position history row with side {side!r}")
                continue
            closed_at = _from_ms(item.get("uTime") or item.get("cTime") or 0)
            closes.append(ClosedPosition(
                close_id=f"{item.get('posId', '')}:{item.get('uTime', '')}",
                symbol=item.get("instId", ""),
                direction=Direction(side),
                realized_pnl=_to_float(item.get("pnl")),
                fee=_to_float(item.get("fee")) + _to_float(item.get("fundingFee")),
                closed_at=closed_at,
            ))
        closes.sort(key=lambda c: c.closed_at)
        return closes

    # ------------------------------------------------------------------
    # Market data (public)
    # ------------------------------------------------------------------

    async def get_candles(self, symbol: str, bar: str = "1H", limit: int = 100) -> list[PriceBar]:
        """Recent candles, oldest first."""
        data = await self._request(
            "GET",
            "/api/v5/market/candles",
            params={"instId": symbol, "bar": bar, "limit": str(limit)},
            signed=False,
        )
        bars = [
            PriceBar(
                open_time=_from_ms(row[0]),
                open=_to_float(row[1]),
                high=_to_float(row[2]),
                low=_to_float(row[3]),
                close=_to_float(row[4]),
                volume=_to_float(row[5]),
            )
            for row in data
            if len(row) >= 6
        ]
        bars.reverse()
        return bars

    async def get_funding_rate(self, symbol: str) -> float:
        data = await self._request(
            "GET", "/api/v5/public/funding-rate", params={"instId": symbol}, signed=False
        )
        return _to_float(data[0].get("fundingRate")) if data else 0.0

    async def get_open_interest(self, symbol: str) -> float:
        data = await self._request(
            "GET", "/api/v5/public/open-interest", params={"instId": symbol}, signed=False
        )
        return _to_float(data[0].get("oi")) if data else 0.0
