"""Operator alerts: delivery channels and the bus subscriber that feeds them.

Delivery is fire-and-forget. A channel failure is logged and dropped; it
never reaches the trading path.
"""

import asyncio
import base64
import hashlib
import hmac
import time
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote_plus

import httpx

from evotrader.config import settings
from evotrader.core.bus import EventBus
from evotrader.core.types import Event, EventType
from evotrader.logging import get_logger

logger = get_logger(__name__)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@runtime_checkable
class Notifier(Protocol):
    async def send(self, title: str, message: str, severity: Severity = Severity.INFO) -> None:
        ...


class LogNotifier:
    """Writes alerts to the log only."""

    async def send(self, title: str, message: str, severity: Severity = Severity.INFO) -> None:
        if severity is Severity.CRITICAL:
            logger.critical(f"[ALERT] {title}: {message}")
        elif severity is Severity.WARNING:
            logger.warning(f"[ALERT] {title}: {message}")
        else:
            logger.info(f"[ALERT] {title}: {message}")


class WebhookNotifier:
    """Posts text alerts to a DingTalk-style robot webhook.

    With a secret configured the URL carries ``timestamp`` and ``sign``
    query parameters (HMAC-SHA256 of ``"{timestamp}\\n{secret}"``). The
    keyword is appended when missing so keyword-filtered robots accept
    the message.
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        secret: str | None = None,
        keyword: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url if webhook_url is not None else settings.notifier_webhook_url
        self._secret = secret if secret is not None else settings.notifier_secret
        self._keyword = keyword if keyword is not None else settings.notifier_keyword
        self._client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.http_timeout_sec,
            transport=transport,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    def signed_url(self, timestamp_ms: int | None = None) -> str:
        if not self._secret:
            return self._webhook_url
        timestamp = str(timestamp_ms if timestamp_ms is not None else int(time.time() * 1000))
        string_to_sign = f"{timestamp}\n{self._secret}"
        digest = hmac.new(self._secret.encode(), string_to_sign.encode(), hashlib.sha256).digest()
        sign = quote_plus(base64.b64encode(digest).decode())
        separator = "&" if "?" in self._webhook_url else "?"
        return f"{self._webhook_url}{separator}timestamp={timestamp}&sign={sign}"

    def format_message(self, title: str, message: str, severity: Severity) -> str:
        content = f"[{severity.value.upper()}] {title}\n{message}"
        if self._keyword and self._keyword not in content:
            content = f"{content}\n\n[{self._keyword}]"
        return content

    async def send(self, title: str, message: str, severity: Severity = Severity.INFO) -> None:
        if not self.enabled:
            return
        body = {"msgtype": "text", "text": {"content": self.format_message(title, message, severity)}}
        try:
            response = await self._client.post(self.signed_url(), json=body)
            response.raise_for_status()
            payload = response.json()
            if payload.get("errcode", 0) != 0:
                logger.error(f"Webhook rejected alert '{title}': {payload}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Webhook delivery failed for '{title}': {e}")

    async def close(self) -> None:
        await self._client.aclose()


class AlertDispatcher:
    """Turns bus events into operator alerts.

    Alerts go out for halts, resets, skipped cycles while halted (the first
    and every ``halted_cycle_every``-th), execution failures, large fills,
    startup and the periodic status report. Each delivery runs as its own
    task so a slow channel never delays the publisher.
    """

    def __init__(
        self,
        bus: EventBus,
        notifiers: list[Notifier],
        large_fill_usd: float | None = None,
        halted_cycle_every: int = 12,
    ) -> None:
        self._bus = bus
        self._notifiers = notifiers
        self._large_fill_usd = large_fill_usd if large_fill_usd is not None else settings.large_fill_alert_usd
        self._halted_cycle_every = max(1, halted_cycle_every)
        self._pending: set[asyncio.Task[None]] = set()
        self._handlers = {
            EventType.RISK_HALTED: self._on_halted,
            EventType.RISK_RESET: self._on_reset,
            EventType.HALTED_CYCLE_SKIPPED: self._on_halted_cycle,
            EventType.ORDER_FAILED: self._on_order_failed,
            EventType.ORDER_FILLED: self._on_order_filled,
            EventType.STARTUP: self._on_startup,
            EventType.STATUS_REPORT: self._on_status_report,
        }

    def start(self) -> None:
        for event_type, handler in self._handlers.items():
            self._bus.subscribe(event_type, handler)

    async def stop(self) -> None:
        for event_type, handler in self._handlers.items():
            self._bus.unsubscribe(event_type, handler)
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _dispatch(self, title: str, message: str, severity: Severity) -> None:
        for notifier in self._notifiers:
            task = asyncio.create_task(self._deliver(notifier, title, message, severity))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _deliver(notifier: Notifier, title: str, message: str, severity: Severity) -> None:
        try:
            await notifier.send(title, message, severity)
        except Exception as e:
            logger.error(f"Notifier {type(notifier).__name__} failed on '{title}': {e}")

    async def _on_halted(self, event: Event) -> None:
        data = event.data
        self._dispatch(
            "Trading HALTED",
            f"{data.get('reason', '')}\nPeak: {data.get('peak_equity', 0.0):.2f} "
            f"Equity: {data.get('current_equity', 0.0):.2f}\nManual reset required.",
            Severity.CRITICAL,
        )

    async def _on_reset(self, event: Event) -> None:
        data = event.data
        self._dispatch(
            "Risk governor reset",
            f"Operator: {data.get('operator')}\nReason: {data.get('reason') or 'n/a'}\n"
            f"Previous halt: {data.get('previous_reason', '')}\nEquity: {data.get('equity', 0.0):.2f}",
            Severity.WARNING,
        )

    async def _on_halted_cycle(self, event: Event) -> None:
        skipped = int(event.data.get("skipped_cycles", 0))
        if skipped != 1 and skipped % self._halted_cycle_every != 0:
            return
        self._dispatch(
            "Trading still halted",
            f"{skipped} cycle(s) skipped. Halt: {event.data.get('halt_reason', '')}",
            Severity.WARNING,
        )

    async def _on_order_failed(self, event: Event) -> None:
        data = event.data
        self._dispatch(
            "Order FAILED",
            f"{data.get('direction', '').upper()} {data.get('symbol')} size={data.get('size')} "
            f"after {data.get('attempts')} attempt(s): {data.get('reason', '')}\n"
            f"client_order_id={data.get('client_order_id')}",
            Severity.CRITICAL,
        )

    async def _on_order_filled(self, event: Event) -> None:
        data: dict[str, Any] = event.data
        notional = float(data.get("notional") or 0.0)
        if notional < self._large_fill_usd:
            return
        self._dispatch(
            "Large fill",
            f"{data.get('direction', '').upper()} {data.get('symbol')} size={data.get('size')} "
            f"@ {data.get('price')} (notional {notional:.2f})",
            Severity.INFO,
        )

    async def _on_startup(self, event: Event) -> None:
        data = event.data
        lines = [f"{key}: {value}" for key, value in data.items()]
        self._dispatch("evotrader started", "\n".join(lines), Severity.INFO)

    async def _on_status_report(self, event: Event) -> None:
        data = event.data
        lines = [
            f"Equity: {data.get('equity', 0.0):.2f} USDT",
            f"Total PnL: {data.get('total_pnl_pct', 0.0):+.2f}% since start "
            f"({data.get('starting_equity', 0.0):.2f})",
            f"Drawdown: {data.get('drawdown', 0.0):.2%} | State: {data.get('risk_state', '')}",
        ]
        positions = data.get("positions") or []
        if not positions:
            lines.append("No open positions (flat)")
        for p in positions:
            lines.append(
                f"{p['symbol']} {p['direction'].upper()}: notional {p['notional']:.2f} "
                f"margin {p['margin']:.2f} uPnL {p['unrealized_pnl']:+.2f} {p['leverage']}x"
            )
        self._dispatch("Status report", "\n".join(lines), Severity.INFO)
