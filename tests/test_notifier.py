"""Tests for alert delivery."""

import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from evotrader.core.types import Event, EventType
from evotrader.notify.notifier import AlertDispatcher, Severity, WebhookNotifier

WEBHOOK = "https://oapi.dingtalk.com/robot/send?access_token=abc"


def test_signed_url_matches_hmac() -> None:
    notifier = WebhookNotifier(WEBHOOK, secret="SECxyz", keyword="evotrader")

    url = notifier.signed_url(timestamp_ms=1_700_000_000_000)

    query = parse_qs(urlsplit(url).query)
    expected = base64.b64encode(
        hmac.new(b"SECxyz", b"1700000000000\nSECxyz", hashlib.sha256).digest()
    ).decode()
    assert query["access_token"] == ["abc"]
    assert query["timestamp"] == ["1700000000000"]
    assert query["sign"] == [expected]


def test_unsigned_url_unchanged() -> None:
    assert WebhookNotifier(WEBHOOK, secret="", keyword="").signed_url() == WEBHOOK


def test_keyword_appended_once() -> None:
    notifier = WebhookNotifier(WEBHOOK, secret="", keyword="evotrader")

    text = notifier.format_message("Trading HALTED", "drawdown", Severity.CRITICAL)
    assert text.startswith("[CRITICAL] Trading HALTED")
    assert text.endswith("[evotrader]")
    assert notifier.format_message("evotrader started", "", Severity.INFO).count("evotrader") == 1


@pytest.mark.asyncio
async def test_send_posts_text_message() -> None:
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"errcode": 0, "errmsg": "ok"})

    notifier = WebhookNotifier(WEBHOOK, secret="", keyword="", transport=httpx.MockTransport(handler))
    await notifier.send("Order FAILED", "BTC", Severity.CRITICAL)
    await notifier.close()

    assert sent == [{"msgtype": "text", "text": {"content": "[CRITICAL] Order FAILED\nBTC"}}]


@pytest.mark.asyncio
async def test_send_swallows_delivery_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused")

    notifier = WebhookNotifier(WEBHOOK, secret="", keyword="", transport=httpx.MockTransport(handler))

    await notifier.send("Trading HALTED", "x", Severity.CRITICAL)
    await notifier.close()


@pytest.mark.asyncio
async def test_disabled_without_url() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    notifier = WebhookNotifier("", secret="", keyword="", transport=httpx.MockTransport(handler))

    assert notifier.enabled is False
    await notifier.send("x", "y")
    await notifier.close()


@pytest.fixture
def channel() -> MagicMock:
    notifier = MagicMock()
    notifier.send = AsyncMock()
    return notifier


@pytest.mark.asyncio
async def test_halt_alert_is_critical(bus, channel) -> None:
    dispatcher = AlertDispatcher(bus, [channel], large_fill_usd=1000.0)
    dispatcher.start()

    await bus.publish(Event(EventType.RISK_HALTED, data={"reason": "drawdown 10.00% >= limit 10.00%"}))
    await dispatcher.stop()

    title, message, severity = channel.send.await_args.args
    assert title == "Trading HALTED"
    assert "Manual reset required." in message
    assert severity is Severity.CRITICAL


@pytest.mark.asyncio
async def test_halted_cycle_alert_cadence(bus, channel) -> None:
    dispatcher = AlertDispatcher(bus, [channel], halted_cycle_every=3)
    dispatcher.start()

    for skipped in range(1, 8):
        await bus.publish(Event(EventType.HALTED_CYCLE_SKIPPED, data={"skipped_cycles": skipped}))
    await dispatcher.stop()

    # Cycles 1, 3 and 6.
    assert channel.send.await_count == 3


@pytest.mark.asyncio
async def test_small_fills_are_not_alerted(bus, channel) -> None:
    dispatcher = AlertDispatcher(bus, [channel], large_fill_usd=1000.0)
    dispatcher.start()

    await bus.publish(Event(EventType.ORDER_FILLED, data={"notional": 999.0}))
    await bus.publish(Event(EventType.ORDER_FILLED, data={"notional": 2500.0, "symbol": "BTC-USDT-SWAP"}))
    await dispatcher.stop()

    assert channel.send.await_count == 1
    assert channel.send.await_args.args[0] == "Large fill"


@pytest.mark.asyncio
async def test_failing_channel_does_not_block_others(bus, channel) -> None:
    broken = MagicMock()
    broken.send = AsyncMock(side_effect=RuntimeError("webhook down"))
    dispatcher = AlertDispatcher(bus, [broken, channel])
    dispatcher.start()

    await bus.publish(Event(EventType.ORDER_FAILED, data={"symbol": "BTC-USDT-SWAP", "attempts": 10}))
    await dispatcher.stop()

    assert channel.send.await_count == 1
    assert bus.get_metrics()["handler_errors"] == 0


@pytest.mark.asyncio
async def test_stop_unsubscribes(bus, channel) -> None:
    dispatcher = AlertDispatcher(bus, [channel])
    dispatcher.start()
    await dispatcher.stop()

    await bus.publish(Event(EventType.STARTUP, data={"symbols": "BTC-USDT-SWAP"}))

    channel.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_status_report_lists_positions(bus, channel) -> None:
    dispatcher = AlertDispatcher(bus, [channel])
    dispatcher.start()

    await bus.publish(Event(EventType.STATUS_REPORT, data={
        "equity": 1050.0,
        "starting_equity": 1000.0,
        "total_pnl_pct": 5.0,
        "drawdown": 0.0,
        "risk_state": "ACTIVE",
        "positions": [{
            "symbol": "BTC-USDT-SWAP", "direction": "long", "size": 0.02, "notional": 1010.0,
            "margin": 336.67, "unrealized_pnl": 10.0, "leverage": 3,
        }],
    }))
    await bus.publish(Event(EventType.STATUS_REPORT, data={"equity": 1000.0, "positions": []}))
    await dispatcher.stop()

    first, second = channel.send.await_args_list
    title, message, severity = first.args
    assert title == "Status report"
    assert "Equity: 1050.00 USDT" in message
    assert "Total PnL: +5.00% since start" in message
    assert "BTC-USDT-SWAP LONG: notional 1010.00 margin 336.67 uPnL +10.00 3x" in message
    assert severity is Severity.INFO
    assert "No open positions (flat)" in second.args[1]
