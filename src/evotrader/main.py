"""Command-line entry point: ``evotrader run|status|reset-halt``."""

import argparse
import asyncio
import json
import signal
import sys
from contextlib import AsyncExitStack
from typing import Any

from evotrader.brain.decision import DecisionSource, GuardedDecisionSource, NoTradeDecisionSource
from evotrader.brain.deepseek_client import DeepSeekDecisionSource
from evotrader.brain.memory import InMemoryMemoryStore
from evotrader.config import settings
from evotrader.core.bus import EventBus
from evotrader.core.heartbeat import HeartbeatController
from evotrader.core.trading_loop import TradingLoop
from evotrader.evolution.autopsy import OutcomeReviewer
from evotrader.evolution.pnl_monitor import PnlMonitor
from evotrader.evolution.scanner import OpportunityScanner
from evotrader.evolution.writer import EvolutionWriter
from evotrader.exchange.base import ExchangeClient
from evotrader.exchange.okx.http import OKXHTTPClient
from evotrader.execution.engine import ExecutionEngine
from evotrader.execution.paper_broker import PaperBroker
from evotrader.logging import get_logger, setup_logging
from evotrader.notify.notifier import AlertDispatcher, LogNotifier, Notifier, WebhookNotifier
from evotrader.notify.status_report import StatusReporter
from evotrader.observability.metrics import metrics
from evotrader.perception.context import KlineContextSource
from evotrader.risk.position_sizer import PositionSizer
from evotrader.risk.risk_governor import RiskGovernor
from evotrader.storage.trade_log import TradeLogStore

logger = get_logger(__name__)


def _build_notifiers(stack: AsyncExitStack) -> list[Notifier]:
    notifiers: list[Notifier] = [LogNotifier()]
    if settings.notifier_webhook_url:
        webhook = WebhookNotifier()
        stack.push_async_callback(webhook.close)
        notifiers.append(webhook)
    return notifiers


def _build_decision_source(stack: AsyncExitStack) -> DecisionSource:
    if not settings.deepseek_api_key:
        logger.warning("DEEPSEEK_API_KEY not set; running with a no-trade decision source")
        return GuardedDecisionSource(NoTradeDecisionSource())
    source = DeepSeekDecisionSource()
    stack.push_async_callback(source.close)
    return GuardedDecisionSource(source)


async def build_loop(stack: AsyncExitStack) -> TradingLoop:
    """Wire every component from settings. Resources are closed by ``stack``."""
    bus = EventBus()
    store = TradeLogStore(settings.database_path)
    await store.connect()
    stack.push_async_callback(store.close)

    okx = OKXHTTPClient()
    stack.push_async_callback(okx.close)
    if settings.dry_run:
        client: ExchangeClient = PaperBroker(okx)
        logger.info("DRY RUN: orders go to the paper broker; market data from OKX public endpoints")
    else:
        if not settings.has_exchange_credentials:
            raise RuntimeError("Live trading requires OKX_API_KEY, OKX_SECRET_KEY and OKX_PASSPHRASE")
        client = okx

    dispatcher = AlertDispatcher(bus, _build_notifiers(stack))
    dispatcher.start()
    stack.push_async_callback(dispatcher.stop)

    memory = InMemoryMemoryStore()
    loaded = await memory.load(await store.list_lessons())
    logger.info(f"Lesson memory warmed with {loaded} lesson(s)")

    governor = RiskGovernor(bus, store=store)
    writer = EvolutionWriter(memory, bus, store=store)
    return TradingLoop(
        bus=bus,
        store=store,
        client=client,
        governor=governor,
        sizer=PositionSizer(governor),
        engine=ExecutionEngine(client, governor, bus, store=store),
        heartbeat=HeartbeatController(),
        context_source=KlineContextSource(okx),
        decision_source=_build_decision_source(stack),
        memory=memory,
        writer=writer,
        reviewer=OutcomeReviewer(store, writer),
        scanner=OpportunityScanner(okx, store, writer),
        pnl_monitor=PnlMonitor(client, store),
        status_reporter=StatusReporter(client, governor, bus, mark_to_market=not settings.dry_run),
        # Paper equity restarts with the process; the persisted ledger is authoritative.
        mark_to_market=not settings.dry_run,
    )


async def run(once: bool = False) -> None:
    async with AsyncExitStack() as stack:
        loop = await build_loop(stack)
        if once:
            await loop.start()
            try:
                report = await loop.run_cycle()
                logger.info(f"Single cycle finished: {report}")
            finally:
                await loop.stop()
            return

        stop_event = asyncio.Event()
        event_loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            event_loop.add_signal_handler(sig, stop_event.set)
        logger.info("Signal handlers installed for graceful shutdown")
        await loop.run_forever(stop_event)
        logger.info(f"Final metrics: {json.dumps(metrics.get_summary(), default=str)}")


async def status() -> dict[str, Any]:
    store = TradeLogStore(settings.database_path)
    try:
        await store.connect()
        risk = await store.load_risk_state()
        return {
            "risk": risk.to_dict() if risk else None,
            "store": await store.get_summary(),
            "audit": (await store.list_risk_audit())[-5:],
        }
    finally:
        await store.close()


async def reset_halt(operator: str, reason: str) -> dict[str, Any]:
    async with AsyncExitStack() as stack:
        bus = EventBus()
        store = TradeLogStore(settings.database_path)
        await store.connect()
        stack.push_async_callback(store.close)
        dispatcher = AlertDispatcher(bus, _build_notifiers(stack))
        dispatcher.start()
        stack.push_async_callback(dispatcher.stop)

        governor = RiskGovernor(bus, store=store)
        await governor.initialize()
        return await governor.reset(operator=operator, reason=reason)


def main() -> None:
    """Main entrypoint."""
    parser = argparse.ArgumentParser(description="evotrader - self-governing trading loop")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Run the trading loop")
    run_parser.add_argument("--once", action="store_true", help="Run a single evaluation cycle and exit")
    subparsers.add_parser("status", help="Show risk ledger and trade log summary")
    reset_parser = subparsers.add_parser("reset-halt", help="Clear a latched drawdown halt")
    reset_parser.add_argument("--operator", required=True, help="Who authorises the reset")
    reset_parser.add_argument("--reason", default="", help="Justification recorded in the audit log")

    args = parser.parse_args()
    setup_logging()

    if args.command == "run":
        try:
            asyncio.run(run(once=args.once))
        except KeyboardInterrupt:
            pass
    elif args.command == "status":
        print(json.dumps(asyncio.run(status()), indent=2, default=str))
    elif args.command == "reset-halt":
        try:
            result = asyncio.run(reset_halt(args.operator, args.reason))
        except ValueError as e:
            logger.error(str(e))
            sys.exit(2)
        print(json.dumps(result, indent=2, default=str))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
