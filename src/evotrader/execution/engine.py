"""Execution engine: bounded retry, idempotent submission, reconciliation.

Every submission carries a client order id generated when the order was
sized. Before any attempt past the first, the engine asks the exchange
whether an order with that id already exists; an ambiguous failure that
actually reached the book is therefore resolved instead of re-sent.
"""

import asyncio
import time
from typing import TYPE_CHECKING

from evotrader.config import settings
from evotrader.core.bus import EventBus
from evotrader.core.types import (
    Event,
    EventType,
    ExchangeOrder,
    ExecutionResult,
    ExecutionStatus,
    OrderStatus,
    SizedOrder,
)
from evotrader.exchange.base import ExchangeClient
from evotrader.execution.errors import DuplicateOrderError, ErrorClass, classify_error
from evotrader.logging import get_logger, set_trading_context
from evotrader.observability.metrics import (
    ORDER_ATTEMPTS,
    ORDERS_FAILED,
    ORDERS_FILLED,
    ORDERS_REJECTED,
    SUBMIT_LATENCY,
    SystemMetrics,
    metrics,
)
from evotrader.risk.risk_governor import RiskGovernor
from evotrader.utils.retry import BackoffPolicy, RetryState, RetryVerdict, Sleeper

if TYPE_CHECKING:
    from evotrader.storage.trade_log import TradeLogStore

logger = get_logger(__name__)

_FILLED_STATES = (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED)
_DEAD_STATES = (OrderStatus.CANCELLED, OrderStatus.REJECTED, OrderStatus.FAILED)


class ExecutionEngine:
    """Submits SizedOrders and reports a terminal Filled/Rejected/Failed result."""

    def __init__(
        self,
        client: ExchangeClient,
        governor: RiskGovernor,
        bus: EventBus,
        store: "TradeLogStore | None" = None,
        policy: BackoffPolicy | None = None,
        sleep: Sleeper = asyncio.sleep,
        confirm_polls: int = 3,
        confirm_interval: float = 0.5,
        metrics_sink: SystemMetrics | None = None,
    ) -> None:
        """Initialize the execution engine.

        Args:
            client: Exchange adapter (live OKX or PaperBroker)
            governor: Risk governor consulted before every send
            bus: Event bus for fill/reject/failure events
            store: Order journal (None disables journaling)
            policy: Backoff policy (defaults from settings)
            sleep: Awaitable sleep used between attempts
            confirm_polls: Order-status polls after an accepted-but-unfilled ack
            confirm_interval: Delay between confirmation polls
            metrics_sink: Metrics registry
        """
        self._client = client
        self._governor = governor
        self._bus = bus
        self._store = store
        self._policy = policy or BackoffPolicy(
            max_attempts=settings.execution_max_attempts,
            base_delay=settings.execution_base_delay_sec,
            max_delay=settings.execution_max_delay_sec,
        )
        self._sleep = sleep
        self._confirm_polls = confirm_polls
        self._confirm_interval = confirm_interval
        self._metrics = metrics_sink or metrics
        self._consumed: set[str] = set()

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    async def submit(self, order: SizedOrder) -> ExecutionResult:
        """Submit an order and drive it to a terminal state.

        Transient failures are retried with exponential backoff up to the
        policy's attempt ceiling; business rejections terminate at once.
        The gate (``may_trade`` and size > 0) is re-checked before every
        send.

        Args:
            order: Sized order; each order may be submitted only once

        Returns:
            Terminal execution result.

        Raises:
            ValueError: If this order was already submitted
        """
        if order.client_order_id in self._consumed:
            raise ValueError(f"SizedOrder {order.client_order_id} was already submitted")
        self._consumed.add(order.client_order_id)
        set_trading_context(symbol=order.symbol, order_id=order.client_order_id)

        if not order.is_sendable:
            return await self._finish(order, ExecutionStatus.REJECTED, 0, reason="size is zero; no order sent")
        if not self._governor.may_trade():
            return await self._finish(order, ExecutionStatus.REJECTED, 0, reason="risk governor halted")

        if self._store is not None:
            await self._store.journal_order(order)

        started = time.monotonic()
        state = RetryState(self._policy)
        try:
            return await self._drive(order, state)
        finally:
            self._metrics.record_histogram(SUBMIT_LATENCY, time.monotonic() - started)

    async def _drive(self, order: SizedOrder, state: RetryState) -> ExecutionResult:
        while True:
            attempt = state.begin_attempt()

            if attempt > 1:
                try:
                    existing = await self._client.get_order(order.symbol, order.client_order_id)
                except Exception as e:
                    # Never resubmit blind: an unanswered lookup counts as a transient failure.
                    verdict, delay = state.on_failure(e, transient=True)
                    logger.warning(f"Reconciliation query failed on attempt {attempt}: {e}")
                    outcome = await self._after_failure(order, state, verdict, delay)
                    if outcome is not None:
                        return outcome
                    continue
                if existing is not None:
                    logger.info(
                        f"Order {order.client_order_id} found on exchange before resubmission "
                        f"(status={existing.status.value})"
                    )
                    return await self._resolve(order, existing, state.attempts, reconciled=True)

                if not self._governor.may_trade():
                    return await self._finish(
                        order,
                        ExecutionStatus.REJECTED,
                        state.attempts,
                        reason="risk governor halted before resubmission",
                        journal_status=OrderStatus.NOT_PLACED,
                    )

            self._metrics.increment(ORDER_ATTEMPTS)
            logger.info(
                f"Submitting {'close ' if order.reduce_only else ''}{order.direction.value} {order.symbol} "
                f"size={order.size:.6f} (attempt {attempt}/{self._policy.max_attempts})"
            )
            try:
                ack = await self._client.place_order(order)
            except DuplicateOrderError as e:
                logger.warning(f"Duplicate client order id on attempt {attempt}: {e}; reconciling")
                existing = await self._query_quietly(order)
                if existing is not None:
                    return await self._resolve(order, existing, state.attempts, reconciled=True)
                verdict, delay = state.on_failure(e, transient=True)
            except Exception as e:
                error_class = classify_error(e)
                verdict, delay = state.on_failure(e, error_class is ErrorClass.TRANSIENT)
                if verdict is RetryVerdict.REJECTED:
                    logger.warning(f"Order rejected on attempt {attempt}: {e}")
                    return await self._finish(order, ExecutionStatus.REJECTED, state.attempts, reason=str(e))
                logger.warning(f"Transient failure on attempt {attempt}: {e}")
            else:
                return await self._resolve(order, ack, state.attempts)

            outcome = await self._after_failure(order, state, verdict, delay)
            if outcome is not None:
                return outcome

    async def _after_failure(
        self, order: SizedOrder, state: RetryState, verdict: RetryVerdict, delay: float
    ) -> ExecutionResult | None:
        if verdict is RetryVerdict.REJECTED:
            return await self._finish(
                order, ExecutionStatus.REJECTED, state.attempts, reason=state.last_error or ""
            )
        if verdict is RetryVerdict.EXHAUSTED:
            # One final look: the last attempt may have landed.
            existing = await self._query_quietly(order)
            if existing is not None:
                return await self._resolve(order, existing, state.attempts, reconciled=True)
            return await self._finish(
                order,
                ExecutionStatus.FAILED,
                state.attempts,
                reason=f"retries exhausted after {state.attempts} attempts: {state.last_error}",
            )
        logger.info(f"Retrying in {delay:.2f}s")
        await self._sleep(delay)
        return None

    async def _query_quietly(self, order: SizedOrder) -> ExchangeOrder | None:
        try:
            return await self._client.get_order(order.symbol, order.client_order_id)
        except Exception as e:
            logger.warning(f"Order status query failed for {order.client_order_id}: {e}")
            return None

    async def _resolve(
        self,
        order: SizedOrder,
        exchange_order: ExchangeOrder,
        attempts: int,
        reconciled: bool = False,
    ) -> ExecutionResult:
        """Map an exchange order state to a terminal result."""
        current = exchange_order
        polls = 0
        while current.status is OrderStatus.LIVE and polls < self._confirm_polls:
            polls += 1
            await self._sleep(self._confirm_interval)
            latest = await self._query_quietly(order)
            if latest is not None:
                current = latest.model_copy(update={"order_id": latest.order_id or current.order_id})

        if current.status in _FILLED_STATES or (current.status in _DEAD_STATES and current.filled_size > 0):
            return await self._finish(
                order,
                ExecutionStatus.FILLED,
                attempts,
                exchange_order=current,
                reconciled=reconciled,
            )
        if current.status in _DEAD_STATES:
            return await self._finish(
                order,
                ExecutionStatus.REJECTED,
                attempts,
                reason=f"exchange reports order {current.status.value}",
                exchange_order=current,
                reconciled=reconciled,
            )
        # Accepted market order still unconfirmed: it is on the book.
        logger.warning(
            f"Order {order.client_order_id} accepted but fill not yet confirmed "
            f"(status={current.status.value}); treating as filled at reference price"
        )
        return await self._finish(
            order,
            ExecutionStatus.FILLED,
            attempts,
            reason="accepted; fill confirmation pending",
            exchange_order=current,
            reconciled=reconciled,
        )

    async def _finish(
        self,
        order: SizedOrder,
        status: ExecutionStatus,
        attempts: int,
        reason: str = "",
        exchange_order: ExchangeOrder | None = None,
        reconciled: bool = False,
        journal_status: OrderStatus | None = None,
    ) -> ExecutionResult:
        filled_size = 0.0
        avg_price = None
        if status is ExecutionStatus.FILLED:
            filled_size = (exchange_order.filled_size if exchange_order else 0.0) or order.size
            avg_price = (exchange_order.avg_price if exchange_order else None) or order.reference_price

        result = ExecutionResult(
            status=status,
            order=order,
            attempts=attempts,
            order_id=exchange_order.order_id if exchange_order else None,
            filled_size=filled_size,
            avg_price=avg_price,
            reason=reason,
            reconciled=reconciled,
        )

        if self._store is not None and attempts > 0:
            await self._store.update_order_status(
                order.client_order_id,
                journal_status or OrderStatus(status.value),
                exchange_order_id=result.order_id,
                attempts=attempts,
                reason=reason,
            )

        await self._report(result)
        return result

    async def _report(self, result: ExecutionResult) -> None:
        order = result.order
        data = {
            "client_order_id": order.client_order_id,
            "order_id": result.order_id,
            "symbol": order.symbol,
            "direction": order.direction.value,
            "reduce_only": order.reduce_only,
            "size": result.filled_size or order.size,
            "price": result.avg_price or order.reference_price,
            "notional": (result.filled_size or order.size) * (result.avg_price or order.reference_price),
            "attempts": result.attempts,
            "reason": result.reason,
        }
        if result.status is ExecutionStatus.FILLED:
            self._metrics.increment(ORDERS_FILLED)
            logger.info(
                f"Order FILLED: {order.symbol} size={result.filled_size:.6f} @ {result.avg_price} "
                f"after {result.attempts} attempt(s){' (reconciled)' if result.reconciled else ''}"
            )
            await self._bus.publish(Event(event_type=EventType.ORDER_FILLED, data=data))
        elif result.status is ExecutionStatus.REJECTED:
            self._metrics.increment(ORDERS_REJECTED)
            logger.info(f"Order REJECTED: {order.symbol}: {result.reason}")
            await self._bus.publish(Event(event_type=EventType.ORDER_REJECTED, data=data))
        else:
            self._metrics.increment(ORDERS_FAILED)
            logger.error(f"Order FAILED: {order.symbol}: {result.reason}")
            await self._governor.record_execution_failure(result)
            await self._bus.publish(Event(event_type=EventType.ORDER_FAILED, data=data))

    async def recover_in_flight(self) -> list[ExecutionResult]:
        """Resolve journaled orders left in flight by a previous process.

        Each order is looked up by client id: found orders are resolved to
        filled or rejected, orders the exchange never saw are marked not
        placed. Orders whose lookup fails stay in flight for the next start.

        Returns:
            Results for orders found filled on the exchange.
        """
        if self._store is None:
            return []
        pending = await self._store.list_in_flight_orders()
        if not pending:
            return []

        logger.warning(f"Reconciling {len(pending)} in-flight order(s) from a previous run")
        recovered: list[ExecutionResult] = []
        for order in pending:
            self._consumed.add(order.client_order_id)
            try:
                existing = await self._client.get_order(order.symbol, order.client_order_id)
            except Exception as e:
                logger.error(f"Could not reconcile {order.client_order_id}: {e}; leaving in flight")
                continue

            if existing is None:
                await self._store.update_order_status(
                    order.client_order_id, OrderStatus.NOT_PLACED, reason="not found on restart"
                )
                logger.info(f"In-flight order {order.client_order_id} was never placed")
                continue

            journal = await self._store.get_order(order.client_order_id)
            attempts = int(journal["attempts"]) if journal else 0
            result = await self._resolve(order, existing, max(attempts, 1), reconciled=True)
            if result.is_filled:
                recovered.append(result)
        return recovered
