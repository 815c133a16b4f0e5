"""Async event bus for alert and observability fan-out.

Events are dispatched inline to every subscriber; handler failures are
logged and never propagate to the publisher, so a broken notifier cannot
affect trading logic.
"""

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from evotrader.core.types import Event, EventType
from evotrader.logging import get_logger

logger = get_logger(__name__)


class EventBus:
    """Async event bus for pub/sub communication."""

    def __init__(self) -> None:
        self._subscribers: dict[EventType, list[Callable[[Event], Any]]] = defaultdict(list)
        self._metrics = {
            "events_published": 0,
            "events_processed": 0,
            "handler_errors": 0,
        }

    def subscribe(self, event_type: EventType, handler: Callable[[Event], Any]) -> None:
        """Subscribe a handler to an event type."""
        self._subscribers[event_type].append(handler)
        logger.debug(f"Subscribed handler {getattr(handler, '__name__', handler)} to {event_type}")

    def unsubscribe(self, event_type: EventType, handler: Callable[[Event], Any]) -> None:
        """Unsubscribe a handler from an event type."""
        if handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)
            logger.debug(f"Unsubscribed handler from {event_type}")

    async def publish(self, event: Event) -> None:
        """Publish an event to all subscribers of its type."""
        self._metrics["events_published"] += 1
        handlers = list(self._subscribers.get(event.event_type, []))
        if not handlers:
            logger.debug(f"No subscribers for {event.event_type}")
            return

        results = await asyncio.gather(
            *(self._safe_call_handler(handler, event) for handler in handlers),
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                self._metrics["handler_errors"] += 1
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)} raised exception "
                    f"for {event.event_type}: {result}",
                    exc_info=result,
                )
            else:
                self._metrics["events_processed"] += 1

    async def _safe_call_handler(self, handler: Callable[[Event], Any], event: Event) -> None:
        result = handler(event)
        if inspect.isawaitable(result):
            await result

    def get_metrics(self) -> dict[str, Any]:
        """Get current EventBus counters."""
        return dict(self._metrics)
