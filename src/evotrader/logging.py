"""Logging for the trading loop.

``setup_logging()`` installs one stdout handler. ``settings.log_format``
selects the line format:

- ``text``: ``<time> | <LEVEL> | <logger> | [cycle=N] [sym=..] [ord=..] | msg``
- ``json``: one object per line with ``timestamp``, ``level``, ``logger``,
  ``message``, ``cycle_id``, ``trading_symbol``, ``order_id``, ``service``
  and, for exceptions, ``exc_type``, ``exc_value`` and ``exc_trace``.

Cycle, symbol and order ids travel in ContextVars, so tasks spawned while
a cycle runs log with that cycle's ids.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

cycle_id_var: ContextVar[str | None] = ContextVar("cycle_id", default=None)
symbol_var: ContextVar[str | None] = ContextVar("trading_symbol", default=None)
order_id_var: ContextVar[str | None] = ContextVar("order_id", default=None)

_SERVICE_NAME = "evotrader"
_QUIET_LIBRARIES = ("httpx", "httpcore", "openai", "aiosqlite")


class TradingContextFilter(logging.Filter):
    """Copies the cycle/symbol/order ContextVars onto each record.

    Unset ids become ``"-"`` for the cycle and ``""`` for symbol and order.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle_id = cycle_id_var.get() or "-"
        record.trading_symbol = symbol_var.get() or ""
        record.order_id = order_id_var.get() or ""
        return True


class JSONFormatter(logging.Formatter):
    """Single-line JSON records for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "cycle_id": getattr(record, "cycle_id", "-"),
            "trading_symbol": getattr(record, "trading_symbol", ""),
            "order_id": getattr(record, "order_id", ""),
            "service": _SERVICE_NAME,
        }
        if record.exc_info and record.exc_info[0] is not None:
            etype, evalue, tb = record.exc_info
            entry.update(
                exc_type=etype.__name__,
                exc_value=str(evalue),
                exc_trace=traceback.format_exception(etype, evalue, tb),
            )
        return json.dumps(entry, default=str)


class _TradingTextFormatter(logging.Formatter):
    """Console format; symbol and order tokens appear only when set."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | [cycle=%(cycle_id)s]",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        record.cycle_id = getattr(record, "cycle_id", "-")
        head = super().format(record)
        symbol = getattr(record, "trading_symbol", "")
        order_id = getattr(record, "order_id", "")
        if symbol:
            head += f" [sym={symbol}]"
        if order_id:
            head += f" [ord={order_id}]"
        line = f"{head} | {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure the root logger once per process.

    Repeated calls only adjust the level.

    Args:
        level: Overrides ``settings.log_level``
        log_format: Overrides ``settings.log_format`` ("text" or "json")
    """
    from evotrader.config import settings as _settings

    level_name = (level or _settings.log_level).upper()
    fmt = (log_format or _settings.log_format).lower()
    numeric_level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(TradingContextFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else _TradingTextFormatter())
    root.addHandler(handler)

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging ready (level=%s, format=%s)", level_name, fmt)


def set_trading_context(
    cycle_id: str | int | None = None,
    symbol: str | None = None,
    order_id: str | None = None,
) -> None:
    """Set the ids attached to subsequent log lines.

    Arguments left as None keep their current value, so the engine can set
    an order id without touching the loop's cycle id.
    """
    if cycle_id is not None:
        cycle_id_var.set(str(cycle_id))
    if symbol is not None:
        symbol_var.set(symbol)
    if order_id is not None:
        order_id_var.set(order_id)


def clear_trading_context() -> None:
    """Drop symbol and order ids; the cycle id stays."""
    symbol_var.set(None)
    order_id_var.set(None)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    context: dict[str, Any] | None = None,
) -> None:
    """Log ``exc`` at ERROR with its traceback and an optional context dict."""
    suffix = f" | context={context}" if context else ""
    logger.error("Exception: %s%s", exc, suffix, exc_info=exc)
