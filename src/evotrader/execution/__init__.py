"""Order execution -- retrying engine, error classification and paper broker."""

from .engine import ExecutionEngine
from .errors import (
    DuplicateOrderError,
    ErrorClass,
    ExchangeError,
    OrderRejectedError,
    TransientExchangeError,
    classify_error,
)
from .paper_broker import PaperBroker

__all__ = [
    "DuplicateOrderError",
    "ErrorClass",
    "ExchangeError",
    "ExecutionEngine",
    "OrderRejectedError",
    "PaperBroker",
    "TransientExchangeError",
    "classify_error",
]
