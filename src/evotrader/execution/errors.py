"""Exchange error taxonomy and retry classification."""

import asyncio
from enum import Enum

import httpx


class ErrorClass(str, Enum):
    """How the execution engine treats a failed attempt."""

    TRANSIENT = "transient"
    REJECTED = "rejected"


class ExchangeError(Exception):
    """Base class for exchange adapter errors."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransientExchangeError(ExchangeError):
    """Network, timeout, rate-limit or server-side failure; safe to retry."""


class OrderRejectedError(ExchangeError):
    """Business-rule rejection (invalid parameters, insufficient margin...)."""


class DuplicateOrderError(ExchangeError):
    """The client order id was already accepted; resolve by querying the order."""

    def __init__(self, client_order_id: str, message: str = "", code: str | None = None) -> None:
        super().__init__(message or f"duplicate client order id {client_order_id}", code)
        self.client_order_id = client_order_id


# TransportError covers timeouts, connection failures and protocol errors such
# as a server disconnecting before it answers; the request may have landed.
_TRANSPORT_TRANSIENT = (
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
)


def classify_error(exc: BaseException) -> ErrorClass:
    """Classify an exception raised by an exchange call.

    Unknown exceptions are REJECTED: only failures known to be transient
    are retried.
    """
    if isinstance(exc, TransientExchangeError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, ExchangeError):
        return ErrorClass.REJECTED
    if isinstance(exc, _TRANSPORT_TRANSIENT):
        return ErrorClass.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return ErrorClass.TRANSIENT
    return ErrorClass.REJECTED


def is_transient(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorClass.TRANSIENT
