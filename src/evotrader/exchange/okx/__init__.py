"""OKX v5 REST adapter."""

from .http import InstrumentMeta, OKXHTTPClient

__all__ = ["InstrumentMeta", "OKXHTTPClient"]
