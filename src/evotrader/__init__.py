"""evotrader: self-governing crypto trading loop with lesson memory."""

__all__ = ["EvoSettings", "TradingLoop", "__version__"]
__version__ = "0.1.0"


def __getattr__(name: str):
    if name == "TradingLoop":
        from .core.trading_loop import TradingLoop

        return TradingLoop
    if name == "EvoSettings":
        from .config import EvoSettings

        return EvoSettings
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
