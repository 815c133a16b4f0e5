"""Risk management -- drawdown governor, Kelly math and position sizing."""

from .kelly_criterion import expected_edge, kelly_fraction, raw_kelly_fraction
from .position_sizer import PositionSizer
from .risk_governor import RiskGovernor

__all__ = [
    "PositionSizer",
    "RiskGovernor",
    "expected_edge",
    "kelly_fraction",
    "raw_kelly_fraction",
]
