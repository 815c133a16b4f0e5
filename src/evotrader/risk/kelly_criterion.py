"""Kelly Criterion for per-trade capital fraction.

The Kelly Criterion calculates the fraction of capital to put at risk:
f* = p - (1 - p) / b

Where:
- f* = fraction of capital risked
- p = win probability
- b = payoff ratio (reward units per unit risked)

A non-positive payoff ratio or win probability yields 0: a flat decision
is always the safe fallback.
"""

import math

from evotrader.logging import get_logger

logger = get_logger(__name__)


def raw_kelly_fraction(win_probability: float, payoff_ratio: float) -> float:
    """Unclamped Kelly fraction (may be negative).

    Returns 0.0 for ``payoff_ratio <= 0``, ``win_probability <= 0`` or
    non-finite inputs instead of an undefined value.
    """
    if not (math.isfinite(win_probability) and math.isfinite(payoff_ratio)):
        return 0.0
    if payoff_ratio <= 0 or win_probability <= 0:
        return 0.0
    return win_probability - (1.0 - win_probability) / payoff_ratio


def kelly_fraction(
    win_probability: float,
    payoff_ratio: float,
    max_position_cap: float,
    kelly_multiplier: float = 1.0,
) -> float:
    """Kelly fraction scaled by ``kelly_multiplier`` and clamped to ``[0, max_position_cap]``.

    Args:
        win_probability: Capped win probability ``p``
        payoff_ratio: Reward:risk ratio ``b``
        max_position_cap: Upper bound on the returned fraction
        kelly_multiplier: Fractional Kelly (1.0 = full Kelly)

    Returns:
        Capital fraction to risk, within ``[0, max_position_cap]``.
    """
    raw = raw_kelly_fraction(win_probability, payoff_ratio)
    if raw <= 0:
        if raw < 0:
            logger.debug(
                f"Negative edge (p={win_probability:.3f}, b={payoff_ratio:.3f}, f={raw:.4f}); sizing to 0"
            )
        return 0.0
    fraction = raw * kelly_multiplier
    return max(0.0, min(fraction, max_position_cap))


def expected_edge(win_probability: float, payoff_ratio: float) -> float:
    """Expected return per unit risked: ``p * b - (1 - p)``."""
    return win_probability * payoff_ratio - (1.0 - win_probability)
