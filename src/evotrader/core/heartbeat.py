"""Volatility-adaptive evaluation heartbeat.

``next_interval`` is a pure function of its inputs: the interval shrinks
as volatility rises and grows as it falls, always within the configured
``[min_interval, max_interval]`` band. ``HeartbeatController`` owns the
``HeartbeatState`` and performs the wait between cycles.
"""

import asyncio
import math
from dataclasses import dataclass

from evotrader.config import settings
from evotrader.core.types import HeartbeatState
from evotrader.logging import get_logger
from evotrader.observability.metrics import HEARTBEAT_INTERVAL, SystemMetrics, metrics

logger = get_logger(__name__)

# Below half the reference volatility the interval stops lengthening.
_MIN_VOLATILITY_RATIO = 0.5


@dataclass(frozen=True)
class HeartbeatConfig:
    """Heartbeat band and response parameters (seconds)."""

    base_interval: float = 300.0
    min_interval: float = 60.0
    max_interval: float = 900.0
    reference_volatility: float = 0.5
    max_growth: float = 2.0

    def __post_init__(self) -> None:
        if self.min_interval <= 0 or self.min_interval > self.max_interval:
            raise ValueError(
                f"invalid heartbeat band [{self.min_interval}, {self.max_interval}]"
            )
        if self.reference_volatility <= 0:
            raise ValueError("reference_volatility must be positive")
        if self.max_growth < 1.0:
            raise ValueError("max_growth must be >= 1")

    @classmethod
    def from_settings(cls) -> "HeartbeatConfig":
        return cls(
            base_interval=settings.heartbeat_base_interval_sec,
            min_interval=settings.heartbeat_min_interval_sec,
            max_interval=settings.heartbeat_max_interval_sec,
            reference_volatility=settings.heartbeat_reference_volatility,
            max_growth=settings.heartbeat_max_growth,
        )


def next_interval(
    volatility_metric: float,
    previous_interval: float,
    config: HeartbeatConfig | None = None,
) -> float:
    """Compute the delay before the next evaluation cycle.

    The target is ``base_interval / max(volatility / reference, 0.5)``.
    Lengthening is limited to ``max_growth`` times the previous interval so
    a calm reading after a volatile stretch eases the cadence back out;
    shortening is immediate. The result is clamped to the band.

    Args:
        volatility_metric: Non-negative volatility reading (ATR as % of price)
        previous_interval: Interval used for the cycle that just ran
        config: Heartbeat parameters

    Returns:
        Interval in seconds within ``[min_interval, max_interval]``.

    Raises:
        ValueError: If the volatility is negative or not a number, or the
            previous interval is not positive.
    """
    cfg = config or HeartbeatConfig()
    if math.isnan(volatility_metric) or volatility_metric < 0:
        raise ValueError(f"volatility_metric must be non-negative, got {volatility_metric}")
    if previous_interval <= 0:
        raise ValueError(f"previous_interval must be positive, got {previous_interval}")

    ratio = max(volatility_metric / cfg.reference_volatility, _MIN_VOLATILITY_RATIO)
    target = cfg.base_interval / ratio
    target = min(target, previous_interval * cfg.max_growth)
    return max(cfg.min_interval, min(cfg.max_interval, target))


class HeartbeatController:
    """Tracks the current interval and blocks between cycles."""

    def __init__(
        self,
        config: HeartbeatConfig | None = None,
        metrics_sink: SystemMetrics | None = None,
    ) -> None:
        self._config = config or HeartbeatConfig.from_settings()
        self._metrics = metrics_sink or metrics
        initial = max(self._config.min_interval, min(self._config.max_interval, self._config.base_interval))
        self._state = HeartbeatState(interval=initial)

    @property
    def state(self) -> HeartbeatState:
        return self._state

    @property
    def interval(self) -> float:
        return self._state.interval

    def observe(self, volatility_metric: float | None) -> float:
        """Update the state from the cycle's volatility reading.

        A missing reading (no context gathered, e.g. a halted cycle) keeps
        the previous interval.
        """
        if volatility_metric is None:
            return self._state.interval

        interval = next_interval(volatility_metric, self._state.interval, self._config)
        if interval != self._state.interval:
            logger.info(
                f"Heartbeat interval {self._state.interval:.0f}s -> {interval:.0f}s "
                f"(volatility={volatility_metric:.3f})"
            )
        self._state.interval = interval
        self._state.last_volatility = volatility_metric
        self._metrics.set_gauge(HEARTBEAT_INTERVAL, interval)
        return interval

    async def wait(self, stop_event: asyncio.Event | None = None) -> bool:
        """Block for the current interval.

        Returns:
            True if ``stop_event`` was set during the wait.
        """
        if stop_event is None:
            await asyncio.sleep(self._state.interval)
            return False
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self._state.interval)
            return True
        except asyncio.TimeoutError:
            return False
