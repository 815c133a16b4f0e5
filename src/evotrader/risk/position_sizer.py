"""Kelly position sizing: TradeIntent -> SizedOrder."""

from evotrader.config import settings
from evotrader.core.types import MarketContext, SizedOrder, TradeIntent
from evotrader.logging import get_logger
from evotrader.risk.kelly_criterion import kelly_fraction
from evotrader.risk.risk_governor import RiskGovernor

logger = get_logger(__name__)


class PositionSizer:
    """Turns a decision into an absolute order size.

    The Kelly fraction expresses capital *at risk*: the absolute size is
    ``fraction * equity / stop_distance``, so a stop-out loses roughly
    ``fraction * equity``. The governor's win-probability cap is applied
    before any sizing arithmetic.
    """

    def __init__(
        self,
        governor: RiskGovernor,
        max_position_cap: float | None = None,
        kelly_multiplier: float | None = None,
        stop_atr_multiple: float | None = None,
        max_leverage: int | None = None,
    ) -> None:
        self._governor = governor
        self._max_position_cap = (
            max_position_cap if max_position_cap is not None else settings.max_position_cap
        )
        self._kelly_multiplier = (
            kelly_multiplier if kelly_multiplier is not None else settings.kelly_multiplier
        )
        self._stop_atr_multiple = (
            stop_atr_multiple if stop_atr_multiple is not None else settings.stop_atr_multiple
        )
        self._max_leverage = max_leverage if max_leverage is not None else settings.max_leverage
        if not 0 <= self._max_position_cap <= 1:
            raise ValueError(f"max_position_cap must be in [0, 1], got {self._max_position_cap}")

    @property
    def max_position_cap(self) -> float:
        return self._max_position_cap

    def capital_fraction(self, intent: TradeIntent) -> float:
        """Kelly fraction for an intent after the win-probability cap."""
        if not intent.is_actionable:
            return 0.0
        p = self._governor.cap_win_probability(intent.win_probability)
        if p < intent.win_probability:
            logger.info(
                f"Win probability capped {intent.win_probability:.2f} -> {p:.2f} for {intent.symbol}"
            )
        return kelly_fraction(p, intent.payoff_ratio, self._max_position_cap, self._kelly_multiplier)

    def stop_distance(self, intent: TradeIntent, context: MarketContext) -> float:
        """Price distance to the stop: intent stop-loss % if given, else ATR multiple."""
        if intent.stop_loss_pct is not None:
            return context.price * intent.stop_loss_pct
        return context.indicators.atr_14 * self._stop_atr_multiple

    def size(
        self,
        intent: TradeIntent,
        context: MarketContext,
        equity: float | None = None,
    ) -> SizedOrder | None:
        """Size an intent.

        Args:
            intent: Decision to size
            context: Market snapshot supplying price and ATR
            equity: Equity to size against (defaults to the governor's ledger)

        Returns:
            A SizedOrder (size may be 0, meaning no order is sent), or None
            when the market price is unusable.
        """
        if context.price <= 0:
            logger.warning(f"Cannot size {intent.symbol}: invalid price {context.price}")
            return None

        leverage = max(1, min(intent.leverage, self._max_leverage))
        if leverage != intent.leverage:
            intent = intent.model_copy(update={"leverage": leverage})

        equity = self._governor.current_equity if equity is None else equity
        fraction = self.capital_fraction(intent)
        distance = self.stop_distance(intent, context)

        size = 0.0
        risk_amount = 0.0
        if fraction > 0 and distance > 0 and equity > 0:
            risk_amount = fraction * equity
            size = risk_amount / distance
            # Margin can never exceed equity.
            max_size = equity * leverage / context.price
            if size > max_size:
                logger.info(
                    f"Size {size:.6f} exceeds margin capacity {max_size:.6f} for {intent.symbol}; trimming"
                )
                size = max_size
                risk_amount = size * distance
        elif fraction > 0 and distance <= 0:
            logger.warning(f"No stop distance for {intent.symbol} (ATR unavailable); sizing to 0")

        logger.debug(
            f"Sized {intent.symbol} {intent.direction.value}: fraction={fraction:.4f}, "
            f"stop_distance={distance:.4f}, size={size:.6f}"
        )
        return SizedOrder(
            intent=intent,
            capital_fraction=fraction,
            size=size,
            reference_price=context.price,
            stop_distance=distance,
            risk_amount=risk_amount,
        )

    def size_close(
        self,
        intent: TradeIntent,
        context: MarketContext,
        open_size: float,
    ) -> SizedOrder | None:
        """Size a reduce-only intent to the open position it closes.

        A close takes no new risk, so the Kelly fraction, stop distance and
        risk amount are all zero.
        """
        if context.price <= 0:
            logger.warning(f"Cannot close {intent.symbol}: invalid price {context.price}")
            return None
        return SizedOrder(
            intent=intent,
            capital_fraction=0.0,
            size=max(open_size, 0.0),
            reference_price=context.price,
            stop_distance=0.0,
            risk_amount=0.0,
        )
