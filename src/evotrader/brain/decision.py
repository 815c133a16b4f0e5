"""Decision sources and the guard that degrades failures to "no trade"."""

import asyncio
import json
import re
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from evotrader.config import settings
from evotrader.core.types import Direction, LessonRecord, MarketContext, PositionSnapshot, TradeIntent
from evotrader.logging import get_logger
from evotrader.observability.metrics import DECISIONS_DEGRADED, SystemMetrics, metrics

logger = get_logger(__name__)

_THINK_TAG_RE = re.compile(r"<think>.*?</think>", re.DOTALL)
_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)

_ACTIONS = {
    "BUY": Direction.LONG,
    "OPEN_LONG": Direction.LONG,
    "LONG": Direction.LONG,
    "SELL": Direction.SHORT,
    "OPEN_SHORT": Direction.SHORT,
    "SHORT": Direction.SHORT,
    "HOLD": Direction.FLAT,
    "FLAT": Direction.FLAT,
}
_CLOSE_ACTIONS = {
    "CLOSE_LONG": Direction.LONG,
    "CLOSE_SHORT": Direction.SHORT,
}


class MalformedDecisionError(ValueError):
    """The decision payload could not be turned into a TradeIntent."""


@runtime_checkable
class DecisionSource(Protocol):
    """Reasoning model boundary.

    Returns one TradeIntent, or None for an explicit "no trade".
    ``positions`` are the positions currently held on the context's symbol.
    """

    async def decide(
        self,
        context: MarketContext,
        lessons: list[LessonRecord],
        positions: list[PositionSnapshot] | None = None,
    ) -> TradeIntent | None:
        ...


class NoTradeDecisionSource:
    """Decision source that never trades (no model configured)."""

    async def decide(
        self,
        context: MarketContext,
        lessons: list[LessonRecord],
        positions: list[PositionSnapshot] | None = None,
    ) -> TradeIntent | None:
        logger.debug(f"No decision model configured; holding {context.symbol}")
        return None


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull the JSON object out of a model reply.

    ``<think>`` blocks are dropped first; then a fenced ```json block is
    preferred, falling back to the span between the first ``{`` and the
    last ``}``.

    Raises:
        MalformedDecisionError: If no JSON object can be decoded.
    """
    cleaned = _THINK_TAG_RE.sub("", text or "").strip()
    candidates: list[str] = []
    fenced = _FENCE_RE.search(cleaned)
    if fenced:
        candidates.append(fenced.group(1))
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise MalformedDecisionError(f"no JSON object in model reply (len={len(cleaned)})")


def _number(data: dict[str, Any], *keys: str) -> float | None:
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, bool):
            raise MalformedDecisionError(f"{key} must be a number, got {value!r}")
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise MalformedDecisionError(f"{key} must be a number, got {value!r}") from e
    return None


def _as_fraction(value: float | None) -> float | None:
    # Models sometimes answer 5 meaning 5%.
    if value is None or value <= 0:
        return None
    return value / 100.0 if value > 1.0 else value


def parse_decision(text: str, symbol: str, max_leverage: int | None = None) -> TradeIntent | None:
    """Turn a model reply into a TradeIntent.

    Args:
        text: Raw model output
        symbol: Instrument the decision is for
        max_leverage: Leverage ceiling applied to the model's choice

    Returns:
        A TradeIntent (reduce-only for CLOSE_LONG/CLOSE_SHORT), or None when
        the model chose to hold.

    Raises:
        MalformedDecisionError: If the reply is not a usable decision.
    """
    data = extract_json_object(text)
    action = str(data.get("action", "")).strip().upper()
    rationale = str(data.get("reason") or data.get("rationale") or "")
    if action in _CLOSE_ACTIONS:
        direction = _CLOSE_ACTIONS[action]
        logger.info(f"Model closes {direction.value} {symbol}: {rationale[:200]}")
        return TradeIntent(symbol=symbol, direction=direction, reduce_only=True, rationale=rationale)
    if action not in _ACTIONS:
        raise MalformedDecisionError(f"unknown action {action!r}")
    direction = _ACTIONS[action]
    if direction is Direction.FLAT:
        logger.info(f"Model holds {symbol} ({action}): {rationale[:200]}")
        return None

    win_probability = _number(data, "win_rate", "win_probability")
    if win_probability is None:
        raise MalformedDecisionError("missing win_rate")
    if not 0.0 < win_probability <= 1.0:
        raise MalformedDecisionError(f"win_rate {win_probability} outside (0, 1]")

    take_profit = _as_fraction(_number(data, "tp", "take_profit_pct"))
    stop_loss = _as_fraction(_number(data, "sl", "stop_loss_pct"))
    payoff_ratio = _number(data, "risk_reward_ratio", "payoff_ratio")
    if payoff_ratio is None and take_profit and stop_loss:
        payoff_ratio = take_profit / stop_loss
    if payoff_ratio is None or payoff_ratio <= 0:
        raise MalformedDecisionError(f"payoff ratio must be positive, got {payoff_ratio}")

    ceiling = max_leverage if max_leverage is not None else settings.max_leverage
    leverage_value = _number(data, "leverage")
    leverage = int(leverage_value) if leverage_value is not None else 1
    leverage = max(1, min(leverage, ceiling))

    confidence = _number(data, "confidence")
    try:
        return TradeIntent(
            symbol=symbol,
            direction=direction,
            win_probability=win_probability,
            payoff_ratio=payoff_ratio,
            confidence=min(max(confidence if confidence is not None else win_probability, 0.0), 1.0),
            stop_loss_pct=stop_loss if stop_loss is not None and stop_loss < 1.0 else None,
            take_profit_pct=take_profit,
            leverage=leverage,
            rationale=rationale,
        )
    except ValidationError as e:
        raise MalformedDecisionError(f"invalid decision fields: {e.error_count()} error(s)") from e


class GuardedDecisionSource:
    """Wraps a decision source with a timeout and a no-trade fallback.

    Timeouts, exceptions and malformed decisions all degrade to None for
    the current cycle only; the loop never sees the failure.
    """

    def __init__(
        self,
        source: DecisionSource,
        timeout: float | None = None,
        metrics_sink: SystemMetrics | None = None,
    ) -> None:
        self._source = source
        self._timeout = timeout if timeout is not None else settings.decision_timeout_sec
        self._metrics = metrics_sink or metrics

    async def decide(
        self,
        context: MarketContext,
        lessons: list[LessonRecord],
        positions: list[PositionSnapshot] | None = None,
    ) -> TradeIntent | None:
        try:
            intent = await asyncio.wait_for(
                self._source.decide(context, lessons, positions or []), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            return self._degrade(context, f"decision timed out after {self._timeout:.0f}s")
        except MalformedDecisionError as e:
            return self._degrade(context, f"malformed decision: {e}")
        except Exception as e:
            return self._degrade(context, f"decision source error: {type(e).__name__}: {e}")

        if intent is None:
            return None
        if not isinstance(intent, TradeIntent):
            return self._degrade(context, f"decision source returned {type(intent).__name__}")
        if intent.symbol != context.symbol:
            return self._degrade(context, f"decision for {intent.symbol} while evaluating {context.symbol}")
        if not intent.is_actionable:
            return None
        return intent

    def _degrade(self, context: MarketContext, reason: str) -> None:
        self._metrics.increment(DECISIONS_DEGRADED)
        logger.warning(f"Degraded input for {context.symbol}: {reason}; no trade this cycle")
        return None
