"""DeepSeek decision source (OpenAI-compatible chat completions).

DeepSeek-R1 does not support ``response_format=json_object``; the model
emits ``<think>...</think>`` blocks that ``parse_decision`` strips before
JSON extraction.
"""

from typing import Any

import openai

from evotrader.brain.decision import MalformedDecisionError, parse_decision
from evotrader.config import settings
from evotrader.core.types import LessonRecord, MarketContext, PositionSnapshot, TradeIntent
from evotrader.logging import get_logger

logger = get_logger(__name__)

_MAX_TOKENS = 4000
_TEMPERATURE = 0.1

_SYSTEM_PROMPT = """\
You are the portfolio manager of a systematic crypto derivatives desk.
Trade with the EMA20/EMA50 trend, size stops from ATR, and never repeat a
setup recorded as a PAST MISTAKE. Prefer HOLD when the edge is unclear.

Respond with JSON only:
{
  "action": "BUY" | "SELL" | "CLOSE_LONG" | "CLOSE_SHORT" | "HOLD",
  "reason": "indicators that justify the decision",
  "tp": 0.0,
  "sl": 0.0,
  "leverage": 1,
  "win_rate": 0.0,
  "risk_reward_ratio": 0.0
}
tp and sl are decimal fractions of entry price (0.04 = 4%). win_rate is
the probability (0-1) that tp is hit before sl. CLOSE_LONG and CLOSE_SHORT
exit the position shown under CURRENT POSITIONS and need no other fields.\
"""


def build_user_prompt(
    context: MarketContext,
    lessons: list[LessonRecord],
    max_leverage: int,
    positions: list[PositionSnapshot] | None = None,
) -> str:
    if lessons:
        memory = "\n".join(f"- {lesson.to_memory_text()}" for lesson in lessons)
    else:
        memory = "No similar historical setups."
    if positions:
        held = ", ".join(position.describe() for position in positions)
    else:
        held = "No active positions"
    return (
        "=== MARKET SNAPSHOT ===\n"
        f"{context.to_context_string()}\n\n"
        "=== CURRENT POSITIONS ===\n"
        f"{held}\n\n"
        "=== SIMILAR PAST LESSONS (nearest first) ===\n"
        f"{memory}\n\n"
        "=== CONSTRAINTS ===\n"
        f"Max leverage: {max_leverage}x\n"
    )


class DeepSeekDecisionSource:
    """Asks DeepSeek for a TradeIntent.

    API failures propagate; the caller's ``GuardedDecisionSource`` turns
    them into a no-trade cycle.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_leverage: int | None = None,
        client: Any = None,
    ) -> None:
        self._model = model or settings.deepseek_model
        self._max_leverage = max_leverage if max_leverage is not None else settings.max_leverage
        self._client = client or openai.AsyncOpenAI(
            api_key=api_key if api_key is not None else settings.deepseek_api_key,
            base_url=base_url or settings.deepseek_base_url,
            timeout=timeout if timeout is not None else settings.decision_timeout_sec,
        )
        logger.info(f"DeepSeek decision source initialized (model={self._model})")

    async def decide(
        self,
        context: MarketContext,
        lessons: list[LessonRecord],
        positions: list[PositionSnapshot] | None = None,
    ) -> TradeIntent | None:
        prompt = build_user_prompt(context, lessons, self._max_leverage, positions)
        response = await self._client.chat.completions.create(
            model=self._model,
            max_tokens=_MAX_TOKENS,
            temperature=_TEMPERATURE,
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        )
        try:
            raw = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise MalformedDecisionError(f"unexpected response shape: {e}") from e
        if not raw:
            raise MalformedDecisionError("empty response from model")

        intent = parse_decision(raw, context.symbol, self._max_leverage)
        if intent is not None and not intent.reduce_only:
            logger.info(
                f"DeepSeek: {intent.direction.value} {context.symbol} p={intent.win_probability:.2f} "
                f"b={intent.payoff_ratio:.2f} lev={intent.leverage}x"
            )
        return intent

    async def close(self) -> None:
        await self._client.close()
