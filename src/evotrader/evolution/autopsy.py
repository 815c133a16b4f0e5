"""Outcome Reviewer (Autopsy): turns losing trades into PAST_MISTAKE lessons."""

import asyncio
from typing import Any

from evotrader.core.types import LessonRecord, OutcomeTag, TradeRecord
from evotrader.evolution.writer import EvolutionWriter
from evotrader.logging import get_logger
from evotrader.risk.kelly_criterion import expected_edge
from evotrader.storage.trade_log import TradeLogStore

logger = get_logger(__name__)


def lesson_id_for(trade_id: str) -> str:
    return f"autopsy:{trade_id}"


def build_rationale(record: TradeRecord) -> str:
    """Compare what the decision predicted with what the trade delivered.

    The prediction (win probability, payoff ratio, risk amount) is read from
    the intent stored in the entry snapshot; older records without one still
    get a rationale built from realized P&L and ROE.
    """
    snapshot = record.context_snapshot or {}
    intent: dict[str, Any] = snapshot.get("intent") or {}
    roe = record.roe
    roe_text = f"{roe * 100:.2f}%" if roe is not None else "n/a"
    parts = [
        f"{record.direction.value.upper()} {record.symbol} closed at a loss: "
        f"PnL {record.realized_pnl:.2f}, ROE {roe_text}."
    ]

    p = intent.get("win_probability")
    b = intent.get("payoff_ratio")
    if p is not None and b is not None:
        edge = expected_edge(float(p), float(b))
        parts.append(
            f"Predicted win probability {float(p):.2f} with payoff {float(b):.2f}R "
            f"(expected edge {edge:+.2f}R)."
        )

    risk_amount = snapshot.get("risk_amount")
    if risk_amount:
        realized_r = record.realized_pnl / float(risk_amount)
        parts.append(f"Realized {realized_r:+.2f}R against {float(risk_amount):.2f} at risk.")
        if realized_r < -1.2:
            parts.append("Loss exceeded the planned stop; check slippage and stop placement.")

    rationale = intent.get("rationale")
    if rationale:
        parts.append(f"Original thesis: {str(rationale)[:300]}")
    parts.append("Avoid repeating this setup without stronger confirmation.")
    return " ".join(parts)


class OutcomeReviewer:
    """Reviews closed trades and emits one lesson per losing trade.

    Idempotency rests on the trade's review flag: once set, reviewing the
    same record again is a no-op. The flag is set only after the lesson is
    recorded, so a crash between the two is repaired by ``review_pending``.
    """

    def __init__(self, store: TradeLogStore, writer: EvolutionWriter) -> None:
        self._store = store
        self._writer = writer
        self._lock = asyncio.Lock()
        self._reviewed: set[str] = set()

    async def review(self, record: TradeRecord) -> LessonRecord | None:
        """Review one trade.

        Returns:
            The lesson produced, or None for winners and already-reviewed trades.
        """
        if not record.is_loss:
            return None

        async with self._lock:
            if record.trade_id in self._reviewed or await self._store.is_reviewed(record.trade_id):
                logger.debug(f"Trade {record.trade_id} already reviewed; skipping")
                self._reviewed.add(record.trade_id)
                return None

            lesson = LessonRecord(
                lesson_id=lesson_id_for(record.trade_id),
                outcome_tag=OutcomeTag.PAST_MISTAKE,
                context_fingerprint=record.context_snapshot.get("context", record.context_snapshot),
                rationale=build_rationale(record),
                source_ref=f"trade:{record.trade_id}",
            )
            # Local ledger first; memory delivery may be retried later.
            await self._writer.write(lesson)
            await self._store.mark_reviewed(record.trade_id)
            self._reviewed.add(record.trade_id)

        roe = record.roe
        logger.info(
            f"Autopsy: {record.symbol} loss {record.realized_pnl:.2f} "
            f"(ROE {roe * 100 if roe is not None else 0.0:.2f}%) -> {lesson.lesson_id}"
        )
        return lesson

    async def review_pending(self) -> int:
        """Review every losing trade whose review flag is still unset."""
        reviewed = 0
        for record in await self._store.list_unreviewed_losses():
            if await self.review(record) is not None:
                reviewed += 1
        if reviewed:
            logger.info(f"Autopsy sweep reviewed {reviewed} pending trade(s)")
        return reviewed
