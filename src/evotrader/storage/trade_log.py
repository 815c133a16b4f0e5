"""SQLite persistence for trades, the order journal, the risk ledger and lessons."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from evotrader.config import settings
from evotrader.core.types import (
    Direction,
    LessonRecord,
    OpenPosition,
    OrderStatus,
    OutcomeTag,
    RiskState,
    SizedOrder,
    TradeRecord,
)
from evotrader.logging import get_logger

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS trade_records (
    trade_id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    direction TEXT NOT NULL,
    realized_pnl REAL NOT NULL,
    initial_margin REAL NOT NULL,
    context_snapshot TEXT NOT NULL,
    order_id TEXT NOT NULL,
    strategy_version TEXT NOT NULL,
    reviewed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS orders (
    client_order_id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    direction TEXT NOT NULL,
    size REAL NOT NULL,
    reference_price REAL NOT NULL,
    capital_fraction REAL NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    exchange_order_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS open_positions (
    position_id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    direction TEXT NOT NULL,
    size REAL NOT NULL,
    entry_price REAL NOT NULL,
    initial_margin REAL NOT NULL,
    order_id TEXT NOT NULL,
    strategy_version TEXT NOT NULL,
    context_snapshot TEXT NOT NULL,
    opened_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processed_closes (
    close_id TEXT PRIMARY KEY,
    trade_id TEXT,
    processed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_applied (
    trade_id TEXT PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS lessons (
    lesson_id TEXT PRIMARY KEY,
    outcome_tag TEXT NOT NULL,
    source_ref TEXT NOT NULL,
    payload TEXT NOT NULL,
    stored INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scan_keys (
    window_key TEXT PRIMARY KEY,
    lesson_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS risk_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    starting_equity REAL NOT NULL,
    current_equity REAL NOT NULL,
    peak_equity REAL NOT NULL,
    halted INTEGER NOT NULL,
    halt_reason TEXT NOT NULL DEFAULT '',
    halted_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS risk_audit (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    operator TEXT NOT NULL,
    reason TEXT NOT NULL,
    detail TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trades_review ON trade_records(reviewed, realized_pnl);
CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_symbol_time ON orders(symbol, created_at);
CREATE INDEX IF NOT EXISTS idx_positions_symbol ON open_positions(symbol, direction, opened_at);
CREATE INDEX IF NOT EXISTS idx_lessons_stored ON lessons(stored);
"""


def _iso(value: datetime) -> str:
    return value.isoformat()


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class TradeLogStore:
    """aiosqlite-backed store.

    ``realized_pnl`` is stored as an absolute amount next to
    ``initial_margin``; return on equity is computed on read by
    ``TradeRecord.roe`` and has no column.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path or settings.database_path)
        self._conn: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._conn = await aiosqlite.connect(str(self.db_path))
            self._conn.row_factory = aiosqlite.Row
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
            logger.debug(f"Opened trade log at {self.db_path}")
        return self._conn

    async def connect(self) -> None:
        await self._get_connection()

    async def close(self) -> None:
        """Close storage connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Risk ledger
    # ------------------------------------------------------------------

    async def save_risk_state(self, state: RiskState, applied_trade_id: str | None = None) -> None:
        """Persist the ledger.

        With ``applied_trade_id`` the trade is marked as applied to the ledger
        in the same commit, so a restart can never apply it twice or lose it.
        """
        conn = await self._get_connection()
        if applied_trade_id is not None:
            await conn.execute(
                "INSERT OR IGNORE INTO ledger_applied (trade_id, applied_at) VALUES (?, ?)",
                (applied_trade_id, _iso(datetime.utcnow())),
            )
        await conn.execute(
            """INSERT OR REPLACE INTO risk_state
               (id, starting_equity, current_equity, peak_equity, halted, halt_reason, halted_at, updated_at)
               VALUES (1, ?, ?, ?, ?, ?, ?, ?)""",
            (
                state.starting_equity,
                state.current_equity,
                state.peak_equity,
                int(state.halted),
                state.halt_reason,
                _iso(state.halted_at) if state.halted_at else None,
                _iso(datetime.utcnow()),
            ),
        )
        await conn.commit()

    async def load_risk_state(self) -> RiskState | None:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM risk_state WHERE id = 1")
        row = await cursor.fetchone()
        if row is None:
            return None
        return RiskState(
            starting_equity=row["starting_equity"],
            current_equity=row["current_equity"],
            peak_equity=row["peak_equity"],
            halted=bool(row["halted"]),
            halt_reason=row["halt_reason"],
            halted_at=_dt(row["halted_at"]),
        )

    async def append_risk_audit(
        self, action: str, operator: str, reason: str, detail: dict[str, Any] | None = None
    ) -> None:
        conn = await self._get_connection()
        await conn.execute(
            "INSERT INTO risk_audit (action, operator, reason, detail, created_at) VALUES (?, ?, ?, ?, ?)",
            (action, operator, reason, json.dumps(detail or {}, default=str), _iso(datetime.utcnow())),
        )
        await conn.commit()

    async def list_risk_audit(self) -> list[dict[str, Any]]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM risk_audit ORDER BY id")
        rows = await cursor.fetchall()
        return [{**dict(row), "detail": json.loads(row["detail"])} for row in rows]

    # ------------------------------------------------------------------
    # Order journal
    # ------------------------------------------------------------------

    async def journal_order(self, order: SizedOrder) -> None:
        """Record a submission before its first attempt."""
        conn = await self._get_connection()
        now = _iso(datetime.utcnow())
        await conn.execute(
            """INSERT INTO orders
               (client_order_id, symbol, direction, size, reference_price, capital_fraction,
                payload, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                order.client_order_id,
                order.symbol,
                order.direction.value,
                order.size,
                order.reference_price,
                order.capital_fraction,
                order.model_dump_json(),
                OrderStatus.IN_FLIGHT.value,
                _iso(order.created_at),
                now,
            ),
        )
        await conn.commit()

    async def update_order_status(
        self,
        client_order_id: str,
        status: OrderStatus,
        exchange_order_id: str | None = None,
        attempts: int | None = None,
        reason: str = "",
    ) -> None:
        conn = await self._get_connection()
        await conn.execute(
            """UPDATE orders SET status = ?,
                   exchange_order_id = COALESCE(?, exchange_order_id),
                   attempts = COALESCE(?, attempts),
                   reason = ?,
                   updated_at = ?
               WHERE client_order_id = ?""",
            (status.value, exchange_order_id, attempts, reason, _iso(datetime.utcnow()), client_order_id),
        )
        await conn.commit()

    async def get_order(self, client_order_id: str) -> dict[str, Any] | None:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM orders WHERE client_order_id = ?", (client_order_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_in_flight_orders(self) -> list[SizedOrder]:
        """Journaled orders whose outcome is not known yet."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT payload FROM orders WHERE status = ? ORDER BY created_at",
            (OrderStatus.IN_FLIGHT.value,),
        )
        rows = await cursor.fetchall()
        return [SizedOrder.model_validate_json(row["payload"]) for row in rows]

    async def has_activity(self, symbol: str, start: datetime, end: datetime) -> bool:
        """Whether any order was attempted or any position was held on ``symbol`` in [start, end]."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT 1 FROM orders WHERE symbol = ? AND created_at BETWEEN ? AND ? LIMIT 1",
            (symbol, _iso(start), _iso(end)),
        )
        if await cursor.fetchone():
            return True
        cursor = await conn.execute(
            "SELECT 1 FROM open_positions WHERE symbol = ? AND opened_at <= ? LIMIT 1",
            (symbol, _iso(end)),
        )
        return await cursor.fetchone() is not None

    # ------------------------------------------------------------------
    # Positions and trades
    # ------------------------------------------------------------------

    async def add_open_position(self, position: OpenPosition) -> None:
        conn = await self._get_connection()
        await conn.execute(
            """INSERT OR IGNORE INTO open_positions
               (position_id, symbol, direction, size, entry_price, initial_margin,
                order_id, strategy_version, context_snapshot, opened_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                position.position_id,
                position.symbol,
                position.direction.value,
                position.size,
                position.entry_price,
                position.initial_margin,
                position.order_id,
                position.strategy_version,
                json.dumps(position.context_snapshot, default=str),
                _iso(position.opened_at),
            ),
        )
        await conn.commit()

    async def list_open_positions(
        self, symbol: str | None = None, direction: Direction | None = None
    ) -> list[OpenPosition]:
        """Open positions, oldest first."""
        conn = await self._get_connection()
        query = "SELECT * FROM open_positions WHERE 1 = 1"
        params: list[Any] = []
        if symbol is not None:
            query += " AND symbol = ?"
            params.append(symbol)
        if direction is not None:
            query += " AND direction = ?"
            params.append(direction.value)
        cursor = await conn.execute(query + " ORDER BY opened_at", params)
        rows = await cursor.fetchall()
        return [
            OpenPosition(
                position_id=row["position_id"],
                symbol=row["symbol"],
                direction=Direction(row["direction"]),
                size=row["size"],
                entry_price=row["entry_price"],
                initial_margin=row["initial_margin"],
                order_id=row["order_id"],
                strategy_version=row["strategy_version"],
                context_snapshot=json.loads(row["context_snapshot"]),
                opened_at=datetime.fromisoformat(row["opened_at"]),
            )
            for row in rows
        ]

    async def is_close_processed(self, close_id: str) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT 1 FROM processed_closes WHERE close_id = ?", (close_id,))
        return await cursor.fetchone() is not None

    async def mark_close_processed(self, close_id: str, trade_id: str | None = None) -> None:
        conn = await self._get_connection()
        await conn.execute(
            "INSERT OR IGNORE INTO processed_closes (close_id, trade_id, processed_at) VALUES (?, ?, ?)",
            (close_id, trade_id, _iso(datetime.utcnow())),
        )
        await conn.commit()

    async def record_closed_trade(
        self, record: TradeRecord, close_id: str, position_id: str | None = None
    ) -> bool:
        """Append a TradeRecord for an exchange close, exactly once.

        The trade row, the processed-close marker and the removal of the
        matched open position commit together.

        Returns:
            False if ``close_id`` was already processed.
        """
        conn = await self._get_connection()
        cursor = await conn.execute(
            "INSERT OR IGNORE INTO processed_closes (close_id, trade_id, processed_at) VALUES (?, ?, ?)",
            (close_id, record.trade_id, _iso(datetime.utcnow())),
        )
        if cursor.rowcount == 0:
            await conn.rollback()
            return False
        await self._insert_trade(conn, record)
        if position_id is not None:
            await conn.execute("DELETE FROM open_positions WHERE position_id = ?", (position_id,))
        await conn.commit()
        return True

    async def append_trade(self, record: TradeRecord) -> None:
        conn = await self._get_connection()
        await self._insert_trade(conn, record)
        await conn.commit()

    @staticmethod
    async def _insert_trade(conn: aiosqlite.Connection, record: TradeRecord) -> None:
        await conn.execute(
            """INSERT INTO trade_records
               (trade_id, symbol, direction, realized_pnl, initial_margin, context_snapshot,
                order_id, strategy_version, reviewed, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.trade_id,
                record.symbol,
                record.direction.value,
                record.realized_pnl,
                record.initial_margin,
                json.dumps(record.context_snapshot, default=str),
                record.order_id,
                record.strategy_version,
                int(record.reviewed),
                _iso(record.created_at),
            ),
        )

    @staticmethod
    def _row_to_trade(row: aiosqlite.Row) -> TradeRecord:
        return TradeRecord(
            trade_id=row["trade_id"],
            symbol=row["symbol"],
            direction=Direction(row["direction"]),
            realized_pnl=row["realized_pnl"],
            initial_margin=row["initial_margin"],
            context_snapshot=json.loads(row["context_snapshot"]),
            order_id=row["order_id"],
            strategy_version=row["strategy_version"],
            reviewed=bool(row["reviewed"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def get_trade(self, trade_id: str) -> TradeRecord | None:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM trade_records WHERE trade_id = ?", (trade_id,))
        row = await cursor.fetchone()
        return self._row_to_trade(row) if row else None

    async def list_trades(self, limit: int = 100) -> list[TradeRecord]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM trade_records ORDER BY created_at DESC LIMIT ?", (limit,)
        )
        return [self._row_to_trade(row) for row in await cursor.fetchall()]

    async def is_trade_applied(self, trade_id: str) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT 1 FROM ledger_applied WHERE trade_id = ?", (trade_id,))
        return await cursor.fetchone() is not None

    async def mark_trade_applied(self, trade_id: str) -> None:
        conn = await self._get_connection()
        await conn.execute(
            "INSERT OR IGNORE INTO ledger_applied (trade_id, applied_at) VALUES (?, ?)",
            (trade_id, _iso(datetime.utcnow())),
        )
        await conn.commit()

    async def list_unapplied_trades(self) -> list[TradeRecord]:
        """Trades whose P&L has not reached the risk ledger yet, oldest first."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """SELECT t.* FROM trade_records t
               LEFT JOIN ledger_applied a ON a.trade_id = t.trade_id
               WHERE a.trade_id IS NULL
               ORDER BY t.created_at"""
        )
        return [self._row_to_trade(row) for row in await cursor.fetchall()]

    async def list_unreviewed_losses(self) -> list[TradeRecord]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM trade_records WHERE reviewed = 0 AND realized_pnl < 0 ORDER BY created_at"
        )
        return [self._row_to_trade(row) for row in await cursor.fetchall()]

    async def mark_reviewed(self, trade_id: str) -> bool:
        """Set the review flag.

        Returns:
            True if this call flipped the flag, False if it was already set
            (or the trade does not exist).
        """
        conn = await self._get_connection()
        cursor = await conn.execute(
            "UPDATE trade_records SET reviewed = 1 WHERE trade_id = ? AND reviewed = 0", (trade_id,)
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def is_reviewed(self, trade_id: str) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT reviewed FROM trade_records WHERE trade_id = ?", (trade_id,))
        row = await cursor.fetchone()
        return bool(row and row["reviewed"])

    # ------------------------------------------------------------------
    # Lessons and scan keys
    # ------------------------------------------------------------------

    async def save_lesson(self, lesson: LessonRecord) -> bool:
        """Record a lesson locally. Returns False if the lesson id already exists."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """INSERT OR IGNORE INTO lessons (lesson_id, outcome_tag, source_ref, payload, stored, created_at)
               VALUES (?, ?, ?, ?, 0, ?)""",
            (
                lesson.lesson_id,
                lesson.outcome_tag.value,
                lesson.source_ref,
                lesson.model_dump_json(),
                _iso(lesson.created_at),
            ),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def mark_lesson_stored(self, lesson_id: str) -> None:
        conn = await self._get_connection()
        await conn.execute("UPDATE lessons SET stored = 1 WHERE lesson_id = ?", (lesson_id,))
        await conn.commit()

    async def is_lesson_stored(self, lesson_id: str) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT stored FROM lessons WHERE lesson_id = ?", (lesson_id,))
        row = await cursor.fetchone()
        return bool(row and row["stored"])

    async def list_unstored_lessons(self) -> list[LessonRecord]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT payload FROM lessons WHERE stored = 0 ORDER BY created_at")
        return [LessonRecord.model_validate_json(row["payload"]) for row in await cursor.fetchall()]

    async def list_lessons(self, stored_only: bool = True) -> list[LessonRecord]:
        """Lessons oldest first; used to warm an in-process memory store."""
        conn = await self._get_connection()
        query = "SELECT payload FROM lessons"
        if stored_only:
            query += " WHERE stored = 1"
        cursor = await conn.execute(query + " ORDER BY created_at")
        return [LessonRecord.model_validate_json(row["payload"]) for row in await cursor.fetchall()]

    async def count_lessons(self, outcome_tag: OutcomeTag | None = None) -> int:
        conn = await self._get_connection()
        if outcome_tag is None:
            cursor = await conn.execute("SELECT COUNT(*) FROM lessons")
        else:
            cursor = await conn.execute(
                "SELECT COUNT(*) FROM lessons WHERE outcome_tag = ?", (outcome_tag.value,)
            )
        row = await cursor.fetchone()
        return int(row[0])

    async def has_scan_key(self, window_key: str) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT 1 FROM scan_keys WHERE window_key = ?", (window_key,))
        return await cursor.fetchone() is not None

    async def add_scan_key(self, window_key: str, lesson_id: str) -> bool:
        """Claim a window key. Returns False if it was already reported."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "INSERT OR IGNORE INTO scan_keys (window_key, lesson_id, created_at) VALUES (?, ?, ?)",
            (window_key, lesson_id, _iso(datetime.utcnow())),
        )
        await conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Sync cursor
    # ------------------------------------------------------------------

    async def get_value(self, key: str) -> str | None:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT value FROM sync_state WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row else None

    async def set_value(self, key: str, value: str) -> None:
        conn = await self._get_connection()
        await conn.execute("INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)", (key, value))
        await conn.commit()

    async def get_summary(self) -> dict[str, Any]:
        """Counts used by the ``status`` command."""
        conn = await self._get_connection()
        summary: dict[str, Any] = {}
        for name, query in (
            ("trades", "SELECT COUNT(*) FROM trade_records"),
            ("unreviewed_losses", "SELECT COUNT(*) FROM trade_records WHERE reviewed = 0 AND realized_pnl < 0"),
            (
                "trades_unapplied",
                "SELECT COUNT(*) FROM trade_records t LEFT JOIN ledger_applied a ON a.trade_id = t.trade_id "
                "WHERE a.trade_id IS NULL",
            ),
            ("open_positions", "SELECT COUNT(*) FROM open_positions"),
            ("orders_in_flight", f"SELECT COUNT(*) FROM orders WHERE status = '{OrderStatus.IN_FLIGHT.value}'"),
            ("lessons", "SELECT COUNT(*) FROM lessons"),
            ("lessons_pending", "SELECT COUNT(*) FROM lessons WHERE stored = 0"),
        ):
            cursor = await conn.execute(query)
            row = await cursor.fetchone()
            summary[name] = int(row[0])
        cursor = await conn.execute("SELECT COALESCE(SUM(realized_pnl), 0) FROM trade_records")
        row = await cursor.fetchone()
        summary["realized_pnl_total"] = float(row[0])
        return summary
