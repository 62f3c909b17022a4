from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal

from lpbot.domain.trade import (
    ACTIVE_TRADE_STATUSES,
    ExitState,
    SizingMode,
    Trade,
    TradeExitRecord,
    TradeStatus,
    dump_exit_state,
    load_exit_state,
)
from lpbot.persistence.sqlite.row_codec import (
    dump_decimal,
    dump_optional_decimal,
    dump_ts,
    load_decimal,
    load_optional_decimal,
    load_optional_ts,
    load_ts,
)

logger = logging.getLogger(__name__)


class SqliteTradesRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "trades"}})
            raise PermissionError("UnitOfWork is read-only; trade writes are blocked")

    def insert_trade(self, trade: Trade) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO trades(
                id, run_id, pool_address, pool_name, entry_price, size, sizing_mode,
                risk_tier, leverage, score, entry_value_usd, entry_fees_usd,
                entry_slippage_usd, normalized_amount_base, status, exit_state,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trade.id,
                trade.run_id,
                trade.pool_address,
                trade.pool_name,
                dump_decimal(trade.entry_price),
                dump_decimal(trade.size),
                trade.sizing_mode.value,
                trade.risk_tier,
                dump_decimal(trade.leverage),
                dump_decimal(trade.score),
                dump_decimal(trade.entry_value_usd),
                dump_decimal(trade.entry_fees_usd),
                dump_decimal(trade.entry_slippage_usd),
                dump_decimal(trade.normalized_amount_base),
                trade.status.value,
                dump_exit_state(trade.exit_state),
                dump_ts(trade.created_at),
                dump_ts(trade.created_at),
            ),
        )

    def get_trade(self, trade_id: str) -> Trade | None:
        row = self._conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return None if row is None else _trade_from_row(row)

    def list_trades(self, statuses: Sequence[TradeStatus]) -> list[Trade]:
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        rows = self._conn.execute(
            f"SELECT * FROM trades WHERE status IN ({placeholders}) ORDER BY created_at, id",
            tuple(status.value for status in statuses),
        ).fetchall()
        return [_trade_from_row(row) for row in rows]

    def list_active_trades_for_pool(self, pool_address: str) -> list[Trade]:
        rows = self._conn.execute(
            """
            SELECT * FROM trades
            WHERE pool_address = ? AND status IN (?, ?)
            ORDER BY created_at, id
            """,
            (pool_address, *(status.value for status in ACTIVE_TRADE_STATUSES)),
        ).fetchall()
        return [_trade_from_row(row) for row in rows]

    def cancel_trade(self, trade_id: str, *, exit_reason: str, now: datetime) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE trades
            SET status = ?, exit_state = ?, exit_reason = ?, exit_time = ?,
                pnl_gross = '0', pnl_net = '0', updated_at = ?
            WHERE id = ? AND status IN (?, ?)
            """,
            (
                TradeStatus.CANCELLED.value,
                ExitState.CLOSED.value,
                exit_reason,
                dump_ts(now),
                dump_ts(now),
                trade_id,
                *(status.value for status in ACTIVE_TRADE_STATUSES),
            ),
        )
        return cursor.rowcount == 1

    def cancel_active_trades(self, *, exit_reason: str, now: datetime) -> int:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE trades
            SET status = ?, exit_state = ?, exit_reason = ?, exit_time = ?,
                pnl_gross = '0', pnl_net = '0', updated_at = ?
            WHERE status IN (?, ?)
            """,
            (
                TradeStatus.CANCELLED.value,
                ExitState.CLOSED.value,
                exit_reason,
                dump_ts(now),
                dump_ts(now),
                *(status.value for status in ACTIVE_TRADE_STATUSES),
            ),
        )
        return int(cursor.rowcount)

    def transition_exit_state(
        self,
        trade_id: str,
        *,
        from_state: ExitState,
        to_state: ExitState,
        status: TradeStatus | None,
        now: datetime,
    ) -> bool:
        self._ensure_writable()
        sql = "UPDATE trades SET exit_state = ?, updated_at = ?"
        params: list[object] = [dump_exit_state(to_state), dump_ts(now)]
        if status is not None:
            sql += ", status = ?"
            params.append(status.value)
        sql += " WHERE id = ? AND exit_state IS ?"
        params.extend([trade_id, dump_exit_state(from_state)])
        if from_state is ExitState.OPEN:
            sql += " AND status = ?"
            params.append(TradeStatus.OPEN.value)
        cursor = self._conn.execute(sql, tuple(params))
        return cursor.rowcount == 1

    def record_exit(self, trade_id: str, record: TradeExitRecord) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE trades
            SET status = ?, exit_price = ?, exit_value_usd = ?, exit_fees_usd = ?,
                exit_slippage_usd = ?, pnl_gross = ?, pnl_net = ?, exit_reason = ?,
                exit_time = ?, updated_at = ?
            WHERE id = ? AND exit_state = ?
            """,
            (
                TradeStatus.CLOSED.value,
                dump_optional_decimal(record.exit_price),
                dump_decimal(record.exit_value_usd),
                dump_decimal(record.exit_fees_usd),
                dump_decimal(record.exit_slippage_usd),
                dump_decimal(record.pnl_gross),
                dump_decimal(record.pnl_net),
                record.exit_reason,
                dump_ts(record.exit_time),
                dump_ts(record.exit_time),
                trade_id,
                ExitState.CLOSING.value,
            ),
        )
        return cursor.rowcount == 1

    def sum_closed_pnl_since(self, since: datetime) -> Decimal:
        rows = self._conn.execute(
            """
            SELECT pnl_net FROM trades
            WHERE status = ? AND pnl_net IS NOT NULL AND exit_time >= ?
            """,
            (TradeStatus.CLOSED.value, dump_ts(since)),
        ).fetchall()
        # exit_time is UTC ISO-8601 text, so it compares lexically.
        return sum((load_decimal(row["pnl_net"]) for row in rows), Decimal("0"))


def _trade_from_row(row: sqlite3.Row) -> Trade:
    return Trade(
        id=str(row["id"]),
        run_id=str(row["run_id"]) if row["run_id"] is not None else None,
        pool_address=str(row["pool_address"]),
        pool_name=str(row["pool_name"]),
        entry_price=load_decimal(row["entry_price"]),
        size=load_decimal(row["size"]),
        sizing_mode=SizingMode(str(row["sizing_mode"])),
        risk_tier=str(row["risk_tier"]),
        leverage=load_decimal(row["leverage"]),
        score=load_decimal(row["score"]),
        entry_value_usd=load_decimal(row["entry_value_usd"]),
        entry_fees_usd=load_decimal(row["entry_fees_usd"]),
        entry_slippage_usd=load_decimal(row["entry_slippage_usd"]),
        normalized_amount_base=load_decimal(row["normalized_amount_base"]),
        status=TradeStatus(str(row["status"])),
        exit_state=load_exit_state(row["exit_state"]),
        created_at=load_ts(row["created_at"]),
        exit_price=load_optional_decimal(row["exit_price"]),
        exit_value_usd=load_optional_decimal(row["exit_value_usd"]),
        exit_fees_usd=load_optional_decimal(row["exit_fees_usd"]),
        exit_slippage_usd=load_optional_decimal(row["exit_slippage_usd"]),
        pnl_gross=load_optional_decimal(row["pnl_gross"]),
        pnl_net=load_optional_decimal(row["pnl_net"]),
        exit_reason=str(row["exit_reason"]) if row["exit_reason"] is not None else None,
        exit_time=load_optional_ts(row["exit_time"]),
    )
