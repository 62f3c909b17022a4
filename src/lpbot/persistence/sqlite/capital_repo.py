from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal

from lpbot.domain.capital import CapitalLock, CapitalState, RunEpoch, RunEpochStatus
from lpbot.persistence.sqlite.row_codec import dump_decimal, dump_ts, load_decimal, load_ts

logger = logging.getLogger(__name__)


class SqliteCapitalRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "capital"}})
            raise PermissionError("UnitOfWork is read-only; capital writes are blocked")

    def get_capital_state(self) -> CapitalState | None:
        row = self._conn.execute("SELECT * FROM capital_state WHERE state_id = 1").fetchone()
        if row is None:
            return None
        return CapitalState(
            available_balance=load_decimal(row["available_balance"]),
            locked_balance=load_decimal(row["locked_balance"]),
            total_realized_pnl=load_decimal(row["total_realized_pnl"]),
            initial_capital=load_decimal(row["initial_capital"]),
            updated_at=load_ts(row["updated_at"]),
            version=int(row["version"]),
        )

    def insert_capital_state(self, state: CapitalState) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT INTO capital_state(
                state_id, available_balance, locked_balance, total_realized_pnl,
                initial_capital, version, updated_at
            ) VALUES (1, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(state_id) DO NOTHING
            """,
            (
                dump_decimal(state.available_balance),
                dump_decimal(state.locked_balance),
                dump_decimal(state.total_realized_pnl),
                dump_decimal(state.initial_capital),
                state.version,
                dump_ts(state.updated_at),
            ),
        )
        return cursor.rowcount == 1

    def update_capital_state(
        self,
        *,
        expected_version: int,
        available_balance: Decimal,
        locked_balance: Decimal,
        total_realized_pnl: Decimal,
        initial_capital: Decimal,
        updated_at: datetime,
    ) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE capital_state
            SET available_balance = ?,
                locked_balance = ?,
                total_realized_pnl = ?,
                initial_capital = ?,
                version = version + 1,
                updated_at = ?
            WHERE state_id = 1 AND version = ?
            """,
            (
                dump_decimal(available_balance),
                dump_decimal(locked_balance),
                dump_decimal(total_realized_pnl),
                dump_decimal(initial_capital),
                dump_ts(updated_at),
                expected_version,
            ),
        )
        return cursor.rowcount == 1

    def get_lock(self, trade_id: str) -> CapitalLock | None:
        row = self._conn.execute(
            "SELECT trade_id, amount, locked_at FROM capital_locks WHERE trade_id = ?",
            (trade_id,),
        ).fetchone()
        return None if row is None else _lock_from_row(row)

    def insert_lock(self, lock: CapitalLock) -> None:
        self._ensure_writable()
        self._conn.execute(
            "INSERT INTO capital_locks(trade_id, amount, locked_at) VALUES (?, ?, ?)",
            (lock.trade_id, dump_decimal(lock.amount), dump_ts(lock.locked_at)),
        )

    def delete_lock(self, trade_id: str) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute("DELETE FROM capital_locks WHERE trade_id = ?", (trade_id,))
        return cursor.rowcount == 1

    def list_locks(self) -> list[CapitalLock]:
        rows = self._conn.execute(
            "SELECT trade_id, amount, locked_at FROM capital_locks ORDER BY locked_at, trade_id"
        ).fetchall()
        return [_lock_from_row(row) for row in rows]

    def delete_all_locks(self) -> int:
        self._ensure_writable()
        cursor = self._conn.execute("DELETE FROM capital_locks")
        return int(cursor.rowcount)

    def insert_run_epoch(self, epoch: RunEpoch) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO run_epochs(run_id, started_at, starting_capital, parent_run_id, status)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                started_at=excluded.started_at,
                starting_capital=excluded.starting_capital,
                parent_run_id=excluded.parent_run_id,
                status=excluded.status
            """,
            (
                epoch.run_id,
                dump_ts(epoch.started_at),
                dump_decimal(epoch.starting_capital),
                epoch.parent_run_id,
                epoch.status.value,
            ),
        )

    def close_active_run_epochs(self) -> int:
        self._ensure_writable()
        cursor = self._conn.execute(
            "UPDATE run_epochs SET status = ? WHERE status = ?",
            (RunEpochStatus.CLOSED.value, RunEpochStatus.ACTIVE.value),
        )
        return int(cursor.rowcount)

    def get_active_run_epoch(self) -> RunEpoch | None:
        row = self._conn.execute(
            """
            SELECT run_id, started_at, starting_capital, parent_run_id, status
            FROM run_epochs
            WHERE status = ?
            ORDER BY started_at DESC
            LIMIT 1
            """,
            (RunEpochStatus.ACTIVE.value,),
        ).fetchone()
        if row is None:
            return None
        return RunEpoch(
            run_id=str(row["run_id"]),
            starting_capital=load_decimal(row["starting_capital"]),
            started_at=load_ts(row["started_at"]),
            parent_run_id=str(row["parent_run_id"]) if row["parent_run_id"] is not None else None,
            status=RunEpochStatus(str(row["status"])),
        )


def _lock_from_row(row: sqlite3.Row) -> CapitalLock:
    return CapitalLock(
        trade_id=str(row["trade_id"]),
        amount=load_decimal(row["amount"]),
        locked_at=load_ts(row["locked_at"]),
    )
