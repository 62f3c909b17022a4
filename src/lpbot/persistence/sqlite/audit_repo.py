from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from lpbot.persistence.interfaces.audit_repo import serialize_payload
from lpbot.persistence.sqlite.row_codec import dump_ts

logger = logging.getLogger(__name__)


class SqliteAuditRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "audit"}})
            raise PermissionError("UnitOfWork is read-only; audit writes are blocked")

    def append(self, action: str, details: Mapping[str, object], *, ts: datetime) -> int:
        self._ensure_writable()
        cursor = self._conn.execute(
            "INSERT INTO audit_log(ts, action, details_json) VALUES (?, ?, ?)",
            (dump_ts(ts), action, serialize_payload(dict(details))),
        )
        return int(cursor.lastrowid or 0)

    def list_recent(self, *, limit: int, action: str | None = None) -> list[dict[str, Any]]:
        if action is None:
            rows = self._conn.execute(
                "SELECT id, ts, action, details_json FROM audit_log ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT id, ts, action, details_json FROM audit_log
                WHERE action = ? ORDER BY id DESC LIMIT ?
                """,
                (action, limit),
            ).fetchall()
        return [
            {
                "id": int(row["id"]),
                "ts": str(row["ts"]),
                "action": str(row["action"]),
                "details": json.loads(str(row["details_json"])),
            }
            for row in rows
        ]

    def get_state(self, key: str) -> Any | None:
        row = self._conn.execute("SELECT value_json FROM bot_state WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return json.loads(str(row["value_json"]))

    def set_state(self, key: str, value: object, *, now: datetime) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO bot_state(key, value_json, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value_json=excluded.value_json,
                updated_at=excluded.updated_at
            """,
            (key, serialize_payload(value), dump_ts(now)),
        )
