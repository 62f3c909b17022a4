from __future__ import annotations

from dataclasses import dataclass
import logging
import sqlite3

from lpbot.persistence.sqlite.audit_repo import SqliteAuditRepo
from lpbot.persistence.sqlite.capital_repo import SqliteCapitalRepo
from lpbot.persistence.sqlite.sqlite_connection import create_sqlite_connection, ensure_min_schema
from lpbot.persistence.sqlite.trades_repo import SqliteTradesRepo

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.capital: SqliteCapitalRepo
        self.trades: SqliteTradesRepo
        self.audit: SqliteAuditRepo

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        try:
            ensure_min_schema(conn)
            conn.commit()
            if self.read_only:
                conn.execute("BEGIN")
            else:
                conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error:
            conn.close()
            raise
        self._conn = conn
        self.capital = SqliteCapitalRepo(conn, read_only=self.read_only)
        self.trades = SqliteTradesRepo(conn, read_only=self.read_only)
        self.audit = SqliteAuditRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
                logger.debug(
                    "uow_rolled_back",
                    extra={"extra": {"error_type": getattr(exc_type, "__name__", "Exception")}},
                )
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)
