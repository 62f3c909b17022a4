from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_capital_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS capital_state (
            state_id INTEGER PRIMARY KEY CHECK (state_id = 1),
            available_balance TEXT NOT NULL,
            locked_balance TEXT NOT NULL,
            total_realized_pnl TEXT NOT NULL,
            initial_capital TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS capital_locks (
            trade_id TEXT PRIMARY KEY,
            amount TEXT NOT NULL,
            locked_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS run_epochs (
            run_id TEXT PRIMARY KEY,
            started_at TEXT NOT NULL,
            starting_capital TEXT NOT NULL,
            parent_run_id TEXT,
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'closed'))
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_run_epochs_status ON run_epochs(status)")


def ensure_trades_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS trades (
            id TEXT PRIMARY KEY,
            pool_address TEXT NOT NULL,
            pool_name TEXT NOT NULL,
            entry_price TEXT NOT NULL,
            size TEXT NOT NULL,
            sizing_mode TEXT NOT NULL,
            risk_tier TEXT NOT NULL,
            leverage TEXT NOT NULL,
            score TEXT NOT NULL,
            entry_value_usd TEXT NOT NULL,
            entry_fees_usd TEXT NOT NULL,
            entry_slippage_usd TEXT NOT NULL,
            normalized_amount_base TEXT NOT NULL,
            status TEXT NOT NULL
                CHECK (status IN ('open', 'closing', 'closed', 'cancelled')),
            exit_price TEXT,
            exit_value_usd TEXT,
            exit_fees_usd TEXT,
            exit_slippage_usd TEXT,
            pnl_gross TEXT,
            pnl_net TEXT,
            exit_reason TEXT,
            exit_time TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    trade_columns = {str(row["name"]) for row in conn.execute("PRAGMA table_info(trades)")}
    if "run_id" not in trade_columns:
        conn.execute("ALTER TABLE trades ADD COLUMN run_id TEXT")
    if "exit_state" not in trade_columns:
        conn.execute("ALTER TABLE trades ADD COLUMN exit_state TEXT")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_pool ON trades(pool_address, status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_run_id ON trades(run_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_trades_status_exit_time ON trades(status, exit_time)"
    )


def ensure_audit_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_action ON audit_log(action, ts)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS bot_state (
            key TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def ensure_min_schema(conn: sqlite3.Connection) -> None:
    ensure_capital_schema(conn)
    ensure_trades_schema(conn)
    ensure_audit_schema(conn)
