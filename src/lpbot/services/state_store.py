from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import uuid4

from lpbot.domain.capital import CapitalLock, CapitalState, RunEpoch
from lpbot.domain.errors import PersistenceFailure
from lpbot.domain.trade import (
    ACTIVE_TRADE_STATUSES,
    ExitState,
    Trade,
    TradeDraft,
    TradeExitRecord,
    TradeStatus,
)
from lpbot.persistence.uow import UnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)


class StateStore:
    """SQLite-backed persistence store.

    Each public method runs in its own unit of work, so a call is atomic for the
    rows it touches and nothing more. Engine errors surface as ``PersistenceFailure``.
    """

    def __init__(
        self,
        db_path: str = "lpbot_state.db",
        *,
        read_only: bool = False,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.db_path = db_path
        self.db_path_abs = str(Path(db_path).expanduser().resolve())
        self.read_only = read_only
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._uow_factory = UnitOfWorkFactory(db_path, read_only=read_only)
        self._read_factory = UnitOfWorkFactory(db_path, read_only=True)
        with self._uow("startup", read=True):
            pass
        logger.info(
            "state_store_startup",
            extra={"extra": {"db_path": self.db_path_abs, "read_only": read_only}},
        )

    @contextmanager
    def _uow(self, operation: str, *, read: bool = False) -> Iterator[UnitOfWork]:
        factory = self._read_factory if read else self._uow_factory
        try:
            with factory() as uow:
                yield uow
        except sqlite3.Error as exc:
            logger.error(
                "state_store_operation_failed",
                extra={"extra": {"operation": operation, "error": str(exc)}},
            )
            raise PersistenceFailure(f"{operation} failed: {exc}", operation=operation) from exc

    # capital

    def get_capital_state(self) -> CapitalState | None:
        with self._uow("get_capital_state", read=True) as uow:
            return uow.capital.get_capital_state()

    def insert_capital_state(self, state: CapitalState) -> bool:
        with self._uow("insert_capital_state") as uow:
            return uow.capital.insert_capital_state(state)

    def update_capital_state(
        self,
        *,
        expected_version: int,
        available_balance: Decimal,
        locked_balance: Decimal,
        total_realized_pnl: Decimal,
        initial_capital: Decimal,
    ) -> bool:
        with self._uow("update_capital_state") as uow:
            return uow.capital.update_capital_state(
                expected_version=expected_version,
                available_balance=available_balance,
                locked_balance=locked_balance,
                total_realized_pnl=total_realized_pnl,
                initial_capital=initial_capital,
                updated_at=self.now_provider(),
            )

    def get_lock(self, trade_id: str) -> CapitalLock | None:
        with self._uow("get_lock", read=True) as uow:
            return uow.capital.get_lock(trade_id)

    def insert_lock(self, trade_id: str, amount: Decimal) -> CapitalLock:
        lock = CapitalLock(trade_id=trade_id, amount=amount, locked_at=self.now_provider())
        with self._uow("insert_lock") as uow:
            uow.capital.insert_lock(lock)
        return lock

    def delete_lock(self, trade_id: str) -> bool:
        with self._uow("delete_lock") as uow:
            return uow.capital.delete_lock(trade_id)

    def list_locks(self) -> list[CapitalLock]:
        with self._uow("list_locks", read=True) as uow:
            return uow.capital.list_locks()

    def delete_all_locks(self) -> int:
        with self._uow("delete_all_locks") as uow:
            return uow.capital.delete_all_locks()

    def start_run_epoch(self, epoch: RunEpoch) -> None:
        with self._uow("start_run_epoch") as uow:
            uow.capital.close_active_run_epochs()
            uow.capital.insert_run_epoch(epoch)

    def get_active_run_epoch(self) -> RunEpoch | None:
        with self._uow("get_active_run_epoch", read=True) as uow:
            return uow.capital.get_active_run_epoch()

    # trades

    def insert_trade(self, draft: TradeDraft) -> Trade:
        trade = Trade(
            id=uuid4().hex,
            run_id=draft.run_id,
            pool_address=draft.pool_address,
            pool_name=draft.pool_name,
            entry_price=draft.entry_price,
            size=draft.size,
            sizing_mode=draft.sizing_mode,
            risk_tier=draft.risk_tier,
            leverage=draft.leverage,
            score=draft.score,
            entry_value_usd=draft.entry_value_usd,
            entry_fees_usd=draft.entry_fees_usd,
            entry_slippage_usd=draft.entry_slippage_usd,
            normalized_amount_base=draft.normalized_amount_base,
            status=TradeStatus.OPEN,
            exit_state=ExitState.OPEN,
            created_at=draft.created_at,
        )
        with self._uow("insert_trade") as uow:
            uow.trades.insert_trade(trade)
        return trade

    def get_trade(self, trade_id: str) -> Trade | None:
        with self._uow("get_trade", read=True) as uow:
            return uow.trades.get_trade(trade_id)

    def list_active_trades(self) -> list[Trade]:
        with self._uow("list_active_trades", read=True) as uow:
            return uow.trades.list_trades(ACTIVE_TRADE_STATUSES)

    def list_active_trades_for_pool(self, pool_address: str) -> list[Trade]:
        with self._uow("list_active_trades_for_pool", read=True) as uow:
            return uow.trades.list_active_trades_for_pool(pool_address)

    def cancel_trade(self, trade_id: str, *, exit_reason: str) -> bool:
        with self._uow("cancel_trade") as uow:
            return uow.trades.cancel_trade(trade_id, exit_reason=exit_reason, now=self.now_provider())

    def cancel_active_trades(self, *, exit_reason: str) -> int:
        with self._uow("cancel_active_trades") as uow:
            return uow.trades.cancel_active_trades(exit_reason=exit_reason, now=self.now_provider())

    def transition_exit_state(
        self,
        trade_id: str,
        *,
        from_state: ExitState,
        to_state: ExitState,
        status: TradeStatus | None = None,
    ) -> bool:
        with self._uow("transition_exit_state") as uow:
            return uow.trades.transition_exit_state(
                trade_id,
                from_state=from_state,
                to_state=to_state,
                status=status,
                now=self.now_provider(),
            )

    def record_trade_exit(self, trade_id: str, record: TradeExitRecord) -> bool:
        with self._uow("record_trade_exit") as uow:
            return uow.trades.record_exit(trade_id, record)

    def sum_closed_pnl_since(self, since: datetime) -> Decimal:
        with self._uow("sum_closed_pnl_since", read=True) as uow:
            return uow.trades.sum_closed_pnl_since(since)

    # audit and bot state

    def append_audit(self, action: str, details: Mapping[str, object]) -> int:
        with self._uow("append_audit") as uow:
            return uow.audit.append(action, details, ts=self.now_provider())

    def list_audit(self, *, limit: int = 50, action: str | None = None) -> list[dict[str, Any]]:
        with self._uow("list_audit", read=True) as uow:
            return uow.audit.list_recent(limit=limit, action=action)

    def get_bot_state(self, key: str) -> Any | None:
        with self._uow("get_bot_state", read=True) as uow:
            return uow.audit.get_state(key)

    def set_bot_state(self, key: str, value: object) -> None:
        with self._uow("set_bot_state") as uow:
            uow.audit.set_state(key, value, now=self.now_provider())
