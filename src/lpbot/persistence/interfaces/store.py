from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from lpbot.domain.capital import CapitalLock, CapitalState, RunEpoch
from lpbot.domain.trade import ExitState, Trade, TradeDraft, TradeExitRecord, TradeStatus


class PersistenceStore(Protocol):
    """Row-level durable store used by the ledger, exit authority and orchestrator.

    Every method is atomic for the rows it touches and raises ``PersistenceFailure``
    when the underlying engine fails. Nothing spans more than one call.
    """

    def get_capital_state(self) -> CapitalState | None: ...

    def insert_capital_state(self, state: CapitalState) -> bool: ...

    def update_capital_state(
        self,
        *,
        expected_version: int,
        available_balance: Decimal,
        locked_balance: Decimal,
        total_realized_pnl: Decimal,
        initial_capital: Decimal,
    ) -> bool: ...

    def get_lock(self, trade_id: str) -> CapitalLock | None: ...

    def insert_lock(self, trade_id: str, amount: Decimal) -> CapitalLock: ...

    def delete_lock(self, trade_id: str) -> bool: ...

    def list_locks(self) -> list[CapitalLock]: ...

    def delete_all_locks(self) -> int: ...

    def start_run_epoch(self, epoch: RunEpoch) -> None: ...

    def get_active_run_epoch(self) -> RunEpoch | None: ...

    def insert_trade(self, draft: TradeDraft) -> Trade: ...

    def get_trade(self, trade_id: str) -> Trade | None: ...

    def list_active_trades(self) -> list[Trade]: ...

    def list_active_trades_for_pool(self, pool_address: str) -> list[Trade]: ...

    def cancel_trade(self, trade_id: str, *, exit_reason: str) -> bool: ...

    def cancel_active_trades(self, *, exit_reason: str) -> int: ...

    def transition_exit_state(
        self,
        trade_id: str,
        *,
        from_state: ExitState,
        to_state: ExitState,
        status: TradeStatus | None = None,
    ) -> bool: ...

    def record_trade_exit(self, trade_id: str, record: TradeExitRecord) -> bool: ...

    def sum_closed_pnl_since(self, since: datetime) -> Decimal: ...

    def append_audit(self, action: str, details: Mapping[str, object]) -> int: ...

    def list_audit(self, *, limit: int = 50, action: str | None = None) -> list[dict[str, Any]]: ...

    def get_bot_state(self, key: str) -> Any | None: ...

    def set_bot_state(self, key: str, value: object) -> None: ...
