from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Protocol

from lpbot.domain.capital import CapitalLock, CapitalState, RunEpoch


class CapitalRepoProtocol(Protocol):
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
        updated_at: datetime,
    ) -> bool: ...

    def get_lock(self, trade_id: str) -> CapitalLock | None: ...

    def insert_lock(self, lock: CapitalLock) -> None: ...

    def delete_lock(self, trade_id: str) -> bool: ...

    def list_locks(self) -> list[CapitalLock]: ...

    def delete_all_locks(self) -> int: ...

    def insert_run_epoch(self, epoch: RunEpoch) -> None: ...

    def close_active_run_epochs(self) -> int: ...

    def get_active_run_epoch(self) -> RunEpoch | None: ...
