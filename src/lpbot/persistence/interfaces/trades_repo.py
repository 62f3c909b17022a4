from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from lpbot.domain.trade import ExitState, Trade, TradeExitRecord, TradeStatus


class TradesRepoProtocol(Protocol):
    def insert_trade(self, trade: Trade) -> None: ...

    def get_trade(self, trade_id: str) -> Trade | None: ...

    def list_trades(self, statuses: Sequence[TradeStatus]) -> list[Trade]: ...

    def list_active_trades_for_pool(self, pool_address: str) -> list[Trade]: ...

    def cancel_trade(self, trade_id: str, *, exit_reason: str, now: datetime) -> bool: ...

    def cancel_active_trades(self, *, exit_reason: str, now: datetime) -> int: ...

    def transition_exit_state(
        self,
        trade_id: str,
        *,
        from_state: ExitState,
        to_state: ExitState,
        status: TradeStatus | None,
        now: datetime,
    ) -> bool: ...

    def record_exit(self, trade_id: str, record: TradeExitRecord) -> bool: ...

    def sum_closed_pnl_since(self, since: datetime) -> Decimal: ...
