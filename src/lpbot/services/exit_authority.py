from __future__ import annotations

import logging
import threading

from lpbot.domain.trade import ExitState, TradeStatus
from lpbot.persistence.interfaces.store import PersistenceStore

logger = logging.getLogger(__name__)


class ExitAuthority:
    """Per-trade exit state machine: OPEN -> CLOSING -> CLOSED, with CLOSING -> OPEN repair.

    The state lives in the trade row. Each transition is a conditional update whose
    affected-row count decides the winner, so it also holds across processes and restarts.
    """

    def __init__(self, store: PersistenceStore) -> None:
        self.store = store
        self._mutex = threading.Lock()
        self._holders: dict[str, str] = {}

    def get_exit_state(self, trade_id: str) -> ExitState | None:
        trade = self.store.get_trade(trade_id)
        if trade is None:
            return None
        if trade.status is TradeStatus.CANCELLED:
            return ExitState.CLOSED
        return trade.exit_state

    def can_exit_trade(self, trade_id: str) -> bool:
        return self.get_exit_state(trade_id) is ExitState.OPEN

    def holder_of(self, trade_id: str) -> str | None:
        return self._holders.get(trade_id)

    def acquire_exit_lock(self, trade_id: str, caller: str) -> bool:
        with self._mutex:
            acquired = self.store.transition_exit_state(
                trade_id,
                from_state=ExitState.OPEN,
                to_state=ExitState.CLOSING,
                status=TradeStatus.CLOSING,
            )
            if acquired:
                self._holders[trade_id] = caller
        if acquired:
            logger.info(
                "exit_lock_acquired", extra={"extra": {"trade_id": trade_id, "caller": caller}}
            )
        else:
            logger.warning(
                "exit_lock_denied",
                extra={
                    "extra": {
                        "trade_id": trade_id,
                        "caller": caller,
                        "holder": self._holders.get(trade_id),
                    }
                },
            )
        return acquired

    def release_exit_lock(self, trade_id: str) -> bool:
        with self._mutex:
            released = self.store.transition_exit_state(
                trade_id,
                from_state=ExitState.CLOSING,
                to_state=ExitState.OPEN,
                status=TradeStatus.OPEN,
            )
            caller = self._holders.pop(trade_id, None)
        logger.warning(
            "exit_lock_released",
            extra={"extra": {"trade_id": trade_id, "caller": caller, "released": released}},
        )
        return released

    def mark_trade_closed(self, trade_id: str) -> bool:
        with self._mutex:
            closed = self.store.transition_exit_state(
                trade_id,
                from_state=ExitState.CLOSING,
                to_state=ExitState.CLOSED,
            )
            caller = self._holders.pop(trade_id, None)
        if not closed:
            logger.error(
                "exit_mark_closed_failed",
                extra={"extra": {"trade_id": trade_id, "caller": caller}},
            )
        return closed
