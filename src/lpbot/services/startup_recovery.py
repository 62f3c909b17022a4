from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from decimal import Decimal

from lpbot.domain.errors import ConfigurationError
from lpbot.domain.trade import ExitState, TradeStatus
from lpbot.persistence.interfaces.store import PersistenceStore
from lpbot.services.capital_ledger import CapitalLedger
from lpbot.services.exit_authority import ExitAuthority
from lpbot.services.reconciliation_seal import SEAL_STATE_KEY, ReconciliationSeal, SealMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartupRecoveryResult:
    run_id: str
    mode: SealMode
    starting_capital: Decimal
    open_trades: int
    orphaned_trades_cancelled: tuple[str, ...]
    orphaned_locks_released: tuple[str, ...]
    lock_invariant_gap: Decimal
    previous_equity: Decimal | None = None
    exits_reopened: tuple[str, ...] = ()


class StartupRecoveryService:
    """Boot sequence: bring the ledger and trade table into agreement, then seal."""

    def __init__(
        self,
        *,
        ledger: CapitalLedger,
        store: PersistenceStore,
        seal: ReconciliationSeal,
        exit_authority: ExitAuthority | None = None,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.seal = seal
        self.exit_authority = exit_authority or ExitAuthority(store)

    def run(
        self,
        *,
        run_id: str,
        fresh_start: bool,
        paper_capital: Decimal,
    ) -> StartupRecoveryResult:
        logger.info(
            "startup_recovery_started",
            extra={"extra": {"run_id": run_id, "fresh_start": fresh_start}},
        )
        if not self.ledger.initialize(paper_capital):
            raise ConfigurationError("capital ledger could not be initialized")

        cancelled: list[str] = []
        released: list[str] = []
        reopened: list[str] = []
        previous_equity: Decimal | None = None
        if fresh_start:
            epoch = self.ledger.initialize_fresh_run(paper_capital, run_id)
            mode = SealMode.FRESH_START
        else:
            mode = SealMode.CONTINUATION
            # An exit interrupted before its row was written goes back to OPEN.
            for trade in self.store.list_active_trades():
                if (
                    trade.status is TradeStatus.CLOSING
                    and trade.exit_state is ExitState.CLOSING
                    and self.exit_authority.release_exit_lock(trade.id)
                ):
                    reopened.append(trade.id)
            if reopened:
                logger.warning(
                    "startup_recovery_interrupted_exits_reopened",
                    extra={"extra": {"trade_ids": reopened, "count": len(reopened)}},
                )
            locked_ids = {lock.trade_id for lock in self.ledger.get_active_locks()}
            for trade in self.store.list_active_trades():
                if trade.id in locked_ids:
                    continue
                if self.store.cancel_trade(trade.id, exit_reason="ORPHANED_NO_LOCK"):
                    cancelled.append(trade.id)
            if cancelled:
                logger.warning(
                    "startup_recovery_orphaned_trades_cancelled",
                    extra={"extra": {"trade_ids": cancelled, "count": len(cancelled)}},
                )
            active_ids = [trade.id for trade in self.store.list_active_trades()]
            released = self.ledger.reconcile_locks(active_ids)

            previous_equity = self.ledger.get_equity_checkpoint()
            self.ledger.validate_restart_equity(previous_equity, self.ledger.get_equity())
            epoch = self.ledger.initialize_continuation_run(run_id)

        state = self.ledger.get_state()
        open_trades = len(self.store.list_active_trades())
        invariant = self.ledger.check_lock_invariant()
        if not invariant.ok:
            logger.error(
                "startup_recovery_lock_invariant_gap",
                extra={
                    "extra": {
                        "locked_balance": str(invariant.locked_balance),
                        "lock_sum": str(invariant.lock_sum),
                        "gap": str(invariant.gap),
                    }
                },
            )

        seal_data = self.seal.seal(
            run_id=run_id,
            mode=mode,
            available_capital=state.available_balance,
            locked_capital=state.locked_balance,
            open_trades=open_trades,
            recovered_locks=len(released),
        )
        self.store.set_bot_state(SEAL_STATE_KEY, asdict(seal_data))
        self.ledger.record_equity_checkpoint(state.equity)

        result = StartupRecoveryResult(
            run_id=run_id,
            mode=mode,
            starting_capital=epoch.starting_capital,
            open_trades=open_trades,
            orphaned_trades_cancelled=tuple(cancelled),
            orphaned_locks_released=tuple(released),
            lock_invariant_gap=invariant.gap,
            previous_equity=previous_equity,
            exits_reopened=tuple(reopened),
        )
        logger.info(
            "startup_recovery_completed",
            extra={
                "extra": {
                    "run_id": run_id,
                    "mode": mode.value,
                    "starting_capital": str(epoch.starting_capital),
                    "open_trades": open_trades,
                    "cancelled": len(cancelled),
                    "released": len(released),
                    "reopened": len(reopened),
                }
            },
        )
        return result
