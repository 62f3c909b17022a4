from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

from lpbot.domain.capital import (
    CapitalLock,
    CapitalState,
    LockInvariantReport,
    ResetResult,
    RunEpoch,
    RunScopedEquity,
    quantize_usd,
)
from lpbot.domain.errors import (
    ConfigurationError,
    PersistenceFailure,
    PhantomEquityViolation,
    ReconciliationSealViolation,
    RestartEquityViolation,
)
from lpbot.persistence.interfaces.store import PersistenceStore
from lpbot.services.reconciliation_seal import ReconciliationSeal

logger = logging.getLogger(__name__)

BASELINE_RESET_KEY = "baseline_reset_at"
EQUITY_CHECKPOINT_KEY = "equity_checkpoint"
ZERO = Decimal("0")


def new_run_id(now: datetime) -> str:
    return f"run_{now.strftime('%Y%m%dT%H%M%S')}_{uuid4().hex[:8]}"


class CapitalLedger:
    """Durable capital accounting: balances, per-trade locks, realized P&L.

    Every read goes to the store. Mutations are read-modify-conditional-write on the
    single capital row; when a later step of the same operation fails the earlier
    write is compensated before the failure is raised.
    """

    def __init__(
        self,
        store: PersistenceStore,
        *,
        seal: ReconciliationSeal | None = None,
        test_mode: bool = False,
        phantom_equity_epsilon: Decimal = Decimal("1"),
        restart_equity_tolerance: Decimal = Decimal("5"),
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.seal = seal
        self.test_mode = test_mode
        self.phantom_equity_epsilon = phantom_equity_epsilon
        self.restart_equity_tolerance = restart_equity_tolerance
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._ready = False
        self._run_epoch: RunEpoch | None = None

    # lifecycle

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def run_epoch(self) -> RunEpoch | None:
        return self._run_epoch

    def initialize(self, initial_capital: Decimal) -> bool:
        try:
            state = self.store.get_capital_state()
            if state is None:
                if initial_capital <= ZERO:
                    logger.error(
                        "capital_initialize_invalid_seed",
                        extra={"extra": {"initial_capital": str(initial_capital)}},
                    )
                    self._ready = False
                    return False
                created = self.store.insert_capital_state(
                    CapitalState(
                        available_balance=initial_capital,
                        locked_balance=ZERO,
                        total_realized_pnl=ZERO,
                        initial_capital=initial_capital,
                        updated_at=self.now_provider(),
                    )
                )
                logger.info(
                    "capital_state_seeded",
                    extra={"extra": {"initial_capital": str(initial_capital), "created": created}},
                )
        except PersistenceFailure:
            logger.exception("capital_initialize_failed")
            self._ready = False
            return False
        self._ready = True
        return True

    def close(self) -> None:
        self._ready = False
        logger.info("capital_ledger_closed")

    def _require_ready(self) -> None:
        if not self._ready:
            raise ConfigurationError("capital ledger not initialized")

    # reads

    def _read_state(self) -> CapitalState:
        state = self.store.get_capital_state()
        if state is None:
            raise PersistenceFailure("capital state row missing", operation="get_capital_state")
        return state

    def get_state(self) -> CapitalState:
        self._require_ready()
        return self._read_state()

    def get_balance(self) -> Decimal:
        return self.get_state().available_balance

    def get_equity(self) -> Decimal:
        return self.get_state().equity

    def get_active_locks(self) -> list[CapitalLock]:
        self._require_ready()
        return self.store.list_locks()

    def get_last_reset_timestamp(self) -> datetime | None:
        raw = self.store.get_bot_state(BASELINE_RESET_KEY)
        if raw is None:
            return None
        return datetime.fromisoformat(str(raw))

    def check_lock_invariant(self) -> LockInvariantReport:
        state = self.get_state()
        locks = self.store.list_locks()
        return LockInvariantReport(
            locked_balance=state.locked_balance,
            lock_sum=sum((lock.amount for lock in locks), ZERO),
            lock_count=len(locks),
        )

    # mutations

    def _write(
        self,
        state: CapitalState,
        *,
        operation: str,
        available_balance: Decimal,
        locked_balance: Decimal,
        total_realized_pnl: Decimal | None = None,
        initial_capital: Decimal | None = None,
    ) -> None:
        updated = self.store.update_capital_state(
            expected_version=state.version,
            available_balance=available_balance,
            locked_balance=locked_balance,
            total_realized_pnl=(
                state.total_realized_pnl if total_realized_pnl is None else total_realized_pnl
            ),
            initial_capital=state.initial_capital if initial_capital is None else initial_capital,
        )
        if not updated:
            raise PersistenceFailure(
                f"{operation}: capital state changed concurrently", operation=operation
            )

    def allocate(self, trade_id: str, amount: Decimal) -> bool:
        self._require_ready()
        if amount <= ZERO:
            logger.warning(
                "capital_allocate_rejected",
                extra={"extra": {"trade_id": trade_id, "amount": str(amount), "reason": "non_positive"}},
            )
            return False

        state = self._read_state()
        if amount > state.available_balance:
            logger.info(
                "capital_allocate_rejected",
                extra={
                    "extra": {
                        "trade_id": trade_id,
                        "amount": str(amount),
                        "available": str(state.available_balance),
                        "reason": "insufficient_balance",
                    }
                },
            )
            return False
        if self.store.get_lock(trade_id) is not None:
            logger.warning(
                "capital_allocate_rejected",
                extra={"extra": {"trade_id": trade_id, "reason": "lock_exists"}},
            )
            return False

        self._write(
            state,
            operation="allocate",
            available_balance=state.available_balance - amount,
            locked_balance=state.locked_balance + amount,
        )
        try:
            self.store.insert_lock(trade_id, amount)
        except PersistenceFailure:
            self._rollback_allocation(trade_id, amount)
            raise

        logger.info(
            "capital_allocated",
            extra={
                "extra": {
                    "trade_id": trade_id,
                    "amount": str(amount),
                    "available": str(state.available_balance - amount),
                    "locked": str(state.locked_balance + amount),
                }
            },
        )
        return True

    def _rollback_allocation(self, trade_id: str, amount: Decimal) -> None:
        try:
            current = self._read_state()
            self._write(
                current,
                operation="allocate_rollback",
                available_balance=current.available_balance + amount,
                locked_balance=max(ZERO, current.locked_balance - amount),
            )
        except PersistenceFailure:
            logger.critical(
                "capital_allocate_rollback_failed",
                extra={"extra": {"trade_id": trade_id, "amount": str(amount)}},
            )
            raise
        logger.warning(
            "capital_allocate_rolled_back",
            extra={"extra": {"trade_id": trade_id, "amount": str(amount)}},
        )

    def _restore_lock(self, lock: CapitalLock) -> None:
        try:
            self.store.insert_lock(lock.trade_id, lock.amount)
        except PersistenceFailure:
            logger.critical(
                "capital_lock_restore_failed",
                extra={"extra": {"trade_id": lock.trade_id, "amount": str(lock.amount)}},
            )

    def _claim_lock(self, trade_id: str, operation: str) -> CapitalLock | None:
        lock = self.store.get_lock(trade_id)
        if lock is None:
            return None
        # Deleting the row first makes a racing second settlement see no lock.
        if not self.store.delete_lock(trade_id):
            logger.warning(
                "capital_lock_claim_lost",
                extra={"extra": {"trade_id": trade_id, "operation": operation}},
            )
            return None
        return lock

    def release(self, trade_id: str) -> bool:
        self._require_ready()
        lock = self._claim_lock(trade_id, "release")
        if lock is None:
            logger.debug("capital_release_noop", extra={"extra": {"trade_id": trade_id}})
            return False
        try:
            state = self._read_state()
            self._write(
                state,
                operation="release",
                available_balance=state.available_balance + lock.amount,
                locked_balance=max(ZERO, state.locked_balance - lock.amount),
            )
        except PersistenceFailure:
            self._restore_lock(lock)
            raise
        logger.info(
            "capital_released",
            extra={"extra": {"trade_id": trade_id, "amount": str(lock.amount)}},
        )
        return True

    def apply_pnl(self, trade_id: str, pnl: Decimal) -> bool:
        self._require_ready()
        lock = self._claim_lock(trade_id, "apply_pnl")
        if lock is None:
            logger.warning(
                "capital_apply_pnl_no_lock",
                extra={"extra": {"trade_id": trade_id, "pnl": str(pnl)}},
            )
            return False
        try:
            state = self._read_state()
            self._write(
                state,
                operation="apply_pnl",
                available_balance=state.available_balance + lock.amount + pnl,
                locked_balance=max(ZERO, state.locked_balance - lock.amount),
                total_realized_pnl=state.total_realized_pnl + pnl,
            )
        except PersistenceFailure:
            self._restore_lock(lock)
            raise
        logger.info(
            "capital_pnl_applied",
            extra={
                "extra": {
                    "trade_id": trade_id,
                    "locked_amount": str(lock.amount),
                    "pnl": str(pnl),
                    "total_realized_pnl": str(state.total_realized_pnl + pnl),
                }
            },
        )
        return True

    def credit(self, amount: Decimal, reason: str = "MANUAL_CREDIT") -> bool:
        self._require_ready()
        if amount <= ZERO:
            logger.warning(
                "capital_credit_rejected",
                extra={"extra": {"amount": str(amount), "reason": reason}},
            )
            return False
        state = self._read_state()
        self._write(
            state,
            operation="credit",
            available_balance=state.available_balance + amount,
            locked_balance=state.locked_balance,
        )
        self.store.append_audit(
            "CAPITAL_CREDIT",
            {
                "amount": amount,
                "reason": reason,
                "available_before": state.available_balance,
                "available_after": state.available_balance + amount,
            },
        )
        logger.info("capital_credited", extra={"extra": {"amount": str(amount), "reason": reason}})
        return True

    def reset_capital(self, balance: Decimal) -> ResetResult:
        if self.seal is not None and self.seal.is_sealed and not self.test_mode:
            logger.critical(
                "capital_reset_forbidden_after_seal",
                extra={"extra": {"requested_balance": str(balance)}},
            )
            raise ReconciliationSealViolation(
                "capital reset is forbidden once the reconciliation seal is set"
            )
        now = self.now_provider()
        if balance <= ZERO:
            return ResetResult(
                success=False,
                new_balance=balance,
                reset_at=now,
                error="reset balance must be positive",
            )
        self._require_ready()

        try:
            previous = self._read_state()
            trades_cleared = self.store.cancel_active_trades(exit_reason="CAPITAL_RESET")
            locks_cleared = self.store.delete_all_locks()
            self._write(
                previous,
                operation="reset_capital",
                available_balance=balance,
                locked_balance=ZERO,
                total_realized_pnl=ZERO,
                initial_capital=balance,
            )
            self.store.set_bot_state(BASELINE_RESET_KEY, now.isoformat())
            self.store.append_audit(
                "CAPITAL_RESET",
                {
                    "previous_state": previous,
                    "trades_cleared": trades_cleared,
                    "locks_cleared": locks_cleared,
                    "new_balance": balance,
                    "reset_at": now,
                },
            )
        except PersistenceFailure as exc:
            logger.exception("capital_reset_failed")
            return ResetResult(success=False, new_balance=balance, reset_at=now, error=str(exc))

        logger.warning(
            "capital_reset",
            extra={
                "extra": {
                    "previous_available": str(previous.available_balance),
                    "previous_locked": str(previous.locked_balance),
                    "trades_cleared": trades_cleared,
                    "locks_cleared": locks_cleared,
                    "new_balance": str(balance),
                }
            },
        )
        return ResetResult(
            success=True,
            new_balance=balance,
            reset_at=now,
            previous_state=previous,
            trades_cleared=trades_cleared,
            locks_cleared=locks_cleared,
        )

    def reconcile_locks(self, active_trade_ids: Iterable[str]) -> list[str]:
        """Release locks that no longer belong to an active trade."""
        active = set(active_trade_ids)
        released: list[str] = []
        for lock in self.get_active_locks():
            if lock.trade_id in active:
                continue
            if self.release(lock.trade_id):
                released.append(lock.trade_id)
        if released:
            logger.warning(
                "capital_orphaned_locks_released",
                extra={"extra": {"trade_ids": released, "count": len(released)}},
            )
        return released

    # run epochs

    def set_run_epoch(
        self,
        run_id: str,
        starting_capital: Decimal,
        *,
        parent_run_id: str | None = None,
    ) -> RunEpoch:
        epoch = RunEpoch(
            run_id=run_id,
            starting_capital=starting_capital,
            started_at=self.now_provider(),
            parent_run_id=parent_run_id,
        )
        self.store.start_run_epoch(epoch)
        self._run_epoch = epoch
        logger.info(
            "run_epoch_started",
            extra={
                "extra": {
                    "run_id": run_id,
                    "starting_capital": str(starting_capital),
                    "parent_run_id": parent_run_id,
                }
            },
        )
        return epoch

    def _require_epoch(self) -> RunEpoch:
        if self._run_epoch is None:
            raise ConfigurationError("run epoch not set")
        return self._run_epoch

    def get_run_scoped_realized_pnl(self) -> Decimal:
        self._require_ready()
        epoch = self._require_epoch()
        return quantize_usd(self.store.sum_closed_pnl_since(epoch.started_at))

    def get_run_scoped_net_equity(self, unrealized_pnl: Decimal) -> RunScopedEquity:
        epoch = self._require_epoch()
        realized = self.get_run_scoped_realized_pnl()
        return RunScopedEquity(
            run_id=epoch.run_id,
            starting_capital=epoch.starting_capital,
            realized_pnl=realized,
            unrealized_pnl=unrealized_pnl,
            net_equity=epoch.starting_capital + realized + unrealized_pnl,
        )

    def validate_equity_sanity(
        self,
        net_equity: Decimal,
        max_unrealized_pnl: Decimal,
        epsilon: Decimal | None = None,
    ) -> None:
        epoch = self._require_epoch()
        eps = self.phantom_equity_epsilon if epsilon is None else epsilon
        ceiling = epoch.starting_capital + max_unrealized_pnl + eps
        if net_equity > ceiling:
            logger.critical(
                "phantom_equity_detected",
                extra={
                    "extra": {
                        "run_id": epoch.run_id,
                        "net_equity": str(net_equity),
                        "starting_capital": str(epoch.starting_capital),
                        "max_unrealized_pnl": str(max_unrealized_pnl),
                        "epsilon": str(eps),
                    }
                },
            )
            raise PhantomEquityViolation(
                f"net equity {net_equity} exceeds ceiling {ceiling} for run {epoch.run_id}"
            )

    def validate_restart_equity(
        self,
        previous_equity: Decimal | None,
        current_equity: Decimal,
        tolerance: Decimal | None = None,
    ) -> None:
        if previous_equity is None:
            return
        tol = self.restart_equity_tolerance if tolerance is None else tolerance
        if current_equity > previous_equity + tol:
            logger.critical(
                "restart_equity_increase_detected",
                extra={
                    "extra": {
                        "previous_equity": str(previous_equity),
                        "current_equity": str(current_equity),
                        "tolerance": str(tol),
                    }
                },
            )
            raise RestartEquityViolation(
                f"equity rose from {previous_equity} to {current_equity} across restart"
            )

    def initialize_fresh_run(self, paper_capital: Decimal, run_id: str) -> RunEpoch:
        if not self._ready and not self.initialize(paper_capital):
            raise ConfigurationError("capital ledger could not be initialized")
        result = self.reset_capital(paper_capital)
        if not result.success:
            raise ConfigurationError(f"fresh run initialization failed: {result.error}")
        return self.set_run_epoch(run_id, paper_capital)

    def initialize_continuation_run(
        self, run_id: str, *, parent_run_id: str | None = None
    ) -> RunEpoch:
        state = self.get_state()
        if parent_run_id is None:
            previous = self.store.get_active_run_epoch()
            parent_run_id = previous.run_id if previous is not None else None
        return self.set_run_epoch(run_id, state.equity, parent_run_id=parent_run_id)

    def record_equity_checkpoint(self, equity: Decimal) -> None:
        self.store.set_bot_state(
            EQUITY_CHECKPOINT_KEY,
            {
                "equity": equity,
                "run_id": self._run_epoch.run_id if self._run_epoch is not None else None,
                "recorded_at": self.now_provider(),
            },
        )

    def get_equity_checkpoint(self) -> Decimal | None:
        raw = self.store.get_bot_state(EQUITY_CHECKPOINT_KEY)
        if not isinstance(raw, dict) or raw.get("equity") is None:
            return None
        return Decimal(str(raw["equity"]))
