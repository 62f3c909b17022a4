from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

from lpbot.domain.errors import (
    FatalInvariantBreach,
    LpbotError,
    NormalizationFailure,
    classify_failure,
)
from lpbot.domain.market import KillDecision, KillSwitchContext, PoolMetricsSnapshot
from lpbot.domain.trade import ExitData
from lpbot.logging_context import with_cycle_context
from lpbot.observability import get_instrumentation
from lpbot.services.capital_ledger import CapitalLedger
from lpbot.services.kill_switch import KillSwitch
from lpbot.services.trade_orchestrator import TradeOrchestrator

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
KILL_SWEEP_CALLER = "KILL_SWITCH_SWEEP"


@dataclass(frozen=True)
class CycleReport:
    cycle_id: str
    skipped: bool = False
    halted: bool = False
    reason: str | None = None
    kill_decision: KillDecision | None = None
    forced_exits: tuple[str, ...] = ()
    failed_exits: Mapping[str, str] = field(default_factory=dict)
    net_equity: Decimal | None = None


class CycleRunner:
    """Runs one scan cycle at a time and stops all trading on a fatal invariant breach."""

    def __init__(
        self,
        *,
        ledger: CapitalLedger,
        orchestrator: TradeOrchestrator,
        kill_switch: KillSwitch,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.kill_switch = kill_switch
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self.snapshot_count = 0
        self.halted = False
        self.halt_reason: str | None = None
        self._cycle_lock = threading.Lock()

    def run_cycle(
        self,
        *,
        metrics: Sequence[PoolMetricsSnapshot],
        runtime_seconds: float,
        mark_prices: Mapping[str, Decimal] | None = None,
        is_protected: Callable[[str], bool] | None = None,
        cycle_id: str | None = None,
    ) -> CycleReport:
        cycle_id = cycle_id or f"cycle_{uuid4().hex[:12]}"
        if self.halted:
            return CycleReport(
                cycle_id=cycle_id, skipped=True, halted=True, reason=f"halted: {self.halt_reason}"
            )
        if not self._cycle_lock.acquire(blocking=False):
            get_instrumentation().counter("cycle_skipped_total")
            logger.warning("cycle_skipped_in_progress", extra={"extra": {"cycle_id": cycle_id}})
            return CycleReport(cycle_id=cycle_id, skipped=True, reason="cycle in progress")
        try:
            epoch = self.ledger.run_epoch
            with with_cycle_context(cycle_id, epoch.run_id if epoch is not None else None):
                return self._run_cycle(
                    cycle_id=cycle_id,
                    metrics=metrics,
                    runtime_seconds=runtime_seconds,
                    mark_prices=mark_prices or {},
                    is_protected=is_protected,
                )
        except FatalInvariantBreach as exc:
            self.halted = True
            self.halt_reason = str(exc)
            get_instrumentation().counter("trading_halted_total", attrs={"error_type": type(exc).__name__})
            logger.critical(
                "trading_halted",
                extra={
                    "extra": {
                        "cycle_id": cycle_id,
                        "error_type": type(exc).__name__,
                        "category": classify_failure(exc).value,
                    }
                },
                exc_info=True,
            )
            return CycleReport(cycle_id=cycle_id, halted=True, reason=f"halted: {exc}")
        finally:
            self._cycle_lock.release()

    def _run_cycle(
        self,
        *,
        cycle_id: str,
        metrics: Sequence[PoolMetricsSnapshot],
        runtime_seconds: float,
        mark_prices: Mapping[str, Decimal],
        is_protected: Callable[[str], bool] | None,
    ) -> CycleReport:
        self.snapshot_count += 1
        active = self.orchestrator.get_active_trades()
        decision = self.kill_switch.evaluate(
            KillSwitchContext(
                pool_metrics=metrics,
                snapshot_count=self.snapshot_count,
                runtime_seconds=runtime_seconds,
                active_trade_ids=tuple(trade.id for trade in active),
                is_protected=is_protected,
            )
        )

        forced: list[str] = []
        failed: dict[str, str] = {}
        if decision.kill_all:
            protected = set(decision.protected_trade_ids)
            for trade in active:
                if trade.id in protected:
                    continue
                try:
                    result = self.orchestrator.exit_position(
                        trade.id,
                        ExitData(reason="KILL_SWITCH", exit_price=mark_prices.get(trade.pool_address)),
                        caller=KILL_SWEEP_CALLER,
                    )
                except FatalInvariantBreach:
                    raise
                except LpbotError as exc:
                    logger.exception(
                        "kill_switch_forced_exit_failed",
                        extra={
                            "extra": {
                                "trade_id": trade.id,
                                "category": classify_failure(exc).value,
                            }
                        },
                    )
                    failed[trade.id] = f"{type(exc).__name__}: {exc}"
                    continue
                if result.success:
                    forced.append(trade.id)
                else:
                    failed[trade.id] = result.reason or "unknown"
            get_instrumentation().counter("kill_switch_forced_exits_total", len(forced))
            logger.warning(
                "kill_switch_sweep_completed",
                extra={
                    "extra": {
                        "forced": len(forced),
                        "failed": len(failed),
                        "protected": sorted(protected),
                    }
                },
            )

        net_equity = self._check_equity(mark_prices)
        return CycleReport(
            cycle_id=cycle_id,
            reason=decision.reason,
            kill_decision=decision,
            forced_exits=tuple(forced),
            failed_exits=failed,
            net_equity=net_equity,
        )

    def _check_equity(self, mark_prices: Mapping[str, Decimal]) -> Decimal | None:
        epoch = self.ledger.run_epoch
        if epoch is None:
            return None
        now = self.now_provider()
        unrealized = ZERO
        for trade in self.orchestrator.get_active_trades():
            price = mark_prices.get(trade.pool_address)
            if price is None:
                continue
            try:
                mtm = self.orchestrator.valuation.mark_to_market(trade, price, now=now)
            except NormalizationFailure as exc:
                logger.warning(
                    "cycle_mark_to_market_failed",
                    extra={"extra": {"trade_id": trade.id, "reason": exc.reason}},
                )
                continue
            unrealized += mtm.unrealized_pnl_usd
        state = self.ledger.get_state()
        equity = self.ledger.get_run_scoped_net_equity(unrealized)
        # Ledger growth since the epoch bounds what realized P&L may claim.
        justified = (state.equity - epoch.starting_capital) + max(unrealized, ZERO)
        self.ledger.validate_equity_sanity(equity.net_equity, justified)
        self.ledger.record_equity_checkpoint(state.equity)
        return equity.net_equity
