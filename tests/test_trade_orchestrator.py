from __future__ import annotations

import sqlite3
from decimal import Decimal

import pytest

from lpbot.domain.errors import NormalizationFailure, PersistenceFailure
from lpbot.domain.trade import (
    ExitData,
    ExitState,
    PoolCandidate,
    SizingMode,
    TradeStatus,
)
from lpbot.services.capital_ledger import CapitalLedger
from lpbot.services.exit_authority import ExitAuthority
from lpbot.services.state_store import StateStore
from lpbot.services.trade_orchestrator import TradeOrchestrator, sizing_mode_for
from lpbot.services.valuation import BpsValuationService


def _pool(address: str = "pool-a", **overrides) -> PoolCandidate:
    fields = {
        "address": address,
        "name": f"{address.upper()}/USDC",
        "current_price": Decimal("2"),
        "score": Decimal("65"),
    }
    fields.update(overrides)
    return PoolCandidate(**fields)


def _build(
    store: StateStore,
    clock,
    *,
    ledger: CapitalLedger | None = None,
    authority=None,
    valuation=None,
):
    if ledger is None:
        ledger = CapitalLedger(store, now_provider=clock)
        assert ledger.initialize(Decimal("10000"))
        ledger.set_run_epoch("run-1", Decimal("10000"))
    return TradeOrchestrator(
        ledger=ledger,
        exit_authority=authority or ExitAuthority(store),
        store=store,
        valuation=valuation or BpsValuationService(),
        now_provider=clock,
    )


class ExitFeeFailingValuation(BpsValuationService):
    def price_exit_fees(self, exit_value_usd: Decimal) -> Decimal:
        raise NormalizationFailure("no fee quote", reason="exit_fee_unavailable")


class RefusingLedger(CapitalLedger):
    def allocate(self, trade_id: str, amount: Decimal) -> bool:
        return False


class BrokenAllocateLedger(CapitalLedger):
    def allocate(self, trade_id: str, amount: Decimal) -> bool:
        raise PersistenceFailure("write failed", operation="allocate")


class BrokenSettlementLedger(CapitalLedger):
    def apply_pnl(self, trade_id: str, pnl: Decimal) -> bool:
        raise PersistenceFailure("write failed", operation="apply_pnl")


class TradeInsertFailingStore(StateStore):
    def insert_trade(self, draft):
        raise PersistenceFailure("insert failed", operation="insert_trade")


class ExitWriteFailingStore(StateStore):
    fail_exit_write = True

    def record_trade_exit(self, trade_id, record) -> bool:
        if self.fail_exit_write:
            raise PersistenceFailure("write failed", operation="record_trade_exit")
        return super().record_trade_exit(trade_id, record)


class ContendedAuthority(ExitAuthority):
    def acquire_exit_lock(self, trade_id: str, caller: str) -> bool:
        return False


def _ledger_for(store: StateStore, clock, cls=CapitalLedger) -> CapitalLedger:
    ledger = cls(store, now_provider=clock)
    assert ledger.initialize(Decimal("10000"))
    ledger.set_run_epoch("run-1", Decimal("10000"))
    return ledger


# entry


def test_enter_position_persists_trade_and_locks_capital(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)

    result = orchestrator.enter_position(_pool(), SizingMode.STANDARD, Decimal("1000"))

    assert result.success is True
    trade = result.trade
    assert trade is not None
    assert trade.size == Decimal("1000")
    assert trade.run_id == "run-1"
    assert trade.entry_fees_usd == Decimal("3")
    assert trade.entry_slippage_usd == Decimal("2")
    assert trade.entry_value_usd == Decimal("995")
    assert trade.normalized_amount_base == Decimal("497.5")
    stored = state_store.get_trade(trade.id)
    assert stored is not None and stored.status is TradeStatus.OPEN
    state = orchestrator.ledger.get_state()
    assert state.available_balance == Decimal("9000")
    assert state.locked_balance == Decimal("1000")
    assert [t.id for t in orchestrator.get_active_trades()] == [trade.id]


def test_enter_rejects_when_ledger_not_ready(state_store, clock) -> None:
    ledger = CapitalLedger(state_store, now_provider=clock)
    orchestrator = _build(state_store, clock, ledger=ledger)

    result = orchestrator.enter_position(_pool(), SizingMode.STANDARD, Decimal("1000"))

    assert result.success is False
    assert result.reason == "capital ledger not initialized"


def test_enter_rejects_second_trade_on_same_pool(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    assert orchestrator.enter_position(_pool(), SizingMode.STANDARD, Decimal("500")).success

    result = orchestrator.enter_position(_pool(), SizingMode.STANDARD, Decimal("500"))

    assert result.success is False
    assert result.reason == "already have open trade on POOL-A/USDC"


def test_enter_rejects_below_liquid_capital_floor(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    assert orchestrator.ledger.allocate("external", Decimal("9600"))

    result = orchestrator.enter_position(_pool(), SizingMode.STANDARD, Decimal("300"))

    assert result.success is False
    assert result.reason == "insufficient liquid capital: balance $400.00 < floor $500.00"


def test_enter_rejects_at_deployment_cap(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    for idx in range(4):
        assert orchestrator.enter_position(
            _pool(f"pool-{idx}"), SizingMode.STANDARD, Decimal("1000")
        ).success

    result = orchestrator.enter_position(_pool("pool-9"), SizingMode.STANDARD, Decimal("1000"))

    assert result.success is False
    assert result.reason == "portfolio exposure 40.0% >= 40% max"


@pytest.mark.parametrize(
    "overrides",
    [
        {"migration_direction": "out"},
        {"liquidity_slope": Decimal("-0.08")},
    ],
)
def test_enter_rejects_adverse_migration(state_store, clock, overrides) -> None:
    orchestrator = _build(state_store, clock)

    result = orchestrator.enter_position(_pool(**overrides), SizingMode.STANDARD, Decimal("500"))

    assert result.success is False
    assert result.reason is not None and result.reason.startswith("adverse liquidity migration")
    assert state_store.list_active_trades() == []


def test_enter_clamps_to_mode_bounds(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)

    aggressive = orchestrator.enter_position(_pool("a"), SizingMode.AGGRESSIVE, Decimal("10000"))
    tiny = orchestrator.enter_position(_pool("b"), SizingMode.STANDARD, Decimal("50"))

    assert aggressive.trade is not None and aggressive.trade.size == Decimal("1500")
    assert tiny.trade is not None and tiny.trade.size == Decimal("200")


def test_enter_clamps_to_deployment_headroom(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    for idx in range(3):
        orchestrator.enter_position(_pool(f"pool-{idx}"), SizingMode.STANDARD, Decimal("1000"))

    result = orchestrator.enter_position(
        _pool("pool-9"), SizingMode.STANDARD, Decimal("2000"), total_capital=Decimal("30000")
    )

    assert result.success is True
    assert result.trade is not None and result.trade.size == Decimal("1000")


def test_enter_rejects_when_headroom_below_minimum_size(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    for idx, size in enumerate(["1000", "1000", "1000", "900"]):
        orchestrator.enter_position(_pool(f"pool-{idx}"), SizingMode.STANDARD, Decimal(size))

    result = orchestrator.enter_position(_pool("pool-9"), SizingMode.STANDARD, Decimal("500"))

    assert result.success is False
    assert result.reason == "insufficient room under deployment cap"


def test_headroom_floor_follows_sizing_mode(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    for idx, size in enumerate(["1000", "1000", "1000", "700"]):
        orchestrator.enter_position(_pool(f"pool-{idx}"), SizingMode.STANDARD, Decimal(size))

    aggressive = orchestrator.enter_position(_pool("pool-8"), SizingMode.AGGRESSIVE, Decimal("1000"))
    standard = orchestrator.enter_position(_pool("pool-9"), SizingMode.STANDARD, Decimal("1000"))

    assert aggressive.success is False
    assert aggressive.reason == "insufficient room under deployment cap"
    assert standard.success is True
    assert standard.trade is not None and standard.trade.size == Decimal("300")


def test_normalization_failure_aborts_without_side_effects(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)

    result = orchestrator.enter_position(
        _pool(current_price=Decimal("0")), SizingMode.STANDARD, Decimal("1000")
    )

    assert result.success is False
    assert result.reason == "normalization failure: invalid_entry_price"
    assert state_store.list_active_trades() == []
    assert orchestrator.ledger.get_balance() == Decimal("10000")


def test_trade_persistence_failure_leaves_capital_untouched(tmp_path, clock) -> None:
    store = TradeInsertFailingStore(str(tmp_path / "state.sqlite"), now_provider=clock)
    orchestrator = _build(store, clock)

    result = orchestrator.enter_position(_pool(), SizingMode.STANDARD, Decimal("1000"))

    assert result.success is False
    assert result.reason is not None and result.reason.startswith("trade persistence failed")
    assert orchestrator.ledger.get_state().locked_balance == Decimal("0")


@pytest.mark.parametrize(
    ("ledger_cls", "exit_reason"),
    [
        (RefusingLedger, "INSUFFICIENT_CAPITAL"),
        (BrokenAllocateLedger, "CAPITAL_ALLOCATION_ERROR"),
    ],
)
def test_failed_allocation_cancels_persisted_trade(
    state_store, clock, ledger_cls, exit_reason
) -> None:
    ledger = _ledger_for(state_store, clock, ledger_cls)
    orchestrator = _build(state_store, clock, ledger=ledger)

    result = orchestrator.enter_position(_pool(), SizingMode.STANDARD, Decimal("1000"))

    assert result.success is False
    assert state_store.list_active_trades() == []
    assert orchestrator.get_active_trades() == []
    [cancelled] = [
        trade
        for trade in (state_store.get_trade(tid) for tid in _all_trade_ids(state_store))
        if trade is not None
    ]
    assert cancelled.status is TradeStatus.CANCELLED
    assert cancelled.exit_reason == exit_reason


def _all_trade_ids(store: StateStore) -> list[str]:
    with sqlite3.connect(store.db_path) as conn:
        rows = conn.execute("SELECT id FROM trades").fetchall()
    return [str(row[0]) for row in rows]


def test_sizing_mode_for_expansion_pulse() -> None:
    assert sizing_mode_for(True) is SizingMode.AGGRESSIVE
    assert sizing_mode_for(False) is SizingMode.STANDARD


# exit


def _open(orchestrator: TradeOrchestrator, address: str = "pool-a") -> str:
    result = orchestrator.enter_position(_pool(address), SizingMode.STANDARD, Decimal("1000"))
    assert result.success and result.trade is not None
    return result.trade.id


def test_risk_exit_settles_true_pnl(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    trade_id = _open(orchestrator)
    clock.advance(hours=2)

    result = orchestrator.exit_position(
        trade_id, ExitData(reason="STOP_LOSS", exit_price=Decimal("1.8")), caller="risk"
    )

    fees_accrued = Decimal("995") * Decimal("5") * Decimal("2") / Decimal("10000")
    mtm_value = Decimal("497.5") * Decimal("1.8") + fees_accrued
    exit_fees = mtm_value * Decimal("30") / Decimal("10000")
    gross = mtm_value - Decimal("997")
    net = gross - (Decimal("3") + exit_fees)
    assert result.success is True
    assert result.gross_pnl == gross
    assert result.pnl == net
    assert result.total_fees == Decimal("3") + exit_fees
    assert result.trade is not None and result.trade.status is TradeStatus.CLOSED

    stored = state_store.get_trade(trade_id)
    assert stored is not None
    assert stored.status is TradeStatus.CLOSED
    assert stored.exit_state is ExitState.CLOSED
    assert stored.pnl_net == net
    state = orchestrator.ledger.get_state()
    assert state.locked_balance == Decimal("0")
    assert state.available_balance == Decimal("10000") + net
    assert state.total_realized_pnl == net
    assert orchestrator.get_active_trades() == []
    [audit] = state_store.list_audit(action="TRADE_EXIT")
    assert audit["details"]["caller"] == "risk"
    assert audit["details"]["hold_time_seconds"] == 7200.0


def test_second_exit_is_rejected(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    trade_id = _open(orchestrator)
    exit_data = ExitData(reason="KILL_SWITCH", exit_price=Decimal("2"))

    first = orchestrator.exit_position(trade_id, exit_data)
    second = orchestrator.exit_position(trade_id, exit_data)

    assert first.success is True
    assert second.success is False
    assert second.reason is not None and "already closing/closed" in second.reason
    assert orchestrator.ledger.get_state().total_realized_pnl == first.pnl


def test_noise_exit_suppressed_before_min_hold(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    trade_id = _open(orchestrator)
    clock.advance(minutes=10)

    result = orchestrator.exit_position(
        trade_id, ExitData(reason="PROFIT_TAKE", exit_price=Decimal("2.2"))
    )

    assert result.success is False
    assert result.reason == "exit suppressed: MIN_HOLD"
    assert orchestrator.exit_authority.can_exit_trade(trade_id) is True


def test_noise_exit_waits_for_fee_amortization(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    trade_id = _open(orchestrator)

    clock.advance(minutes=61)
    early = orchestrator.exit_position(trade_id, ExitData(reason="SCORE_DROP", exit_price=Decimal("2")))
    assert early.success is False
    assert early.reason == "exit suppressed: COST_NOT_AMORTIZED"

    clock.advance(hours=200)
    late = orchestrator.exit_position(trade_id, ExitData(reason="SCORE_DROP", exit_price=Decimal("2")))
    assert late.success is True


def test_risk_exit_bypasses_noise_suppression(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    trade_id = _open(orchestrator)
    clock.advance(minutes=1)

    result = orchestrator.exit_position(
        trade_id, ExitData(reason="emergency kill_switch", exit_price=Decimal("2"))
    )

    assert result.success is True


def test_exit_persistence_failure_reopens_trade(tmp_path, clock) -> None:
    store = ExitWriteFailingStore(str(tmp_path / "state.sqlite"), now_provider=clock)
    orchestrator = _build(store, clock)
    trade_id = _open(orchestrator)

    failed = orchestrator.exit_position(trade_id, ExitData(reason="STOP_LOSS", exit_price=Decimal("2")))

    assert failed.success is False
    assert failed.reason is not None and failed.reason.startswith("exit persistence failed")
    assert orchestrator.exit_authority.can_exit_trade(trade_id) is True
    assert orchestrator.ledger.get_state().locked_balance == Decimal("1000")

    store.fail_exit_write = False
    retried = orchestrator.exit_position(trade_id, ExitData(reason="STOP_LOSS", exit_price=Decimal("2")))
    assert retried.success is True
    assert orchestrator.ledger.get_state().locked_balance == Decimal("0")


def test_settlement_failure_does_not_reopen_trade(state_store, clock) -> None:
    ledger = _ledger_for(state_store, clock, BrokenSettlementLedger)
    orchestrator = _build(state_store, clock, ledger=ledger)
    trade_id = _open(orchestrator)

    result = orchestrator.exit_position(trade_id, ExitData(reason="STOP_LOSS", exit_price=Decimal("2")))

    assert result.success is True
    stored = state_store.get_trade(trade_id)
    assert stored is not None and stored.exit_state is ExitState.CLOSED
    assert state_store.get_lock(trade_id) is not None
    assert orchestrator.exit_authority.can_exit_trade(trade_id) is False


def test_exit_lock_contention_is_reported(state_store, clock) -> None:
    orchestrator = _build(state_store, clock, authority=ContendedAuthority(state_store))
    trade_id = _open(orchestrator)

    result = orchestrator.exit_position(trade_id, ExitData(reason="STOP_LOSS", exit_price=Decimal("2")))

    assert result.success is False
    assert result.reason == "could not acquire exit lock - another exit in progress"


def test_exit_unknown_trade(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    result = orchestrator.exit_position("nope", ExitData(reason="STOP_LOSS"))
    assert result.success is False
    assert result.reason == "trade nope not found"


def test_exit_uses_reported_asset_value_over_mark(state_store, clock) -> None:
    orchestrator = _build(state_store, clock)
    trade_id = _open(orchestrator)

    result = orchestrator.exit_position(
        trade_id,
        ExitData(
            reason="FORCED_EXIT",
            exit_price=None,
            exit_asset_value_usd=Decimal("1100"),
            exit_fees_usd=Decimal("4"),
        ),
    )

    assert result.success is True
    assert result.gross_pnl == Decimal("103")
    assert result.pnl == Decimal("96")


def test_exit_after_restart_reads_trade_from_store(tmp_path, clock) -> None:
    db_path = str(tmp_path / "state.sqlite")
    first = _build(StateStore(db_path, now_provider=clock), clock)
    trade_id = _open(first)

    store = StateStore(db_path, now_provider=clock)
    ledger = CapitalLedger(store, now_provider=clock)
    assert ledger.initialize(Decimal("10000"))
    restarted = _build(store, clock, ledger=ledger)
    assert restarted.hydrate_active_trades() == 1
    assert restarted.has_active_trade("pool-a") is True

    result = restarted.exit_position(trade_id, ExitData(reason="RESTART_RECONCILE", exit_price=Decimal("2")))

    assert result.success is True
    assert restarted.get_active_trades() == []


def test_exit_fee_pricing_failure_leaves_trade_open(state_store, clock) -> None:
    orchestrator = _build(state_store, clock, valuation=ExitFeeFailingValuation())
    trade_id = _open(orchestrator)

    failed = orchestrator.exit_position(trade_id, ExitData(reason="KILL_SWITCH", exit_price=Decimal("2")))

    assert failed.success is False
    assert failed.reason == "exit fee pricing failed: exit_fee_unavailable"
    stored = state_store.get_trade(trade_id)
    assert stored is not None and stored.status is TradeStatus.OPEN
    assert orchestrator.exit_authority.can_exit_trade(trade_id) is True
    assert state_store.get_lock(trade_id) is not None

    orchestrator.valuation = BpsValuationService()
    retried = orchestrator.exit_position(trade_id, ExitData(reason="KILL_SWITCH", exit_price=Decimal("2")))
    assert retried.success is True
    assert state_store.get_lock(trade_id) is None
