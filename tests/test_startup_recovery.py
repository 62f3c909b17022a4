from __future__ import annotations

from decimal import Decimal

import pytest

from lpbot.domain.errors import ReconciliationSealViolation, RestartEquityViolation
from lpbot.domain.trade import ExitData, ExitState, SizingMode, TradeDraft, TradeStatus
from lpbot.services.capital_ledger import CapitalLedger
from lpbot.services.exit_authority import ExitAuthority
from lpbot.services.reconciliation_seal import SEAL_STATE_KEY, ReconciliationSeal, SealMode
from lpbot.services.startup_recovery import StartupRecoveryService
from lpbot.services.state_store import StateStore
from lpbot.services.trade_orchestrator import TradeOrchestrator
from lpbot.services.valuation import BpsValuationService


def _draft(clock, pool: str = "pool-a", size: str = "400") -> TradeDraft:
    return TradeDraft(
        run_id="run-0",
        pool_address=pool,
        pool_name=f"{pool}/USDC",
        entry_price=Decimal("2"),
        size=Decimal(size),
        sizing_mode=SizingMode.STANDARD,
        risk_tier="B",
        leverage=Decimal("1"),
        score=Decimal("60"),
        entry_value_usd=Decimal(size) * Decimal("0.995"),
        entry_fees_usd=Decimal(size) * Decimal("0.003"),
        entry_slippage_usd=Decimal(size) * Decimal("0.002"),
        normalized_amount_base=Decimal(size) * Decimal("0.995") / Decimal("2"),
        created_at=clock(),
    )


def _service(store: StateStore, clock, **ledger_kwargs):
    seal = ReconciliationSeal(now_provider=clock)
    ledger = CapitalLedger(store, seal=seal, now_provider=clock, **ledger_kwargs)
    return StartupRecoveryService(ledger=ledger, store=store, seal=seal), ledger, seal


def test_fresh_start_seeds_paper_capital_and_seals(state_store, clock) -> None:
    service, ledger, seal = _service(state_store, clock)

    result = service.run(run_id="run-1", fresh_start=True, paper_capital=Decimal("10000"))

    assert result.mode is SealMode.FRESH_START
    assert result.starting_capital == Decimal("10000")
    assert result.open_trades == 0
    assert seal.is_sealed is True
    assert ledger.run_epoch is not None and ledger.run_epoch.run_id == "run-1"
    persisted = state_store.get_bot_state(SEAL_STATE_KEY)
    assert persisted["run_id"] == "run-1"
    assert persisted["mode"] == "fresh_start"
    assert ledger.get_equity_checkpoint() == Decimal("10000")


def test_fresh_start_discards_previous_state(state_store, clock, make_ledger) -> None:
    previous = make_ledger("5000")
    trade = state_store.insert_trade(_draft(clock))
    assert previous.allocate(trade.id, Decimal("400"))

    service, ledger, _ = _service(state_store, clock)
    service.run(run_id="run-2", fresh_start=True, paper_capital=Decimal("10000"))

    state = ledger.get_state()
    assert state.available_balance == Decimal("10000")
    assert state.locked_balance == Decimal("0")
    cancelled = state_store.get_trade(trade.id)
    assert cancelled is not None and cancelled.status is TradeStatus.CANCELLED


def test_continuation_cancels_unfunded_trades_and_releases_orphan_locks(
    state_store, clock, make_ledger
) -> None:
    previous = make_ledger("10000")
    funded = state_store.insert_trade(_draft(clock, "pool-a"))
    unfunded = state_store.insert_trade(_draft(clock, "pool-b"))
    assert previous.allocate(funded.id, Decimal("400"))
    assert previous.allocate("ghost", Decimal("300"))

    service, ledger, seal = _service(state_store, clock)
    result = service.run(run_id="run-2", fresh_start=False, paper_capital=Decimal("10000"))

    assert result.mode is SealMode.CONTINUATION
    assert result.orphaned_trades_cancelled == (unfunded.id,)
    assert result.orphaned_locks_released == ("ghost",)
    assert result.open_trades == 1
    assert result.lock_invariant_gap == Decimal("0")
    assert result.starting_capital == Decimal("10000")
    state = ledger.get_state()
    assert state.available_balance == Decimal("9600")
    assert state.locked_balance == Decimal("400")
    assert seal.data is not None and seal.data.recovered_locks == 1
    orphan = state_store.get_trade(unfunded.id)
    assert orphan is not None and orphan.exit_reason == "ORPHANED_NO_LOCK"


def test_continuation_reopens_exit_interrupted_mid_close(tmp_path, clock) -> None:
    db_path = str(tmp_path / "restart.sqlite")
    before = StateStore(db_path, now_provider=clock)
    previous = CapitalLedger(before, now_provider=clock)
    assert previous.initialize(Decimal("10000"))
    trade = before.insert_trade(_draft(clock, "pool-a"))
    assert previous.allocate(trade.id, Decimal("400"))
    assert ExitAuthority(before).acquire_exit_lock(trade.id, "crashed-worker")

    store = StateStore(db_path, now_provider=clock)
    service, ledger, _ = _service(store, clock)
    result = service.run(run_id="run-2", fresh_start=False, paper_capital=Decimal("10000"))

    assert result.exits_reopened == (trade.id,)
    assert result.orphaned_trades_cancelled == ()
    assert result.orphaned_locks_released == ()
    reopened = store.get_trade(trade.id)
    assert reopened is not None
    assert reopened.status is TradeStatus.OPEN
    assert reopened.exit_state is ExitState.OPEN

    orchestrator = TradeOrchestrator(
        ledger=ledger,
        exit_authority=ExitAuthority(store),
        store=store,
        valuation=BpsValuationService(),
        now_provider=clock,
    )
    exited = orchestrator.exit_position(
        trade.id, ExitData(reason="RESTART_RECONCILE", exit_price=Decimal("2"))
    )
    assert exited.success is True
    assert ledger.get_active_locks() == []


def test_continuation_links_parent_run(state_store, clock, make_ledger) -> None:
    make_ledger("10000").set_run_epoch("run-1", Decimal("10000"))

    service, ledger, _ = _service(state_store, clock)
    service.run(run_id="run-2", fresh_start=False, paper_capital=Decimal("10000"))

    epoch = state_store.get_active_run_epoch()
    assert epoch is not None
    assert epoch.run_id == "run-2"
    assert epoch.parent_run_id == "run-1"


def test_restart_equity_increase_aborts_before_seal(state_store, clock, make_ledger) -> None:
    previous = make_ledger("10000")
    previous.record_equity_checkpoint(Decimal("9000"))

    service, _, seal = _service(state_store, clock)
    with pytest.raises(RestartEquityViolation):
        service.run(run_id="run-2", fresh_start=False, paper_capital=Decimal("10000"))

    assert seal.is_sealed is False
    assert state_store.get_bot_state(SEAL_STATE_KEY) is None


def test_restart_within_tolerance_passes(state_store, clock, make_ledger) -> None:
    make_ledger("10000").record_equity_checkpoint(Decimal("9996"))

    service, _, _ = _service(state_store, clock)
    result = service.run(run_id="run-2", fresh_start=False, paper_capital=Decimal("10000"))

    assert result.previous_equity == Decimal("9996")


def test_recovery_runs_once_per_process(state_store, clock) -> None:
    service, _, _ = _service(state_store, clock)
    service.run(run_id="run-1", fresh_start=True, paper_capital=Decimal("10000"))

    with pytest.raises(ReconciliationSealViolation):
        service.run(run_id="run-1b", fresh_start=False, paper_capital=Decimal("10000"))


def test_sealed_ledger_refuses_reset_unless_test_mode(tmp_path, clock) -> None:
    store = StateStore(str(tmp_path / "state.sqlite"), now_provider=clock)
    service, ledger, _ = _service(store, clock)
    service.run(run_id="run-1", fresh_start=True, paper_capital=Decimal("10000"))

    with pytest.raises(ReconciliationSealViolation):
        ledger.reset_capital(Decimal("50000"))

    testing, test_ledger, _ = _service(store, clock, test_mode=True)
    testing.run(run_id="run-2", fresh_start=False, paper_capital=Decimal("10000"))
    assert test_ledger.reset_capital(Decimal("50000")).success is True


def test_persisted_seal_round_trips(state_store, clock) -> None:
    service, _, seal = _service(state_store, clock)
    service.run(run_id="run-1", fresh_start=True, paper_capital=Decimal("10000"))

    restored = ReconciliationSeal.from_state(state_store.get_bot_state(SEAL_STATE_KEY))

    assert restored.is_sealed is True
    assert restored.data == seal.data
