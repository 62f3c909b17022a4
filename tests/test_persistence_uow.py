from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from lpbot.domain.capital import CapitalLock, CapitalState, RunEpoch, RunEpochStatus
from lpbot.persistence.uow import UnitOfWorkFactory

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def _state(available: str = "1000") -> CapitalState:
    return CapitalState(
        available_balance=Decimal(available),
        locked_balance=Decimal("0"),
        total_realized_pnl=Decimal("0"),
        initial_capital=Decimal(available),
        updated_at=NOW,
    )


def test_uow_commit_and_rollback(tmp_path) -> None:
    db = tmp_path / "state.sqlite"
    factory = UnitOfWorkFactory(str(db))

    with factory() as uow:
        uow.capital.insert_lock(CapitalLock(trade_id="t1", amount=Decimal("10"), locked_at=NOW))

    with pytest.raises(RuntimeError):
        with factory() as uow:
            uow.capital.insert_lock(CapitalLock(trade_id="t2", amount=Decimal("20"), locked_at=NOW))
            raise RuntimeError("boom")

    with sqlite3.connect(db) as conn:
        t1 = conn.execute("SELECT COUNT(*) FROM capital_locks WHERE trade_id='t1'").fetchone()[0]
        t2 = conn.execute("SELECT COUNT(*) FROM capital_locks WHERE trade_id='t2'").fetchone()[0]
    assert t1 == 1
    assert t2 == 0


def test_read_only_uow_refuses_writes(tmp_path) -> None:
    db = str(tmp_path / "state.sqlite")

    with pytest.raises(PermissionError):
        with UnitOfWorkFactory(db, read_only=True)() as uow:
            uow.capital.insert_capital_state(_state())

    with UnitOfWorkFactory(db, read_only=True)() as uow:
        assert uow.capital.get_capital_state() is None


def test_capital_row_is_single_and_version_guarded(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))

    with factory() as uow:
        assert uow.capital.insert_capital_state(_state("1000")) is True
        assert uow.capital.insert_capital_state(_state("5000")) is False

    with factory() as uow:
        assert uow.capital.update_capital_state(
            expected_version=0,
            available_balance=Decimal("900"),
            locked_balance=Decimal("100"),
            total_realized_pnl=Decimal("0"),
            initial_capital=Decimal("1000"),
            updated_at=NOW,
        )
        stale = uow.capital.update_capital_state(
            expected_version=0,
            available_balance=Decimal("1"),
            locked_balance=Decimal("1"),
            total_realized_pnl=Decimal("0"),
            initial_capital=Decimal("1000"),
            updated_at=NOW,
        )
        assert stale is False

    with factory() as uow:
        state = uow.capital.get_capital_state()
    assert state is not None
    assert state.available_balance == Decimal("900")
    assert state.locked_balance == Decimal("100")
    assert state.version == 1


def test_money_round_trips_as_exact_text(tmp_path) -> None:
    db = tmp_path / "state.sqlite"
    factory = UnitOfWorkFactory(str(db))

    with factory() as uow:
        uow.capital.insert_lock(
            CapitalLock(trade_id="t1", amount=Decimal("0.1") + Decimal("0.2"), locked_at=NOW)
        )

    with factory() as uow:
        lock = uow.capital.get_lock("t1")
    assert lock is not None
    assert lock.amount == Decimal("0.3")
    with sqlite3.connect(db) as conn:
        raw = conn.execute("SELECT typeof(amount) FROM capital_locks").fetchone()[0]
    assert raw == "text"


def test_only_one_run_epoch_is_active(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))

    with factory() as uow:
        uow.capital.insert_run_epoch(RunEpoch("run-1", Decimal("1000"), NOW))
    with factory() as uow:
        assert uow.capital.close_active_run_epochs() == 1
        uow.capital.insert_run_epoch(RunEpoch("run-2", Decimal("1010"), NOW, parent_run_id="run-1"))

    with factory() as uow:
        active = uow.capital.get_active_run_epoch()
    assert active is not None
    assert active.run_id == "run-2"
    assert active.parent_run_id == "run-1"
    assert active.status is RunEpochStatus.ACTIVE
