from __future__ import annotations

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from lpbot.config import Settings
from lpbot.services.capital_ledger import CapitalLedger
from lpbot.services.state_store import StateStore


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    explicit = {"PYTEST_CURRENT_TEST"}
    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys and key not in explicit:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    request: pytest.FixtureRequest,
) -> None:
    del isolate_settings_from_host_env
    worker_id = os.getenv("PYTEST_XDIST_WORKER", "gw0")
    test_slug = request.node.nodeid.replace(os.sep, "_").replace("/", "_").replace("::", "_")
    db_name = f"{worker_id}-{test_slug}.sqlite"
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / db_name))


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_store(tmp_path: Path, clock: FakeClock) -> StateStore:
    return StateStore(str(tmp_path / "state.sqlite"), now_provider=clock)


@pytest.fixture
def make_ledger(state_store: StateStore, clock: FakeClock) -> Callable[..., CapitalLedger]:
    def _make(initial_capital: Decimal | str = "10000", **kwargs) -> CapitalLedger:
        ledger = CapitalLedger(state_store, now_provider=clock, **kwargs)
        assert ledger.initialize(Decimal(str(initial_capital)))
        return ledger

    return _make
