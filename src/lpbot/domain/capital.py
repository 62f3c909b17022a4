from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

CENTS = Decimal("0.01")


def ensure_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def quantize_usd(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CapitalState:
    available_balance: Decimal
    locked_balance: Decimal
    total_realized_pnl: Decimal
    initial_capital: Decimal
    updated_at: datetime
    version: int = 0

    @property
    def equity(self) -> Decimal:
        return self.available_balance + self.locked_balance


@dataclass(frozen=True)
class CapitalLock:
    trade_id: str
    amount: Decimal
    locked_at: datetime


class RunEpochStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class RunEpoch:
    run_id: str
    starting_capital: Decimal
    started_at: datetime
    parent_run_id: str | None = None
    status: RunEpochStatus = RunEpochStatus.ACTIVE


@dataclass(frozen=True)
class RunScopedEquity:
    run_id: str
    starting_capital: Decimal
    realized_pnl: Decimal
    unrealized_pnl: Decimal
    net_equity: Decimal


@dataclass(frozen=True)
class ResetResult:
    success: bool
    new_balance: Decimal
    reset_at: datetime
    previous_state: CapitalState | None = None
    trades_cleared: int = 0
    locks_cleared: int = 0
    error: str | None = None


@dataclass(frozen=True)
class LockInvariantReport:
    locked_balance: Decimal
    lock_sum: Decimal
    lock_count: int

    @property
    def gap(self) -> Decimal:
        return self.locked_balance - self.lock_sum

    @property
    def ok(self) -> bool:
        return self.gap == Decimal("0")
