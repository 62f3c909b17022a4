from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class TradeStatus(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    CANCELLED = "cancelled"


ACTIVE_TRADE_STATUSES = (TradeStatus.OPEN, TradeStatus.CLOSING)


class ExitState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def dump_exit_state(state: ExitState) -> str | None:
    # An open trade has no exit state on disk.
    if state is ExitState.OPEN:
        return None
    return state.value


def load_exit_state(raw: str | None) -> ExitState:
    if raw is None or raw == "":
        return ExitState.OPEN
    return ExitState(str(raw))


class SizingMode(str, Enum):
    STANDARD = "standard"
    AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class PoolCandidate:
    address: str
    name: str
    current_price: Decimal
    score: Decimal = Decimal("0")
    liquidity_slope: Decimal | None = None
    migration_direction: str | None = None


@dataclass(frozen=True)
class EntryFill:
    price_usd: Decimal
    entry_value_usd: Decimal
    fees_usd: Decimal
    slippage_usd: Decimal
    normalized_amount_base: Decimal


@dataclass(frozen=True)
class MarkToMarket:
    price_usd: Decimal
    mtm_value_usd: Decimal
    fees_accrued_usd: Decimal
    unrealized_pnl_usd: Decimal


@dataclass(frozen=True)
class TradeDraft:
    run_id: str | None
    pool_address: str
    pool_name: str
    entry_price: Decimal
    size: Decimal
    sizing_mode: SizingMode
    risk_tier: str
    leverage: Decimal
    score: Decimal
    entry_value_usd: Decimal
    entry_fees_usd: Decimal
    entry_slippage_usd: Decimal
    normalized_amount_base: Decimal
    created_at: datetime


@dataclass(frozen=True)
class Trade:
    id: str
    run_id: str | None
    pool_address: str
    pool_name: str
    entry_price: Decimal
    size: Decimal
    sizing_mode: SizingMode
    risk_tier: str
    leverage: Decimal
    score: Decimal
    entry_value_usd: Decimal
    entry_fees_usd: Decimal
    entry_slippage_usd: Decimal
    normalized_amount_base: Decimal
    status: TradeStatus
    exit_state: ExitState
    created_at: datetime
    exit_price: Decimal | None = None
    exit_value_usd: Decimal | None = None
    exit_fees_usd: Decimal | None = None
    exit_slippage_usd: Decimal | None = None
    pnl_gross: Decimal | None = None
    pnl_net: Decimal | None = None
    exit_reason: str | None = None
    exit_time: datetime | None = None

    @property
    def entry_notional_usd(self) -> Decimal:
        # Entry fees are charged separately when net P&L is computed.
        return self.size - self.entry_fees_usd


@dataclass(frozen=True)
class TradeExitRecord:
    exit_price: Decimal | None
    exit_value_usd: Decimal
    exit_fees_usd: Decimal
    exit_slippage_usd: Decimal
    pnl_gross: Decimal
    pnl_net: Decimal
    exit_reason: str
    exit_time: datetime


@dataclass(frozen=True)
class ExitData:
    reason: str
    exit_price: Decimal | None = None
    exit_asset_value_usd: Decimal | None = None
    exit_fees_usd: Decimal | None = None
    exit_slippage_usd: Decimal | None = None


@dataclass(frozen=True)
class EntryResult:
    success: bool
    reason: str | None = None
    trade: Trade | None = None


@dataclass(frozen=True)
class ExitResult:
    success: bool
    reason: str | None = None
    trade: Trade | None = None
    pnl: Decimal | None = None
    gross_pnl: Decimal | None = None
    total_fees: Decimal | None = None
