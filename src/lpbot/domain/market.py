from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class PoolMetricsSnapshot:
    pool_address: str
    swap_velocity: float = 0.0
    liquidity_flow_pct: float = 0.0
    entropy: float = 0.0
    fee_intensity: float = 0.0
    fee_intensity_baseline_60s: float = 0.0
    micro_score: float = 0.0


@dataclass(frozen=True)
class AliveRatio:
    alive_ratio: float
    is_degraded: bool
    alive_count: int = 0
    total_count: int = 0


@dataclass
class KillSwitchState:
    is_killed: bool = False
    kill_timestamp: datetime | None = None
    cooldown_until: datetime | None = None
    consecutive_kill_conditions: int = 0
    last_check_timestamp: datetime | None = None
    kill_reason: str | None = None


ProtectionPredicate = Callable[[str], bool]


@dataclass(frozen=True)
class KillSwitchContext:
    pool_metrics: Sequence[PoolMetricsSnapshot]
    snapshot_count: int
    runtime_seconds: float
    active_trade_ids: Sequence[str] = ()
    is_protected: ProtectionPredicate | None = None

    @property
    def active_trades_count(self) -> int:
        return len(self.active_trade_ids)


@dataclass(frozen=True)
class KillDecision:
    kill_all: bool
    should_pause: bool
    reason: str
    alive_ratio: float
    market_health: float
    is_degraded: bool
    protected_trade_ids: tuple[str, ...] = field(default_factory=tuple)
    cooldown_remaining_seconds: float = 0.0
    consecutive_kill_conditions: int = 0
