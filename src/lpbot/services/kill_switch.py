from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from lpbot.domain.market import (
    AliveRatio,
    KillDecision,
    KillSwitchContext,
    KillSwitchState,
    PoolMetricsSnapshot,
)
from lpbot.observability import get_instrumentation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KillSwitchConfig:
    min_swap_velocity: float = 0.05
    min_liquidity_flow_pct: float = 0.002
    min_entropy: float = 0.5
    kill_max_alive_ratio: float = 0.20
    resume_min_alive_ratio: float = 0.28
    kill_min_health_score: float = 25.0
    resume_min_health_score: float = 35.0
    min_snapshots: int = 10
    min_runtime_seconds: int = 600
    min_active_trades: int = 1
    debounce_cycles: int = 2
    cooldown_seconds: int = 600
    recheck_seconds: int = 60
    market_health_top_n: int = 10
    neutral_market_health: float = 50.0

    def __post_init__(self) -> None:
        if self.resume_min_alive_ratio <= self.kill_max_alive_ratio:
            raise ValueError("resume alive ratio must be strictly greater than the kill threshold")
        if self.resume_min_health_score <= self.kill_min_health_score:
            raise ValueError("resume health score must be strictly greater than the kill threshold")
        if self.debounce_cycles < 1:
            raise ValueError("debounce_cycles must be >= 1")
        if self.market_health_top_n < 1:
            raise ValueError("market_health_top_n must be >= 1")


class KillSwitch:
    def __init__(
        self,
        *,
        config: KillSwitchConfig | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or KillSwitchConfig()
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self.state = KillSwitchState()

    def is_pool_alive(self, metrics: PoolMetricsSnapshot) -> bool:
        cfg = self.config
        if metrics.swap_velocity > cfg.min_swap_velocity:
            return True
        if abs(metrics.liquidity_flow_pct) > cfg.min_liquidity_flow_pct:
            return True
        if metrics.entropy > cfg.min_entropy:
            return True
        baseline = metrics.fee_intensity_baseline_60s
        return baseline > 0 and metrics.fee_intensity > baseline

    def calculate_alive_ratio(self, metrics: Sequence[PoolMetricsSnapshot]) -> AliveRatio:
        if not metrics:
            return AliveRatio(alive_ratio=0.0, is_degraded=True)
        alive = sum(1 for item in metrics if self.is_pool_alive(item))
        return AliveRatio(
            alive_ratio=alive / len(metrics),
            is_degraded=False,
            alive_count=alive,
            total_count=len(metrics),
        )

    def calculate_market_health(self, metrics: Sequence[PoolMetricsSnapshot]) -> float:
        if not metrics:
            return self.config.neutral_market_health
        top = sorted((item.micro_score for item in metrics), reverse=True)
        top = top[: self.config.market_health_top_n]
        return sum(top) / len(top)

    def check_resume_conditions(self, alive_ratio: float, market_health: float) -> bool:
        return (
            alive_ratio > self.config.resume_min_alive_ratio
            and market_health > self.config.resume_min_health_score
        )

    def is_warmed_up(self, context: KillSwitchContext) -> bool:
        return (
            context.snapshot_count >= self.config.min_snapshots
            and context.runtime_seconds >= self.config.min_runtime_seconds
        )

    def _kill_condition(
        self, context: KillSwitchContext, alive_ratio: float, market_health: float
    ) -> str | None:
        cfg = self.config
        if (
            alive_ratio < cfg.kill_max_alive_ratio
            and context.active_trades_count >= cfg.min_active_trades
        ):
            return f"alive ratio {alive_ratio:.2f} < {cfg.kill_max_alive_ratio:.2f}"
        if market_health < cfg.kill_min_health_score:
            return f"market health {market_health:.1f} < {cfg.kill_min_health_score:.1f}"
        return None

    def evaluate(self, context: KillSwitchContext) -> KillDecision:
        now = self.now_provider()
        ratio = self.calculate_alive_ratio(context.pool_metrics)
        health = self.calculate_market_health(context.pool_metrics)
        state = self.state
        state.last_check_timestamp = now
        instrumentation = get_instrumentation()
        instrumentation.histogram("kill_switch_alive_ratio", ratio.alive_ratio)
        instrumentation.histogram("kill_switch_market_health", health)

        def decision(
            *,
            kill_all: bool,
            should_pause: bool,
            reason: str,
            protected: tuple[str, ...] = (),
        ) -> KillDecision:
            remaining = 0.0
            if state.is_killed and state.cooldown_until is not None:
                remaining = max(0.0, (state.cooldown_until - now).total_seconds())
            return KillDecision(
                kill_all=kill_all,
                should_pause=should_pause,
                reason=reason,
                alive_ratio=ratio.alive_ratio,
                market_health=health,
                is_degraded=ratio.is_degraded,
                protected_trade_ids=protected,
                cooldown_remaining_seconds=remaining,
                consecutive_kill_conditions=state.consecutive_kill_conditions,
            )

        if ratio.is_degraded:
            instrumentation.counter("kill_switch_degraded_total")
            logger.warning(
                "kill_switch_degraded_telemetry",
                extra={"extra": {"snapshot_count": context.snapshot_count}},
            )

        if state.is_killed:
            if state.cooldown_until is not None and now < state.cooldown_until:
                return decision(
                    kill_all=False,
                    should_pause=True,
                    reason=f"killed: cooldown active ({state.kill_reason})",
                )
            if self.check_resume_conditions(ratio.alive_ratio, health):
                state.is_killed = False
                state.kill_timestamp = None
                state.cooldown_until = None
                state.consecutive_kill_conditions = 0
                state.kill_reason = None
                instrumentation.counter("kill_switch_resumed_total")
                logger.info(
                    "kill_switch_resumed",
                    extra={
                        "extra": {"alive_ratio": ratio.alive_ratio, "market_health": health}
                    },
                )
                return decision(kill_all=False, should_pause=False, reason="resumed")
            state.cooldown_until = now + timedelta(seconds=self.config.recheck_seconds)
            return decision(
                kill_all=False,
                should_pause=True,
                reason=(
                    f"killed: resume conditions not met (alive {ratio.alive_ratio:.2f}, "
                    f"health {health:.1f})"
                ),
            )

        # Warm-up cycles leave the debounce counter untouched.
        if not self.is_warmed_up(context):
            return decision(kill_all=False, should_pause=False, reason="warming up")

        condition = self._kill_condition(context, ratio.alive_ratio, health)
        if condition is None:
            state.consecutive_kill_conditions = 0
            return decision(kill_all=False, should_pause=False, reason="healthy")

        state.consecutive_kill_conditions += 1
        if state.consecutive_kill_conditions < self.config.debounce_cycles:
            logger.warning(
                "kill_switch_condition_pending",
                extra={
                    "extra": {
                        "condition": condition,
                        "consecutive": state.consecutive_kill_conditions,
                        "required": self.config.debounce_cycles,
                    }
                },
            )
            return decision(
                kill_all=False,
                should_pause=False,
                reason=(
                    f"kill condition pending ({state.consecutive_kill_conditions}/"
                    f"{self.config.debounce_cycles}): {condition}"
                ),
            )

        state.is_killed = True
        state.kill_timestamp = now
        state.cooldown_until = now + timedelta(seconds=self.config.cooldown_seconds)
        state.kill_reason = condition
        protected = self._protected_trade_ids(context)
        instrumentation.counter(
            "kill_switch_triggered_total", attrs={"degraded": ratio.is_degraded}
        )
        logger.critical(
            "kill_switch_triggered",
            extra={
                "extra": {
                    "reason": condition,
                    "alive_ratio": ratio.alive_ratio,
                    "market_health": health,
                    "is_degraded": ratio.is_degraded,
                    "active_trades": context.active_trades_count,
                    "protected_trade_ids": list(protected),
                    "cooldown_until": state.cooldown_until.isoformat(),
                }
            },
        )
        return decision(
            kill_all=True, should_pause=True, reason=f"kill: {condition}", protected=protected
        )

    def _protected_trade_ids(self, context: KillSwitchContext) -> tuple[str, ...]:
        if context.is_protected is None:
            return ()
        return tuple(trade_id for trade_id in context.active_trade_ids if context.is_protected(trade_id))
