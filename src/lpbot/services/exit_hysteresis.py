from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from lpbot.domain.trade import Trade

RISK_EXIT_TYPES = (
    "KILL_SWITCH",
    "REGIME_FLIP",
    "CHAOS_REGIME",
    "FEE_BLEED_ACTIVE",
    "FORCED_EXIT",
    "LEDGER_ERROR",
    "EMERGENCY",
    "MARKET_CRASH",
    "RECOVERY_EXIT",
    "MTM_ERROR_EXIT",
    "RESTART_RECONCILE",
    "INSUFFICIENT_CAPITAL",
    "CAPITAL_ERROR",
    "INVARIANT_FAILURE",
    "FORCE_EXIT",
    "STOP_LOSS",
    "TIER4_CHAOS",
    "BLEED_EXIT",
    "HARMONIC_EXIT",
    "RUG_RISK",
    "MICROSTRUCTURE_EXIT",
)


def is_risk_exit(reason: str) -> bool:
    normalized = reason.strip().upper().replace(" ", "_").replace("-", "_")
    return any(risk_type in normalized for risk_type in RISK_EXIT_TYPES)


@dataclass(frozen=True)
class ExitHysteresisConfig:
    min_hold_minutes: int = 60
    cost_amortization_factor: Decimal = Decimal("1.10")
    entry_fee_rate: Decimal = Decimal("0.003")
    exit_fee_rate: Decimal = Decimal("0.003")
    slippage_rate: Decimal = Decimal("0.002")


@dataclass(frozen=True)
class SuppressionDecision:
    suppress: bool
    reason: str | None
    hold_time_seconds: float
    fees_accrued_usd: Decimal
    cost_target_usd: Decimal
    details: Mapping[str, str] = field(default_factory=dict)


def should_suppress_noise_exit(
    trade: Trade,
    *,
    fees_accrued_usd: Decimal,
    now: datetime,
    config: ExitHysteresisConfig | None = None,
) -> SuppressionDecision:
    """Decide whether a non-risk exit is noise that should be declined.

    Held shorter than the minimum hold is always noise. Past that, the exit waits
    until accrued fees cover the round-trip cost by the amortization factor.
    """
    cfg = config or ExitHysteresisConfig()
    hold_seconds = max(0.0, (now - trade.created_at).total_seconds())
    round_trip_cost = trade.size * (cfg.entry_fee_rate + cfg.exit_fee_rate + cfg.slippage_rate)
    cost_target = round_trip_cost * cfg.cost_amortization_factor

    if hold_seconds < cfg.min_hold_minutes * 60:
        return SuppressionDecision(
            suppress=True,
            reason="MIN_HOLD",
            hold_time_seconds=hold_seconds,
            fees_accrued_usd=fees_accrued_usd,
            cost_target_usd=cost_target,
            details={
                "held_minutes": f"{hold_seconds / 60:.1f}",
                "min_hold_minutes": str(cfg.min_hold_minutes),
            },
        )
    if fees_accrued_usd < cost_target:
        return SuppressionDecision(
            suppress=True,
            reason="COST_NOT_AMORTIZED",
            hold_time_seconds=hold_seconds,
            fees_accrued_usd=fees_accrued_usd,
            cost_target_usd=cost_target,
            details={
                "fees_accrued_usd": str(fees_accrued_usd),
                "cost_target_usd": str(cost_target),
            },
        )
    return SuppressionDecision(
        suppress=False,
        reason=None,
        hold_time_seconds=hold_seconds,
        fees_accrued_usd=fees_accrued_usd,
        cost_target_usd=cost_target,
    )
