from __future__ import annotations

from decimal import Decimal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from lpbot.observability import METRICS_EXPORTERS
from lpbot.services.exit_hysteresis import ExitHysteresisConfig
from lpbot.services.kill_switch import KillSwitchConfig
from lpbot.services.trade_orchestrator import EntryGuardrails, SizingBounds
from lpbot.services.valuation import ValuationConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="lpbot_state.db", alias="STATE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    paper_capital: Decimal = Field(default=Decimal("10000"), alias="PAPER_CAPITAL")
    test_mode: bool = Field(default=False, alias="LPBOT_TEST_MODE")

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    observability_otlp_endpoint: str | None = Field(
        default=None, alias="OBSERVABILITY_OTLP_ENDPOINT"
    )
    observability_prometheus_port: int = Field(
        default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT"
    )

    max_position_pct_standard: Decimal = Field(
        default=Decimal("0.10"), alias="MAX_POSITION_PCT_STANDARD"
    )
    max_position_pct_aggressive: Decimal = Field(
        default=Decimal("0.15"), alias="MAX_POSITION_PCT_AGGRESSIVE"
    )
    max_total_deployed_pct: Decimal = Field(default=Decimal("0.40"), alias="MAX_TOTAL_DEPLOYED_PCT")
    min_remaining_balance: Decimal = Field(default=Decimal("500"), alias="MIN_REMAINING_BALANCE")
    min_remaining_pct: Decimal = Field(default=Decimal("0.05"), alias="MIN_REMAINING_PCT")
    standard_min_size: Decimal = Field(default=Decimal("200"), alias="STANDARD_MIN_SIZE")
    standard_max_size: Decimal = Field(default=Decimal("2000"), alias="STANDARD_MAX_SIZE")
    aggressive_min_size: Decimal = Field(default=Decimal("500"), alias="AGGRESSIVE_MIN_SIZE")
    aggressive_max_size: Decimal = Field(default=Decimal("3500"), alias="AGGRESSIVE_MAX_SIZE")
    migration_slope_reject: Decimal = Field(
        default=Decimal("-0.05"), alias="MIGRATION_SLOPE_REJECT"
    )

    fee_bps: Decimal = Field(default=Decimal("30"), alias="FEE_BPS")
    slippage_bps: Decimal = Field(default=Decimal("20"), alias="SLIPPAGE_BPS")
    fee_accrual_bps_per_hour: Decimal = Field(
        default=Decimal("5"), alias="FEE_ACCRUAL_BPS_PER_HOUR"
    )

    kill_max_alive_ratio: float = Field(default=0.20, alias="KILL_MAX_ALIVE_RATIO")
    resume_min_alive_ratio: float = Field(default=0.28, alias="RESUME_MIN_ALIVE_RATIO")
    kill_min_health_score: float = Field(default=25.0, alias="KILL_MIN_HEALTH_SCORE")
    resume_min_health_score: float = Field(default=35.0, alias="RESUME_MIN_HEALTH_SCORE")
    kill_min_snapshots: int = Field(default=10, alias="KILL_MIN_SNAPSHOTS")
    kill_min_runtime_seconds: int = Field(default=600, alias="KILL_MIN_RUNTIME_SECONDS")
    kill_min_active_trades: int = Field(default=1, alias="KILL_MIN_ACTIVE_TRADES")
    kill_debounce_cycles: int = Field(default=2, alias="KILL_DEBOUNCE_CYCLES")
    kill_cooldown_seconds: int = Field(default=600, alias="KILL_COOLDOWN_SECONDS")
    kill_recheck_seconds: int = Field(default=60, alias="KILL_RECHECK_SECONDS")
    market_health_top_n: int = Field(default=10, alias="MARKET_HEALTH_TOP_N")

    phantom_equity_epsilon: Decimal = Field(default=Decimal("1"), alias="PHANTOM_EQUITY_EPSILON")
    restart_equity_tolerance: Decimal = Field(
        default=Decimal("5"), alias="RESTART_EQUITY_TOLERANCE"
    )

    exit_min_hold_minutes: int = Field(default=60, alias="EXIT_MIN_HOLD_MINUTES")
    exit_cost_amortization_factor: Decimal = Field(
        default=Decimal("1.10"), alias="EXIT_COST_AMORTIZATION_FACTOR"
    )

    @field_validator("observability_metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in METRICS_EXPORTERS:
            raise ValueError(
                "OBSERVABILITY_METRICS_EXPORTER must be one of: " + ", ".join(METRICS_EXPORTERS)
            )
        return normalized

    @field_validator("paper_capital")
    def validate_paper_capital(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("PAPER_CAPITAL must be > 0")
        return value

    @field_validator(
        "max_position_pct_standard",
        "max_position_pct_aggressive",
        "max_total_deployed_pct",
        "min_remaining_pct",
    )
    def validate_fraction(cls, value: Decimal) -> Decimal:
        if value <= 0 or value > 1:
            raise ValueError("percentage knobs must be in (0, 1]")
        return value

    @field_validator(
        "min_remaining_balance",
        "standard_min_size",
        "standard_max_size",
        "aggressive_min_size",
        "aggressive_max_size",
        "fee_bps",
        "slippage_bps",
        "fee_accrual_bps_per_hour",
        "phantom_equity_epsilon",
        "restart_equity_tolerance",
    )
    def validate_non_negative_decimal(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("money and bps knobs must be >= 0")
        return value

    @field_validator("kill_max_alive_ratio", "resume_min_alive_ratio")
    def validate_alive_ratio(cls, value: float) -> float:
        if value < 0 or value > 1:
            raise ValueError("alive ratio thresholds must be in [0, 1]")
        return value

    @field_validator(
        "kill_min_snapshots",
        "kill_min_runtime_seconds",
        "kill_min_active_trades",
        "kill_cooldown_seconds",
        "kill_recheck_seconds",
        "exit_min_hold_minutes",
    )
    def validate_non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("count and duration knobs must be >= 0")
        return value

    @field_validator("kill_debounce_cycles", "market_health_top_n")
    def validate_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("KILL_DEBOUNCE_CYCLES and MARKET_HEALTH_TOP_N must be >= 1")
        return value

    def entry_guardrails(self) -> EntryGuardrails:
        return EntryGuardrails(
            max_total_deployed_pct=self.max_total_deployed_pct,
            min_remaining_balance=self.min_remaining_balance,
            min_remaining_pct=self.min_remaining_pct,
            migration_slope_reject=self.migration_slope_reject,
            standard=SizingBounds(
                max_position_pct=self.max_position_pct_standard,
                min_size=self.standard_min_size,
                max_size=self.standard_max_size,
            ),
            aggressive=SizingBounds(
                max_position_pct=self.max_position_pct_aggressive,
                min_size=self.aggressive_min_size,
                max_size=self.aggressive_max_size,
            ),
        )

    def kill_switch_config(self) -> KillSwitchConfig:
        return KillSwitchConfig(
            kill_max_alive_ratio=self.kill_max_alive_ratio,
            resume_min_alive_ratio=self.resume_min_alive_ratio,
            kill_min_health_score=self.kill_min_health_score,
            resume_min_health_score=self.resume_min_health_score,
            min_snapshots=self.kill_min_snapshots,
            min_runtime_seconds=self.kill_min_runtime_seconds,
            min_active_trades=self.kill_min_active_trades,
            debounce_cycles=self.kill_debounce_cycles,
            cooldown_seconds=self.kill_cooldown_seconds,
            recheck_seconds=self.kill_recheck_seconds,
            market_health_top_n=self.market_health_top_n,
        )

    def exit_hysteresis_config(self) -> ExitHysteresisConfig:
        return ExitHysteresisConfig(
            min_hold_minutes=self.exit_min_hold_minutes,
            cost_amortization_factor=self.exit_cost_amortization_factor,
            entry_fee_rate=self.fee_bps / Decimal("10000"),
            exit_fee_rate=self.fee_bps / Decimal("10000"),
            slippage_rate=self.slippage_bps / Decimal("10000"),
        )

    def valuation_config(self) -> ValuationConfig:
        return ValuationConfig(
            fee_bps=self.fee_bps,
            slippage_bps=self.slippage_bps,
            fee_accrual_bps_per_hour=self.fee_accrual_bps_per_hour,
        )
