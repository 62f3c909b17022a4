from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import ROUND_DOWN, Decimal

from lpbot.domain.capital import CENTS
from lpbot.domain.errors import ConfigurationError, NormalizationFailure, PersistenceFailure
from lpbot.domain.trade import (
    EntryResult,
    ExitData,
    ExitResult,
    ExitState,
    MarkToMarket,
    PoolCandidate,
    SizingMode,
    Trade,
    TradeDraft,
    TradeExitRecord,
    TradeStatus,
)
from lpbot.logging_context import with_logging_context
from lpbot.observability import get_instrumentation
from lpbot.persistence.interfaces.store import PersistenceStore
from lpbot.services.capital_ledger import CapitalLedger
from lpbot.services.exit_authority import ExitAuthority
from lpbot.services.exit_hysteresis import (
    ExitHysteresisConfig,
    is_risk_exit,
    should_suppress_noise_exit,
)
from lpbot.services.valuation import ValuationCollaborator

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class SizingBounds:
    max_position_pct: Decimal
    min_size: Decimal
    max_size: Decimal


@dataclass(frozen=True)
class EntryGuardrails:
    max_total_deployed_pct: Decimal = Decimal("0.40")
    min_remaining_balance: Decimal = Decimal("500")
    min_remaining_pct: Decimal = Decimal("0.05")
    migration_slope_reject: Decimal = Decimal("-0.05")
    standard: SizingBounds = SizingBounds(
        max_position_pct=Decimal("0.10"), min_size=Decimal("200"), max_size=Decimal("2000")
    )
    aggressive: SizingBounds = SizingBounds(
        max_position_pct=Decimal("0.15"), min_size=Decimal("500"), max_size=Decimal("3500")
    )

    def bounds_for(self, mode: SizingMode) -> SizingBounds:
        return self.aggressive if mode is SizingMode.AGGRESSIVE else self.standard


def sizing_mode_for(expansion_pulse: bool) -> SizingMode:
    return SizingMode.AGGRESSIVE if expansion_pulse else SizingMode.STANDARD


class TradeOrchestrator:
    """Sequences guardrails, persistence and ledger mutation for trade entry and exit."""

    def __init__(
        self,
        *,
        ledger: CapitalLedger,
        exit_authority: ExitAuthority,
        store: PersistenceStore,
        valuation: ValuationCollaborator,
        guardrails: EntryGuardrails | None = None,
        hysteresis: ExitHysteresisConfig | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.ledger = ledger
        self.exit_authority = exit_authority
        self.store = store
        self.valuation = valuation
        self.guardrails = guardrails or EntryGuardrails()
        self.hysteresis = hysteresis or ExitHysteresisConfig()
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._active_trades: dict[str, Trade] = {}

    # active trade cache

    def get_active_trades(self) -> list[Trade]:
        return list(self._active_trades.values())

    def hydrate_active_trades(self) -> int:
        trades = self.store.list_active_trades()
        self._active_trades = {trade.id: trade for trade in trades}
        return len(trades)

    def has_active_trade(self, pool_address: str) -> bool:
        if any(trade.pool_address == pool_address for trade in self._active_trades.values()):
            return True
        return bool(self.store.list_active_trades_for_pool(pool_address))

    # entry

    def enter_position(
        self,
        pool: PoolCandidate,
        sizing_mode: SizingMode,
        requested_size: Decimal,
        total_capital: Decimal | None = None,
        risk_tier: str = "C",
        leverage: Decimal = Decimal("1"),
    ) -> EntryResult:
        with with_logging_context(pool=pool.address):
            return self._enter_position(
                pool, sizing_mode, requested_size, total_capital, risk_tier, leverage
            )

    def _reject_entry(self, pool: PoolCandidate, reason: str, **fields: object) -> EntryResult:
        get_instrumentation().counter("entry_rejected_total")
        logger.info(
            "entry_rejected",
            extra={"extra": {"pool": pool.address, "pool_name": pool.name, "reason": reason, **fields}},
        )
        return EntryResult(success=False, reason=reason)

    def _enter_position(
        self,
        pool: PoolCandidate,
        sizing_mode: SizingMode,
        requested_size: Decimal,
        total_capital: Decimal | None,
        risk_tier: str,
        leverage: Decimal,
    ) -> EntryResult:
        rails = self.guardrails
        if not self.ledger.is_ready:
            return self._reject_entry(pool, "capital ledger not initialized")
        try:
            state = self.ledger.get_state()
        except (PersistenceFailure, ConfigurationError) as exc:
            return self._reject_entry(pool, f"capital read failed: {exc}")
        balance = state.available_balance
        equity = state.equity

        try:
            if self.has_active_trade(pool.address):
                return self._reject_entry(pool, f"already have open trade on {pool.name}")
            deployed = sum((trade.size for trade in self.store.list_active_trades()), ZERO)
        except PersistenceFailure as exc:
            return self._reject_entry(pool, f"trade read failed: {exc}")

        floor = max(rails.min_remaining_balance, rails.min_remaining_pct * equity)
        if balance < floor:
            return self._reject_entry(
                pool, f"insufficient liquid capital: balance ${balance:.2f} < floor ${floor:.2f}"
            )

        deploy_cap = rails.max_total_deployed_pct * equity
        if equity <= ZERO or deployed >= deploy_cap:
            exposure_pct = (deployed / equity * 100) if equity > ZERO else Decimal("100")
            return self._reject_entry(
                pool,
                f"portfolio exposure {exposure_pct:.1f}% >= "
                f"{rails.max_total_deployed_pct * 100:.0f}% max",
            )

        slope = pool.liquidity_slope
        if pool.migration_direction == "out" or (
            slope is not None and slope < rails.migration_slope_reject
        ):
            return self._reject_entry(
                pool,
                f"adverse liquidity migration: direction={pool.migration_direction}, slope={slope}",
            )

        if requested_size <= ZERO:
            return self._reject_entry(pool, f"invalid requested size {requested_size}")
        bounds = rails.bounds_for(sizing_mode)
        basis = total_capital if total_capital is not None and total_capital > ZERO else equity
        size = min(max(requested_size, bounds.min_size), bounds.max_size)
        size = min(size, bounds.max_position_pct * basis)
        headroom = deploy_cap - deployed
        if size > headroom:
            if headroom < bounds.min_size:
                return self._reject_entry(
                    pool,
                    "insufficient room under deployment cap",
                    headroom=str(headroom),
                )
            size = headroom
        size = size.quantize(CENTS, rounding=ROUND_DOWN)
        if size <= ZERO:
            return self._reject_entry(pool, f"sized to zero from request {requested_size}")

        try:
            fill = self.valuation.price_entry(pool, size)
        except NormalizationFailure as exc:
            logger.error(
                "entry_normalization_failed",
                extra={"extra": {"pool": pool.address, "reason": exc.reason, **exc.context}},
            )
            return EntryResult(success=False, reason=f"normalization failure: {exc.reason}")

        epoch = self.ledger.run_epoch
        draft = TradeDraft(
            run_id=epoch.run_id if epoch is not None else None,
            pool_address=pool.address,
            pool_name=pool.name,
            entry_price=fill.price_usd,
            size=size,
            sizing_mode=sizing_mode,
            risk_tier=risk_tier,
            leverage=leverage,
            score=pool.score,
            entry_value_usd=fill.entry_value_usd,
            entry_fees_usd=fill.fees_usd,
            entry_slippage_usd=fill.slippage_usd,
            normalized_amount_base=fill.normalized_amount_base,
            created_at=self.now_provider(),
        )
        try:
            trade = self.store.insert_trade(draft)
        except PersistenceFailure as exc:
            return self._reject_entry(pool, f"trade persistence failed: {exc}")

        try:
            allocated = self.ledger.allocate(trade.id, size)
        except (PersistenceFailure, ConfigurationError) as exc:
            self._cancel_unfunded(trade, "CAPITAL_ALLOCATION_ERROR")
            return self._reject_entry(pool, f"capital allocation error: {exc}", trade_id=trade.id)
        if not allocated:
            self._cancel_unfunded(trade, "INSUFFICIENT_CAPITAL")
            return self._reject_entry(
                pool, f"insufficient capital to allocate ${size:.2f}", trade_id=trade.id
            )

        self._active_trades[trade.id] = trade
        get_instrumentation().counter("entry_opened_total", attrs={"sizing_mode": sizing_mode.value})
        logger.info(
            "entry_opened",
            extra={
                "extra": {
                    "trade_id": trade.id,
                    "pool": pool.address,
                    "pool_name": pool.name,
                    "size": str(size),
                    "requested_size": str(requested_size),
                    "sizing_mode": sizing_mode.value,
                    "entry_value_usd": str(fill.entry_value_usd),
                    "entry_fees_usd": str(fill.fees_usd),
                    "entry_slippage_usd": str(fill.slippage_usd),
                    "risk_tier": risk_tier,
                }
            },
        )
        return EntryResult(success=True, trade=trade)

    def _cancel_unfunded(self, trade: Trade, exit_reason: str) -> None:
        try:
            self.store.cancel_trade(trade.id, exit_reason=exit_reason)
        except PersistenceFailure:
            # Startup recovery cancels open trades that hold no lock.
            logger.exception(
                "entry_cancel_failed",
                extra={"extra": {"trade_id": trade.id, "exit_reason": exit_reason}},
            )

    # exit

    def exit_position(
        self, trade_id: str, exit_data: ExitData, caller: str = "TRADE_ORCHESTRATOR"
    ) -> ExitResult:
        with with_logging_context(trade_id=trade_id):
            return self._exit_position(trade_id, exit_data, caller)

    def _reject_exit(self, trade_id: str, reason: str, **fields: object) -> ExitResult:
        get_instrumentation().counter("exit_rejected_total")
        logger.info(
            "exit_rejected",
            extra={"extra": {"trade_id": trade_id, "reason": reason, **fields}},
        )
        return ExitResult(success=False, reason=reason)

    def _exit_position(self, trade_id: str, exit_data: ExitData, caller: str) -> ExitResult:
        trade = self._active_trades.get(trade_id)
        try:
            if trade is None:
                trade = self.store.get_trade(trade_id)
            if trade is None:
                return self._reject_exit(trade_id, f"trade {trade_id} not found")
            if not self.exit_authority.can_exit_trade(trade_id):
                return self._reject_exit(trade_id, "trade already closing/closed", caller=caller)
        except PersistenceFailure as exc:
            return self._reject_exit(trade_id, f"trade read failed: {exc}")

        now = self.now_provider()
        mtm: MarkToMarket | None
        try:
            mtm = self.valuation.mark_to_market(trade, exit_data.exit_price, now=now)
        except NormalizationFailure as exc:
            if exit_data.exit_asset_value_usd is None:
                return self._reject_exit(trade_id, f"mark-to-market failed: {exc.reason}")
            mtm = None

        risk_exit = is_risk_exit(exit_data.reason)
        if not risk_exit:
            suppression = should_suppress_noise_exit(
                trade,
                fees_accrued_usd=mtm.fees_accrued_usd if mtm is not None else ZERO,
                now=now,
                config=self.hysteresis,
            )
            if suppression.suppress:
                return self._reject_exit(
                    trade_id,
                    f"exit suppressed: {suppression.reason}",
                    exit_reason=exit_data.reason,
                    **suppression.details,
                )

        if exit_data.exit_asset_value_usd is not None:
            exit_value = exit_data.exit_asset_value_usd
        else:
            assert mtm is not None
            exit_value = mtm.mtm_value_usd
        # Exit fees are priced before the exit lock is taken.
        try:
            exit_fees = (
                exit_data.exit_fees_usd
                if exit_data.exit_fees_usd is not None
                else self.valuation.price_exit_fees(exit_value)
            )
        except NormalizationFailure as exc:
            return self._reject_exit(trade_id, f"exit fee pricing failed: {exc.reason}")

        try:
            acquired = self.exit_authority.acquire_exit_lock(trade_id, caller)
        except PersistenceFailure as exc:
            return self._reject_exit(trade_id, f"exit lock failed: {exc}")
        if not acquired:
            return self._reject_exit(
                trade_id, "could not acquire exit lock - another exit in progress", caller=caller
            )

        exit_slippage = exit_data.exit_slippage_usd if exit_data.exit_slippage_usd is not None else ZERO
        gross_pnl = exit_value - trade.entry_notional_usd
        total_fees = trade.entry_fees_usd + exit_fees
        net_pnl = gross_pnl - total_fees

        record = TradeExitRecord(
            exit_price=exit_data.exit_price,
            exit_value_usd=exit_value,
            exit_fees_usd=exit_fees,
            exit_slippage_usd=exit_slippage,
            pnl_gross=gross_pnl,
            pnl_net=net_pnl,
            exit_reason=exit_data.reason,
            exit_time=now,
        )
        persist_error: str | None = None
        try:
            if not self.store.record_trade_exit(trade_id, record):
                persist_error = "exit row not in closing state"
        except PersistenceFailure as exc:
            persist_error = str(exc)
        if persist_error is not None:
            try:
                self.exit_authority.release_exit_lock(trade_id)
            except PersistenceFailure:
                logger.exception("exit_lock_release_failed", extra={"extra": {"trade_id": trade_id}})
            return self._reject_exit(trade_id, f"exit persistence failed: {persist_error}")

        try:
            self.ledger.apply_pnl(trade_id, net_pnl)
        except (PersistenceFailure, ConfigurationError):
            logger.exception(
                "exit_capital_settlement_failed",
                extra={"extra": {"trade_id": trade_id, "pnl_net": str(net_pnl)}},
            )

        closed_trade = replace(
            trade,
            status=TradeStatus.CLOSED,
            exit_state=ExitState.CLOSED,
            exit_price=record.exit_price,
            exit_value_usd=exit_value,
            exit_fees_usd=exit_fees,
            exit_slippage_usd=exit_slippage,
            pnl_gross=gross_pnl,
            pnl_net=net_pnl,
            exit_reason=exit_data.reason,
            exit_time=now,
        )
        self._audit(
            "TRADE_EXIT",
            {
                "trade_id": trade_id,
                "pool": trade.pool_address,
                "pool_name": trade.pool_name,
                "caller": caller,
                "exit_reason": exit_data.reason,
                "risk_exit": risk_exit,
                "size": trade.size,
                "entry_value_usd": trade.entry_value_usd,
                "entry_notional_usd": trade.entry_notional_usd,
                "exit_value_usd": exit_value,
                "entry_fees_usd": trade.entry_fees_usd,
                "exit_fees_usd": exit_fees,
                "exit_slippage_usd": exit_slippage,
                "pnl_gross": gross_pnl,
                "pnl_net": net_pnl,
                "hold_time_seconds": (now - trade.created_at).total_seconds(),
            },
        )

        try:
            self.exit_authority.mark_trade_closed(trade_id)
        except PersistenceFailure:
            logger.exception("exit_mark_closed_error", extra={"extra": {"trade_id": trade_id}})
        self._active_trades.pop(trade_id, None)
        instrumentation = get_instrumentation()
        instrumentation.counter("exit_closed_total", attrs={"risk_exit": risk_exit})
        instrumentation.histogram("trade_pnl_net_usd", float(net_pnl))
        logger.info(
            "exit_closed",
            extra={
                "extra": {
                    "trade_id": trade_id,
                    "caller": caller,
                    "exit_reason": exit_data.reason,
                    "pnl_gross": str(gross_pnl),
                    "pnl_net": str(net_pnl),
                    "total_fees": str(total_fees),
                }
            },
        )
        return ExitResult(
            success=True,
            trade=closed_trade,
            pnl=net_pnl,
            gross_pnl=gross_pnl,
            total_fees=total_fees,
        )

    def _audit(self, action: str, details: Mapping[str, object]) -> None:
        try:
            self.store.append_audit(action, details)
        except PersistenceFailure:
            logger.exception("audit_write_failed", extra={"extra": {"action": action}})
