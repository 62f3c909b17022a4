from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from lpbot.domain.errors import NormalizationFailure
from lpbot.domain.trade import EntryFill, MarkToMarket, PoolCandidate, Trade

BPS = Decimal("10000")


class ValuationCollaborator(Protocol):
    def price_entry(self, pool: PoolCandidate, size_usd: Decimal) -> EntryFill: ...

    def mark_to_market(
        self, trade: Trade, price_usd: Decimal | None, *, now: datetime
    ) -> MarkToMarket: ...

    def price_exit_fees(self, exit_value_usd: Decimal) -> Decimal: ...


@dataclass(frozen=True)
class ValuationConfig:
    fee_bps: Decimal = Decimal("30")
    slippage_bps: Decimal = Decimal("20")
    fee_accrual_bps_per_hour: Decimal = Decimal("5")


class BpsValuationService:
    """Flat basis-point fill model: fees and slippage as fixed fractions of notional."""

    def __init__(self, config: ValuationConfig | None = None) -> None:
        self.config = config or ValuationConfig()

    def price_entry(self, pool: PoolCandidate, size_usd: Decimal) -> EntryFill:
        price = pool.current_price
        if price is None or price <= 0:
            raise NormalizationFailure(
                f"cannot normalize entry for {pool.name}: price {price}",
                reason="invalid_entry_price",
                context={"pool": pool.address, "price": str(price), "size_usd": str(size_usd)},
            )
        if size_usd <= 0:
            raise NormalizationFailure(
                f"cannot normalize entry for {pool.name}: size {size_usd}",
                reason="invalid_entry_size",
                context={"pool": pool.address, "size_usd": str(size_usd)},
            )
        fees = size_usd * self.config.fee_bps / BPS
        slippage = size_usd * self.config.slippage_bps / BPS
        entry_value = size_usd - fees - slippage
        return EntryFill(
            price_usd=price,
            entry_value_usd=entry_value,
            fees_usd=fees,
            slippage_usd=slippage,
            normalized_amount_base=entry_value / price,
        )

    def mark_to_market(
        self, trade: Trade, price_usd: Decimal | None, *, now: datetime
    ) -> MarkToMarket:
        if price_usd is None or price_usd <= 0 or trade.entry_price <= 0:
            raise NormalizationFailure(
                f"cannot mark trade {trade.id} to market: price {price_usd}",
                reason="invalid_mark_price",
                context={
                    "trade_id": trade.id,
                    "price": str(price_usd),
                    "entry_price": str(trade.entry_price),
                },
            )
        hours = Decimal(str(max(0.0, (now - trade.created_at).total_seconds()))) / Decimal("3600")
        fees_accrued = trade.entry_value_usd * self.config.fee_accrual_bps_per_hour * hours / BPS
        position_value = trade.normalized_amount_base * price_usd
        mtm_value = position_value + fees_accrued
        return MarkToMarket(
            price_usd=price_usd,
            mtm_value_usd=mtm_value,
            fees_accrued_usd=fees_accrued,
            unrealized_pnl_usd=mtm_value - trade.size,
        )

    def price_exit_fees(self, exit_value_usd: Decimal) -> Decimal:
        return exit_value_usd * self.config.fee_bps / BPS
