from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from lpbot.domain.errors import ReconciliationSealViolation

logger = logging.getLogger(__name__)

SEAL_STATE_KEY = "reconciliation_seal"


class SealMode(str, Enum):
    FRESH_START = "fresh_start"
    CONTINUATION = "continuation"


@dataclass(frozen=True)
class SealData:
    run_id: str
    mode: SealMode
    available_capital: Decimal
    locked_capital: Decimal
    total_equity: Decimal
    open_trades: int
    recovered_locks: int
    sealed_at: datetime


class ReconciliationSeal:
    """One-way marker that the ledger has been reconciled and is authoritative."""

    def __init__(self, *, now_provider: Callable[[], datetime] | None = None) -> None:
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        self._data: SealData | None = None

    @classmethod
    def from_state(
        cls,
        raw: Mapping[str, object] | None,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> ReconciliationSeal:
        """Rebuild a seal persisted by another process; ``None`` gives an unsealed one."""
        seal = cls(now_provider=now_provider)
        if raw:
            seal._data = SealData(
                run_id=str(raw["run_id"]),
                mode=SealMode(str(raw["mode"])),
                available_capital=Decimal(str(raw["available_capital"])),
                locked_capital=Decimal(str(raw["locked_capital"])),
                total_equity=Decimal(str(raw["total_equity"])),
                open_trades=int(str(raw["open_trades"])),
                recovered_locks=int(str(raw["recovered_locks"])),
                sealed_at=datetime.fromisoformat(str(raw["sealed_at"])),
            )
        return seal

    @property
    def is_sealed(self) -> bool:
        return self._data is not None

    @property
    def data(self) -> SealData | None:
        return self._data

    def seal(
        self,
        *,
        run_id: str,
        mode: SealMode,
        available_capital: Decimal,
        locked_capital: Decimal,
        open_trades: int,
        recovered_locks: int,
    ) -> SealData:
        if self._data is not None:
            logger.critical(
                "reconciliation_seal_already_set",
                extra={"extra": {"run_id": self._data.run_id, "attempted_run_id": run_id}},
            )
            raise ReconciliationSealViolation(
                f"reconciliation already sealed for run {self._data.run_id}"
            )
        self._data = SealData(
            run_id=run_id,
            mode=mode,
            available_capital=available_capital,
            locked_capital=locked_capital,
            total_equity=available_capital + locked_capital,
            open_trades=open_trades,
            recovered_locks=recovered_locks,
            sealed_at=self.now_provider(),
        )
        logger.info("reconciliation_sealed", extra={"extra": asdict(self._data)})
        return self._data
