from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from lpbot.domain.capital import ensure_utc


def dump_decimal(value: Decimal) -> str:
    return format(value, "f")


def dump_optional_decimal(value: Decimal | None) -> str | None:
    return None if value is None else dump_decimal(value)


def load_decimal(raw: object) -> Decimal:
    return Decimal(str(raw))


def load_optional_decimal(raw: object) -> Decimal | None:
    if raw is None:
        return None
    return Decimal(str(raw))


def dump_ts(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def load_ts(raw: object) -> datetime:
    return ensure_utc(datetime.fromisoformat(str(raw)))


def load_optional_ts(raw: object) -> datetime | None:
    if raw is None:
        return None
    return load_ts(raw)
