from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol


class AuditRepoProtocol(Protocol):
    def append(self, action: str, details: Mapping[str, object], *, ts: datetime) -> int: ...

    def list_recent(self, *, limit: int, action: str | None = None) -> list[dict[str, Any]]: ...

    def get_state(self, key: str) -> Any | None: ...

    def set_state(self, key: str, value: object, *, now: datetime) -> None: ...


def serialize_payload(value: object) -> str:
    def _json_default(obj: object) -> object:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if is_dataclass(obj) and not isinstance(obj, type):
            return asdict(obj)
        if isinstance(obj, set | frozenset):
            return list(obj)
        raise TypeError(f"Unsupported type for audit payload serialization: {type(obj).__name__}")

    return json.dumps(value, sort_keys=True, default=_json_default)
