from __future__ import annotations

from collections.abc import Mapping
from enum import Enum


class FailureCategory(str, Enum):
    CONFIGURATION = "configuration"
    PERSISTENCE = "persistence"
    NORMALIZATION = "normalization"
    FATAL = "fatal"


class LpbotError(RuntimeError):
    category = FailureCategory.FATAL


class ConfigurationError(LpbotError):
    """Raised when a service is used before it is initialized or after it is closed."""

    category = FailureCategory.CONFIGURATION


class PersistenceFailure(LpbotError):
    """Raised when a durable store read or write fails."""

    category = FailureCategory.PERSISTENCE

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class NormalizationFailure(LpbotError):
    """Raised when a USD-normalized fill cannot be computed with confidence."""

    category = FailureCategory.NORMALIZATION

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.context = dict(context or {})


class FatalInvariantBreach(LpbotError):
    """Accounting can no longer be trusted; all trading must stop."""


class PhantomEquityViolation(FatalInvariantBreach):
    pass


class RestartEquityViolation(FatalInvariantBreach):
    pass


class ReconciliationSealViolation(FatalInvariantBreach):
    pass


def classify_failure(exc: BaseException) -> FailureCategory:
    if isinstance(exc, LpbotError):
        return exc.category
    return FailureCategory.FATAL
