from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class FailureReason(str, Enum):
    EMPTY_CONTEXT = "empty_context"
    PROVIDER_ERROR = "provider_error"
    TIMEOUT = "timeout"
    INVALID_JSON = "invalid_json"
    SCHEMA_MISMATCH = "schema_mismatch"


@dataclass(frozen=True)
class AnalysisOutcome(Generic[T]):
    """Result of a model call: either a value or a typed failure."""

    value: T | None = None
    failure: FailureReason | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def succeeded(cls, value: T) -> "AnalysisOutcome[T]":
        return cls(value=value)

    @classmethod
    def failed(cls, reason: FailureReason, detail: str = "") -> "AnalysisOutcome[T]":
        return cls(failure=reason, detail=detail)

    def unwrap_or(self, default: T) -> T:
        if self.ok and self.value is not None:
            return self.value
        return default
