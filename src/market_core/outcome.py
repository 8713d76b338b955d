"""
Tagged operation results.

Every domain operation returns an Outcome: either a value or an OpError
carrying a stable kind, a human message and a details mapping. Callers
that prefer exceptions (the CLI) use unwrap().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    REPLAY = "REPLAY"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_STATE = "INVALID_STATE"
    LEDGER = "LEDGER"
    DECRYPTION = "DECRYPTION"


@dataclass(frozen=True)
class OpError:
    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "details": dict(self.details)}


class OutcomeError(Exception):
    """Raised by Outcome.unwrap() when the outcome holds an error."""

    def __init__(self, error: OpError) -> None:
        super().__init__(f"{error.kind.value}: {error.message}")
        self.error = error

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T | None = None
    error: OpError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, **details: Any) -> "Outcome[T]":
        return cls(error=OpError(kind=kind, message=message, details=details))

    @classmethod
    def from_error(cls, error: OpError) -> "Outcome[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise OutcomeError(self.error)
        return self.value  # type: ignore[return-value]
