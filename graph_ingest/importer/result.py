"""
Result envelope returned by adapter and service operations.

Operations that can fail for user-facing reasons return a ``Result`` rather
than raising, so the blueprint, CLI, and Celery tasks all render failures the
same way.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from .errors import ImporterError

T = TypeVar("T")


@dataclass(frozen=True)
class ResultError:
    code: str
    message: str
    status: int = 500
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message, "status": self.status}
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: ResultError | None = None

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, message: str, *, code: str = "importer_error", status: int = 500, **details: Any) -> "Result[T]":
        return cls(error=ResultError(code=code, message=message, status=status, details=details))

    @classmethod
    def from_exception(cls, exc: ImporterError) -> "Result[T]":
        return cls(error=ResultError(code=exc.code, message=exc.message, status=exc.status, details=exc.details))

    def unwrap(self) -> T:
        """Return the value, raising ``ImporterError`` when the result is a failure."""
        if self.error is not None:
            error = ImporterError(self.error.message, details=self.error.details)
            error.code = self.error.code
            error.status = self.error.status
            raise error
        return self.value  # type: ignore[return-value]
