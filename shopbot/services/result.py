from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of an operation whose failures are reported rather than raised."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, code: str = "unknown") -> "Result[T]":
        return cls(ok=False, error=error, error_code=code)

    @classmethod
    def from_exception(cls, exc: BaseException, code: str = "exception") -> "Result[T]":
        return cls(ok=False, error=f"{type(exc).__name__}: {exc}", error_code=code)
