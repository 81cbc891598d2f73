from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    meta: dict = field(default_factory=dict)

    @staticmethod
    def success(value: T, **meta) -> "Result[T]":
        return Result(ok=True, value=value, meta=meta)

    @staticmethod
    def failure(error: str, code: str = "unknown", **meta) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, meta=meta)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def is_error(self, code: str) -> bool:
        return not self.ok and self.error_code == code
