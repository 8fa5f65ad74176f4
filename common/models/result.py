from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

class ServiceErrorKind(str, Enum):
    NOT_ACQUIRED = "not_acquired"
    NOT_FOUND = "not_found"
    NOT_HOLDER = "not_holder"
    INVALID = "invalid"
    STORE = "store"
    EXECUTION = "execution"

class ServiceResult(Generic[T]):
    """
    Uniform result shape returned by every public coordination operation.

    ``success`` is False only for outcomes the caller has to branch on;
    ``kind`` says whether that was a logical outcome (lock contention,
    missing entry) or an infrastructure fault (store unreachable).
    """
    __slots__ = ("success", "data", "error", "kind")

    def __init__(
        self,
        success: bool,
        data: Optional[T] = None,
        error: Optional[str] = None,
        kind: Optional[ServiceErrorKind] = None,
    ):
        self.success = success
        self.data = data
        self.error = error
        self.kind = kind

    @classmethod
    def ok(cls, data: T = None) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, kind: ServiceErrorKind = ServiceErrorKind.STORE) -> "ServiceResult[T]":
        return cls(success=False, error=error, kind=kind)

    def __repr__(self) -> str:
        if self.success:
            return f"ServiceResult.ok({self.data!r})"
        return f"ServiceResult.fail({self.error!r}, kind={self.kind})"
