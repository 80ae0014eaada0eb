"""
bloom.errors — Error Hierarchy & Service Results
=================================================

Expected business conditions travel back to callers inside a
:class:`ServiceResult` instead of being raised, so an outer controller can
map them onto "fix your input" / "forbidden" / "try again" responses.
Only infrastructure failures (database down, programming errors)
propagate as exceptions.

Hierarchy::

    BloomError
    ├── ValidationError            structured rule violations
    │   ├── InvalidTargetError
    │   └── SelfTargetNotAllowedError
    ├── AuthorizationError         actor lacks role / relationship
    ├── StateConflictError         wrong state for the operation
    │   ├── InsufficientQuotaError carries remaining / used / max
    │   └── EventNotActiveError
    ├── ConcurrencyConflictError   unresolved contention, retryable
    └── NotFoundError
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class BloomError(Exception):
    """Base class for every business error raised or returned by the core."""

    code = "error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(BloomError):
    """One or more input rules were violated."""

    code = "validation"

    def __init__(self, violations: list[str] | str) -> None:
        if isinstance(violations, str):
            violations = [violations]
        self.violations = list(violations)
        super().__init__("; ".join(self.violations))

    def to_dict(self) -> dict:
        return {**super().to_dict(), "violations": self.violations}


class InvalidTargetError(ValidationError):
    code = "invalid_target"


class SelfTargetNotAllowedError(ValidationError):
    code = "self_target"

    def __init__(self, message: str = "Cannot give flowers to yourself") -> None:
        super().__init__(message)


class AuthorizationError(BloomError):
    code = "forbidden"


class StateConflictError(BloomError):
    code = "state_conflict"


class EventNotActiveError(StateConflictError):
    code = "event_not_active"


class InsufficientQuotaError(StateConflictError):
    """Raised/returned when a giver's daily allowance cannot cover *amount*."""

    code = "insufficient_quota"

    def __init__(self, *, remaining: int, used: int, max_allowance: int) -> None:
        self.remaining = remaining
        self.used = used
        self.max_allowance = max_allowance
        super().__init__(
            f"Daily flower quota exhausted ({used}/{max_allowance} used, {remaining} left)"
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "remaining": self.remaining,
            "used": self.used,
            "max": self.max_allowance,
        }


class ConcurrencyConflictError(BloomError):
    code = "concurrency_conflict"


class NotFoundError(BloomError):
    code = "not_found"


# ---------------------------------------------------------------------------
# ServiceResult — discriminated outcome of every public service operation
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ServiceResult(Generic[T]):
    """Either ``ok`` with a *value*, or not ok with an *error*."""

    ok: bool
    value: T | None = None
    error: BloomError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> ServiceResult[T]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: BloomError) -> ServiceResult[T]:
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        """Return the value, raising the carried error on failure."""
        if not self.ok:
            if self.error is None:
                raise RuntimeError("Failed ServiceResult carries no error")
            raise self.error
        return self.value  # type: ignore[return-value]

    def __bool__(self) -> bool:
        return self.ok
