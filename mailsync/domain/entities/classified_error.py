"""Classified provider failure and the value-or-error result of an adapter call."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Generic, TypeVar

from mailsync.domain.enums import ErrorCategory

T = TypeVar("T")


@dataclass(frozen=True)
class ClassifiedError:
    """A provider failure mapped onto the fixed error taxonomy.

    retry_after is only set when the provider supplied a hint (Retry-After
    header, throttling body); the scheduler falls back to its own backoff
    otherwise.
    """

    category: ErrorCategory
    message: str
    status_code: int | None = None
    provider_code: str | None = None
    retry_after: timedelta | None = None

    @property
    def is_auth_failure(self) -> bool:
        return self.category in (ErrorCategory.AUTH_EXPIRED, ErrorCategory.AUTH_REVOKED)

    @property
    def is_retryable(self) -> bool:
        """Whether retrying the same call later can succeed without user action."""
        return self.category in (
            ErrorCategory.AUTH_EXPIRED,
            ErrorCategory.RATE_LIMITED,
            ErrorCategory.TRANSIENT,
        )

    def describe(self) -> str:
        """Short single-line form for logs and last_error."""
        parts = [self.category.value]
        if self.status_code is not None:
            parts.append(str(self.status_code))
        if self.provider_code:
            parts.append(self.provider_code)
        return f"{'/'.join(parts)}: {self.message}"[:500]


@dataclass(frozen=True)
class CallResult(Generic[T]):
    """Outcome of one adapter call: either value or error is meaningful."""

    value: T | None = None
    error: ClassifiedError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> CallResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: ClassifiedError) -> CallResult[T]:
        return cls(error=error)
