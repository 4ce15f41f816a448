"""
Tagged outcomes for provider calls.

Provider methods raise exceptions; callers that need to branch on retryability
wrap the call with ``call_provider`` and inspect the outcome kind instead of
matching error codes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Generic, Optional, TypeVar

from .exceptions import (
    AppException,
    ConfigurationError,
    MethodNotSupportedError,
    ProviderFetchError,
    ProviderRequestError,
    VerificationError,
)

T = TypeVar("T")


class OutcomeKind(str, Enum):
    OK = "ok"
    NOT_SUPPORTED = "not_supported"
    VERIFICATION_FAILED = "verification_failed"
    CONFIGURATION = "configuration"
    REJECTED = "rejected"
    TRANSIENT = "transient"


PERMANENT_KINDS = frozenset({
    OutcomeKind.NOT_SUPPORTED,
    OutcomeKind.VERIFICATION_FAILED,
    OutcomeKind.CONFIGURATION,
    OutcomeKind.REJECTED,
})


@dataclass(frozen=True)
class ProviderOutcome(Generic[T]):
    """Result of a provider call: a value, or a classified error."""

    kind: OutcomeKind
    value: Optional[T] = None
    error: Optional[AppException] = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.OK

    @property
    def retryable(self) -> bool:
        return self.kind == OutcomeKind.TRANSIENT

    @property
    def permanent(self) -> bool:
        return self.kind in PERMANENT_KINDS

    def unwrap(self) -> T:
        """Return the value or raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: T) -> "ProviderOutcome[T]":
        return cls(kind=OutcomeKind.OK, value=value)

    @classmethod
    def failure(cls, error: AppException) -> "ProviderOutcome[Any]":
        return cls(kind=classify(error), error=error)


def classify(error: AppException) -> OutcomeKind:
    if isinstance(error, MethodNotSupportedError):
        return OutcomeKind.NOT_SUPPORTED
    if isinstance(error, VerificationError):
        return OutcomeKind.VERIFICATION_FAILED
    if isinstance(error, ConfigurationError):
        return OutcomeKind.CONFIGURATION
    if isinstance(error, ProviderFetchError):
        return OutcomeKind.TRANSIENT
    if isinstance(error, ProviderRequestError):
        return OutcomeKind.REJECTED
    return OutcomeKind.REJECTED


async def call_provider(awaitable: Awaitable[T]) -> ProviderOutcome[T]:
    """Await a provider coroutine and capture billing errors as an outcome."""
    try:
        return ProviderOutcome.success(await awaitable)
    except (MethodNotSupportedError, VerificationError, ConfigurationError,
            ProviderFetchError, ProviderRequestError) as e:
        return ProviderOutcome.failure(e)
