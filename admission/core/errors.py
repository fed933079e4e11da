"""Application-level exception types.

Every failure the admission layer reports is an ``AppError`` carrying a stable
``code`` and optional structured ``details``. The exception handlers map the
family to an HTTP status; the limiter itself never raises these to callers,
it answers 429 directly.

    AppError
    ├── ValidationAppError          bad admin input (400)
    │   ├── InvalidRateKeyError
    │   └── UnknownTierError
    ├── AuthenticationAppError      admin key problems (403)
    ├── ConfigurationAppError       fatal at startup (500)
    │   └── InvalidTierPolicyError
    └── StoreUnavailableError       shared counter store down (503)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for logs and admin clients."""

    hint: str
    field: str
    value: Any
    tier: str
    known_tiers: list[str]
    operation: str


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when admin request input is rejected."""


class InvalidRateKeyError(ValidationAppError):
    """A client key without a ``user:`` or ``ip:`` scheme."""

    @classmethod
    def for_key(cls, rate_key: str) -> "InvalidRateKeyError":
        return cls(
            code="invalid_rate_key",
            message="rate_key must look like 'user:<id>' or 'ip:<address>'",
            details={"field": "rate_key", "value": rate_key},
        )


class UnknownTierError(ValidationAppError):
    """A tier name that is not among the configured policies."""

    @classmethod
    def for_tier(cls, tier: str, known: Iterable[str]) -> "UnknownTierError":
        return cls(
            code="unknown_tier",
            message=f"Unknown rate-limit tier '{tier}'",
            details={"tier": tier, "known_tiers": sorted(known)},
        )


class AuthenticationAppError(AppError):
    """Raised when admin authentication fails."""


class ConfigurationAppError(AppError):
    """Raised when limiter configuration is invalid; fatal at startup."""


class InvalidTierPolicyError(ConfigurationAppError):
    """A tier whose window, limit or multiplier is out of range."""

    @classmethod
    def for_field(cls, tier: str, field: str, value: Any) -> "InvalidTierPolicyError":
        """Build the error for the first offending policy field.

        Args:
            tier: Name of the tier being built.
            field: Policy attribute that failed validation.
            value: The rejected value.

        Returns:
            InvalidTierPolicyError with code ``invalid_tier_policy``.
        """
        return cls(
            code="invalid_tier_policy",
            message=f"Tier '{tier}' has an invalid {field}: {value!r}",
            details={
                "tier": tier,
                "field": field,
                "value": value,
                "hint": "Windows and limits must be positive; multipliers at least 1",
            },
        )


class StoreUnavailableError(AppError):
    """Raised by a shared store when the backing service cannot be reached.

    Covers timeouts, refused connections and protocol errors. The store
    selector catches it and retries the operation on the local store.

    Attributes:
        operation: Store operation that failed (``increment``, ``ping``...).
        cause: Underlying client exception, if any.
    """

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        reason = f"{type(cause).__name__}: {cause}" if cause else "unavailable"
        super().__init__(
            code="counter_store_unavailable",
            message=f"counter store {operation} failed ({reason})",
            details={"operation": operation},
        )
        self.operation = operation
        self.cause = cause
