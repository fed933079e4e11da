"""Tier policies.

A tier is a named rate-limiting policy applied to a class of endpoints.
Policies are built once at startup from settings and never change. An
invalid policy raises InvalidTierPolicyError, which aborts startup rather
than running the API unprotected.
"""

from __future__ import annotations

from dataclasses import dataclass

from admission.core.config import RateLimitSettings
from admission.core.errors import InvalidTierPolicyError

GENERAL = "general"
AUTH = "auth"
READ = "read"
WRITE = "write"

RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
AUTH_RATE_LIMIT_EXCEEDED = "AUTH_RATE_LIMIT_EXCEEDED"

DEFAULT_ERROR = "Too many requests"
AUTHENTICATED_MESSAGE = "You have exceeded the rate limit. Please try again later."
ANONYMOUS_MESSAGE = (
    "Too many requests from this IP. Please try again later or sign in for higher limits."
)
AUTH_ERROR = "Too many authentication attempts"


@dataclass(frozen=True)
class TierPolicy:
    """Immutable rate-limiting policy.

    Attributes:
        name: Tier name; also namespaces counter keys.
        window_ms: Window length in milliseconds.
        base_limit: Ceiling for anonymous callers.
        authenticated_multiplier: Factor applied to ``base_limit`` when the
            request carries a caller identity.
        violation_error: Short error title in the 429 body.
        violation_code: Machine-readable code in the 429 body.
        violation_message: Message for authenticated callers, or for every
            caller when ``anonymous_message`` is unset.
        anonymous_message: Message for anonymous callers.
        key_by_identity: Whether the caller identity takes precedence over
            the client address when deriving the counter key.
    """

    name: str
    window_ms: int
    base_limit: int
    authenticated_multiplier: int = 1
    violation_error: str = DEFAULT_ERROR
    violation_code: str = RATE_LIMIT_EXCEEDED
    violation_message: str = AUTHENTICATED_MESSAGE
    anonymous_message: str | None = None
    key_by_identity: bool = True

    def __post_init__(self) -> None:
        problems: list[tuple[str, object]] = []
        if not self.name:
            problems.append(("name", self.name))
        if self.window_ms <= 0:
            problems.append(("window_ms", self.window_ms))
        if self.base_limit <= 0:
            problems.append(("base_limit", self.base_limit))
        if self.authenticated_multiplier < 1:
            problems.append(("authenticated_multiplier", self.authenticated_multiplier))
        if problems:
            field, value = problems[0]
            raise InvalidTierPolicyError.for_field(self.name, field, value)

    @property
    def window_seconds(self) -> int:
        return self.window_ms // 1000

    def ceiling(self, authenticated: bool) -> int:
        """Effective request ceiling for one window."""
        if authenticated:
            return self.base_limit * self.authenticated_multiplier
        return self.base_limit

    def message_for(self, authenticated: bool) -> str:
        if not authenticated and self.anonymous_message:
            return self.anonymous_message
        return self.violation_message

    def namespaced(self, rate_key: str) -> str:
        return f"tier:{self.name}|{rate_key}"


def _auth_message(window_ms: int) -> str:
    minutes = max(1, round(window_ms / 60_000))
    unit = "minute" if minutes == 1 else "minutes"
    return (
        "You have made too many authentication attempts from this IP. "
        f"Please try again in {minutes} {unit}."
    )


def build_default_tiers(cfg: RateLimitSettings) -> dict[str, TierPolicy]:
    """Build the four shipped tiers from configuration.

    The auth tier keys on the client address even for authenticated callers
    and has no authenticated multiplier, so credential stuffing from one
    address is capped regardless of session state.
    """
    auth_window_ms = cfg.auth_window_seconds * 1000
    tiers = [
        TierPolicy(
            name=GENERAL,
            window_ms=cfg.general_window_seconds * 1000,
            base_limit=cfg.general_limit,
            authenticated_multiplier=cfg.general_authenticated_multiplier,
            anonymous_message=ANONYMOUS_MESSAGE,
        ),
        TierPolicy(
            name=AUTH,
            window_ms=auth_window_ms,
            base_limit=cfg.auth_limit,
            authenticated_multiplier=cfg.auth_authenticated_multiplier,
            violation_error=AUTH_ERROR,
            violation_code=AUTH_RATE_LIMIT_EXCEEDED,
            violation_message=_auth_message(auth_window_ms),
            key_by_identity=False,
        ),
        TierPolicy(
            name=READ,
            window_ms=cfg.read_window_seconds * 1000,
            base_limit=cfg.read_limit,
            authenticated_multiplier=cfg.read_authenticated_multiplier,
            anonymous_message=ANONYMOUS_MESSAGE,
        ),
        TierPolicy(
            name=WRITE,
            window_ms=cfg.write_window_seconds * 1000,
            base_limit=cfg.write_limit,
            authenticated_multiplier=cfg.write_authenticated_multiplier,
            anonymous_message=ANONYMOUS_MESSAGE,
        ),
    ]
    return {tier.name: tier for tier in tiers}
