"""Client identity key derivation.

A rate key is ``user:<id>`` when the authentication layer has attached a
caller to the request, and ``ip:<address>`` otherwise.

Trust assumption: the leftmost entry of the forwarded-address header is
taken as the client address. That is only true when the service sits behind
a proxy chain that overwrites the header; nothing here verifies it, and a
client talking to the service directly can choose its own key.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from starlette.requests import Request

UNKNOWN_ADDRESS = "unknown"


@dataclass(frozen=True)
class CallerIdentity:
    """Verified principal attached upstream by the authentication layer."""

    id: str


@dataclass(frozen=True)
class RequestDescriptor:
    """Read-only view of an inbound request as seen by the limiter.

    Header names are stored lower-cased; use :meth:`header` for lookups.
    """

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    remote_address: str | None = None
    identity: CallerIdentity | None = None

    def __post_init__(self) -> None:
        normalized = {k.lower(): v for k, v in dict(self.headers).items()}
        object.__setattr__(self, "headers", MappingProxyType(normalized))
        object.__setattr__(self, "method", self.method.upper())

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @classmethod
    def from_request(cls, request: Request) -> "RequestDescriptor":
        """Snapshot a Starlette request, reading the caller from ``request.state.user``."""
        return cls(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            remote_address=request.client.host if request.client else None,
            identity=caller_identity_from(getattr(request.state, "user", None)),
        )


def caller_identity_from(user: object) -> CallerIdentity | None:
    """Extract a CallerIdentity from whatever the auth layer attached.

    Accepts an object with an ``id`` attribute or a mapping with an ``"id"``
    key. A missing or empty id means the request is anonymous.
    """
    if user is None:
        return None
    if isinstance(user, CallerIdentity):
        return user if user.id else None
    if isinstance(user, Mapping):
        raw = user.get("id")
    else:
        raw = getattr(user, "id", None)
    if raw is None:
        return None
    user_id = str(raw).strip()
    return CallerIdentity(id=user_id) if user_id else None


def client_address(
    descriptor: RequestDescriptor,
    forwarded_header: str = "X-Forwarded-For",
) -> str:
    """Return the best-effort client address for a request.

    Segments are used verbatim once trimmed; a value that is not a valid IP
    address is still a usable, opaque key.
    """
    forwarded = descriptor.header(forwarded_header)
    if forwarded:
        for segment in forwarded.split(","):
            candidate = segment.strip()
            if candidate:
                return candidate
    return descriptor.remote_address or UNKNOWN_ADDRESS


def derive_address_key(
    descriptor: RequestDescriptor,
    forwarded_header: str = "X-Forwarded-For",
) -> str:
    return f"ip:{client_address(descriptor, forwarded_header)}"


def derive_key(
    descriptor: RequestDescriptor,
    forwarded_header: str = "X-Forwarded-For",
) -> str:
    """Derive the rate key for a request, preferring the authenticated caller.

    Examples:
        >>> derive_key(RequestDescriptor("GET", "/", identity=CallerIdentity("42")))
        'user:42'
        >>> derive_key(RequestDescriptor("GET", "/", {"X-Forwarded-For": " 10.0.0.1, 10.0.0.2"}))
        'ip:10.0.0.1'
    """
    if descriptor.identity is not None:
        return f"user:{descriptor.identity.id}"
    return derive_address_key(descriptor, forwarded_header)
