"""Rate-limit interceptors for FastAPI/Starlette.

``create_limiter`` turns a TierPolicy into an ``http`` middleware function:

    app.middleware("http")(create_limiter(policy, path_prefix="/auth"))

Per request the interceptor:
1. forwards untouched when limiting is disabled or the request is outside
   the tier's path/method scope;
2. forwards successful liveness probes without counting them;
3. derives the client key, namespaced by tier;
4. increments the counter and either forwards the request (annotated with
   quota headers) or answers 429 with a RejectionResult;
5. optionally takes the hit back once the response status is known
   (``refund_when``).

The authentication layer must run before these interceptors so that
``request.state.user`` is populated when the key is derived.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request
from starlette.responses import Response

from admission.adapters.rate_limit.base import AbstractCounterStore, CounterResult
from admission.core.config import settings
from admission.core.identity import RequestDescriptor, derive_address_key, derive_key
from admission.core.logging import fingerprint_key, rate_limit_log_context
from admission.core.rate_limit import get_counter_store
from admission.core.tiers import AUTH, GENERAL, READ, WRITE, TierPolicy
from admission.schemas.rate_limit import RateLimitErrorResponse

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]
Middleware = Callable[[Request, CallNext], Awaitable[Response]]
RefundPredicate = Callable[[int], bool]

READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class RejectionResult:
    """A 429 answer for one rejected request."""

    error: str
    code: str
    message: str
    retry_after_seconds: int
    status_code: int = 429

    def body(self) -> dict:
        return RateLimitErrorResponse(
            error=self.error,
            code=self.code,
            message=self.message,
            retry_after=self.retry_after_seconds,
        ).model_dump(by_alias=True, exclude_none=True)

    def to_response(self, headers: dict[str, str] | None = None) -> JSONResponse:
        merged = dict(headers or {})
        merged["Retry-After"] = str(self.retry_after_seconds)
        return JSONResponse(status_code=self.status_code, content=self.body(), headers=merged)


@dataclass(frozen=True)
class _Admission:
    key: str
    ceiling: int
    result: CounterResult

    @property
    def allowed(self) -> bool:
        return self.result.count <= self.ceiling

    @property
    def remaining(self) -> int:
        return max(0, self.ceiling - self.result.count)

    @property
    def reset_seconds(self) -> int:
        return max(1, math.ceil(self.result.reset_ms / 1000))

    def refunded(self) -> "_Admission":
        result = CounterResult(count=max(0, self.result.count - 1), reset_ms=self.result.reset_ms)
        return _Admission(key=self.key, ceiling=self.ceiling, result=result)


def successful_response(status_code: int) -> bool:
    return status_code < 400


def should_bypass(
    descriptor: RequestDescriptor,
    response_status: int,
    liveness_path: str = "/health",
) -> bool:
    """Whether a request is excluded from counting.

    Only a successful liveness probe is excluded. A failing probe is counted
    so a distressed service cannot be hammered by health-check retries.
    """
    return descriptor.path == liveness_path and successful_response(response_status)


def rejection_for(policy: TierPolicy, authenticated: bool, reset_ms: int) -> RejectionResult:
    return RejectionResult(
        error=policy.violation_error,
        code=policy.violation_code,
        message=policy.message_for(authenticated),
        retry_after_seconds=max(1, math.ceil(reset_ms / 1000)),
    )


def _in_scope(
    descriptor: RequestDescriptor,
    path_prefix: str | None,
    methods: frozenset[str] | None,
) -> bool:
    if methods is not None and descriptor.method not in methods:
        return False
    if path_prefix:
        prefix = path_prefix.rstrip("/")
        return descriptor.path == prefix or descriptor.path.startswith(prefix + "/")
    return True


def _quota_headers(admission: _Admission) -> dict[str, str]:
    return {
        "RateLimit-Limit": str(admission.ceiling),
        "RateLimit-Remaining": str(admission.remaining),
        "RateLimit-Reset": str(admission.reset_seconds),
    }


def create_limiter(
    policy: TierPolicy,
    *,
    store: AbstractCounterStore | None = None,
    path_prefix: str | None = None,
    methods: Iterable[str] | None = None,
    refund_when: RefundPredicate | None = None,
) -> Middleware:
    """Build the request interceptor enforcing ``policy``.

    Args:
        policy: Tier to enforce.
        store: Counter store to use; defaults to the process-wide selector,
            resolved per request.
        path_prefix: Only requests under this path are counted.
        methods: Only requests with these HTTP methods are counted.
        refund_when: Optional predicate on the response status. When it
            holds for an admitted request, the hit is taken back with the
            store's ``decrement``, e.g. ``successful_response`` so only
            failed login attempts use up the auth budget.

    Returns:
        Async middleware callable for ``app.middleware("http")``.
    """
    scoped_methods = frozenset(m.upper() for m in methods) if methods is not None else None

    def counter_key(descriptor: RequestDescriptor) -> tuple[str, str]:
        forwarded_header = settings.rate_limit.forwarded_header
        if policy.key_by_identity:
            rate_key = derive_key(descriptor, forwarded_header)
        else:
            rate_key = derive_address_key(descriptor, forwarded_header)
        return rate_key, policy.namespaced(rate_key)

    async def admit(counter_store: AbstractCounterStore, descriptor: RequestDescriptor) -> _Admission:
        rate_key, key = counter_key(descriptor)
        ceiling = policy.ceiling(descriptor.is_authenticated)

        with rate_limit_log_context(tier=policy.name, key_hash=fingerprint_key(key)):
            result = await counter_store.increment(key, policy.window_ms)
            admission = _Admission(key=key, ceiling=ceiling, result=result)

            log_extra = {
                "key_type": rate_key.split(":", 1)[0],
                "limit": ceiling,
                "count": result.count,
                "reset_ms": result.reset_ms,
            }
            if admission.allowed:
                logger.debug("rate_limit.allowed", extra=log_extra)
            else:
                logger.warning(
                    "rate_limit.exceeded",
                    extra={
                        **log_extra,
                        "path": descriptor.path,
                        "method": descriptor.method,
                        "retry_after_s": admission.reset_seconds,
                    },
                )
        return admission

    async def refund(
        counter_store: AbstractCounterStore,
        admission: _Admission,
        status_code: int,
    ) -> _Admission:
        with rate_limit_log_context(tier=policy.name, key_hash=fingerprint_key(admission.key)):
            await counter_store.decrement(admission.key)
            logger.debug("rate_limit.refunded", extra={"status_code": status_code})
        return admission.refunded()

    def reject(descriptor: RequestDescriptor, admission: _Admission) -> Response | None:
        if admission.allowed:
            return None
        headers = _quota_headers(admission) if settings.rate_limit.include_headers else None
        return rejection_for(
            policy, descriptor.is_authenticated, admission.result.reset_ms
        ).to_response(headers)

    def annotate(response: Response, admission: _Admission) -> Response:
        # Inner tiers annotate first; the most specific tier's quota is kept.
        if settings.rate_limit.include_headers:
            for name, value in _quota_headers(admission).items():
                response.headers.setdefault(name, value)
        return response

    async def rate_limit_middleware(request: Request, call_next: CallNext) -> Response:
        cfg = settings.rate_limit
        if not cfg.enabled:
            return await call_next(request)

        descriptor = RequestDescriptor.from_request(request)
        if not _in_scope(descriptor, path_prefix, scoped_methods):
            return await call_next(request)

        counter_store = store if store is not None else get_counter_store()

        if descriptor.path == cfg.liveness_path:
            # The probe outcome decides whether it counts, so run it first.
            response = await call_next(request)
            if should_bypass(descriptor, response.status_code, cfg.liveness_path):
                return response
            admission = await admit(counter_store, descriptor)
            return reject(descriptor, admission) or annotate(response, admission)

        admission = await admit(counter_store, descriptor)
        rejected = reject(descriptor, admission)
        if rejected is not None:
            return rejected
        response = await call_next(request)
        if refund_when is not None and refund_when(response.status_code):
            admission = await refund(counter_store, admission, response.status_code)
        return annotate(response, admission)

    rate_limit_middleware.__name__ = f"{policy.name}_rate_limit_middleware"
    return rate_limit_middleware


def install_rate_limiters(
    app: FastAPI,
    tiers: dict[str, TierPolicy],
    *,
    store: AbstractCounterStore | None = None,
) -> None:
    """Register the shipped tiers on ``app``.

    general guards every path, auth guards the auth prefix, read and write
    split the API prefix by HTTP method. Starlette runs the last registered
    middleware first, so general is registered last and evaluated first.
    """
    cfg = settings.rate_limit
    app.middleware("http")(
        create_limiter(tiers[WRITE], store=store, path_prefix=cfg.api_path_prefix, methods=WRITE_METHODS)
    )
    app.middleware("http")(
        create_limiter(tiers[READ], store=store, path_prefix=cfg.api_path_prefix, methods=READ_METHODS)
    )
    app.middleware("http")(
        create_limiter(tiers[AUTH], store=store, path_prefix=cfg.auth_path_prefix)
    )
    app.middleware("http")(create_limiter(tiers[GENERAL], store=store))
