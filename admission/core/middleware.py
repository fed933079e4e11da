"""Request correlation middleware.

Registered outermost so that rate-limit rejections, which short-circuit
before any route runs, still carry a request id in their logs and headers.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import re
import time
import uuid

from fastapi import Request, Response

from admission.core.config import settings
from admission.core.logging import clear_request_id, set_request_id

MAX_REQUEST_ID_LENGTH = 128

_REQUEST_ID_CHARS = re.compile(r"[A-Za-z0-9._:\-]+")


def accept_request_id(candidate: str | None) -> str:
    """Return a client-supplied id if it is safe to log, else a new UUID4.

    Ids longer than ``MAX_REQUEST_ID_LENGTH`` or containing characters
    outside ``[A-Za-z0-9._:-]`` are replaced, not truncated or escaped.

    Examples:
        >>> accept_request_id("req-abc-123")
        'req-abc-123'
        >>> accept_request_id("bad id\\n") != "bad id\\n"
        True
    """
    if (
        candidate
        and len(candidate) <= MAX_REQUEST_ID_LENGTH
        and _REQUEST_ID_CHARS.fullmatch(candidate)
    ):
        return candidate
    return str(uuid.uuid4())


async def request_id_middleware(request: Request, call_next) -> Response:
    """Bind a request id for the duration of the request and echo it back.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware (the rate limiters) or route handler.

    Returns:
        Response: The downstream response, or the limiter's 429, with the
            request id and ``X-Request-Duration-ms`` headers added.
    """

    header_name = settings.log.request_id_header
    request_id = accept_request_id(request.headers.get(header_name))
    set_request_id(request_id)
    started = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers["X-Request-Duration-ms"] = f"{(time.perf_counter() - started) * 1000:.2f}"
    return response
