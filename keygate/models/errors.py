"""Gateway error taxonomy and caller-facing response builders.

Every pipeline stage signals failure by raising one of the ``GatewayError``
subclasses below. The pipeline stops at the first one and the error is
rendered by ``build_error_response()``:

  Unauthorized         401  {"error": "Unauthorized"}
  CorsRejected         403  empty body, no CORS headers (browser blocks it)
  RateLimited          429  {"error": "Rate limit exceeded"} + Retry-After
  UnknownSlug          404  {"error": "Unknown target slug"}
  NotFound             404  {"error": "Not found"}
  UpstreamUnreachable  502  {"error": "Upstream unreachable"}
  UpstreamTimeout      504  {"error": "Upstream timeout"}

Upstream-originated error statuses are NOT represented here: a 500 from the
upstream is relayed as a 500, never converted into a gateway error.
"""

from __future__ import annotations

import math
from typing import Optional

from starlette.responses import JSONResponse, Response


class GatewayError(Exception):
    """Base class for per-request failures. Never fatal to the process."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.message)
        self.detail = detail


class Unauthorized(GatewayError):
    status_code = 401
    message = "Unauthorized"


class CorsRejected(GatewayError):
    """Origin not on the allow-list. Rendered without a JSON body."""

    status_code = 403
    message = "CORS blocked"


class RateLimited(GatewayError):
    status_code = 429
    message = "Rate limit exceeded"

    def __init__(self, retry_after_s: Optional[float] = None) -> None:
        super().__init__()
        self.retry_after_s = retry_after_s


class UnknownSlug(GatewayError):
    status_code = 404
    message = "Unknown target slug"

    def __init__(self, slug: str) -> None:
        super().__init__(f"Unknown target slug: {slug}")
        self.slug = slug


class NotFound(GatewayError):
    status_code = 404
    message = "Not found"


class UpstreamUnreachable(GatewayError):
    """Connection refused, DNS failure, TLS failure or broken upstream protocol."""

    status_code = 502
    message = "Upstream unreachable"


class UpstreamTimeout(GatewayError):
    """Upstream did not complete within the configured deadline."""

    status_code = 504
    message = "Upstream timeout"


def build_error_response(error: GatewayError) -> Response:
    """Render a GatewayError as the stable caller-facing response.

    The body only ever carries the class-level ``message``; ``detail`` is for
    logs and never reaches the caller.
    """
    if isinstance(error, CorsRejected):
        return Response(status_code=error.status_code)

    response = JSONResponse(
        status_code=error.status_code,
        content={"error": error.message},
    )
    if isinstance(error, RateLimited) and error.retry_after_s is not None:
        response.headers["Retry-After"] = str(max(1, math.ceil(error.retry_after_s)))
    return response
