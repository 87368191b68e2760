"""Edge middleware for keygate.

  BodySizeLimitMiddleware    256 KiB request body cap, HTTP 413 before the
                             pipeline runs or any upstream connection opens.
  SecurityHeadersMiddleware  helmet-style hardening headers, set only where
                             the response does not already carry them.
  AccessLogMiddleware        binds a ULID request id for all log lines and
                             writes one ``request_completed`` line per request.

In Starlette the LAST-added middleware is OUTERMOST; see create_app() for the
registration order.
"""

from __future__ import annotations

import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from keygate.constants import MAX_REQUEST_BODY_BYTES
from keygate.utils.logger import clear_request_id, get_logger, set_request_id
from keygate.utils.ulid import generate_ulid

logger = get_logger(__name__)

# ─── Error response bodies ───────────────────────────────────────────────────

_PAYLOAD_TOO_LARGE_BODY: dict = {"error": "Request body too large"}

_INVALID_CONTENT_LENGTH_BODY: dict = {"error": "Invalid Content-Length header"}

# helmet defaults, minus Cross-Origin-Resource-Policy (responses are meant to
# be read cross-origin by allowed browser clients).
SECURITY_HEADERS: dict[str, str] = {
    "Content-Security-Policy": (
        "default-src 'self';base-uri 'self';font-src 'self' https: data:;"
        "form-action 'self';frame-ancestors 'self';img-src 'self' data:;"
        "object-src 'none';script-src 'self';script-src-attr 'none';"
        "style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
    ),
    "Cross-Origin-Opener-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


# ─── Middleware ───────────────────────────────────────────────────────────────


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Cap request bodies at MAX_REQUEST_BODY_BYTES.

    A declared Content-Length is trusted for the size decision and the body is
    left unread. Without one the body is drained here under a rolling cap and
    cached on the request for the pipeline.
    """

    def __init__(self, app, limit: int = MAX_REQUEST_BODY_BYTES) -> None:
        super().__init__(app)
        self.limit = limit

    def _too_large(self, request: Request, **fields) -> Response:
        logger.warning("body_too_large", limit=self.limit, path=request.url.path, **fields)
        return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        declared = request.headers.get("content-length")

        if declared is not None:
            if not declared.strip().isdigit():
                logger.warning("bad_content_length", value=declared, path=request.url.path)
                return JSONResponse(status_code=400, content=_INVALID_CONTENT_LENGTH_BODY)
            if int(declared) > self.limit:
                return self._too_large(request, declared_size=int(declared))
            return await call_next(request)

        buffered = bytearray()
        async for chunk in request.stream():
            buffered += chunk
            if len(buffered) > self.limit:
                return self._too_large(request, received_size=len(buffered))

        # Starlette hands request._body to the downstream handler once the
        # stream has been consumed.
        request._body = bytes(buffered)  # type: ignore[attr-defined]
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add SECURITY_HEADERS to responses that do not set them already.

    Headers relayed from an upstream always win.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            if name not in response.headers:
                response.headers[name] = value
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One log line per request: method, path, status, length, duration."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        token = set_request_id(generate_ulid())
        start = time.perf_counter()
        try:
            response = await call_next(request)
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                content_length=response.headers.get("content-length"),
                duration_ms=round((time.perf_counter() - start) * 1000, 3),
            )
            return response
        finally:
            clear_request_id(token)
