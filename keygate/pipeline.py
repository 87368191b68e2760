"""Gateway pipeline: the ordered admission and forwarding stages.

Every ``/t/<slug>/...`` request runs through ``GatewayPipeline.run()``:

    RECEIVED → CORS_CHECKED → AUTHORIZED → QUOTA_CHECKED → ROUTED
             → REWRITTEN → FORWARDED → RESPONDED

Any stage failure jumps straight to REJECTED carrying the GatewayError that
stopped it; later stages never run and nothing is retried. Stage order lives
here, in one function, not in middleware registration order.

  stage           component                      failure
  ─────────────   ────────────────────────────   ───────────────────
  CORS check      AccessGate (origin)            CorsRejected  403
  auth            AccessGate (X-Proxy-Key)       Unauthorized  401
  quota           QuotaTracker.consume()         RateLimited   429
  route lookup    RouteTable.resolve()           UnknownSlug   404
  path rewrite    rewrite_path()                 -
  forward         Forwarder.forward()            UpstreamTimeout 504 /
                                                 UpstreamUnreachable 502

The quota is charged only for authorized requests, and the slug is resolved
only for admitted ones, so an unknown slug still costs a point.
The request body is read from the client only once every admission stage has
passed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Request
from starlette.responses import Response

from keygate.auth.gate import AccessDecision, AccessGate
from keygate.auth.limiter import QuotaTracker, get_remote_address
from keygate.constants import PROXY_KEY_HEADER, PROXY_METHODS, PROXY_PREFIX
from keygate.models.errors import (
    CorsRejected,
    GatewayError,
    RateLimited,
    Unauthorized,
    build_error_response,
)
from keygate.proxy.engine import Forwarder, UpstreamResponse
from keygate.routing.table import RouteTable, rewrite_path
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["proxy"])


class Stage(str, Enum):
    RECEIVED = "received"
    CORS_CHECKED = "cors_checked"
    AUTHORIZED = "authorized"
    QUOTA_CHECKED = "quota_checked"
    ROUTED = "routed"
    REWRITTEN = "rewritten"
    FORWARDED = "forwarded"
    RESPONDED = "responded"
    REJECTED = "rejected"


@dataclass(frozen=True)
class InboundRequest:
    """Transport-independent view of one proxied request.

    ``path`` is the raw (still percent-encoded) request path and ``query`` the
    raw query string without ``?``; both reach the upstream unchanged apart
    from the prefix strip.

    When built from a live request the body is not read up front: ``read_body``
    is awaited by ``load_body()`` only once the request has been admitted.
    """

    method: str
    path: str
    slug: str
    client: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    query: str = ""
    read_body: Optional[Callable[[], Awaitable[bytes]]] = field(
        default=None, compare=False, repr=False
    )

    def header(self, name: str) -> Optional[str]:
        lower_name = name.lower()
        for key, value in self.headers:
            if key.lower() == lower_name:
                return value
        return None

    @property
    def credential(self) -> Optional[str]:
        return self.header(PROXY_KEY_HEADER)

    @property
    def origin(self) -> Optional[str]:
        return self.header("origin")

    async def load_body(self) -> bytes:
        if self.read_body is None:
            return self.body
        return await self.read_body()

    @classmethod
    async def from_request(cls, request: Request) -> "InboundRequest":
        raw_path: bytes = request.scope.get("raw_path") or request.url.path.encode("utf-8")
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
        # path is /t/<slug>[/...]: the route only matches that shape
        slug = path.split("/")[2]
        return cls(
            method=request.method,
            path=path,
            slug=slug,
            client=get_remote_address(request),
            headers=[
                (name.decode("latin-1"), value.decode("latin-1"))
                for name, value in request.headers.raw
            ],
            read_body=request.body,
            query=request.scope.get("query_string", b"").decode("latin-1"),
        )


@dataclass(frozen=True)
class PipelineOutcome:
    """Terminal state of one pipeline run.

    ``stage`` is RESPONDED (with ``response``) or REJECTED (with ``error`` and
    ``failed_after``, the last stage that completed).
    """

    stage: Stage
    response: Optional[UpstreamResponse] = None
    error: Optional[GatewayError] = None
    failed_after: Optional[Stage] = None

    @property
    def rejected(self) -> bool:
        return self.stage is Stage.REJECTED


class GatewayPipeline:
    """Composes the gateway stages in their fixed order."""

    def __init__(
        self,
        gate: AccessGate,
        quota: QuotaTracker,
        routes: RouteTable,
        forwarder: Forwarder,
    ) -> None:
        self._gate = gate
        self._quota = quota
        self._routes = routes
        self._forwarder = forwarder

    async def run(self, inbound: InboundRequest) -> PipelineOutcome:
        stage = Stage.RECEIVED
        try:
            decision = self._gate.authorize(inbound.credential, inbound.origin)
            if decision is AccessDecision.CORS_REJECTED:
                raise CorsRejected(inbound.origin)
            stage = Stage.CORS_CHECKED

            if decision is AccessDecision.UNAUTHORIZED:
                raise Unauthorized()
            stage = Stage.AUTHORIZED

            quota = self._quota.consume(inbound.client)
            if not quota.admitted:
                raise RateLimited(retry_after_s=quota.retry_after_s)
            stage = Stage.QUOTA_CHECKED

            target = self._routes.resolve(inbound.slug)
            stage = Stage.ROUTED

            forward_path = rewrite_path(inbound.path, inbound.slug)
            stage = Stage.REWRITTEN

            upstream = await self._forwarder.forward(
                target,
                forward_path,
                method=inbound.method,
                headers=inbound.headers,
                body=await inbound.load_body(),
                query=inbound.query,
            )
            stage = Stage.FORWARDED
        except GatewayError as exc:
            logger.info(
                "request_rejected",
                failed_after=stage.value,
                reason=type(exc).__name__,
                status_code=exc.status_code,
                client=inbound.client,
                slug=inbound.slug,
                detail=str(exc),
            )
            return PipelineOutcome(stage=Stage.REJECTED, error=exc, failed_after=stage)

        logger.info(
            "request_proxied",
            method=inbound.method,
            slug=inbound.slug,
            upstream=target.base_url,
            forward_path=forward_path,
            status_code=upstream.status_code,
        )
        return PipelineOutcome(stage=Stage.RESPONDED, response=upstream)


def to_response(outcome: PipelineOutcome) -> Response:
    """Render a pipeline outcome for the caller.

    Upstream responses are relayed verbatim: status, headers (already
    sanitised), raw body.
    """
    if outcome.error is not None:
        return build_error_response(outcome.error)

    upstream = outcome.response
    if upstream is None:
        raise ValueError(f"{outcome.stage.value} outcome carries neither a response nor an error")

    response = Response(content=upstream.body, status_code=upstream.status_code)
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in upstream.headers
    ]
    has_length = any(name == b"content-length" for name, _ in raw_headers)
    if not has_length and upstream.status_code >= 200 and upstream.status_code not in (204, 304):
        raw_headers.append((b"content-length", str(len(upstream.body)).encode("latin-1")))
    response.raw_headers = raw_headers
    return response


# ─── Routes ──────────────────────────────────────────────────────────────────


@router.api_route(f"/{PROXY_PREFIX}/{{slug}}", methods=list(PROXY_METHODS))
@router.api_route(f"/{PROXY_PREFIX}/{{slug}}/{{rest:path}}", methods=list(PROXY_METHODS))
async def proxy_handler(request: Request) -> Response:
    """Run a ``/t/<slug>/...`` request through the gateway pipeline."""
    pipeline: GatewayPipeline = request.app.state.pipeline
    inbound = await InboundRequest.from_request(request)
    outcome = await pipeline.run(inbound)
    return to_response(outcome)
