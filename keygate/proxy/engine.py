"""Forwarding engine for keygate.

Transmits one admitted request to its upstream and brings back the complete
response.

Key design properties:
  - One shared httpx.AsyncClient (connection pool) created at lifespan startup
    and stored in app.state.http_client; never instantiated per request.
  - Request body forwarded as raw bytes; response body read with
    ``aiter_raw()`` so content-encoding is relayed untouched.
  - Hard deadline: the httpx timeout bounds each network phase, and
    ``asyncio.wait_for`` bounds connect + send + full body read. When it
    fires, the upstream response is closed and UpstreamTimeout is raised.
  - TLS verification is on unless ``upstream.verify_tls: false``.
  - Redirects are not followed; 3xx is relayed to the caller.
  - No protocol upgrade: ``Upgrade``/``Connection`` never reach the upstream.

Failure mapping:
  - httpx.TimeoutException / deadline          → UpstreamTimeout      (504)
  - httpx.ConnectError, other TransportError   → UpstreamUnreachable  (502)
    (refused, DNS failure, TLS failure, broken upstream protocol)
  - Upstream HTTP 4xx/5xx → relayed as-is, never converted.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable

import httpx

from keygate.config import UpstreamConfig
from keygate.constants import POOL_KEEPALIVE_EXPIRY, POOL_MAX_CONNECTIONS, POOL_MAX_KEEPALIVE
from keygate.models.errors import UpstreamTimeout, UpstreamUnreachable
from keygate.proxy.headers import build_client_response_headers, build_upstream_headers
from keygate.routing.table import UpstreamTarget
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

# httpx adds these to every request unless the caller sent them. A transparent
# proxy must not: an injected Accept-Encoding would let the upstream compress a
# body the caller never asked to be compressed.
_CLIENT_DEFAULT_HEADERS: tuple[str, ...] = ("accept", "accept-encoding", "user-agent")


@dataclass(frozen=True)
class UpstreamResponse:
    """A fully-read upstream response, headers already sanitised."""

    status_code: int
    headers: list[tuple[str, str]]
    body: bytes


def create_http_client(config: UpstreamConfig) -> httpx.AsyncClient:
    """Create the shared httpx.AsyncClient.

    Created once at lifespan startup and stored in app.state.http_client.
    """
    client = httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY,
        ),
        timeout=httpx.Timeout(config.timeout_s),
        verify=config.verify_tls,
        follow_redirects=False,
    )
    for name in _CLIENT_DEFAULT_HEADERS:
        if name in client.headers:
            del client.headers[name]
    return client


def build_upstream_url(target: UpstreamTarget, forward_path: str, query: str = "") -> str:
    url = target.base_url + forward_path
    if query:
        url = f"{url}?{query}"
    return url


class Forwarder:
    """Sends requests upstream through a shared client under a fixed deadline."""

    def __init__(self, client: httpx.AsyncClient, timeout_s: float) -> None:
        self._client = client
        self._timeout_s = timeout_s

    async def forward(
        self,
        target: UpstreamTarget,
        forward_path: str,
        method: str,
        headers: Iterable[tuple[str, str]],
        body: bytes = b"",
        query: str = "",
    ) -> UpstreamResponse:
        """Forward one request and return the upstream's response.

        Args:
            target:       resolved upstream.
            forward_path: rewritten path, always starting with ``/``.
            method:       inbound HTTP method, preserved.
            headers:      inbound headers as (name, value) pairs.
            body:         inbound body, forwarded byte-for-byte.
            query:        raw inbound query string (without ``?``), unchanged.

        Raises:
            UpstreamTimeout:     deadline exceeded.
            UpstreamUnreachable: connection-level failure.
        """
        url = build_upstream_url(target, forward_path, query)

        upstream_headers = [
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in build_upstream_headers(headers, target.inject_headers)
        ]
        try:
            request = self._client.build_request(
                method=method,
                url=url,
                headers=upstream_headers,
                content=body,
            )
        except httpx.InvalidURL as exc:
            logger.error("invalid_upstream_url", slug=target.slug, upstream_url=url, error=str(exc))
            raise UpstreamUnreachable(f"invalid upstream URL: {exc}") from exc

        try:
            return await asyncio.wait_for(self._exchange(request), timeout=self._timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning(
                "upstream_timeout",
                slug=target.slug,
                upstream_url=url,
                timeout_s=self._timeout_s,
                error_type=type(exc).__name__,
            )
            raise UpstreamTimeout(f"no response within {self._timeout_s}s") from exc
        except httpx.TransportError as exc:
            logger.warning(
                "upstream_unreachable",
                slug=target.slug,
                upstream_url=url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamUnreachable(type(exc).__name__) from exc

    async def _exchange(self, request: httpx.Request) -> UpstreamResponse:
        response = await self._client.send(request, stream=True)
        try:
            body = b"".join([chunk async for chunk in response.aiter_raw()])
        finally:
            await response.aclose()
        raw_headers = [
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in response.headers.raw
        ]
        return UpstreamResponse(
            status_code=response.status_code,
            headers=build_client_response_headers(raw_headers),
            body=body,
        )
