"""Unit tests for keygate/proxy/engine.py: Forwarder and client factory.

The Forwarder is driven against an httpx.MockTransport, so no sockets are
opened. Upstream responses are built with a ByteStream body so the
forwarder's raw streaming read path is exercised.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from keygate.config import UpstreamConfig
from keygate.models.errors import UpstreamTimeout, UpstreamUnreachable
from keygate.proxy.engine import (
    Forwarder,
    UpstreamResponse,
    build_upstream_url,
    create_http_client,
)
from keygate.routing.table import UpstreamTarget

TARGET = UpstreamTarget(slug="wetrust", base_url="https://upstream.test")


# ─── Helpers ──────────────────────────────────────────────────────────────────


class _Recorder:
    def __init__(
        self,
        *,
        status_code: int = 200,
        body: bytes = b'{"ok": true}',
        headers: list[tuple[str, str]] | None = None,
        delay_s: float = 0.0,
        raise_on_send: Exception | None = None,
    ) -> None:
        self.received_requests: list[httpx.Request] = []
        self._status_code = status_code
        self._body = body
        self._headers = headers or [("content-type", "application/json")]
        self._delay_s = delay_s
        self._raise_on_send = raise_on_send

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.received_requests.append(request)
        if self._raise_on_send is not None:
            raise self._raise_on_send
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        return httpx.Response(
            self._status_code,
            headers=self._headers,
            stream=httpx.ByteStream(self._body),
        )

    def forwarder(self, timeout_s: float = 5.0) -> Forwarder:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return Forwarder(client, timeout_s=timeout_s)


# ─── build_upstream_url() ─────────────────────────────────────────────────────


class TestBuildUpstreamUrl:
    def test_path_appended(self) -> None:
        assert build_upstream_url(TARGET, "/foo/bar") == "https://upstream.test/foo/bar"

    def test_query_reattached(self) -> None:
        assert build_upstream_url(TARGET, "/s", "q=a&q=b") == "https://upstream.test/s?q=a&q=b"

    def test_base_path_kept(self) -> None:
        target = UpstreamTarget(slug="x", base_url="http://10.0.0.5:8081/api")
        assert build_upstream_url(target, "/v1") == "http://10.0.0.5:8081/api/v1"


# ─── create_http_client() ─────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestCreateHttpClient:
    async def test_no_default_request_headers(self) -> None:
        client = create_http_client(UpstreamConfig(timeout_ms=1000))
        try:
            assert "accept-encoding" not in client.headers
            assert "user-agent" not in client.headers
            assert "accept" not in client.headers
            assert client.follow_redirects is False
            assert client.timeout.read == 1.0
        finally:
            await client.aclose()


# ─── Forwarder.forward() ──────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestForward:
    async def test_request_reaches_upstream_unchanged(self) -> None:
        upstream = _Recorder()
        await upstream.forwarder().forward(
            TARGET,
            "/foo/bar",
            method="PATCH",
            headers=[
                ("x-proxy-key", "secret"),
                ("host", "gateway.example"),
                ("content-type", "application/json"),
                ("x-tag", "one"),
                ("x-tag", "two"),
            ],
            body=b'{"a": 1}',
            query="q=a&q=b",
        )
        assert len(upstream.received_requests) == 1
        sent = upstream.received_requests[0]
        assert sent.method == "PATCH"
        assert sent.url.host == "upstream.test"
        assert sent.url.path == "/foo/bar"
        assert sent.url.query == b"q=a&q=b"
        assert sent.content == b'{"a": 1}'
        assert "x-proxy-key" not in sent.headers
        assert sent.headers["host"] == "upstream.test"
        assert sent.headers.get_list("x-tag") == ["one", "two"]

    async def test_inject_headers_applied(self) -> None:
        upstream = _Recorder()
        target = UpstreamTarget(
            slug="billing",
            base_url="https://billing.test",
            inject_headers={"Authorization": "Bearer upstream-token"},
        )
        await upstream.forwarder().forward(
            target, "/", method="GET", headers=[("authorization", "Bearer caller")]
        )
        sent = upstream.received_requests[0]
        assert sent.headers.get_list("authorization") == ["Bearer upstream-token"]

    async def test_response_relayed(self) -> None:
        upstream = _Recorder(
            status_code=503,
            body=b"busy",
            headers=[
                ("content-type", "text/plain"),
                ("x-ratelimit-remaining", "0"),
                ("connection", "close"),
            ],
        )
        result = await upstream.forwarder().forward(TARGET, "/", method="GET", headers=[])
        assert isinstance(result, UpstreamResponse)
        assert result.status_code == 503
        assert result.body == b"busy"
        assert ("x-ratelimit-remaining", "0") in result.headers
        assert "connection" not in [name for name, _ in result.headers]

    async def test_compressed_body_not_decoded(self) -> None:
        raw = b"\x1f\x8b\x08\x00not-really-gzip"
        upstream = _Recorder(body=raw, headers=[("content-encoding", "gzip")])
        result = await upstream.forwarder().forward(TARGET, "/", method="GET", headers=[])
        assert result.body == raw
        assert ("content-encoding", "gzip") in result.headers

    async def test_redirect_not_followed(self) -> None:
        upstream = _Recorder(status_code=302, body=b"", headers=[("location", "/elsewhere")])
        result = await upstream.forwarder().forward(TARGET, "/", method="GET", headers=[])
        assert result.status_code == 302
        assert len(upstream.received_requests) == 1


# ─── Failure mapping ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestForwardFailures:
    async def test_slow_upstream_times_out(self) -> None:
        upstream = _Recorder(delay_s=2.0)
        with pytest.raises(UpstreamTimeout):
            await upstream.forwarder(timeout_s=0.05).forward(TARGET, "/", method="GET", headers=[])

    async def test_httpx_timeout_maps_to_timeout(self) -> None:
        upstream = _Recorder(raise_on_send=httpx.ReadTimeout("read timed out"))
        with pytest.raises(UpstreamTimeout):
            await upstream.forwarder().forward(TARGET, "/", method="GET", headers=[])

    @pytest.mark.parametrize(
        "exc",
        [
            httpx.ConnectError("connection refused"),
            httpx.RemoteProtocolError("peer closed connection"),
            httpx.ReadError("reset by peer"),
        ],
    )
    async def test_transport_errors_map_to_unreachable(self, exc: Exception) -> None:
        upstream = _Recorder(raise_on_send=exc)
        with pytest.raises(UpstreamUnreachable):
            await upstream.forwarder().forward(TARGET, "/", method="GET", headers=[])
