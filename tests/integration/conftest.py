"""Shared fixtures for keygate integration tests.

The full application (middleware, routers, lifespan) is built with
``create_app(config)``; only ``keygate.main.create_http_client`` is patched so
the shared client talks to an in-process ``httpx.MockTransport`` instead of
the network.
"""

from __future__ import annotations

import asyncio
from types import MappingProxyType
from typing import Callable

import httpx
import pytest
from starlette.testclient import TestClient

from keygate.config import Config, QuotaConfig, RouteConfig, UpstreamConfig
from keygate.main import create_app

UPSTREAM_URL = "https://upstream.test"


class MockUpstream:
    """Mock upstream that records received requests and returns a configurable response."""

    def __init__(
        self,
        *,
        status_code: int = 200,
        body: bytes = b'{"result": "mocked"}',
        headers: list[tuple[str, str]] | None = None,
        delay_s: float = 0.0,
        raise_on_send: Exception | None = None,
    ) -> None:
        self.received_requests: list[httpx.Request] = []
        self._status_code = status_code
        self._body = body
        self._headers = headers if headers is not None else [("content-type", "application/json")]
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

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def request_count(self) -> int:
        return len(self.received_requests)

    @property
    def last_request(self) -> httpx.Request:
        return self.received_requests[-1]


def build_config(
    proxy_key: str,
    *,
    allow_origins: tuple[str, ...] = (),
    points: int = 60,
    window_s: int = 60,
    timeout_ms: int = 15_000,
    routes: tuple[RouteConfig, ...] | None = None,
) -> Config:
    return Config(
        proxy_key=proxy_key,
        allow_origins=allow_origins,
        quota=QuotaConfig(points=points, window_s=window_s),
        upstream=UpstreamConfig(timeout_ms=timeout_ms),
        routes=routes
        if routes is not None
        else (RouteConfig(slug="wetrust", url=UPSTREAM_URL, inject_headers=MappingProxyType({})),),
    )


@pytest.fixture()
def upstream() -> MockUpstream:
    return MockUpstream()


@pytest.fixture()
def upstream_factory() -> type[MockUpstream]:
    """For tests that need a non-default upstream response."""
    return MockUpstream


@pytest.fixture()
def make_client(
    monkeypatch: pytest.MonkeyPatch, proxy_key: str
) -> Callable[..., TestClient]:
    """Build a TestClient for a gateway wired to ``mock_upstream``.

    Use as a context manager so the lifespan runs::

        with make_client(upstream) as client:
            ...
    """

    def _make(mock_upstream: MockUpstream, **config_kwargs) -> TestClient:
        monkeypatch.setattr(
            "keygate.main.create_http_client",
            lambda upstream_config: mock_upstream.client(),
        )
        return TestClient(create_app(build_config(proxy_key, **config_kwargs)))

    return _make


@pytest.fixture()
def auth_headers(proxy_key: str) -> dict[str, str]:
    return {"X-Proxy-Key": proxy_key}
