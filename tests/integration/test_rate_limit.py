"""Integration tests: per-client fixed-window quota through the full app.

TestClient always reports the client address as "testclient", so every
request in a test shares one quota identity.
"""

from __future__ import annotations


class TestQuota:
    def test_sixty_first_request_limited(self, make_client, upstream, auth_headers) -> None:
        with make_client(upstream) as client:
            statuses = [
                client.get("/t/wetrust/foo", headers=auth_headers).status_code for _ in range(60)
            ]
            limited = client.get("/t/wetrust/foo", headers=auth_headers)
        assert statuses == [200] * 60
        assert limited.status_code == 429
        assert limited.json() == {"error": "Rate limit exceeded"}
        assert 1 <= int(limited.headers["retry-after"]) <= 60
        assert upstream.request_count == 60

    def test_limited_requests_keep_counting(self, make_client, upstream, auth_headers) -> None:
        with make_client(upstream, points=2) as client:
            client.get("/t/wetrust/a", headers=auth_headers)
            client.get("/t/wetrust/a", headers=auth_headers)
            statuses = [
                client.get("/t/wetrust/a", headers=auth_headers).status_code for _ in range(3)
            ]
        assert statuses == [429, 429, 429]
        assert upstream.request_count == 2

    def test_unauthorized_requests_not_charged(
        self, make_client, upstream, auth_headers
    ) -> None:
        with make_client(upstream, points=2) as client:
            for _ in range(5):
                assert client.get("/t/wetrust/a").status_code == 401
            assert client.get("/t/wetrust/a", headers=auth_headers).status_code == 200
            assert client.get("/t/wetrust/a", headers=auth_headers).status_code == 200

    def test_unauthorized_still_401_when_exhausted(
        self, make_client, upstream, auth_headers
    ) -> None:
        with make_client(upstream, points=1) as client:
            client.get("/t/wetrust/a", headers=auth_headers)
            response = client.get("/t/wetrust/a")
        assert response.status_code == 401

    def test_unknown_slug_spends_quota(self, make_client, upstream, auth_headers) -> None:
        with make_client(upstream, points=1) as client:
            assert client.get("/t/nope/a", headers=auth_headers).status_code == 404
            assert client.get("/t/wetrust/a", headers=auth_headers).status_code == 429

    def test_health_exempt(self, make_client, upstream, auth_headers) -> None:
        with make_client(upstream, points=1) as client:
            client.get("/t/wetrust/a", headers=auth_headers)
            client.get("/t/wetrust/a", headers=auth_headers)
            response = client.get("/health")
        assert response.status_code == 200

    def test_quota_not_shared_between_apps(self, make_client, upstream, auth_headers) -> None:
        with make_client(upstream, points=1) as client:
            assert client.get("/t/wetrust/a", headers=auth_headers).status_code == 200
        with make_client(upstream, points=1) as client:
            assert client.get("/t/wetrust/a", headers=auth_headers).status_code == 200
