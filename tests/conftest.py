"""Root test configuration for keygate.

Every test starts from a clean environment: a known PROXY_KEY, none of the
numeric/origin overrides, no config file, and a scratch working directory so a
stray ``.keygate/config.yaml`` on the developer's machine is never picked up.

Tests that need a different environment override it with their own
monkeypatch calls (the autouse fixture runs first).
"""

import pytest

TEST_PROXY_KEY = "s3cret-test-key"

_OVERRIDE_VARS = (
    "PORT",
    "HOST",
    "ALLOW_ORIGINS",
    "TIMEOUT_MS",
    "RATE_LIMIT_POINTS",
    "RATE_LIMIT_WINDOW_S",
    "KEYGATE_CONFIG",
)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("PROXY_KEY", TEST_PROXY_KEY)
    for name in _OVERRIDE_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def proxy_key() -> str:
    return TEST_PROXY_KEY
