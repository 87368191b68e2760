"""Shared constants for keygate.

Defaults, header names and size limits used across modules live here.
No magic numbers in other modules: import from here.
"""

# ─── HTTP surface ────────────────────────────────────────────────────────────

# First path segment of every proxied request: /t/<slug>/<rest...>
PROXY_PREFIX: str = "t"

# Header carrying the shared secret. Consumed at the gateway, never forwarded.
PROXY_KEY_HEADER: str = "x-proxy-key"

# Methods accepted on /t/<slug>/... routes.
PROXY_METHODS: tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")

# Methods advertised to browsers in CORS preflight responses.
CORS_ALLOW_METHODS: tuple[str, ...] = ("GET", "HEAD", "PUT", "PATCH", "POST", "DELETE")

# ─── Request size limit ──────────────────────────────────────────────────────

# Maximum accepted request body. HTTP 413 is returned above this, before the
# pipeline runs or any upstream connection is opened.
MAX_REQUEST_BODY_BYTES: int = 262_144  # 256 KiB

# ─── Defaults (overridable via config file / environment) ────────────────────

DEFAULT_HOST: str = "0.0.0.0"
DEFAULT_PORT: int = 8080

# Upstream deadline covering connect + full round trip.
DEFAULT_TIMEOUT_MS: int = 15_000

# Fixed-window quota: DEFAULT_QUOTA_POINTS requests per DEFAULT_QUOTA_WINDOW_S.
DEFAULT_QUOTA_POINTS: int = 60
DEFAULT_QUOTA_WINDOW_S: int = 60

DEFAULT_ROUTES: dict[str, str] = {
    "wetrust": "https://net-api.mbtaroblox.com",
}

# ─── Upstream connection pool ────────────────────────────────────────────────

POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 100
POOL_KEEPALIVE_EXPIRY: float = 30.0  # seconds
