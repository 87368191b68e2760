"""Config loading for keygate.

Builds one immutable ``Config`` at startup. Components receive the pieces they
need through their constructors; nothing downstream reads the environment.

Sources, later wins:
  1. Coded defaults (``keygate.constants``)
  2. YAML config file (optional):
       a. ``config_path`` argument
       b. ``KEYGATE_CONFIG`` environment variable
       c. ``.keygate/config.yaml`` (working directory)
  3. Environment variables:
       PORT, HOST, PROXY_KEY, ALLOW_ORIGINS, TIMEOUT_MS,
       RATE_LIMIT_POINTS, RATE_LIMIT_WINDOW_S

A missing config file is not an error. Everything else that is wrong with the
configuration (unparseable YAML, bad version, invalid route URL, non-integer
numeric override, and above all a missing ``PROXY_KEY``) writes a
``CONFIG ERROR`` line to stderr and raises ``SystemExit(1)`` so the process
never starts serving.

Example file::

    version: 1
    server:
      port: 8080
    allow_origins:
      - https://netransit.github.io
    quota:
      points: 60
      window_s: 60
    upstream:
      timeout_ms: 15000
    routes:
      wetrust: https://net-api.mbtaroblox.com
      billing:
        url: https://billing.internal.example
        inject_headers:
          Authorization: "Bearer ${BILLING_API_KEY}"
"""

from __future__ import annotations

import dataclasses
import os
import sys
from dataclasses import dataclass, field
from string import Template
from types import MappingProxyType
from typing import Any, Mapping, NoReturn, Optional
from urllib.parse import urlsplit

import yaml

from keygate.constants import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_QUOTA_POINTS,
    DEFAULT_QUOTA_WINDOW_S,
    DEFAULT_ROUTES,
    DEFAULT_TIMEOUT_MS,
)
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".keygate/config.yaml",
]

_ALLOWED_URL_SCHEMES: frozenset[str] = frozenset({"http", "https"})


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ServerConfig:
    """Listener binding."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT


@dataclass(frozen=True)
class QuotaConfig:
    """Fixed-window quota: ``points`` requests per ``window_s`` seconds per client."""

    points: int = DEFAULT_QUOTA_POINTS
    window_s: int = DEFAULT_QUOTA_WINDOW_S


@dataclass(frozen=True)
class UpstreamConfig:
    """Outbound connection settings shared by all routes.

    timeout_ms: deadline for connect + full round trip.
    verify_tls: upstream certificate validation. Only an explicit
                ``upstream.verify_tls: false`` in the config file turns it off.
    """

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    verify_tls: bool = True

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True)
class RouteConfig:
    """One slug → upstream base URL entry.

    ``inject_headers`` holds header values already resolved from their
    ``${ENV_VAR}`` templates; these are set on every request forwarded to
    this upstream.
    """

    slug: str
    url: str
    inject_headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class Config:
    """Root configuration object. Immutable once built."""

    proxy_key: str
    allow_origins: tuple[str, ...] = ()
    server: ServerConfig = field(default_factory=ServerConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    routes: tuple[RouteConfig, ...] = field(
        default_factory=lambda: tuple(
            RouteConfig(slug=slug, url=url) for slug, url in DEFAULT_ROUTES.items()
        )
    )
    path: Optional[str] = None  # config file the values came from, if any

    @classmethod
    def from_dict(
        cls,
        raw: dict,
        proxy_key: str = "",
        path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Config":
        """Construct Config from a parsed YAML dict, merging onto defaults.

        Unknown keys are silently ignored.

        Raises:
            SystemExit(1): On an invalid route entry or route URL.
        """
        env = os.environ if environ is None else environ

        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", DEFAULT_HOST),
            port=_as_int(server_raw.get("port", DEFAULT_PORT), "server.port"),
        )

        quota_raw = raw.get("quota") or {}
        quota = QuotaConfig(
            points=_as_int(quota_raw.get("points", DEFAULT_QUOTA_POINTS), "quota.points"),
            window_s=_as_int(quota_raw.get("window_s", DEFAULT_QUOTA_WINDOW_S), "quota.window_s"),
        )

        upstream_raw = raw.get("upstream") or {}
        upstream = UpstreamConfig(
            timeout_ms=_as_int(
                upstream_raw.get("timeout_ms", DEFAULT_TIMEOUT_MS), "upstream.timeout_ms"
            ),
            verify_tls=_as_bool(upstream_raw.get("verify_tls", True), "upstream.verify_tls"),
        )

        routes_raw = raw.get("routes")
        if routes_raw is None:
            routes_raw = dict(DEFAULT_ROUTES)
        if not isinstance(routes_raw, dict):
            _fail("'routes' must be a mapping of slug to upstream URL.")

        return cls(
            proxy_key=proxy_key,
            allow_origins=parse_origins(raw.get("allow_origins", ())),
            server=server,
            quota=quota,
            upstream=upstream,
            routes=tuple(
                _parse_route(str(slug), entry, env) for slug, entry in routes_raw.items()
            ),
            path=path,
        )


# ─── Parsing helpers ──────────────────────────────────────────────────────────


def _fail(message: str) -> NoReturn:
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)


def _as_int(value: Any, name: str) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        _fail(f"{name} must be an integer, got '{value}'.")
    if result <= 0:
        _fail(f"{name} must be positive, got {result}.")
    return result


def _as_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        _fail(f"{name} must be true or false, got '{value}'.")
    return value


def parse_origins(value: Any) -> tuple[str, ...]:
    """Normalise an origin allow-list from a comma string or a YAML list.

    Blank entries are dropped; an empty result means allow-all.
    """
    if value is None:
        return ()
    items = value.split(",") if isinstance(value, str) else list(value)
    return tuple(str(item).strip() for item in items if str(item).strip())


def _validate_upstream_url(url: str, name: str) -> str:
    """Check an upstream base URL and return it without a trailing slash.

    Accepted: ``http(s)://host[:port][/base/path]``. Rejected: other schemes,
    missing host, embedded credentials, query strings and fragments.

    Raises:
        SystemExit(1): On any rejected URL.
    """
    try:
        parts = urlsplit(url)
        _ = parts.port  # raises ValueError on a non-numeric port
    except ValueError as exc:
        _fail(f"{name}: invalid upstream URL '{url}': {exc}")
    if parts.scheme not in _ALLOWED_URL_SCHEMES:
        _fail(f"{name}: upstream URL must use http or https, got '{url}'.")
    if not parts.hostname:
        _fail(f"{name}: upstream URL has no host: '{url}'.")
    if parts.username or parts.password:
        _fail(f"{name}: upstream URL must not embed credentials.")
    if parts.query or parts.fragment:
        _fail(f"{name}: upstream URL must not carry a query string or fragment.")
    return url.rstrip("/")


def _resolve_header_templates(
    slug: str, templates: Any, environ: Mapping[str, str]
) -> Mapping[str, str]:
    """Expand ``${ENV_VAR}`` placeholders in a route's inject_headers.

    A header whose variable is unset is left out (and logged) rather than sent
    with a blank credential.
    """
    if not templates:
        return MappingProxyType({})
    if not isinstance(templates, dict):
        _fail(f"routes.{slug}.inject_headers must be a mapping of header to value.")

    resolved: dict[str, str] = {}
    for header, template in templates.items():
        try:
            value = Template(str(template)).substitute(environ)
        except KeyError as exc:
            logger.warning(
                "Injected header skipped: environment variable not set",
                slug=slug,
                header=header,
                variable=exc.args[0],
            )
            continue
        except ValueError as exc:
            _fail(f"routes.{slug}.inject_headers.{header}: bad placeholder: {exc}")
        try:
            str(header).encode("ascii")
            value.encode("latin-1")
        except UnicodeEncodeError:
            _fail(
                f"routes.{slug}.inject_headers.{header}: "
                "header name must be ASCII and its value latin-1."
            )
        resolved[str(header)] = value
    return MappingProxyType(resolved)


def _parse_route(slug: str, entry: Any, environ: Mapping[str, str]) -> RouteConfig:
    if not slug or "/" in slug:
        _fail(f"Route slug '{slug}' must be a single non-empty path segment.")

    if isinstance(entry, str):
        url, templates = entry, None
    elif isinstance(entry, dict) and "url" in entry:
        url, templates = str(entry["url"]), entry.get("inject_headers")
    else:
        _fail(f"routes.{slug} must be a URL string or a mapping with a 'url' key.")

    return RouteConfig(
        slug=slug,
        url=_validate_upstream_url(url, f"routes.{slug}"),
        inject_headers=_resolve_header_templates(slug, templates, environ),
    )


# ─── Config loading ───────────────────────────────────────────────────────────


def _read_config_file(config_path: Optional[str]) -> tuple[dict, Optional[str]]:
    """Find and parse the first existing config file.

    Returns ``({}, None)`` when no file exists.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("KEYGATE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found: using defaults", searched=search_paths)
        return {}, None

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"Failed to parse {found_path}: {exc}\n"
            "keygate refuses to start with an invalid config."
        )
    except OSError as exc:
        _fail(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(f"{found_path} is not a valid YAML mapping.")

    version = raw.get("version")
    if version is None:
        _fail(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    return raw, found_path


def _apply_env_overrides(config: Config) -> Config:
    """Return a copy of ``config`` with environment overrides applied.

    Raises:
        SystemExit(1): If a numeric variable is set but not a positive integer.
    """
    env = os.environ
    server = config.server
    quota = config.quota
    upstream = config.upstream
    allow_origins = config.allow_origins

    if env.get("PORT") is not None:
        server = dataclasses.replace(server, port=_as_int(env["PORT"], "PORT"))
    if env.get("HOST"):
        server = dataclasses.replace(server, host=env["HOST"])
    if env.get("ALLOW_ORIGINS") is not None:
        allow_origins = parse_origins(env["ALLOW_ORIGINS"])
    if env.get("TIMEOUT_MS") is not None:
        upstream = dataclasses.replace(
            upstream, timeout_ms=_as_int(env["TIMEOUT_MS"], "TIMEOUT_MS")
        )
    if env.get("RATE_LIMIT_POINTS") is not None:
        quota = dataclasses.replace(
            quota, points=_as_int(env["RATE_LIMIT_POINTS"], "RATE_LIMIT_POINTS")
        )
    if env.get("RATE_LIMIT_WINDOW_S") is not None:
        quota = dataclasses.replace(
            quota, window_s=_as_int(env["RATE_LIMIT_WINDOW_S"], "RATE_LIMIT_WINDOW_S")
        )

    return dataclasses.replace(
        config,
        proxy_key=env.get("PROXY_KEY", config.proxy_key),
        allow_origins=allow_origins,
        server=server,
        quota=quota,
        upstream=upstream,
    )


def load_config(config_path: Optional[str] = None) -> Config:
    """Load, merge and validate keygate configuration.

    Returns:
        Immutable Config with file values merged onto defaults and environment
        overrides applied last.

    Raises:
        SystemExit(1): On any invalid configuration, including a missing
                       ``PROXY_KEY``.
    """
    raw, found_path = _read_config_file(config_path)
    config = _apply_env_overrides(Config.from_dict(raw, path=found_path))

    if not config.proxy_key:
        _fail("Missing PROXY_KEY env var. keygate will not start without a shared key.")

    if not config.upstream.verify_tls:
        logger.warning(
            "SECURITY WARNING: upstream TLS certificate verification is disabled "
            "(upstream.verify_tls: false)."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        port=config.server.port,
        routes=[route.slug for route in config.routes],
        allow_origins=list(config.allow_origins) or "*",
        quota_points=config.quota.points,
        quota_window_s=config.quota.window_s,
        timeout_ms=config.upstream.timeout_ms,
    )
    return config
