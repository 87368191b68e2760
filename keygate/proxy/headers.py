"""HTTP header processing for the keygate forwarder.

  - build_upstream_headers(): strips the X-Proxy-Key credential and hop-by-hop
    headers, applies the target's injected headers, forwards everything else.

  - build_client_response_headers(): strips hop-by-hop headers and any
    X-Proxy-Key from the upstream response, forwards everything else.

RFC 7230 §6.1: hop-by-hop headers MUST NOT be forwarded by intermediaries.
``host`` is dropped so httpx derives it from the upstream URL (the upstream
sees its own host, not the gateway's).

Names and values are handled as latin-1 decoded ``str`` so arbitrary header
bytes round-trip unchanged.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from keygate.constants import PROXY_KEY_HEADER

# ─── Constants ────────────────────────────────────────────────────────────────

HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",  # httpx computes it from content=
    }
)

# The raw upstream body is relayed byte-for-byte, so its Content-Length stays
# valid and is kept (HEAD responses depend on it).
_RESPONSE_DROPPED_HEADERS: frozenset[str] = HOP_BY_HOP_HEADERS - {"content-length"}


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> frozenset[str]:
    """Header names listed in ``Connection`` are hop-by-hop for this message too."""
    tokens: set[str] = set()
    for name, value in headers:
        if name.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return frozenset(tokens)


# ─── Public API ───────────────────────────────────────────────────────────────


def build_upstream_headers(
    request_headers: Iterable[tuple[str, str]],
    inject_headers: Mapping[str, str] | None = None,
) -> list[tuple[str, str]]:
    """Build the header list to send upstream.

    Rules applied (in order):
      1. Strip ``X-Proxy-Key`` (any case): consumed at the gateway, never leaked.
      2. Strip hop-by-hop headers, including names listed in ``Connection``.
      3. Forward all remaining headers unchanged, repeated headers included.
      4. Apply ``inject_headers``, replacing any inbound header of the same name.

    Returns:
        ``list[tuple[str, str]]`` so repeated headers survive.
    """
    request_headers = list(request_headers)
    dropped = HOP_BY_HOP_HEADERS | _connection_tokens(request_headers)
    injected = {name.lower() for name in (inject_headers or {})}

    headers: list[tuple[str, str]] = []
    for name, value in request_headers:
        lower_name = name.lower()
        if lower_name == PROXY_KEY_HEADER:
            continue
        if lower_name in dropped:
            continue
        if lower_name in injected:
            continue
        headers.append((name, value))

    for name, value in (inject_headers or {}).items():
        if name.lower() == PROXY_KEY_HEADER:
            continue
        headers.append((name, value))

    return headers


def build_client_response_headers(
    upstream_headers: Iterable[tuple[str, str]],
) -> list[tuple[str, str]]:
    """Build the header list relayed back to the caller.

    Strips hop-by-hop headers (except Content-Length) and ``X-Proxy-Key``;
    everything else (rate-limit headers, set-cookie, content-encoding) passes
    through unchanged.
    """
    upstream_headers = list(upstream_headers)
    dropped = _RESPONSE_DROPPED_HEADERS | _connection_tokens(upstream_headers)

    headers: list[tuple[str, str]] = []
    for name, value in upstream_headers:
        lower_name = name.lower()
        if lower_name == PROXY_KEY_HEADER or lower_name in dropped:
            continue
        headers.append((name, value))
    return headers
