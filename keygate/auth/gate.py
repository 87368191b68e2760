"""Access gate: origin policy and shared-secret check.

``AccessGate.authorize(credential, origin)`` decides whether a request may
enter the quota stage. Two checks, in this order:

  1. Origin (CORS). No ``Origin`` header → pass (server-to-server callers).
     Otherwise pass only if the allow-list is empty or holds the exact
     ``scheme://host[:port]`` string. Evaluated first so a browser sees a CORS
     failure rather than an auth failure.
  2. Credential. The ``X-Proxy-Key`` value must equal the configured secret
     exactly. Missing and mismatched keys are treated the same.

The gate never raises and has no side effects beyond a warning log line; the
pipeline maps the decision onto CorsRejected / Unauthorized.
"""

from __future__ import annotations

import secrets
from enum import Enum
from typing import Iterable, Optional

from keygate.utils.logger import get_logger

logger = get_logger(__name__)


class AccessDecision(str, Enum):
    ALLOW = "allow"
    CORS_REJECTED = "cors_rejected"
    UNAUTHORIZED = "unauthorized"


class AccessGate:
    def __init__(self, proxy_key: str, allow_origins: Iterable[str] = ()) -> None:
        if not proxy_key:
            raise ValueError("proxy_key must be non-empty")
        self._proxy_key = proxy_key.encode("utf-8")
        self._allow_origins: frozenset[str] = frozenset(allow_origins)

    @property
    def allow_all_origins(self) -> bool:
        return not self._allow_origins

    def origin_allowed(self, origin: Optional[str]) -> bool:
        if origin is None:
            return True
        return self.allow_all_origins or origin in self._allow_origins

    def credential_valid(self, credential: Optional[str]) -> bool:
        if credential is None:
            return False
        return secrets.compare_digest(credential.encode("utf-8"), self._proxy_key)

    def authorize(self, credential: Optional[str], origin: Optional[str]) -> AccessDecision:
        if not self.origin_allowed(origin):
            logger.warning("Origin rejected", origin=origin)
            return AccessDecision.CORS_REJECTED

        if not self.credential_valid(credential):
            logger.warning(
                "Authentication failed",
                reason="missing key" if credential is None else "invalid key",
            )
            return AccessDecision.UNAUTHORIZED

        return AccessDecision.ALLOW
