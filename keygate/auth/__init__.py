"""keygate admission control package.

Public API:
  - AccessGate / AccessDecision: origin allow-list + shared-secret check
  - QuotaTracker / QuotaDecision: fixed-window per-client request quota
  - get_remote_address: client identity used as the quota key
"""

from __future__ import annotations

from keygate.auth.gate import AccessDecision, AccessGate
from keygate.auth.limiter import QuotaDecision, QuotaTracker, get_remote_address

__all__ = [
    "AccessDecision",
    "AccessGate",
    "QuotaDecision",
    "QuotaTracker",
    "get_remote_address",
]
