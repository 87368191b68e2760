"""Per-client request quota for keygate.

Fixed-window counter over the ``limits`` library (the storage/strategy layer
slowapi is built on), used directly so the quota check runs at an explicit
position in the gateway pipeline instead of as decorator middleware.

Semantics:
  - Each ``consume(identity)`` adds exactly one point to the identity's window.
  - The first hit opens a window expiring ``window_s`` seconds later; the first
    hit at or after expiry opens a fresh window at zero.
  - Admitted iff the count after the increment is ``<= points``. A denied hit
    still counts, so a client stays locked out until the window rolls over.
  - Bursts of up to 2 × points across a window edge are possible (fixed window,
    not sliding).

``MemoryStorage`` guards each key with its own lock and sweeps expired keys
in the background, so unrelated clients never contend and memory is bounded
by the identities seen within one window.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from slowapi.util import get_remote_address

from keygate.config import QuotaConfig

__all__ = ["QuotaDecision", "QuotaTracker", "get_remote_address"]

_NAMESPACE = "KEYGATE_QUOTA"


@dataclass(frozen=True)
class QuotaDecision:
    """Result of one ``QuotaTracker.consume()`` call."""

    admitted: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds when the current window expires

    @property
    def retry_after_s(self) -> float:
        return max(0.0, self.reset_at - time.time())


class QuotaTracker:
    """Owns all per-client quota state. Create once per process."""

    def __init__(self, config: QuotaConfig) -> None:
        self._item = RateLimitItemPerSecond(config.points, config.window_s, namespace=_NAMESPACE)
        self._storage = MemoryStorage()
        self._limiter = FixedWindowRateLimiter(self._storage)

    @property
    def points(self) -> int:
        return self._item.amount

    @property
    def tracked_identities(self) -> int:
        """Identities whose window is still held in storage."""
        return len(self._storage.storage)

    def consume(self, identity: str) -> QuotaDecision:
        """Charge one request to ``identity`` and report whether it is admitted."""
        admitted = self._limiter.hit(self._item, identity)
        stats = self._limiter.get_window_stats(self._item, identity)
        return QuotaDecision(
            admitted=admitted,
            limit=self._item.amount,
            remaining=stats.remaining,
            reset_at=float(stats.reset_time),
        )

    def reset(self) -> None:
        """Drop every window."""
        self._storage.reset()
