"""Health endpoint for keygate.

GET /health returns ``200 {"ok": true}`` unconditionally. It sits outside
the gateway pipeline: no key, no quota charge, no route lookup, so it can be
polled by container probes and load balancers without credentials.
"""

from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, bool]:
    return {"ok": True}
