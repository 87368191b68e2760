"""Programmatic uvicorn entry point for keygate.

Loads the config first, so a missing PROXY_KEY or a broken config file exits
non-zero before anything binds, then hands uvicorn the app factory.

Usage:
    python -m keygate.run
    keygate                    # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from keygate.config import load_config

# Maximum concurrent connections; uvicorn answers 503 beyond this.
# Matches the upstream connection pool size (POOL_MAX_CONNECTIONS).
UVICORN_LIMIT_CONCURRENCY: int = 100

# OS-level TCP accept backlog.
UVICORN_BACKLOG: int = 50

# HTTP keep-alive timeout in seconds.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the keygate gateway.

    Raises:
        SystemExit: Propagated from load_config() on configuration errors.
    """
    config = load_config()

    uvicorn.run(
        "keygate.main:create_app",
        factory=True,
        host=config.server.host,
        port=config.server.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
        access_log=False,  # AccessLogMiddleware writes the structured access log
    )


if __name__ == "__main__":
    main()
