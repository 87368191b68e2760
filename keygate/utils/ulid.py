"""ULID generation for keygate request ids.

``generate_ulid()`` returns the 26-character identifier bound to every inbound
request by the access-log middleware and attached to each log line as
``request_id``. ULIDs sort by creation time, so log lines for a burst of
requests read in arrival order.

Uses the ``python-ulid`` library; do not hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Returns:
        str: Crockford Base32 ULID, e.g. ``"01KJ0JRVHYA7KX32VPN5ZSCTMV"``.
    """
    return str(ULID())
