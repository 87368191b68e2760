"""Slug routing and path rewriting.

The route table is fixed at startup: a read-only slug → UpstreamTarget
mapping with exact-match lookup only (no wildcards, no prefixes).

``rewrite_path()`` maps ``/t/<slug>/<rest...>`` to ``/<rest...>``. The query
string is never part of its input; the forwarder re-attaches it unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

from keygate.config import RouteConfig
from keygate.constants import PROXY_PREFIX
from keygate.models.errors import UnknownSlug


@dataclass(frozen=True)
class UpstreamTarget:
    """Fixed upstream for one slug.

    base_url:       scheme://host[:port][/base] with no trailing slash.
    inject_headers: headers set on every request forwarded to this upstream.
    """

    slug: str
    base_url: str
    inject_headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


class RouteTable:
    """Immutable slug → UpstreamTarget mapping."""

    def __init__(self, targets: Iterable[UpstreamTarget]) -> None:
        table: dict[str, UpstreamTarget] = {}
        for target in targets:
            if target.slug in table:
                raise ValueError(f"duplicate route slug: {target.slug}")
            table[target.slug] = target
        self._targets: Mapping[str, UpstreamTarget] = MappingProxyType(table)

    @classmethod
    def from_config(cls, routes: Iterable[RouteConfig]) -> "RouteTable":
        return cls(
            UpstreamTarget(slug=r.slug, base_url=r.url, inject_headers=r.inject_headers)
            for r in routes
        )

    def resolve(self, slug: str) -> UpstreamTarget:
        """Return the target for ``slug``.

        Raises:
            UnknownSlug: no exact match.
        """
        try:
            return self._targets[slug]
        except KeyError:
            raise UnknownSlug(slug) from None

    def __contains__(self, slug: object) -> bool:
        return slug in self._targets

    def __iter__(self) -> Iterator[str]:
        return iter(self._targets)

    def __len__(self) -> int:
        return len(self._targets)


def rewrite_path(request_path: str, slug: str) -> str:
    """Strip the ``/t/<slug>`` prefix from ``request_path``.

    >>> rewrite_path("/t/wetrust/foo/bar", "wetrust")
    '/foo/bar'
    >>> rewrite_path("/t/wetrust", "wetrust")
    '/'

    Raises:
        ValueError: ``request_path`` is not under ``/t/<slug>``.
    """
    prefix = f"/{PROXY_PREFIX}/{slug}"
    if request_path == prefix:
        return "/"
    if not request_path.startswith(prefix + "/"):
        raise ValueError(f"{request_path!r} is not under {prefix!r}")
    return "/" + request_path[len(prefix) + 1:]
