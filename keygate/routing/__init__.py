"""Slug routing: RouteTable, UpstreamTarget and rewrite_path()."""

from __future__ import annotations

from keygate.routing.table import RouteTable, UpstreamTarget, rewrite_path

__all__ = ["RouteTable", "UpstreamTarget", "rewrite_path"]
