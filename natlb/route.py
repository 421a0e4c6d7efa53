"""IPv4 routing table with longest-prefix match and the route pipeline stage."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from natlb.packet import LbError, NotFoundError, PipelineAction

MAX_ROUTES = 4096
DEFAULT_MTU = 1500


class RouteFlags(enum.IntFlag):
    """Route kinds."""

    NONE = 0
    LOCAL = 0x0001
    FORWARD = 0x0002


@dataclass(eq=False)
class RouteEntry:
    """One configured route. Addresses are integers in dotted order."""

    id: int
    dst_addr: int
    mask: int
    mtu: int
    gw: int
    src: int
    port: Any
    metric: int
    flags: RouteFlags


@dataclass
class RouteCache:
    """Route remembered by a connection."""

    mtu: int = 0
    gw: int = 0
    port: Any = None
    flags: RouteFlags = RouteFlags.NONE


def _prefix(addr: int, depth: int) -> int:
    return addr & ((0xFFFFFFFF << (32 - depth)) & 0xFFFFFFFF)


def _check_depth(depth: int) -> None:
    if not 1 <= depth <= 32:
        raise ValueError(f"prefix length {depth} outside 1..32")


class RouteTable:
    """Routes looked up by longest matching prefix."""

    def __init__(self, max_routes: int = MAX_ROUTES) -> None:
        self._max_routes = max_routes
        self._rules: dict[tuple[int, int], RouteEntry] = {}
        self._next_id = 0

    def __len__(self) -> int:
        return len(self._rules)

    def add(self, dst_addr: int, mask: int, mtu: int, gw: int, src: int, port: Any,
            metric: int, flags: int) -> RouteEntry:
        """Add a route for ``dst_addr/mask``; an existing one for that prefix is replaced."""
        _check_depth(mask)
        key = (_prefix(dst_addr, mask), mask)
        if key not in self._rules and len(self._rules) >= self._max_routes:
            raise LbError(f"route table full ({self._max_routes} routes)")
        entry = RouteEntry(
            id=self._next_id,
            dst_addr=dst_addr,
            mask=mask,
            mtu=mtu,
            gw=gw,
            src=src,
            port=port,
            metric=metric,
            flags=RouteFlags(flags),
        )
        self._next_id += 1
        self._rules[key] = entry
        return entry

    def remove(self, dst_addr: int, mask: int) -> None:
        """Delete the route for ``dst_addr/mask``."""
        _check_depth(mask)
        try:
            del self._rules[(_prefix(dst_addr, mask), mask)]
        except KeyError:
            raise NotFoundError(f"no route for {dst_addr:#x}/{mask}") from None

    def lookup(self, dst_addr: int) -> RouteEntry | None:
        """Return the most specific route covering ``dst_addr``, if any."""
        for depth in range(32, 0, -1):
            entry = self._rules.get((_prefix(dst_addr, depth), depth))
            if entry is not None:
                return entry
        return None


def route_in(cache: RouteCache, rcv_port: Any) -> PipelineAction:
    """Decide where a connection's packet goes, filling an empty cache.

    A connection with no cached route is forwarded out of the port it
    arrived on.
    """
    if cache.port is not None:
        return PipelineAction.FORWARD if cache.flags & RouteFlags.FORWARD else PipelineAction.LOCAL_IN
    cache.mtu = DEFAULT_MTU
    cache.gw = 0
    cache.port = rcv_port
    cache.flags = RouteFlags.FORWARD
    return PipelineAction.FORWARD