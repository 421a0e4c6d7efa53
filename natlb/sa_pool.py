"""Source-NAT address pools, per worker lcore and per real server."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from natlb.packet import AlreadyExistsError, NoSnatPortError, NotFoundError, ip_to_int

PORT_MIN = 1024
PORT_MAX = 65535
SNAT_ADDR_MAX_RETRY = 100
MAX_SA_POOL_BUCKETS = 8
MAX_SNAT_IP_PER_RS = 4

InUseCheck = Callable[[int, int, int, int, int], bool]


@dataclass
class SnatPool:
    """One source-NAT address and the next port to hand out from it."""

    snat_ip: int
    next_port: int = PORT_MIN


@dataclass
class SnatPoolArray:
    """The addresses a real server may use on one lcore, used round robin."""

    pools: list[SnatPool] = field(default_factory=list)
    next_idx: int = 0

    def get(self, proto: int, rs_ip: int, rs_port: int, in_use: InUseCheck) -> tuple[int, int]:
        """Return a free ``(snat_ip, snat_port)`` towards the given server.

        ``in_use(proto, rs_ip, rs_port, snat_ip, snat_port)`` reports whether
        a pair is already taken by a connection.
        """
        if not self.pools:
            raise NoSnatPortError("no source-NAT address available")
        for _ in range(SNAT_ADDR_MAX_RETRY):
            pool = self.pools[self.next_idx]
            ip, port = pool.snat_ip, pool.next_port
            busy = in_use(proto, rs_ip, rs_port, ip, port)
            pool.next_port += 1
            if pool.next_port > PORT_MAX:
                pool.next_port = PORT_MIN
                self.next_idx = (self.next_idx + 1) % len(self.pools)
            if not busy:
                return ip, port
        raise NoSnatPortError(f"no free source-NAT port after {SNAT_ADDR_MAX_RETRY} tries")


class SnatAddressPool:
    """Configured source-NAT addresses, grouped by lcore."""

    def __init__(self, on_add: Callable[[int], Any] | None = None) -> None:
        self._by_lcore: dict[int, list[int]] = {}
        self._on_add = on_add

    def add(self, lcore_id: int, ip: int) -> None:
        """Add ``ip`` to the addresses of ``lcore_id``."""
        addresses = self._by_lcore.setdefault(lcore_id, [])
        if ip in addresses:
            raise AlreadyExistsError(f"snat address {ip:#x} already on lcore {lcore_id}")
        # Newest address first, the order in which they are handed out.
        addresses.insert(0, ip)
        if self._on_add is not None:
            self._on_add(ip)

    def remove(self, lcore_id: int, ip: int) -> None:
        """Remove ``ip`` from the addresses of ``lcore_id``."""
        addresses = self._by_lcore.get(lcore_id, [])
        if ip not in addresses:
            raise NotFoundError(f"snat address {ip:#x} not on lcore {lcore_id}")
        addresses.remove(ip)

    def lcore_of(self, ip: int) -> int:
        """Return the lcore that owns ``ip``."""
        for lcore_id in range(MAX_SA_POOL_BUCKETS):
            if ip in self._by_lcore.get(lcore_id, ()):
                return lcore_id
        raise NotFoundError(f"snat address {ip:#x} not configured")

    def pools_for_rs(self, worker_lcores: Iterable[int]) -> dict[int, SnatPoolArray]:
        """Build a fresh pool array for each worker lcore of a new real server."""
        return {
            lcore_id: SnatPoolArray(
                [SnatPool(ip) for ip in self._by_lcore.get(lcore_id, [])[:MAX_SNAT_IP_PER_RS]]
            )
            for lcore_id in worker_lcores
        }

    def load_config(self, table: Mapping[str, Any]) -> None:
        """Add the address described by a ``snat`` configuration table."""
        self.add(int(table["lcore_id"]), ip_to_int(table["snat_ip"]))