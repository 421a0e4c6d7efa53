"""Virtual services and the real servers behind them."""

from __future__ import annotations

import enum
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from natlb.packet import AlreadyExistsError, NotFoundError, ip_to_int
from natlb.sa_pool import SnatAddressPool, SnatPoolArray
from natlb.scheduler import WrrScheduler, get_scheduler

DEFAULT_SCHEDULER = "wrr"


class ServiceType(enum.IntEnum):
    """How traffic reaches a service."""

    UNDERLAY = 0
    OVERLAY_GRE = 1
    OVERLAY_VXLAN = 2


@dataclass(eq=False)
class RealServer:
    """A backend address with its weight and per-lcore source-NAT pools."""

    rs_ip: int
    rs_port: int
    weight: int
    snat_pools: dict[int, SnatPoolArray] = field(default_factory=dict)


@dataclass(eq=False)
class Service:
    """A virtual address/port/protocol balanced over a list of real servers.

    ``rs_list`` keeps the newest server first, which is the order the
    scheduler walks.
    """

    proto: int
    vip: int
    vport: int
    type: ServiceType = ServiceType.UNDERLAY
    scheduler: WrrScheduler = field(default_factory=lambda: get_scheduler(DEFAULT_SCHEDULER))
    rs_list: list[RealServer] = field(default_factory=list)
    sched_data: dict[int, Any] = field(default_factory=dict)
    snat_pool: SnatAddressPool | None = None
    worker_lcores: tuple[int, ...] = ()

    @property
    def rs_cnt(self) -> int:
        """Number of real servers."""
        return len(self.rs_list)

    def add_rs(self, rs_ip: int, rs_port: int, weight: int) -> RealServer:
        """Add a real server and return it."""
        if self.find_rs(rs_ip, rs_port) is not None:
            raise AlreadyExistsError(f"real server {rs_ip:#x}:{rs_port} already in service")
        pools = self.snat_pool.pools_for_rs(self.worker_lcores) if self.snat_pool is not None else {}
        rs = RealServer(rs_ip, rs_port, weight, pools)
        self.rs_list.insert(0, rs)
        self.scheduler.update_service(self)
        return rs

    def remove_rs(self, rs_ip: int, rs_port: int) -> None:
        """Remove a real server."""
        rs = self.find_rs(rs_ip, rs_port)
        if rs is None:
            raise NotFoundError(f"real server {rs_ip:#x}:{rs_port} not in service")
        self.rs_list.remove(rs)

    def find_rs(self, rs_ip: int, rs_port: int) -> RealServer | None:
        """Return the real server with this address and port, if any."""
        return next(
            (rs for rs in self.rs_list if rs.rs_ip == rs_ip and rs.rs_port == rs_port),
            None,
        )

    def schedule(self, lcore_id: int) -> RealServer | None:
        """Pick a real server for a new connection handled on ``lcore_id``."""
        return self.scheduler.schedule(self, lcore_id)


class ServiceTable:
    """All configured services, keyed by protocol, virtual IP and port."""

    def __init__(
        self,
        snat_pool: SnatAddressPool | None = None,
        worker_lcores: tuple[int, ...] = (),
        on_add: Callable[[int], Any] | None = None,
    ) -> None:
        self._services: dict[tuple[int, int, int], Service] = {}
        self._snat_pool = snat_pool
        self._worker_lcores = tuple(worker_lcores)
        self._on_add = on_add

    def __len__(self) -> int:
        return len(self._services)

    def __iter__(self) -> Iterator[Service]:
        return iter(self._services.values())

    def add(self, proto: int, vip: int, vport: int) -> Service:
        """Create a service and return it."""
        key = (proto, vip, vport)
        if key in self._services:
            raise AlreadyExistsError(f"service {proto}/{vip:#x}:{vport} already exists")
        svc = Service(
            proto,
            vip,
            vport,
            snat_pool=self._snat_pool,
            worker_lcores=self._worker_lcores,
        )
        svc.scheduler.init_service(svc)
        self._services[key] = svc
        if self._on_add is not None:
            self._on_add(vip)
        return svc

    def remove(self, proto: int, vip: int, vport: int) -> None:
        """Delete a service."""
        try:
            del self._services[(proto, vip, vport)]
        except KeyError:
            raise NotFoundError(f"service {proto}/{vip:#x}:{vport} not found") from None

    def find(self, proto: int, vip: int, vport: int) -> Service | None:
        """Return the service for this key, if any."""
        return self._services.get((proto, vip, vport))

    def load_config(self, table: Mapping[str, Any]) -> RealServer:
        """Add the real server of an ``rs`` configuration table, creating its service."""
        proto = int(table["proto"])
        vip = ip_to_int(table["vip"])
        vport = int(table["vport"])
        svc = self.find(proto, vip, vport)
        if svc is None:
            svc = self.add(proto, vip, vport)
        return svc.add_rs(ip_to_int(table["pip"]), int(table["pport"]), int(table["weight"]))