"""Load-balancing pipeline stage: scheduling new connections and NAT."""

from __future__ import annotations

import enum
import logging
import socket
import struct
from dataclasses import dataclass

from natlb import nat
from natlb.nat import DnatRewrite, SnatRewrite
from natlb.packet import (
    LbError,
    NoSnatPortError,
    NotFoundError,
    Packet,
    PipelineAction,
    int_to_ip,
)
from natlb.sa_pool import InUseCheck
from natlb.svc import RealServer, ServiceTable, ServiceType

log = logging.getLogger(__name__)

_NAT_PROTOS = (socket.IPPROTO_TCP, socket.IPPROTO_UDP)


class Direction(enum.IntEnum):
    """Direction of a packet relative to its connection."""

    ORIGINAL = 0
    REPLY = 1


@dataclass(frozen=True)
class Tuple:
    """Addresses and ports identifying one direction of a connection."""

    proto: int
    src_addr: int
    dst_addr: int
    src_port: int = 0
    dst_port: int = 0


def _inverse(key: Tuple) -> Tuple:
    return Tuple(key.proto, key.dst_addr, key.src_addr, key.dst_port, key.src_port)


@dataclass(eq=False)
class Connection:
    """A tracked connection and the NAT decided for it.

    ``new`` stays true until the connection tracker confirms the connection.
    """

    original: Tuple
    reply: Tuple | None = None
    new: bool = True
    timeout: int = 0
    worker: int = 0
    dnat: DnatRewrite | None = None
    snat: SnatRewrite | None = None

    def __post_init__(self) -> None:
        if self.reply is None:
            self.reply = _inverse(self.original)


def _packet_tuple(data: bytearray) -> Tuple:
    if len(data) < 20:
        raise ValueError("packet shorter than an IPv4 header")
    proto = data[9]
    src = int.from_bytes(data[12:16], "big")
    dst = int.from_bytes(data[16:20], "big")
    if proto not in _NAT_PROTOS:
        return Tuple(proto, src, dst)
    ihl = (data[0] & 0x0F) * 4
    if len(data) < ihl + 4:
        raise ValueError("packet too short for transport ports")
    src_port, dst_port = struct.unpack_from("!HH", data, ihl)
    return Tuple(proto, src, dst, src_port, dst_port)


class LoadBalancer:
    """Schedules new connections to real servers and rewrites their packets.

    ``in_use(proto, rs_ip, rs_port, snat_ip, snat_port)`` reports whether a
    source-NAT pair is already taken; by default nothing is.
    """

    def __init__(self, services: ServiceTable, in_use: InUseCheck | None = None) -> None:
        self.services = services
        self.in_use: InUseCheck = in_use if in_use is not None else (lambda *_: False)

    def schedule(self, packet: Packet, conn: Connection, lcore_id: int) -> RealServer:
        """Choose a real server for a new connection and record its NAT."""
        key = _packet_tuple(packet.data)
        svc = self.services.find(key.proto, key.dst_addr, key.dst_port)
        if svc is None:
            raise NotFoundError(f"no service for {int_to_ip(key.dst_addr)}:{key.dst_port}")
        rs = svc.schedule(lcore_id)
        if rs is None:
            raise NotFoundError(f"no real server for {int_to_ip(key.dst_addr)}:{key.dst_port}")

        conn.dnat = DnatRewrite(rs.rs_ip, rs.rs_port)
        if svc.type == ServiceType.UNDERLAY:
            pools = rs.snat_pools.get(lcore_id)
            if pools is None:
                raise NoSnatPortError(f"no source-NAT address on lcore {lcore_id}")
            snat_ip, snat_port = pools.get(key.proto, rs.rs_ip, rs.rs_port, self.in_use)
            conn.snat = SnatRewrite(snat_ip, snat_port)
        return rs

    def process(self, packet: Packet, conn: Connection, lcore_id: int) -> PipelineAction:
        """Apply load balancing to a packet whose data starts at its IPv4 header."""
        key = _packet_tuple(packet.data)
        if key.proto not in _NAT_PROTOS:
            return PipelineAction.NEXT

        if conn.new:
            try:
                self.schedule(packet, conn, lcore_id)
            except LbError as exc:
                log.error("schedule failed: %s", exc)
                return PipelineAction.DROP

        direction = (
            Direction.REPLY if not conn.new and key == conn.reply else Direction.ORIGINAL
        )
        if direction == Direction.ORIGINAL:
            if conn.dnat is not None:
                nat.dnat(packet, conn.dnat)
            if conn.snat is not None:
                nat.snat(packet, conn.snat)
        else:
            original = conn.original
            nat.snat(packet, SnatRewrite(original.dst_addr, original.dst_port))
            if conn.snat is not None:
                nat.dnat(packet, DnatRewrite(original.src_addr, original.src_port))

        if conn.new:
            conn.reply = _inverse(_packet_tuple(packet.data))
        return PipelineAction.NEXT

    def describe(self, conn: Connection) -> str:
        """Describe the NAT extensions of ``conn``."""
        parts = []
        if conn.dnat is not None:
            parts.append(
                f"<DNAT_EXT,DST_IP={int_to_ip(conn.dnat.dst_ip)},DST_PORT={conn.dnat.port}>"
            )
        if conn.snat is not None:
            parts.append(
                f"<SNAT_EXT,SRC_IP={int_to_ip(conn.snat.src_ip)},SRC_PORT={conn.snat.port}>"
            )
        return "".join(parts)