"""IPv4 receive, local delivery, forwarding and output paths."""

from __future__ import annotations

import socket
import struct
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from natlb.neigh import ETH_HLEN, ETHER_TYPE_ARP, ETHER_TYPE_IPV4, NeighborTable, Port
from natlb.packet import (
    AlreadyExistsError,
    Flow4,
    Packet,
    PacketFlags,
    PipelineAction,
    internet_checksum,
)
from natlb.route import DEFAULT_MTU, RouteCache, RouteFlags, RouteTable

IPV4_HDR_LEN = 20
DEFAULT_TTL = 64

_IPV4 = struct.Struct("!BBHHHBBHII")
_L4_CHECKSUM_OFFSETS = {socket.IPPROTO_UDP: 6, socket.IPPROTO_TCP: 16}
_PIPELINE_PROTOS = (socket.IPPROTO_TCP, socket.IPPROTO_UDP, socket.IPPROTO_ICMP)

L4Handler = Callable[[Packet, bytes], Any]
Pipeline = Callable[[Packet], "tuple[PipelineAction, RouteCache | None]"]


@dataclass
class DropStats:
    """Counts of dropped packets by reason."""

    invalid_l3_proto: int = 0
    invalid_l4_proto: int = 0
    invalid_l4_port: int = 0
    invalid_pkt: int = 0
    icmp: int = 0
    no_route: int = 0
    pipeline: int = 0


def _header_len(data: bytearray) -> int:
    return (data[0] & 0x0F) << 2


def _set_ip_checksum(data: bytearray, ihl: int) -> None:
    data[10:12] = b"\x00\x00"
    data[10:12] = internet_checksum(bytes(data[:ihl])).to_bytes(2, "big")


def _set_l4_checksum(data: bytearray) -> None:
    ihl = _header_len(data)
    proto = data[9]
    offset = _L4_CHECKSUM_OFFSETS.get(proto)
    if offset is None or len(data) < ihl + offset + 2:
        return
    position = ihl + offset
    data[position:position + 2] = b"\x00\x00"
    l4 = bytes(data[ihl:])
    pseudo = bytes(data[12:20]) + bytes((0, proto)) + len(l4).to_bytes(2, "big")
    check = internet_checksum(pseudo + l4)
    if check == 0 and proto == socket.IPPROTO_UDP:
        check = 0xFFFF
    data[position:position + 2] = check.to_bytes(2, "big")


class Ipv4Stack:
    """IPv4 processing for one lcore.

    ``pipeline`` runs connection tracking and load balancing on TCP, UDP and
    ICMP packets and returns an action with the connection's cached route.
    Without a pipeline such packets are dropped.
    """

    def __init__(
        self,
        routes: RouteTable,
        neighbors: NeighborTable,
        ports: Iterable[Port] = (),
        pipeline: Pipeline | None = None,
        static_port_id: int = 0,
    ) -> None:
        self.routes = routes
        self.neighbors = neighbors
        self.ports = {port.port_id: port for port in ports}
        self.pipeline = pipeline
        self.stats = DropStats()
        self.rx_ip = 0
        self.rx_arp = 0
        self._l4_handlers: dict[int, L4Handler] = {}
        static_port = self.ports.get(static_port_id)
        # Session sync and health checks always leave through this port.
        self.static_route = (
            RouteCache(mtu=DEFAULT_MTU, port=static_port) if static_port is not None else None
        )

    def register_l4_handler(self, protocol: int, handler: L4Handler) -> None:
        """Deliver locally received packets of ``protocol`` to ``handler``."""
        if protocol in self._l4_handlers:
            raise AlreadyExistsError(f"handler for protocol {protocol} already registered")
        self._l4_handlers[protocol] = handler

    def deliver_l3(self, packet: Packet) -> Any:
        """Dispatch a frame starting at its Ethernet header by ether type."""
        data = packet.data
        ether_type = int.from_bytes(data[12:14], "big") if len(data) >= ETH_HLEN else None
        if ether_type == ETHER_TYPE_IPV4:
            self.rx_ip += 1
            packet.l2_len = ETH_HLEN
            packet.adj(ETH_HLEN)
            return self.receive(packet)
        if ether_type == ETHER_TYPE_ARP:
            self.rx_arp += 1
            packet.l2_len = ETH_HLEN
            packet.adj(ETH_HLEN)
            return self.neighbors.arp_receive(packet, self.ports.get(packet.port))
        self.stats.invalid_l3_proto += 1
        return None

    def receive(self, packet: Packet) -> Any:
        """Validate an IPv4 packet and route it locally, through the pipeline or onwards."""
        data = packet.data
        if len(data) < IPV4_HDR_LEN or data[0] >> 4 != 4:
            return self._drop_invalid()
        ihl = _header_len(data)
        if ihl < IPV4_HDR_LEN or len(data) < ihl:
            return self._drop_invalid()
        if internet_checksum(bytes(data[:ihl])) != 0:
            return self._drop_invalid()

        total = int.from_bytes(data[2:4], "big")
        if len(data) < total or total < ihl:
            return self._drop_invalid()
        if len(data) > total:
            packet.trim(len(data) - total)

        proto = data[9]
        if proto == socket.IPPROTO_ICMP:
            self.stats.icmp += 1
            return None

        packet.l3_len = ihl
        packet.iph = bytes(data[:ihl])
        return self._receive_finish(packet, proto)

    def _drop_invalid(self) -> None:
        self.stats.invalid_pkt += 1

    def _receive_finish(self, packet: Packet, proto: int) -> Any:
        if packet.flags & (PacketFlags.SESSION_SYNC | PacketFlags.KEEPALIVE):
            return self.local_in(packet)
        if proto in _PIPELINE_PROTOS:
            return self._run_pipeline(packet)

        dst = int.from_bytes(packet.data[16:20], "big")
        route = self.routes.lookup(dst)
        if route is None:
            self.stats.no_route += 1
            return None
        if route.flags & RouteFlags.LOCAL:
            return self.local_in(packet)
        return self._forward(packet)

    def _run_pipeline(self, packet: Packet) -> Any:
        if self.pipeline is None:
            action, cache = PipelineAction.DROP, None
        else:
            action, cache = self.pipeline(packet)
        if action == PipelineAction.FORWARD:
            return self.output(packet, cache)
        if action == PipelineAction.LOCAL_IN:
            return self.local_in(packet)
        self.stats.pipeline += 1
        return None

    def _forward(self, packet: Packet) -> None:
        data = packet.data
        src = int.from_bytes(data[12:16], "big")
        dst = int.from_bytes(data[16:20], "big")
        # The egress route is chosen by the packet's source address.
        route = self.routes.lookup(src)
        if route is None:
            self.stats.no_route += 1
            return None

        data[8] = (data[8] - 1) & 0xFF
        _set_ip_checksum(data, _header_len(data))
        packet.packet_type = ETHER_TYPE_IPV4
        packet.port = route.port.port_id
        next_hop = route.gw or dst
        self.neighbors.output(next_hop, packet, route.port)
        return None

    def local_in(self, packet: Packet) -> Any:
        """Strip the IPv4 header and hand the packet to its protocol handler."""
        data = packet.data
        handler = self._l4_handlers.get(data[9])
        if handler is None:
            self.stats.invalid_l4_proto += 1
            return None
        ihl = _header_len(data)
        iph = bytes(data[:ihl])
        packet.iph = iph
        packet.adj(ihl)
        return handler(packet, iph)

    def output(self, packet: Packet, rt: RouteCache | None) -> None:
        """Send a packet that already has its IPv4 header along ``rt``."""
        if rt is None:
            self.stats.no_route += 1
            return None
        data = packet.data
        dst = int.from_bytes(data[16:20], "big")
        next_hop = rt.gw or dst
        _set_ip_checksum(data, _header_len(data))
        packet.packet_type = ETHER_TYPE_IPV4
        packet.port = rt.port.port_id
        self.neighbors.output(next_hop, packet, rt.port)
        return None

    def local_out(self, packet: Packet, flow: Flow4) -> None:
        """Add an IPv4 header to a locally generated packet and send it."""
        if packet.flags & (PacketFlags.KEEPALIVE | PacketFlags.SESSION_SYNC):
            route = self.static_route
        else:
            route = self.routes.lookup(flow.dst_addr)
        if route is None:
            self.stats.no_route += 1
            return None

        src = flow.src_addr or route.port.local_ip
        total = IPV4_HDR_LEN + len(packet.data)
        packet.prepend(
            _IPV4.pack(0x45, 0, total, 0, 0, DEFAULT_TTL, flow.proto, 0, src, flow.dst_addr)
        )
        _set_ip_checksum(packet.data, IPV4_HDR_LEN)
        _set_l4_checksum(packet.data)

        next_hop = route.gw or flow.dst_addr
        packet.packet_type = ETHER_TYPE_IPV4
        packet.port = route.port.port_id
        self.neighbors.output(next_hop, packet, route.port)
        return None