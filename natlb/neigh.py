"""Neighbour (ARP) table, ARP request construction and reply handling."""

from __future__ import annotations

import enum
import struct
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from natlb.packet import AlreadyExistsError, NotFoundError, Packet

ETH_HLEN = 14
ETHER_TYPE_IPV4 = 0x0800
ETHER_TYPE_ARP = 0x0806
ARP_HRD_ETHER = 1
ARP_OP_REQUEST = 1
ARP_OP_REPLY = 2
ARP_HLEN = 28
ARP_FRAME_LEN = 60
BROADCAST_MAC = b"\xff" * 6

_ARP = struct.Struct("!HHBBH6s4s6s4s")


@dataclass(eq=False)
class Port:
    """A network port: its id, MAC address and local IPv4 address.

    Transmitted packets go to ``sink`` when one is given, otherwise they are
    collected in ``sent``.
    """

    port_id: int
    mac: bytes
    local_ip: int = 0
    sink: Callable[[Packet], Any] | None = None
    sent: list[Packet] = field(default_factory=list)

    def transmit(self, packet: Packet) -> None:
        """Send ``packet`` out of this port."""
        if self.sink is not None:
            self.sink(packet)
        else:
            self.sent.append(packet)


class NeighborState(enum.IntEnum):
    """Resolution state of a neighbour."""

    INIT = 0
    VALID = 1


@dataclass(eq=False)
class Neighbor:
    """A next hop, its MAC address and packets waiting for resolution.

    ``waiting`` holds the newest packet first; ``wait_pkt_count`` counts
    every packet ever queued.
    """

    next_hop: int
    mac: bytes = bytes(6)
    state: NeighborState = NeighborState.INIT
    waiting: list[Packet] = field(default_factory=list)
    wait_pkt_count: int = 0


def _check_mac(mac: bytes) -> bytes:
    mac = bytes(mac)
    if len(mac) != 6:
        raise ValueError(f"MAC address must be 6 bytes, got {len(mac)}")
    return mac


def fill_mac(packet: Packet, neighbor: Neighbor, port: Port) -> None:
    """Prepend an Ethernet header addressed to ``neighbor`` from ``port``."""
    packet.l2_len = ETH_HLEN
    packet.prepend(
        neighbor.mac + port.mac + (packet.packet_type & 0xFFFF).to_bytes(2, "big")
    )


def build_arp_request(port: Port, src_ip: int, dst_ip: int) -> Packet:
    """Build a broadcast ARP request asking for ``dst_ip``, padded to 60 bytes."""
    eth = BROADCAST_MAC + port.mac + ETHER_TYPE_ARP.to_bytes(2, "big")
    arp = _ARP.pack(
        ARP_HRD_ETHER,
        ETHER_TYPE_IPV4,
        6,
        4,
        ARP_OP_REQUEST,
        port.mac,
        src_ip.to_bytes(4, "big"),
        BROADCAST_MAC,
        dst_ip.to_bytes(4, "big"),
    )
    frame = eth + arp
    frame += bytes(ARP_FRAME_LEN - len(frame))
    return Packet(frame, port=port.port_id, l2_len=ETH_HLEN, l3_len=ARP_HLEN)


class NeighborTable:
    """Next hops known on one lcore, keyed by IPv4 address."""

    def __init__(self) -> None:
        self._neighbors: dict[int, Neighbor] = {}

    def __len__(self) -> int:
        return len(self._neighbors)

    def add(self, next_hop: int, mac: bytes) -> Neighbor:
        """Add a resolved neighbour."""
        if next_hop in self._neighbors:
            raise AlreadyExistsError(f"neighbor {next_hop:#x} already exists")
        neighbor = Neighbor(next_hop, _check_mac(mac), NeighborState.VALID)
        self._neighbors[next_hop] = neighbor
        return neighbor

    def remove(self, next_hop: int) -> None:
        """Delete a neighbour."""
        try:
            del self._neighbors[next_hop]
        except KeyError:
            raise NotFoundError(f"neighbor {next_hop:#x} not found") from None

    def lookup(self, next_hop: int) -> Neighbor | None:
        """Return the neighbour for ``next_hop``, if known."""
        return self._neighbors.get(next_hop)

    def output(self, next_hop: int, packet: Packet, port: Port) -> None:
        """Send ``packet`` to ``next_hop``, soliciting its address if unknown."""
        neighbor = self._neighbors.get(next_hop)
        if neighbor is None:
            neighbor = Neighbor(next_hop)
            self._neighbors[next_hop] = neighbor

        if neighbor.state != NeighborState.VALID:
            neighbor.waiting.insert(0, packet)
            neighbor.wait_pkt_count += 1
            port.transmit(build_arp_request(port, port.local_ip, next_hop))
            return

        fill_mac(packet, neighbor, port)
        port.transmit(packet)

    def arp_receive(self, packet: Packet, port: Port) -> Neighbor | None:
        """Learn from an ARP reply whose data starts at the ARP header.

        Waiting packets for the resolved neighbour are sent out of ``port``.
        Returns the updated or added neighbour; other ARP packets are ignored.
        """
        if len(packet.data) < ARP_HLEN:
            return None
        _, _, _, _, opcode, sha, sip, _, _ = _ARP.unpack_from(packet.data)
        if opcode != ARP_OP_REPLY:
            return None

        sender = int.from_bytes(sip, "big")
        neighbor = self._neighbors.get(sender)
        if neighbor is None:
            return self.add(sender, sha)

        neighbor.state = NeighborState.VALID
        neighbor.mac = bytes(sha)
        waiting, neighbor.waiting = neighbor.waiting, []
        for queued in waiting:
            fill_mac(queued, neighbor, port)
            port.transmit(queued)
        return neighbor