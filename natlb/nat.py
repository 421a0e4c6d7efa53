"""Destination and source NAT rewriting of IPv4 TCP/UDP packets."""

from __future__ import annotations

import socket
import struct
from dataclasses import dataclass

from natlb.packet import Packet

_SRC_ADDR_OFFSET = 12
_DST_ADDR_OFFSET = 16
_PROTO_OFFSET = 9
_L4_CHECKSUM_OFFSETS = {
    socket.IPPROTO_TCP: 16,
    socket.IPPROTO_UDP: 6,
}


@dataclass
class SnatRewrite:
    """New source address and port."""

    src_ip: int
    port: int


@dataclass
class DnatRewrite:
    """New destination address and port."""

    dst_ip: int
    port: int


def nat_checksum_update(old_value: int, new_value: int, old_check: int) -> int:
    """Incrementally update a 16-bit checksum after a 32-bit field changes."""
    reversed_old = ~old_value & 0xFFFFFFFF
    total = ~old_check & 0xFFFF
    total += reversed_old >> 16
    total += reversed_old & 0xFFFF
    total += new_value >> 16
    total += new_value & 0xFFFF
    total = (total & 0xFFFF) + (total >> 16)
    total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def _rewrite(packet: Packet, addr_offset: int, new_ip: int, rewrite_src_port: bool, new_port: int) -> None:
    data = packet.data
    if len(data) < 20:
        raise ValueError("packet shorter than an IPv4 header")
    old_ip = int.from_bytes(data[addr_offset:addr_offset + 4], "big")
    data[addr_offset:addr_offset + 4] = new_ip.to_bytes(4, "big")

    check_offset = _L4_CHECKSUM_OFFSETS.get(data[_PROTO_OFFSET])
    if check_offset is None:
        return

    l4 = (data[0] & 0x0F) * 4
    src_port, dst_port = struct.unpack_from("!HH", data, l4)
    old_ports = (src_port << 16) | dst_port
    if rewrite_src_port:
        src_port = new_port
    else:
        dst_port = new_port
    struct.pack_into("!HH", data, l4, src_port, dst_port)

    position = l4 + check_offset
    (check,) = struct.unpack_from("!H", data, position)
    check = nat_checksum_update(old_ip, new_ip, check)
    check = nat_checksum_update(old_ports, (src_port << 16) | dst_port, check)
    struct.pack_into("!H", data, position, check)


def dnat(packet: Packet, data: DnatRewrite) -> None:
    """Rewrite destination address and, for TCP/UDP, destination port."""
    _rewrite(packet, _DST_ADDR_OFFSET, data.dst_ip, False, data.port)


def snat(packet: Packet, data: SnatRewrite) -> None:
    """Rewrite source address and, for TCP/UDP, source port."""
    _rewrite(packet, _SRC_ADDR_OFFSET, data.src_ip, True, data.port)