"""TCP, UDP, ICMP and GRE handling of locally delivered packets."""

from __future__ import annotations

import functools
import logging
import socket
import struct
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from natlb.ipv4 import DropStats, Ipv4Stack
from natlb.packet import Flow4, Packet, internet_checksum

log = logging.getLogger(__name__)

TCP_HDR_LEN = 20
UDP_HDR_LEN = 8
GRE_HDR_LEN = 4
GRE_KEY_LEN = 4
GRE_FLAG_SEQUENCE = 0x10
ETH_P_IP = 0x0800
ICMP_ECHO_REPLY = 0
ICMP_ECHO = 8
IPPROTO_GRE = 47

_TCP = struct.Struct("!HHIIBBHHH")
_UDP = struct.Struct("!HHHH")
_FLAG_BITS = ("fin", "syn", "rst", "psh", "ack", "urg", "ece", "cwr")

TcpHandler = Callable[["TcpHeader", Packet], Any]
UdpHandler = Callable[[Packet], Any]


@dataclass
class TcpHeader:
    """A TCP header without options; ports and numbers in host order."""

    source: int
    dest: int
    seq: int = 0
    ack_seq: int = 0
    doff: int = 5
    fin: bool = False
    syn: bool = False
    rst: bool = False
    psh: bool = False
    ack: bool = False
    urg: bool = False
    ece: bool = False
    cwr: bool = False
    window: int = 0
    check: int = 0
    urg_ptr: int = 0

    @classmethod
    def parse(cls, data: bytes) -> TcpHeader:
        """Read the header at the start of ``data``."""
        if len(data) < TCP_HDR_LEN:
            raise ValueError(f"TCP header needs {TCP_HDR_LEN} bytes, got {len(data)}")
        source, dest, seq, ack_seq, offset, flags, window, check, urg_ptr = _TCP.unpack_from(data)
        bits = {name: bool(flags >> bit & 1) for bit, name in enumerate(_FLAG_BITS)}
        return cls(
            source=source,
            dest=dest,
            seq=seq,
            ack_seq=ack_seq,
            doff=offset >> 4,
            window=window,
            check=check,
            urg_ptr=urg_ptr,
            **bits,
        )

    def pack(self) -> bytes:
        """Return the wire form of the header."""
        flags = sum(1 << bit for bit, name in enumerate(_FLAG_BITS) if getattr(self, name))
        return _TCP.pack(
            self.source,
            self.dest,
            self.seq & 0xFFFFFFFF,
            self.ack_seq & 0xFFFFFFFF,
            (self.doff & 0x0F) << 4,
            flags,
            self.window,
            self.check,
            self.urg_ptr,
        )


class TcpDispatcher:
    """Hands locally received TCP segments to the handler of their destination port."""

    def __init__(self, stats: DropStats | None = None) -> None:
        self.stats = stats if stats is not None else DropStats()
        self._handlers: list[tuple[int, TcpHandler]] = []

    def register(self, port: int, handler: TcpHandler) -> None:
        """Call ``handler(tcp, packet)`` for segments to ``port``; newest registration wins."""
        self._handlers.insert(0, (port, handler))

    def receive(self, packet: Packet, iph: bytes) -> Any:
        """Dispatch a segment whose data starts at the TCP header."""
        try:
            tcp = TcpHeader.parse(packet.data)
        except ValueError:
            self.stats.invalid_pkt += 1
            return None
        handler = next((h for port, h in self._handlers if port == tcp.dest), None)
        if handler is None:
            log.error("no handler for tcp dst port %d, drop it", tcp.dest)
            self.stats.invalid_l4_port += 1
            return None
        packet.l4_len = TCP_HDR_LEN
        packet.adj(TCP_HDR_LEN)
        return handler(tcp, packet)


class UdpDispatcher:
    """Hands locally received UDP datagrams to the handler of their destination port."""

    def __init__(self, stats: DropStats | None = None) -> None:
        self.stats = stats if stats is not None else DropStats()
        self._handlers: list[tuple[int, UdpHandler]] = []

    def register(self, port: int, handler: UdpHandler) -> None:
        """Call ``handler(packet)`` for datagrams to ``port``; newest registration wins."""
        self._handlers.insert(0, (port, handler))

    def receive(self, packet: Packet, iph: bytes) -> Any:
        """Dispatch a datagram whose data starts at the UDP header."""
        if len(packet.data) < UDP_HDR_LEN:
            self.stats.invalid_pkt += 1
            return None
        _, dst_port, _, _ = _UDP.unpack_from(packet.data)
        handler = next((h for port, h in self._handlers if port == dst_port), None)
        if handler is None:
            log.error("no handler for udp dst port %d, drop it", dst_port)
            self.stats.invalid_l4_port += 1
            return None
        packet.l4_len = UDP_HDR_LEN
        packet.adj(UDP_HDR_LEN)
        return handler(packet)


def udp_out(stack: Ipv4Stack, packet: Packet, src_ip: int, src_port: int,
            dst_ip: int, dst_port: int) -> Any:
    """Wrap ``packet`` in a UDP header and send it through ``stack``."""
    packet.prepend(_UDP.pack(src_port, dst_port, len(packet.data) + UDP_HDR_LEN, 0))
    packet.calc_l4_checksum = True
    flow = Flow4(proto=socket.IPPROTO_UDP, src_addr=src_ip, dst_addr=dst_ip)
    return stack.local_out(packet, flow)


def icmp_receive(stack: Ipv4Stack, packet: Packet, iph: bytes) -> Any:
    """Answer an ICMP echo request; other ICMP messages are dropped."""
    data = packet.data
    if len(data) < 4 or data[0] != ICMP_ECHO:
        if len(data) >= 2:
            log.error("icmp not supported, type=%d,code=%d", data[0], data[1])
        return None
    data[0] = ICMP_ECHO_REPLY
    data[2:4] = b"\x00\x00"
    check = internet_checksum(bytes(data)) or 0xFFFF
    data[2:4] = check.to_bytes(2, "big")
    flow = Flow4(
        proto=socket.IPPROTO_ICMP,
        src_addr=int.from_bytes(iph[16:20], "big"),
        dst_addr=int.from_bytes(iph[12:16], "big"),
    )
    return stack.local_out(packet, flow)


def gre_decap(packet: Packet) -> int:
    """Strip a GRE header carrying IPv4 and return its key as the VPC id."""
    data = packet.data
    if len(data) < GRE_HDR_LEN + GRE_KEY_LEN:
        raise ValueError("packet too short for a GRE header")
    if not data[0] & GRE_FLAG_SEQUENCE or int.from_bytes(data[2:4], "big") != ETH_P_IP:
        raise ValueError("invalid gre packet, sequence not set or overlay protocol not IPv4")
    packet.vpc_id = int.from_bytes(data[GRE_HDR_LEN:GRE_HDR_LEN + GRE_KEY_LEN], "big")
    packet.adj(GRE_HDR_LEN + GRE_KEY_LEN)
    return packet.vpc_id


def _gre_receive(stack: Ipv4Stack, packet: Packet, iph: bytes) -> Any:
    try:
        gre_decap(packet)
    except ValueError as exc:
        log.error("%s", exc)
        return None
    return stack.receive(packet)


def install(stack: Ipv4Stack) -> tuple[TcpDispatcher, UdpDispatcher]:
    """Register ICMP, TCP, UDP and GRE handling on ``stack``."""
    tcp = TcpDispatcher(stack.stats)
    udp = UdpDispatcher(stack.stats)
    stack.register_l4_handler(socket.IPPROTO_ICMP, functools.partial(icmp_receive, stack))
    stack.register_l4_handler(socket.IPPROTO_TCP, tcp.receive)
    stack.register_l4_handler(socket.IPPROTO_UDP, udp.receive)
    stack.register_l4_handler(IPPROTO_GRE, functools.partial(_gre_receive, stack))
    return tcp, udp