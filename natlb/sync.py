"""Session synchronisation: batching connections into UDP packets for a peer."""

from __future__ import annotations

import logging
import struct
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from natlb.ipv4 import Ipv4Stack
from natlb.l4 import UdpDispatcher, udp_out
from natlb.lb import Connection, Tuple
from natlb.nat import DnatRewrite, SnatRewrite
from natlb.packet import LbError, Packet, PacketFlags, ip_to_int

log = logging.getLogger(__name__)

MAX_CT_NUM_PER_PKT = 1
MAX_DATA_LEN_PER_PKT = 1400
MAX_SYNC_DELAY = 9_000_000_000

FLAG_DNAT = 0x01
FLAG_SNAT = 0x02

_HEADER = struct.Struct("!BBHI")
_META = struct.Struct("!BIIHHBIIHHIHHBBH")
_NAT_EXT = struct.Struct("!IH")


@dataclass
class SyncConfig:
    """Addresses and ports used for session sync traffic."""

    src_ip: int
    src_port: int
    dst_ip: int
    dst_port: int


def encode_connection(conn: Connection) -> bytes:
    """Return the wire form of ``conn``: metadata followed by its NAT extensions."""
    dnat = _NAT_EXT.pack(conn.dnat.dst_ip, conn.dnat.port) if conn.dnat is not None else b""
    snat = _NAT_EXT.pack(conn.snat.src_ip, conn.snat.port) if conn.snat is not None else b""
    flags = (FLAG_DNAT if dnat else 0) | (FLAG_SNAT if snat else 0)
    original = conn.original
    reply = conn.reply
    meta = _META.pack(
        original.proto, original.src_addr, original.dst_addr, original.src_port, original.dst_port,
        reply.proto, reply.src_addr, reply.dst_addr, reply.src_port, reply.dst_port,
        conn.timeout,
        len(dnat),
        len(snat),
        1 if conn.new else 0,
        flags,
        conn.worker,
    )
    return meta + dnat + snat


def _read_ext(data: bytes, pos: int, length: int) -> tuple[int, int, int]:
    if length != _NAT_EXT.size:
        raise ValueError(f"unexpected extension length {length}")
    if len(data) < pos + length:
        raise ValueError("sync data truncated inside an extension")
    ip, port = _NAT_EXT.unpack_from(data, pos)
    return ip, port, pos + length


def _decode_from(data: bytes, offset: int = 0) -> tuple[Connection, int]:
    if len(data) - offset < _META.size:
        raise ValueError("sync data too short for a connection")
    fields = _META.unpack_from(data, offset)
    original = Tuple(*fields[0:5])
    reply = Tuple(*fields[5:10])
    timeout, dnat_len, snat_len, state, _flags, worker = fields[10:]
    pos = offset + _META.size

    dnat = snat = None
    if dnat_len:
        ip, port, pos = _read_ext(data, pos, dnat_len)
        dnat = DnatRewrite(ip, port)
    if snat_len:
        ip, port, pos = _read_ext(data, pos, snat_len)
        snat = SnatRewrite(ip, port)

    conn = Connection(
        original=original,
        reply=reply,
        new=bool(state),
        timeout=timeout,
        worker=worker,
        dnat=dnat,
        snat=snat,
    )
    return conn, pos


def decode_connection(data: bytes) -> Connection:
    """Read a connection written by :func:`encode_connection`."""
    conn, _ = _decode_from(bytes(data))
    return conn


class SessionSync:
    """Collects connections into sync packets and decodes those received.

    Without a ``stack`` finished packets are kept in ``sent``; received
    connections are handed to ``deliver`` when one is given.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        stack: Ipv4Stack | None = None,
        udp: UdpDispatcher | None = None,
        clock: Callable[[], int] = time.monotonic_ns,
        deliver: Callable[[Connection], Any] | None = None,
        on_add: Callable[[int], Any] | None = None,
        version: int = 0,
        seq: int = 0,
        max_delay: int = MAX_SYNC_DELAY,
    ) -> None:
        self.config = config
        self.stack = stack
        self.udp = udp
        self.deliver = deliver
        self.version = version
        self.seq = seq
        self.max_delay = max_delay
        self.last_sync_time = 0
        self.pending_ct_n = 0
        self.sent: list[Packet] = []
        self._clock = clock
        self._on_add = on_add
        self._pending: Packet | None = None

    @property
    def pending(self) -> Packet | None:
        """The sync packet being filled, if any."""
        return self._pending

    def _is_full(self, length: int) -> bool:
        data = self._pending.data
        return data[1] >= MAX_CT_NUM_PER_PKT or len(data) + length > MAX_DATA_LEN_PER_PKT

    def _send_pending(self) -> None:
        if self.config is None:
            raise LbError("session sync is not configured")
        packet, self._pending = self._pending, None
        if self.stack is None:
            self.sent.append(packet)
            return
        cfg = self.config
        udp_out(self.stack, packet, cfg.src_ip, cfg.src_port, cfg.dst_ip, cfg.dst_port)

    def sync_one(self, conn: Connection) -> None:
        """Queue ``conn`` for sending, sending the current packet first if it is full."""
        encoded = encode_connection(conn)
        if len(encoded) > MAX_DATA_LEN_PER_PKT:
            raise ValueError("connection too large for a sync packet")
        if self._pending is not None and self._is_full(len(encoded)):
            self._send_pending()
            self.last_sync_time = self._clock()

        if self._pending is None:
            header = _HEADER.pack(self.version, 0, 0, self.seq)
            self._pending = Packet(bytearray(header), flags=PacketFlags.SESSION_SYNC)
            self.pending_ct_n = 0

        self._pending.data[1] += 1
        self._pending.append(encoded)
        self.pending_ct_n += 1

    def flush(self, now: int) -> bool:
        """Send the pending packet if it has waited longer than the maximum delay."""
        if self._pending is None or now - self.last_sync_time <= self.max_delay:
            return False
        self._send_pending()
        self.last_sync_time = now
        return True

    def receive(self, packet: Packet) -> list[Connection]:
        """Decode a sync packet whose data starts at the sync header."""
        data = bytes(packet.data)
        if len(data) < _HEADER.size:
            raise ValueError("sync packet shorter than its header")
        _version, num, _padding, _seq = _HEADER.unpack_from(data)
        pos = _HEADER.size
        conns = []
        for _ in range(num):
            conn, pos = _decode_from(data, pos)
            if self.deliver is not None:
                self.deliver(conn)
            conns.append(conn)
        return conns

    def load_config(self, table: Mapping[str, Any]) -> SyncConfig:
        """Apply a ``session_sync`` configuration table."""
        self.config = SyncConfig(
            src_ip=ip_to_int(table["src_ip"]),
            src_port=int(table["src_port"]),
            dst_ip=ip_to_int(table["dst_ip"]),
            dst_port=int(table["dst_port"]),
        )
        log.info("add backup, %s", self.config)
        if self._on_add is not None:
            self._on_add(self.config.dst_ip)
        if self.udp is not None:
            self.udp.register(self.config.dst_port, self.receive)
        return self.config