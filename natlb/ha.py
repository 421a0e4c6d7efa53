"""Health checking of real servers with TCP SYN probes."""

from __future__ import annotations

import enum
import logging
import socket
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from natlb.ipv4 import Ipv4Stack
from natlb.l4 import TcpDispatcher, TcpHeader
from natlb.packet import (
    AlreadyExistsError,
    Flow4,
    NotFoundError,
    Packet,
    PacketFlags,
    ip_to_int,
)

log = logging.getLogger(__name__)

DETECT_INTERVAL = 3
DETECT_RCV_TIMEOUT = 1
DEFAULT_SEQ = 9999
DEFAULT_WINDOW = 1600


class RsStatus(enum.IntEnum):
    """Health of a real server."""

    UNKNOWN = 0
    HEALTHY = 1
    FAILED = 2


class DetectStage(enum.IntEnum):
    """Probe stage of a real server."""

    TO_DETECT = 0
    DETECTING = 1


class _TimerAction(enum.Enum):
    DETECT = enum.auto()
    TIMEOUT = enum.auto()


@dataclass(eq=False)
class DetectTarget:
    """A real server being probed and its pending timer."""

    proto: int
    rs_ip: int
    rs_port: int
    status: RsStatus = RsStatus.UNKNOWN
    stage: DetectStage = DetectStage.TO_DETECT
    due: float | None = None
    action: _TimerAction | None = None

    def _arm(self, action: _TimerAction, due: float) -> None:
        self.action = action
        self.due = due


def build_syn(src_port: int, dst_port: int, seq: int, window: int) -> bytes:
    """Return a SYN probe segment."""
    return TcpHeader(src_port, dst_port, seq=seq, doff=5, syn=True, window=window).pack()


def build_rst(src_port: int, dst_port: int, seq: int, ack: int, window: int) -> bytes:
    """Return a RST segment closing a half-open probe."""
    return TcpHeader(
        src_port, dst_port, seq=seq, ack_seq=ack, doff=5, rst=True, window=window
    ).pack()


class HealthChecker:
    """Probes real servers on a timer and tracks their health.

    Without a ``stack`` probes are kept in ``sent`` as ``(packet, flow)``.
    """

    def __init__(
        self,
        stack: Ipv4Stack | None = None,
        tcp: TcpDispatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_add: Callable[[int], Any] | None = None,
        src_ip: int = 0,
        src_port: int = 0,
        lcore_id: int = 0,
    ) -> None:
        self.stack = stack
        self.tcp = tcp
        self.src_ip = src_ip
        self.src_port = src_port
        self.lcore_id = lcore_id
        self.seq = DEFAULT_SEQ
        self.window = DEFAULT_WINDOW
        self.sent: list[tuple[Packet, Flow4]] = []
        self._clock = clock
        self._on_add = on_add
        self._targets: dict[tuple[int, int, int], DetectTarget] = {}

    def __len__(self) -> int:
        return len(self._targets)

    def add(self, proto: int, rs_ip: int, rs_port: int) -> DetectTarget:
        """Start probing a real server; the first probe is due after the interval."""
        key = (proto, rs_ip, rs_port)
        if key in self._targets:
            raise AlreadyExistsError(f"detect target {proto}/{rs_ip:#x}:{rs_port} already exists")
        target = DetectTarget(proto, rs_ip, rs_port)
        target._arm(_TimerAction.DETECT, self._clock() + DETECT_INTERVAL)
        self._targets[key] = target
        return target

    def remove(self, proto: int, rs_ip: int, rs_port: int) -> None:
        """Stop probing a real server."""
        try:
            del self._targets[(proto, rs_ip, rs_port)]
        except KeyError:
            raise NotFoundError(f"detect target {proto}/{rs_ip:#x}:{rs_port} not found") from None

    def find(self, proto: int, rs_ip: int, rs_port: int) -> DetectTarget | None:
        """Return the target for this server, if probed."""
        return self._targets.get((proto, rs_ip, rs_port))

    def run_due(self, now: float) -> list[DetectTarget]:
        """Fire every timer due at ``now``; return the targets that fired."""
        due = sorted(
            (t for t in self._targets.values() if t.due is not None and t.due <= now),
            key=lambda t: t.due,
        )
        for target in due:
            action = target.action
            target.action = target.due = None
            if action is _TimerAction.DETECT:
                self._detect(target, now)
            else:
                target.status = RsStatus.FAILED
                target._arm(_TimerAction.DETECT, now + DETECT_INTERVAL)
        return due

    def _detect(self, target: DetectTarget, now: float) -> None:
        if target.proto == socket.IPPROTO_UDP:
            return
        target._arm(_TimerAction.TIMEOUT, now + DETECT_RCV_TIMEOUT)
        self._send(build_syn(self.src_port, target.rs_port, self.seq, self.window), target.rs_ip)

    def _send(self, segment: bytes, rs_ip: int) -> None:
        packet = Packet(bytearray(segment), flags=PacketFlags.KEEPALIVE, calc_l4_checksum=True)
        flow = Flow4(proto=socket.IPPROTO_TCP, src_addr=self.src_ip, dst_addr=rs_ip)
        if self.stack is None:
            self.sent.append((packet, flow))
        else:
            self.stack.local_out(packet, flow)

    def receive(self, tcp: TcpHeader, src_ip: int) -> DetectTarget:
        """Handle a probe answer from ``src_ip``."""
        target = self.find(socket.IPPROTO_TCP, src_ip, tcp.source)
        if target is None:
            raise NotFoundError(f"no detect target for {src_ip:#x}:{tcp.source}")
        now = self._clock()
        if tcp.rst:
            target.status = RsStatus.FAILED
            target._arm(_TimerAction.DETECT, now + DETECT_INTERVAL)
        elif tcp.syn and tcp.ack:
            target.status = RsStatus.HEALTHY
            target._arm(_TimerAction.DETECT, now + DETECT_INTERVAL)
            rst = build_rst(
                self.src_port,
                target.rs_port,
                (tcp.ack_seq + 1) & 0xFFFFFFFF,
                (tcp.seq + 1) & 0xFFFFFFFF,
                self.window,
            )
            self._send(rst, target.rs_ip)
        return target

    def _on_segment(self, tcp: TcpHeader, packet: Packet) -> DetectTarget | None:
        if packet.iph is None or len(packet.iph) < 20:
            log.error("health check answer without an IPv4 header")
            return None
        src_ip = int.from_bytes(packet.iph[12:16], "big")
        try:
            return self.receive(tcp, src_ip)
        except NotFoundError as exc:
            log.error("%s", exc)
            return None

    def load_config(self, table: Mapping[str, Any]) -> None:
        """Apply an ``ha`` configuration table and listen for probe answers."""
        self.src_ip = ip_to_int(table["src_ip"])
        self.src_port = int(table["src_port_base"])
        self.lcore_id = int(table["lcore_id"])
        log.info("add ha, src_ip=%s,src_port_base=%d,lcore_id=%d",
                 table["src_ip"], self.src_port, self.lcore_id)
        if self._on_add is not None:
            self._on_add(self.src_ip)
        if self.tcp is not None:
            self.tcp.register(self.src_port, self._on_segment)