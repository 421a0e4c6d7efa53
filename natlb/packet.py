"""Packet buffer, IPv4 flow key, checksum helpers and shared errors."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field
from typing import Any


class LbError(Exception):
    """Base class for load-balancer errors."""


class AlreadyExistsError(LbError):
    """The entry being added is already present."""


class NotFoundError(LbError, LookupError):
    """The requested entry does not exist."""


class NoSnatPortError(LbError):
    """No free source-NAT address/port pair could be found."""


class PacketFlags(enum.IntFlag):
    """Marks carried by a packet through the stack."""

    NONE = 0
    SESSION_SYNC = 1
    KEEPALIVE = 2


class PipelineAction(enum.Enum):
    """Verdict returned by a pipeline stage."""

    NEXT = enum.auto()
    DROP = enum.auto()
    FORWARD = enum.auto()
    LOCAL_IN = enum.auto()


@dataclass
class Flow4:
    """IPv4 flow key used for route lookups and locally generated packets.

    Addresses are integers in the numeric order of the dotted form.
    """

    proto: int = 0
    src_addr: int = 0
    dst_addr: int = 0
    tos: int = 0
    scope: int = 0
    ttl: int = 0
    mark: int = 0
    flag: int = 0
    oif: Any = None
    iif: Any = None
    src_port: int = 0
    dst_port: int = 0
    icmp_type: int = 0
    icmp_code: int = 0
    gre_key: int = 0


@dataclass(eq=False)
class Packet:
    """A packet whose ``data`` begins at the current protocol header."""

    data: bytearray = field(default_factory=bytearray)
    flags: PacketFlags = PacketFlags.NONE
    port: int = 0
    rcv_port: int = 0
    packet_type: int = 0
    l2_len: int = 0
    l3_len: int = 0
    l4_len: int = 0
    vpc_id: int = 0
    calc_l4_checksum: bool = False
    iph: bytes | None = None

    def __post_init__(self) -> None:
        self.data = bytearray(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def prepend(self, data: bytes) -> None:
        """Put ``data`` in front of the current contents."""
        self.data[0:0] = data

    def append(self, data: bytes) -> None:
        """Add ``data`` after the current contents."""
        self.data += data

    def adj(self, length: int) -> bytes:
        """Strip ``length`` bytes from the front and return them."""
        if length < 0 or length > len(self.data):
            raise ValueError(f"cannot strip {length} bytes from {len(self.data)}")
        removed = bytes(self.data[:length])
        del self.data[:length]
        return removed

    def trim(self, length: int) -> bytes:
        """Strip ``length`` bytes from the end and return them."""
        if length < 0 or length > len(self.data):
            raise ValueError(f"cannot trim {length} bytes from {len(self.data)}")
        if length == 0:
            return b""
        removed = bytes(self.data[-length:])
        del self.data[-length:]
        return removed


def internet_checksum(data: bytes) -> int:
    """Return the ones'-complement Internet checksum of ``data``."""
    padded = bytes(data) + (b"\x00" if len(data) % 2 else b"")
    words = iter(padded)
    total = sum((high << 8) | low for high, low in zip(words, words))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def ip_to_int(text: str) -> int:
    """Convert a dotted IPv4 address into an integer."""
    return int(ipaddress.IPv4Address(text))


def int_to_ip(value: int) -> str:
    """Convert an integer into a dotted IPv4 address."""
    return str(ipaddress.IPv4Address(value))