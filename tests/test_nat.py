import socket
import struct

from natlb.nat import DnatRewrite, SnatRewrite, dnat, nat_checksum_update, snat
from natlb.packet import Packet, internet_checksum, ip_to_int

TCP = socket.IPPROTO_TCP
UDP = socket.IPPROTO_UDP
ICMP = socket.IPPROTO_ICMP

CLIENT = ip_to_int("172.16.5.9")
VIP = ip_to_int("10.1.1.1")
RS = ip_to_int("192.168.10.20")
SNAT_IP = ip_to_int("10.9.9.9")


def _pseudo(src, dst, proto, length):
    return struct.pack("!IIBBH", src, dst, 0, proto, length)


def _build(proto, src, dst, sport, dport, payload=b"hello world"):
    if proto == TCP:
        l4 = bytearray(struct.pack("!HHIIBBHHH", sport, dport, 1000, 0, 0x50, 0x02, 1024, 0, 0) + payload)
        check_at = 16
    elif proto == UDP:
        l4 = bytearray(struct.pack("!HHHH", sport, dport, 8 + len(payload), 0) + payload)
        check_at = 6
    else:
        l4 = bytearray(b"\x08\x00\x00\x00" + payload)
        check_at = None
    if check_at is not None:
        check = internet_checksum(_pseudo(src, dst, proto, len(l4)) + bytes(l4))
        l4[check_at:check_at + 2] = check.to_bytes(2, "big")
    ip = struct.pack("!BBHHHBBHII", 0x45, 0, 20 + len(l4), 0, 0, 64, proto, 0, src, dst)
    return Packet(ip + bytes(l4))


def _addresses(packet):
    return struct.unpack_from("!II", packet.data, 12)


def _ports(packet):
    return struct.unpack_from("!HH", packet.data, 20)


def _l4_valid(packet):
    src, dst = _addresses(packet)
    proto = packet.data[9]
    l4 = bytes(packet.data[20:])
    return internet_checksum(_pseudo(src, dst, proto, len(l4)) + l4) == 0


def test_checksum_unchanged_for_equal_values():
    assert nat_checksum_update(0xC0A80001, 0xC0A80001, 0x1234) == 0x1234


def test_checksum_update_matches_full_recompute():
    before = bytes.fromhex("450000730000400040110000c0a80001c0a800c7")
    after = before[:16] + (0x0A000001).to_bytes(4, "big")
    old = int.from_bytes(before[16:20], "big")
    updated = nat_checksum_update(old, 0x0A000001, internet_checksum(before))
    assert updated == internet_checksum(after)


def test_dnat_tcp_rewrites_destination():
    packet = _build(TCP, CLIENT, VIP, 40000, 80)
    assert _l4_valid(packet)
    dnat(packet, DnatRewrite(dst_ip=RS, port=8080))
    assert _addresses(packet) == (CLIENT, RS)
    assert _ports(packet) == (40000, 8080)
    assert _l4_valid(packet)


def test_dnat_udp_rewrites_destination():
    packet = _build(UDP, CLIENT, VIP, 5353, 53)
    dnat(packet, DnatRewrite(dst_ip=RS, port=5300))
    assert _addresses(packet) == (CLIENT, RS)
    assert _ports(packet) == (5353, 5300)
    assert _l4_valid(packet)


def test_snat_tcp_rewrites_source():
    packet = _build(TCP, CLIENT, RS, 40000, 8080)
    snat(packet, SnatRewrite(src_ip=SNAT_IP, port=1024))
    assert _addresses(packet) == (SNAT_IP, RS)
    assert _ports(packet) == (1024, 8080)
    assert _l4_valid(packet)


def test_snat_udp_rewrites_source():
    packet = _build(UDP, CLIENT, RS, 5353, 5300)
    snat(packet, SnatRewrite(src_ip=SNAT_IP, port=2000))
    assert _addresses(packet) == (SNAT_IP, RS)
    assert _ports(packet) == (2000, 5300)
    assert _l4_valid(packet)


def test_full_nat_round_trip_restores_packet():
    original = _build(TCP, CLIENT, VIP, 40000, 80)
    packet = Packet(bytes(original.data))
    dnat(packet, DnatRewrite(dst_ip=RS, port=8080))
    snat(packet, SnatRewrite(src_ip=SNAT_IP, port=3000))
    assert _l4_valid(packet)
    snat(packet, SnatRewrite(src_ip=CLIENT, port=40000))
    dnat(packet, DnatRewrite(dst_ip=VIP, port=80))
    assert _addresses(packet) == (CLIENT, VIP)
    assert _ports(packet) == (40000, 80)
    assert _l4_valid(packet)


def test_non_tcp_udp_only_changes_address():
    packet = _build(ICMP, CLIENT, VIP, 0, 0)
    tail = bytes(packet.data[20:])
    dnat(packet, DnatRewrite(dst_ip=RS, port=9999))
    assert _addresses(packet) == (CLIENT, RS)
    assert bytes(packet.data[20:]) == tail


def test_ip_header_checksum_left_alone():
    packet = _build(TCP, CLIENT, VIP, 40000, 80)
    header_check = bytes(packet.data[10:12])
    dnat(packet, DnatRewrite(dst_ip=RS, port=8080))
    assert bytes(packet.data[10:12]) == header_check