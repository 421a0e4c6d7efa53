import pytest

from natlb.packet import (
    AlreadyExistsError,
    LbError,
    NotFoundError,
    Packet,
    PacketFlags,
    int_to_ip,
    internet_checksum,
    ip_to_int,
)

SAMPLE_HEADER = bytes.fromhex("450000730000400040110000c0a80001c0a800c7")


def test_adj_strips_front_and_returns_it():
    packet = Packet(b"abcdef")
    assert packet.adj(2) == b"ab"
    assert bytes(packet.data) == b"cdef"
    assert len(packet) == 4


def test_trim_strips_end_and_returns_it():
    packet = Packet(b"abcdef")
    assert packet.trim(3) == b"def"
    assert bytes(packet.data) == b"abc"
    assert packet.trim(0) == b""
    assert bytes(packet.data) == b"abc"


def test_prepend_and_append():
    packet = Packet(b"mid")
    packet.prepend(b"head-")
    packet.append(b"-tail")
    assert bytes(packet.data) == b"head-mid-tail"


@pytest.mark.parametrize("length", [-1, 7])
def test_adj_out_of_range(length):
    packet = Packet(b"abcdef")
    with pytest.raises(ValueError):
        packet.adj(length)
    assert bytes(packet.data) == b"abcdef"


def test_trim_too_long():
    with pytest.raises(ValueError):
        Packet(b"ab").trim(3)


def test_flags_combine():
    packet = Packet(flags=PacketFlags.KEEPALIVE)
    assert packet.flags == PacketFlags.KEEPALIVE
    packet.flags |= PacketFlags.SESSION_SYNC
    assert packet.flags == PacketFlags.KEEPALIVE | PacketFlags.SESSION_SYNC


def test_checksum_worked_example():
    assert internet_checksum(SAMPLE_HEADER) == 0xB861


def test_checksum_of_data_with_its_checksum_is_zero():
    check = internet_checksum(SAMPLE_HEADER)
    filled = SAMPLE_HEADER[:10] + check.to_bytes(2, "big") + SAMPLE_HEADER[12:]
    assert internet_checksum(filled) == 0


def test_checksum_pads_odd_length():
    assert internet_checksum(b"\x12\x34\x56") == internet_checksum(b"\x12\x34\x56\x00")


def test_ip_to_int_value():
    assert ip_to_int("10.0.0.1") == 0x0A000001


@pytest.mark.parametrize("text", ["0.0.0.0", "192.168.1.200", "255.255.255.255"])
def test_ip_round_trip(text):
    assert int_to_ip(ip_to_int(text)) == text


@pytest.mark.parametrize("text", ["300.1.1.1", "1.2.3", "host"])
def test_ip_to_int_rejects_bad_text(text):
    with pytest.raises(ValueError):
        ip_to_int(text)


def test_int_to_ip_rejects_out_of_range():
    with pytest.raises(ValueError):
        int_to_ip(2**32)


def test_errors_carry_message_and_share_base():
    duplicate = AlreadyExistsError("dup")
    assert duplicate.args == ("dup",)
    assert isinstance(duplicate, LbError)
    missing = NotFoundError("missing")
    assert str(missing) == "missing"
    assert isinstance(missing, LookupError)