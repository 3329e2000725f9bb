import struct

import pytest

from wgkit.gso import (
    CMSG_HEADER_SIZE,
    GSO_CONTROL_SIZE,
    SOL_UDP,
    UDP_GRO,
    UDP_SEGMENT,
    get_gso_size,
    pack_control_message,
    parse_control_messages,
    set_gso_size,
)


def _u16(value):
    return struct.pack("=H", value)


def test_get_gso_size_reads_gro_message():
    control = pack_control_message(SOL_UDP, UDP_GRO, _u16(1400))
    assert get_gso_size(control) == 1400


def test_get_gso_size_without_message():
    assert get_gso_size(b"") == 0


def test_get_gso_size_ignores_short_data():
    control = pack_control_message(SOL_UDP, UDP_GRO, b"\x05")
    assert get_gso_size(control) == 0


def test_get_gso_size_skips_other_messages():
    other = pack_control_message(0, 8, bytes(12))
    control = other + pack_control_message(SOL_UDP, UDP_GRO, _u16(1200))
    assert get_gso_size(control) == 1200


def test_get_gso_size_rejects_malformed_header():
    bad = struct.pack("=Qii", 1000, SOL_UDP, UDP_GRO) + bytes(8)
    with pytest.raises(ValueError, match="error parsing socket control message"):
        get_gso_size(bad)


def test_parse_rejects_short_length():
    bad = struct.pack("=Qii", 1, SOL_UDP, UDP_GRO) + bytes(8)
    with pytest.raises(ValueError):
        list(parse_control_messages(bad))


def test_pack_parse_round_trip():
    payload = b"abc"
    control = pack_control_message(SOL_UDP, UDP_SEGMENT, payload)
    assert list(parse_control_messages(control)) == [(SOL_UDP, UDP_SEGMENT, payload)]
    assert len(control) % 8 == 0


def test_set_gso_size_appends_segment_message():
    control = set_gso_size(b"", 1200, GSO_CONTROL_SIZE)
    assert len(control) == GSO_CONTROL_SIZE
    messages = list(parse_control_messages(control))
    assert messages == [(SOL_UDP, UDP_SEGMENT, _u16(1200))]


def test_set_gso_size_is_not_read_as_gro():
    control = set_gso_size(b"", 1200, GSO_CONTROL_SIZE)
    assert get_gso_size(control) == 0


def test_set_gso_size_keeps_existing_data():
    existing = pack_control_message(0, 8, bytes(12))
    control = set_gso_size(existing, 500, len(existing) + GSO_CONTROL_SIZE)
    assert control.startswith(existing)
    messages = list(parse_control_messages(control))
    assert messages[-1] == (SOL_UDP, UDP_SEGMENT, _u16(500))


def test_set_gso_size_without_room_leaves_control_unchanged():
    existing = b"\x01\x02"
    assert set_gso_size(existing, 500, len(existing) + GSO_CONTROL_SIZE - 1) == existing


def test_packed_sizes_match_header_and_control_size():
    assert len(pack_control_message(SOL_UDP, UDP_SEGMENT, b"")) == CMSG_HEADER_SIZE
    assert len(pack_control_message(SOL_UDP, UDP_SEGMENT, _u16(1))) == GSO_CONTROL_SIZE