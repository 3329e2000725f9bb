import struct
from ipaddress import IPv4Address, IPv6Address, ip_address

import pytest

from wgkit.endpoint import (
    INET4_PKTINFO_SIZE,
    INET6_PKTINFO_SIZE,
    IP_PKTINFO,
    IPPROTO_IP,
    IPPROTO_IPV6,
    IPV6_PKTINFO,
    STICKY_CONTROL_SIZE,
    StdNetEndpoint,
    get_src_from_control,
    pktinfo_control,
    set_src_control,
)
from wgkit.gso import pack_control_message, parse_control_messages


def _v4_info(addr, ifindex):
    return struct.pack("=i4s4s", ifindex, ip_address(addr).packed, bytes(4))


def _v6_info(addr, ifindex):
    return struct.pack("=16sI", ip_address(addr).packed, ifindex)


def test_set_src_control_ipv4():
    ep = StdNetEndpoint.parse("127.0.0.1:1234")
    ep.src = pktinfo_control(ip_address("127.0.0.1"), 5)
    control = set_src_control(ep)
    [(level, type_, data)] = list(parse_control_messages(control))
    assert level == IPPROTO_IP
    assert type_ == IP_PKTINFO
    assert len(data) == INET4_PKTINFO_SIZE
    ifindex, spec_dst, _ = struct.unpack("=i4s4s", data)
    assert spec_dst == bytes([127, 0, 0, 1])
    assert ifindex == 5


def test_set_src_control_ipv6():
    ep = StdNetEndpoint.parse("[::1]:1234")
    ep.src = pktinfo_control(ip_address("::1"), 5)
    control = set_src_control(ep)
    [(level, type_, data)] = list(parse_control_messages(control))
    assert level == IPPROTO_IPV6
    assert type_ == IPV6_PKTINFO
    assert len(data) == INET6_PKTINFO_SIZE
    addr, ifindex = struct.unpack("=16sI", data)
    assert addr == ep.src_ip().packed
    assert ifindex == 5


def test_set_src_control_clear_on_no_src():
    ep = StdNetEndpoint(IPv4Address("0.0.0.0"), 0)
    assert set_src_control(ep) == b""


def test_get_src_from_control_ipv4():
    control = pack_control_message(
        IPPROTO_IP, IP_PKTINFO, _v4_info("127.0.0.1", 5)
    ).ljust(STICKY_CONTROL_SIZE, b"\0")
    ep = StdNetEndpoint(IPv4Address("0.0.0.0"), 0)
    get_src_from_control(control, ep)
    assert ep.src_ip() == ip_address("127.0.0.1")
    assert ep.src_ifidx() == 5


def test_get_src_from_control_ipv6():
    control = pack_control_message(
        IPPROTO_IPV6, IPV6_PKTINFO, _v6_info("::1", 5)
    ).ljust(STICKY_CONTROL_SIZE, b"\0")
    ep = StdNetEndpoint(IPv4Address("0.0.0.0"), 0)
    get_src_from_control(control, ep)
    assert ep.src_ip() == ip_address("::1")
    assert ep.src_ifidx() == 5


def test_get_src_from_control_clear_on_empty():
    ep = StdNetEndpoint(IPv4Address("0.0.0.0"), 0)
    ep.src = pktinfo_control(ip_address("::1"), 5)
    get_src_from_control(b"", ep)
    assert ep.src_ip() is None
    assert ep.src_ifidx() == 0


def test_get_src_from_control_multiple():
    zero_control = pack_control_message(0, 0, b"")
    control = pack_control_message(IPPROTO_IP, IP_PKTINFO, _v4_info("127.0.0.1", 5))
    ep = StdNetEndpoint(IPv4Address("0.0.0.0"), 0)
    get_src_from_control(zero_control + control, ep)
    assert ep.src_ip() == ip_address("127.0.0.1")
    assert ep.src_ifidx() == 5


def test_get_src_from_control_ignores_malformed():
    ep = StdNetEndpoint(IPv4Address("0.0.0.0"), 0)
    ep.src = pktinfo_control(ip_address("127.0.0.1"), 5)
    get_src_from_control(struct.pack("=Qii", 500, IPPROTO_IP, IP_PKTINFO) + bytes(8), ep)
    assert ep.src == b""


def test_src_to_string():
    ep = StdNetEndpoint(IPv4Address("10.0.0.1"), 80)
    assert ep.src_to_string() == ""
    ep.src = pktinfo_control(ip_address("127.0.0.1"), 5)
    assert ep.src_to_string() == "127.0.0.1"
    ep.clear_src()
    assert ep.src == b""


def test_parse_ipv4():
    ep = StdNetEndpoint.parse("127.0.0.1:1234")
    assert ep.dst_ip() == IPv4Address("127.0.0.1")
    assert ep.port == 1234


def test_parse_ipv6_with_zone():
    ep = StdNetEndpoint.parse("[fe80::1%eth0]:51820")
    assert ep.dst_ip().scope_id == "eth0"
    assert ep.dst_to_string() == "[fe80::1%eth0]:51820"


@pytest.mark.parametrize(
    "text", ["127.0.0.1:1234", "[::1]:1234", "[2001:db8::5]:0", "10.1.2.3:65535"]
)
def test_dst_to_string_round_trip(text):
    assert StdNetEndpoint.parse(text).dst_to_string() == text


def test_ipv4_mapped_formatting():
    ep = StdNetEndpoint(IPv6Address("::ffff:1.2.3.4"), 80)
    assert ep.dst_to_string() == "[::ffff:1.2.3.4]:80"


@pytest.mark.parametrize(
    "text",
    ["127.0.0.1", "::1:80", "[1.2.3.4]:80", "1.2.3.4:70000", "host:80", "[::1]", "1.2.3.4:+5"],
)
def test_parse_rejects(text):
    with pytest.raises(ValueError):
        StdNetEndpoint.parse(text)


def test_dst_to_bytes():
    ep = StdNetEndpoint.parse("127.0.0.1:1234")
    assert ep.dst_to_bytes() == bytes([127, 0, 0, 1]) + (1234).to_bytes(2, "little")
    ep6 = StdNetEndpoint.parse("[::1]:1234")
    assert ep6.dst_to_bytes() == IPv6Address("::1").packed + (1234).to_bytes(2, "little")