import ipaddress

from wgkit import constants as c
from wgkit.allowedips import AllowedIPs


def _ipv4_packet(src, dst):
    packet = bytearray(20)
    packet[0] = 0x45
    packet[c.IPV4_OFFSET_SRC:c.IPV4_OFFSET_SRC + c.IPV4_LEN] = ipaddress.ip_address(src).packed
    packet[c.IPV4_OFFSET_DST:c.IPV4_OFFSET_DST + c.IPV4_LEN] = ipaddress.ip_address(dst).packed
    return bytes(packet)


def _ipv6_packet(src, dst):
    packet = bytearray(40)
    packet[0] = 0x60
    packet[c.IPV6_OFFSET_SRC:c.IPV6_OFFSET_SRC + c.IPV6_LEN] = ipaddress.ip_address(src).packed
    packet[c.IPV6_OFFSET_DST:c.IPV6_OFFSET_DST + c.IPV6_LEN] = ipaddress.ip_address(dst).packed
    return bytes(packet)


def test_ipv4_offsets_route_packets_through_allowed_ips():
    table = AllowedIPs()
    table.insert(ipaddress.ip_network("10.0.0.0/8"), "inside")
    table.insert(ipaddress.ip_network("192.168.1.0/24"), "lan")
    packet = _ipv4_packet("192.168.1.7", "10.1.2.3")
    dst = packet[c.IPV4_OFFSET_DST:c.IPV4_OFFSET_DST + c.IPV4_LEN]
    src = packet[c.IPV4_OFFSET_SRC:c.IPV4_OFFSET_SRC + c.IPV4_LEN]
    assert table.lookup(dst) == "inside"
    assert table.lookup(src) == "lan"


def test_ipv6_offsets_route_packets_through_allowed_ips():
    table = AllowedIPs()
    table.insert(ipaddress.ip_network("2001:db8::/32"), "doc")
    table.insert(ipaddress.ip_network("fd00::/8"), "ula")
    packet = _ipv6_packet("fd00::1", "2001:db8::42")
    dst = packet[c.IPV6_OFFSET_DST:c.IPV6_OFFSET_DST + c.IPV6_LEN]
    src = packet[c.IPV6_OFFSET_SRC:c.IPV6_OFFSET_SRC + c.IPV6_LEN]
    assert table.lookup(dst) == "doc"
    assert table.lookup(src) == "ula"