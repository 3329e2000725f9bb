"""UDP endpoints with sticky source address support."""

from __future__ import annotations

import ipaddress
import struct
import sys
from dataclasses import dataclass
from typing import Optional

from wgkit.conn import Endpoint, IPAddress
from wgkit.gso import (
    CMSG_HEADER_SIZE,
    pack_control_message,
    parse_control_messages,
)

IPPROTO_IP = 0
IP_PKTINFO = 8
IPPROTO_IPV6 = 41
IPV6_PKTINFO = 50

_INET4_PKTINFO = struct.Struct("=i4s4s")
_INET6_PKTINFO = struct.Struct("=16sI")

INET4_PKTINFO_SIZE = _INET4_PKTINFO.size
INET6_PKTINFO_SIZE = _INET6_PKTINFO.size

_INET4_SRC_LEN = len(pack_control_message(IPPROTO_IP, IP_PKTINFO, bytes(INET4_PKTINFO_SIZE)))
_INET6_SRC_LEN = len(pack_control_message(IPPROTO_IPV6, IPV6_PKTINFO, bytes(INET6_PKTINFO_SIZE)))

STICKY_CONTROL_SIZE = _INET6_SRC_LEN
"""Buffer size needed for one packet-info control message."""

STD_NET_SUPPORTS_STICKY_SOCKETS = sys.platform.startswith("linux")


def _parse_port(text: str, s: str) -> int:
    if not text:
        raise ValueError(f"invalid ip:port {s!r}: missing port")
    if not (text.isascii() and text.isdigit()):
        raise ValueError(f"invalid ip:port {s!r}: invalid port {text!r}")
    port = int(text)
    if port > 0xFFFF:
        raise ValueError(f"invalid ip:port {s!r}: invalid port {text!r}")
    return port


def _format_addr(addr: IPAddress) -> str:
    if addr.version == 4:
        return str(addr)
    mapped = addr.ipv4_mapped
    if mapped is not None:
        text = f"::ffff:{mapped}"
        if addr.scope_id:
            text += f"%{addr.scope_id}"
    else:
        text = str(addr)
    return f"[{text}]"


@dataclass
class StdNetEndpoint(Endpoint):
    """A UDP destination plus the cached packet-info of its source."""

    addr: IPAddress
    port: int
    src: bytes = b""

    @classmethod
    def parse(cls, s: str) -> "StdNetEndpoint":
        """Parse ``ip:port`` or ``[ipv6]:port``."""
        if s.startswith("["):
            close = s.find("]")
            if close < 0:
                raise ValueError(f"invalid ip:port {s!r}: missing ]")
            host, rest = s[1:close], s[close + 1:]
            if not rest.startswith(":"):
                raise ValueError(f"invalid ip:port {s!r}: missing port")
            port_text = rest[1:]
            bracketed = True
        else:
            host, sep, port_text = s.rpartition(":")
            if not sep:
                raise ValueError(f"invalid ip:port {s!r}: missing port")
            bracketed = False
        try:
            addr = ipaddress.ip_address(host)
        except ValueError as exc:
            raise ValueError(f"invalid ip:port {s!r}: {exc}") from None
        if bracketed and addr.version == 4:
            raise ValueError(
                f"invalid ip:port {s!r}: square brackets can only be used with IPv6 addresses"
            )
        if not bracketed and addr.version == 6:
            raise ValueError(
                f"invalid ip:port {s!r}: IPv6 addresses must be surrounded by square brackets"
            )
        return cls(addr, _parse_port(port_text, s))

    def clear_src(self) -> None:
        self.src = b""

    def dst_ip(self) -> IPAddress:
        return self.addr

    def src_ip(self) -> Optional[IPAddress]:
        data = self.src[CMSG_HEADER_SIZE:]
        if len(self.src) == _INET4_SRC_LEN:
            _, spec_dst, _ = _INET4_PKTINFO.unpack_from(data)
            return ipaddress.IPv4Address(spec_dst)
        if len(self.src) == _INET6_SRC_LEN:
            addr, _ = _INET6_PKTINFO.unpack_from(data)
            return ipaddress.IPv6Address(addr)
        return None

    def src_ifidx(self) -> int:
        """Interface index of the cached source, or 0."""
        data = self.src[CMSG_HEADER_SIZE:]
        if len(self.src) == _INET4_SRC_LEN:
            return _INET4_PKTINFO.unpack_from(data)[0]
        if len(self.src) == _INET6_SRC_LEN:
            return _INET6_PKTINFO.unpack_from(data)[1]
        return 0

    def dst_to_bytes(self) -> bytes:
        zone = b""
        if self.addr.version == 6 and self.addr.scope_id:
            zone = self.addr.scope_id.encode()
        return self.addr.packed + zone + self.port.to_bytes(2, "little")

    def dst_to_string(self) -> str:
        return f"{_format_addr(self.addr)}:{self.port}"

    def src_to_string(self) -> str:
        ip = self.src_ip()
        return "" if ip is None else str(ip)


def pktinfo_control(addr: IPAddress, ifindex: int) -> bytes:
    """Build the packet-info control message naming addr on interface ifindex."""
    if addr.version == 4:
        info = _INET4_PKTINFO.pack(ifindex, addr.packed, bytes(4))
        return pack_control_message(IPPROTO_IP, IP_PKTINFO, info)
    info = _INET6_PKTINFO.pack(addr.packed, ifindex)
    return pack_control_message(IPPROTO_IPV6, IPV6_PKTINFO, info)


def get_src_from_control(control: bytes, ep: StdNetEndpoint) -> None:
    """Store the first packet-info message of control as ep's source."""
    ep.clear_src()
    try:
        for level, type_, data in parse_control_messages(control):
            if level == IPPROTO_IP and type_ == IP_PKTINFO:
                size = _INET4_SRC_LEN
            elif level == IPPROTO_IPV6 and type_ == IPV6_PKTINFO:
                size = _INET6_SRC_LEN
            else:
                continue
            header = struct.pack("=Qii", CMSG_HEADER_SIZE + len(data), level, type_)
            ep.src = (header + data)[:size].ljust(size, b"\0")
            return
    except ValueError:
        return


def set_src_control(ep: StdNetEndpoint) -> bytes:
    """The control data that sends from ep's cached source; empty if none."""
    return bytes(ep.src)