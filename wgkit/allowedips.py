"""A longest-prefix-match routing table mapping addresses to peers."""

from __future__ import annotations

import ipaddress
import threading
from typing import Any, Dict, List, Optional, Union

_ROOT = 2


def common_bits(ip1: bytes, ip2: bytes) -> int:
    """Number of leading bits shared by two addresses of the same size."""
    size = len(ip1)
    if size not in (4, 16):
        raise ValueError("wrong size bit string")
    x = int.from_bytes(bytes(ip1), "big") ^ int.from_bytes(bytes(ip2[:size]), "big")
    return size * 8 - x.bit_length()


class _Node:
    __slots__ = ("peer", "child", "parent", "parent_bit", "cidr", "bit_at_byte", "bit_at_shift", "bits")

    def __init__(self, peer: Any, bits: bytes, cidr: int) -> None:
        self.peer = peer
        self.child: List[Optional[_Node]] = [None, None]
        self.parent: Optional[_Node] = None
        self.parent_bit = _ROOT
        self.cidr = cidr
        self.bit_at_byte = cidr // 8
        self.bit_at_shift = 7 - (cidr % 8)
        value = int.from_bytes(bytes(bits), "big")
        width = len(bits) * 8
        mask = ((1 << width) - 1) ^ ((1 << (width - cidr)) - 1)
        self.bits = (value & mask).to_bytes(len(bits), "big")

    def choose(self, ip: bytes) -> int:
        return (ip[self.bit_at_byte] >> self.bit_at_shift) & 1

    def zeroize(self) -> None:
        self.peer = None
        self.child = [None, None]
        self.parent = None


class AllowedIPs:
    """Maps IP prefixes to peers; lookups return the most specific match."""

    def __init__(self) -> None:
        self.ipv4: Optional[_Node] = None
        self.ipv6: Optional[_Node] = None
        self._entries: Dict[Any, Dict[int, _Node]] = {}
        self._lock = threading.RLock()

    def _set_slot(self, is6: bool, parent: Optional[_Node], bit: int, value: Optional[_Node]) -> None:
        if parent is None:
            if is6:
                self.ipv6 = value
            else:
                self.ipv4 = value
        else:
            parent.child[bit] = value

    @staticmethod
    def _attach(node: _Node, parent: Optional[_Node], bit: int) -> None:
        node.parent = parent
        node.parent_bit = bit
        if parent is not None:
            parent.child[bit] = node

    def _add_entry(self, node: _Node) -> None:
        self._entries.setdefault(node.peer, {})[id(node)] = node

    def _remove_entry(self, node: _Node) -> None:
        nodes = self._entries.get(node.peer)
        if nodes is not None:
            nodes.pop(id(node), None)
            if not nodes:
                del self._entries[node.peer]

    def _insert(self, is6: bool, ip: bytes, cidr: int, peer: Any) -> None:
        root = self.ipv6 if is6 else self.ipv4
        if root is None:
            node = _Node(peer, ip, cidr)
            self._add_entry(node)
            self._set_slot(is6, None, _ROOT, node)
            return

        node: Optional[_Node] = None
        cur: Optional[_Node] = root
        while cur is not None and cur.cidr <= cidr and common_bits(cur.bits, ip) >= cur.cidr:
            node = cur
            if cur.cidr == cidr:
                self._remove_entry(cur)
                cur.peer = peer
                self._add_entry(cur)
                return
            cur = cur.child[cur.choose(ip)]

        new = _Node(peer, ip, cidr)
        self._add_entry(new)

        if node is None:
            down = root
        else:
            bit = node.choose(ip)
            down = node.child[bit]
            if down is None:
                self._attach(new, node, bit)
                return
        cidr = min(cidr, common_bits(down.bits, ip))
        parent = node

        if new.cidr == cidr:
            self._attach(down, new, new.choose(down.bits))
            if parent is None:
                self._attach(new, None, _ROOT)
                self._set_slot(is6, None, _ROOT, new)
            else:
                self._attach(new, parent, parent.choose(new.bits))
            return

        mid = _Node(None, new.bits, cidr)
        self._attach(down, mid, mid.choose(down.bits))
        self._attach(new, mid, mid.choose(new.bits))
        if parent is None:
            self._attach(mid, None, _ROOT)
            self._set_slot(is6, None, _ROOT, mid)
        else:
            self._attach(mid, parent, parent.choose(mid.bits))

    def insert(self, prefix: Union[str, ipaddress.IPv4Network, ipaddress.IPv6Network], peer: Any) -> None:
        """Route prefix to peer; host bits of prefix are ignored."""
        network = ipaddress.ip_network(prefix, strict=False)
        with self._lock:
            self._insert(
                network.version == 6,
                network.network_address.packed,
                network.prefixlen,
                peer,
            )

    def lookup(self, ip: Union[bytes, ipaddress.IPv4Address, ipaddress.IPv6Address]) -> Any:
        """The peer owning the most specific prefix containing ip, or None."""
        if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            ip = ip.packed
        ip = bytes(ip)
        with self._lock:
            if len(ip) == 16:
                node = self.ipv6
            elif len(ip) == 4:
                node = self.ipv4
            else:
                raise ValueError("looking up unknown address type")
            found = None
            while node is not None and common_bits(node.bits, ip) >= node.cidr:
                if node.peer is not None:
                    found = node.peer
                if node.bit_at_byte == len(ip):
                    break
                node = node.child[node.choose(ip)]
            return found

    def entries_for_peer(self, peer: Any) -> list:
        """The prefixes routed to peer, in insertion order."""
        with self._lock:
            nodes = list(self._entries.get(peer, {}).values())
        return [
            ipaddress.ip_network((ipaddress.ip_address(node.bits), node.cidr))
            for node in nodes
        ]

    def remove_by_peer(self, peer: Any) -> None:
        """Remove every prefix routed to peer."""
        with self._lock:
            nodes = list(self._entries.pop(peer, {}).values())
            for node in nodes:
                is6 = len(node.bits) == 16
                node.peer = None
                if node.child[0] is not None and node.child[1] is not None:
                    continue
                bit = 1 if node.child[0] is None else 0
                child = node.child[bit]
                if child is not None:
                    child.parent = node.parent
                    child.parent_bit = node.parent_bit
                self._set_slot(is6, node.parent, node.parent_bit, child)
                if node.child[0] is not None or node.child[1] is not None or node.parent_bit > 1:
                    node.zeroize()
                    continue
                parent = node.parent
                if parent.peer is not None:
                    node.zeroize()
                    continue
                child = parent.child[node.parent_bit ^ 1]
                if child is not None:
                    child.parent = parent.parent
                    child.parent_bit = parent.parent_bit
                self._set_slot(is6, parent.parent, parent.parent_bit, child)
                node.zeroize()
                parent.zeroize()

    def is_empty(self) -> bool:
        """Whether neither family holds any prefix."""
        with self._lock:
            return self.ipv4 is None and self.ipv6 is None