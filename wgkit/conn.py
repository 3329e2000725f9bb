"""Network connection interfaces: binds, endpoints and receive functions."""

from __future__ import annotations

import errno
import ipaddress
import sys
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Tuple, Union

IDEAL_BATCH_SIZE = 128
"""Maximum number of packets handled per read and write."""

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

ReceiveFunc = Callable[[List[bytearray], List[int], list], int]
"""Receives packets into the buffers, filling sizes and endpoints.

Returns how many entries of the lists should be evaluated; entries whose
size is zero are to be ignored.
"""

_ANONYMOUS_PARTS = frozenset(
    {"<lambda>", "<genexpr>", "<listcomp>", "<dictcomp>", "<setcomp>"}
)


class BindAlreadyOpenError(RuntimeError):
    """Raised when opening a bind that is already open."""

    def __init__(self, message: str = "bind is already open") -> None:
        super().__init__(message)


class WrongEndpointTypeError(TypeError):
    """Raised when an endpoint does not belong to the bind it is used with."""

    def __init__(
        self, message: str = "endpoint type does not correspond with bind type"
    ) -> None:
        super().__init__(message)


class Endpoint(ABC):
    """Source and destination addressing cached for a peer."""

    @abstractmethod
    def clear_src(self) -> None:
        """Forget the cached source address."""

    @abstractmethod
    def src_to_string(self) -> str:
        """The local source address as text."""

    @abstractmethod
    def dst_to_string(self) -> str:
        """The destination address as ``ip:port`` text."""

    @abstractmethod
    def dst_to_bytes(self) -> bytes:
        """The destination in binary form, used for cookie calculations."""

    @abstractmethod
    def dst_ip(self) -> Optional[IPAddress]:
        """The destination IP address."""

    @abstractmethod
    def src_ip(self) -> Optional[IPAddress]:
        """The cached source IP address, or None."""


class Bind(ABC):
    """Listens on one port for both IPv4 and IPv6 UDP traffic."""

    @abstractmethod
    def open(self, port: int) -> Tuple[List[ReceiveFunc], int]:
        """Start listening; port 0 picks one. Returns receive functions and the port."""

    @abstractmethod
    def close(self) -> None:
        """Stop listening."""

    @abstractmethod
    def set_mark(self, mark: int) -> None:
        """Set the firewall mark applied to sent packets."""

    @abstractmethod
    def send(self, bufs: Sequence[bytes], endpoint: Endpoint) -> None:
        """Send the packets in bufs to endpoint."""

    @abstractmethod
    def parse_endpoint(self, s: str) -> Endpoint:
        """Create an endpoint from its text form."""

    @abstractmethod
    def batch_size(self) -> int:
        """Number of buffers the receive functions expect."""


def pretty_name(fn: Callable) -> str:
    """A short name for a receive function: ``v4``, ``v6`` or its own name."""
    name = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or ""
    parts = [part for part in name.split(".") if part != "<locals>"]
    while parts and parts[-1] in _ANONYMOUS_PARTS:
        parts.pop()
    name = parts[-1] if parts else ""
    if not name:
        return hex(id(fn))
    lowered = name.lower()
    if lowered.endswith("ipv4"):
        return "v4"
    if lowered.endswith("ipv6"):
        return "v6"
    return name


def should_disable_udp_gso(err: BaseException) -> bool:
    """Whether a send error means UDP segmentation offload must be turned off."""
    if not sys.platform.startswith("linux"):
        return False
    seen = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        if isinstance(current, OSError):
            # EIO comes back when the driver lacks tx checksum offload,
            # which UDP_SEGMENT requires.
            return current.errno == errno.EIO
        seen.add(id(current))
        current = current.__cause__
    return False