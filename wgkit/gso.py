"""Socket control messages for UDP segmentation (GSO) and coalescing (GRO)."""

from __future__ import annotations

import struct
from typing import Iterator, Tuple

_CMSG_HEADER = struct.Struct("=Qii")
_CMSG_ALIGN = 8
_GSO_DATA = struct.Struct("=H")

CMSG_HEADER_SIZE = _CMSG_HEADER.size

SOL_UDP = 17
UDP_SEGMENT = 103
UDP_GRO = 104


def _cmsg_align(length: int) -> int:
    return (length + _CMSG_ALIGN - 1) & ~(_CMSG_ALIGN - 1)


def _cmsg_len(data_len: int) -> int:
    return _cmsg_align(CMSG_HEADER_SIZE) + data_len


def _cmsg_space(data_len: int) -> int:
    return _cmsg_align(CMSG_HEADER_SIZE) + _cmsg_align(data_len)


GSO_CONTROL_SIZE = _cmsg_space(_GSO_DATA.size)
"""Buffer size needed for one UDP segmentation control message."""


def parse_control_messages(control: bytes) -> Iterator[Tuple[int, int, bytes]]:
    """Yield ``(level, type, data)`` for each control message in control.

    Raises ValueError when a header is malformed.
    """
    rem = bytes(control)
    while len(rem) > CMSG_HEADER_SIZE:
        length, level, type_ = _CMSG_HEADER.unpack_from(rem)
        if length < CMSG_HEADER_SIZE or length > len(rem):
            raise ValueError(f"invalid control message length {length}")
        yield level, type_, rem[_cmsg_align(CMSG_HEADER_SIZE):length]
        rem = rem[_cmsg_align(length):]


def pack_control_message(level: int, type_: int, data: bytes) -> bytes:
    """Encode one control message, padded to its aligned space."""
    data = bytes(data)
    message = _CMSG_HEADER.pack(_cmsg_len(len(data)), level, type_) + data
    return message.ljust(_cmsg_space(len(data)), b"\0")


def get_gso_size(control: bytes) -> int:
    """The GRO segment size carried in control, or 0 when there is none."""
    try:
        for level, type_, data in parse_control_messages(control):
            if level == SOL_UDP and type_ == UDP_GRO and len(data) >= _GSO_DATA.size:
                return _GSO_DATA.unpack_from(data)[0]
    except ValueError as exc:
        raise ValueError(f"error parsing socket control message: {exc}") from exc
    return 0


def set_gso_size(control: bytes, gso_size: int, capacity: int) -> bytes:
    """Append a UDP_SEGMENT message to control if it fits within capacity.

    The existing control data is kept as is; when there is no room the
    control data is returned unchanged.
    """
    control = bytes(control)
    if capacity - len(control) < GSO_CONTROL_SIZE:
        return control
    return control + pack_control_message(
        SOL_UDP, UDP_SEGMENT, _GSO_DATA.pack(gso_size)
    )