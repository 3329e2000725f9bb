"""Coalescing of outgoing datagrams and splitting of received ones."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from wgkit.endpoint import StdNetEndpoint, set_src_control

MAX_MESSAGE_BUFFER = (1 << 16) - 1

# Exceeding these yields EMSGSIZE; they account for the layer 3 and 4 headers.
MAX_IPV4_PAYLOAD_LEN = (1 << 16) - 1 - 20 - 8
MAX_IPV6_PAYLOAD_LEN = (1 << 16) - 1 - 8

UDP_SEGMENT_MAX_DATAGRAMS = 64
"""Kernel limit on datagrams carried by one segmented send."""


class SplitOverflowError(ValueError):
    """Raised when splitting a coalesced datagram would overwrite unread data."""

    def __init__(self, count: int) -> None:
        super().__init__("splitting coalesced packet resulted in overflow")
        self.count = count


@dataclass
class Message:
    """One datagram slot for batched I/O.

    ``capacity`` bounds how far ``buffer`` may grow when datagrams are
    coalesced into it; ``n`` and ``nn`` are the received data and control
    lengths.
    """

    buffer: bytearray = field(default_factory=bytearray)
    oob: bytes = b""
    addr: Any = None
    n: int = 0
    nn: int = 0
    capacity: int = MAX_MESSAGE_BUFFER


def coalesce_messages(
    addr: Any,
    ep: StdNetEndpoint,
    bufs: Sequence[bytes],
    msgs: Sequence[Message],
    set_gso: Callable[[bytes, int], bytes],
) -> int:
    """Pack bufs into as few messages as segmentation allows.

    Returns the number of messages of msgs that were filled.
    """
    base = -1
    gso_size = 0
    dgram_count = 0
    end_batch = False
    max_payload = MAX_IPV6_PAYLOAD_LEN if ep.dst_ip().version == 6 else MAX_IPV4_PAYLOAD_LEN
    last = len(bufs) - 1
    for i, buf in enumerate(bufs):
        if i > 0:
            msg = msgs[base]
            msg_len = len(buf)
            base_len = len(msg.buffer)
            free = msg.capacity - base_len
            if (
                msg_len + base_len <= max_payload
                and msg_len <= gso_size
                and msg_len <= free
                and dgram_count < UDP_SEGMENT_MAX_DATAGRAMS
                and not end_batch
            ):
                msg.buffer += buf
                if i == last:
                    msg.oob = set_gso(msg.oob, gso_size)
                dgram_count += 1
                if msg_len < gso_size:
                    # A short tail datagram is legal but must end the batch.
                    end_batch = True
                continue
        if dgram_count > 1:
            msgs[base].oob = set_gso(msgs[base].oob, gso_size)
        end_batch = False
        base += 1
        gso_size = len(buf)
        msg = msgs[base]
        msg.oob = set_src_control(ep)
        msg.buffer = bytearray(buf)
        msg.addr = addr
        dgram_count = 1
    return base + 1


def split_coalesced_messages(
    msgs: Sequence[Message],
    first_msg_at: int,
    get_gso: Callable[[bytes], int],
) -> int:
    """Split coalesced datagrams read from first_msg_at onwards into msgs.

    Returns how many messages, from the start of msgs, hold datagrams.
    Raises SplitOverflowError, carrying that count, if they do not fit.
    """
    n = 0
    for i in range(first_msg_at, len(msgs)):
        msg = msgs[i]
        if msg.n == 0:
            return n
        gso_size = get_gso(msg.oob[:msg.nn])
        start = 0
        end = msg.n
        num_to_split = 1
        if gso_size > 0:
            num_to_split = (msg.n + gso_size - 1) // gso_size
            end = gso_size
        for _ in range(num_to_split):
            if n > i:
                raise SplitOverflowError(n)
            segment = bytes(msg.buffer[start:end])
            dst = msgs[n]
            copied = min(len(dst.buffer), len(segment))
            dst.buffer[:copied] = segment[:copied]
            dst.n = copied
            dst.addr = msg.addr
            start = end
            end += gso_size
            if end > msg.n:
                end = msg.n
            n += 1
        if i != n - 1:
            # Only clear the source when it was not the last split target.
            msg.n = 0
    return n