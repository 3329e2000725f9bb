"""An in-memory pair of binds connected to each other, for testing devices."""

from __future__ import annotations

import errno
import ipaddress
import queue
import random
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from wgkit.conn import Bind, Endpoint, ReceiveFunc, WrongEndpointTypeError
from wgkit.endpoint import StdNetEndpoint

_CHANNEL_CAPACITY = 8192
_POLL_INTERVAL = 0.01
_LOOPBACK = ipaddress.IPv4Address("127.0.0.1")


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "use of closed network connection")


@dataclass(frozen=True)
class ChannelEndpoint(Endpoint):
    """An endpoint identified only by a small number."""

    port: int

    def clear_src(self) -> None:
        pass

    def src_to_string(self) -> str:
        return ""

    def dst_to_string(self) -> str:
        return f"127.0.0.1:{self.port}"

    def dst_to_bytes(self) -> bytes:
        return bytes([self.port & 0xFF])

    def dst_ip(self) -> ipaddress.IPv4Address:
        return _LOOPBACK

    def src_ip(self) -> None:
        return None


class ChannelBind(Bind):
    """A bind that exchanges packets with its partner through queues."""

    def __init__(
        self,
        rx4: "queue.Queue[bytes]",
        tx4: "queue.Queue[bytes]",
        rx6: "queue.Queue[bytes]",
        tx6: "queue.Queue[bytes]",
        source4: ChannelEndpoint,
        source6: ChannelEndpoint,
        target4: ChannelEndpoint,
        target6: ChannelEndpoint,
    ) -> None:
        self._rx4 = rx4
        self._tx4 = tx4
        self._rx6 = rx6
        self._tx6 = tx6
        self._source4 = source4
        self._source6 = source6
        self._target4 = target4
        self._target6 = target6
        self._close_signal: Optional[threading.Event] = None

    def open(self, port: int) -> Tuple[List[ReceiveFunc], int]:
        self._close_signal = threading.Event()
        fns = [self._make_receive(self._rx4), self._make_receive(self._rx6)]
        source = self._source4 if random.getrandbits(1) == 0 else self._source6
        return fns, source.port

    def close(self) -> None:
        if self._close_signal is not None:
            self._close_signal.set()

    def batch_size(self) -> int:
        return 1

    def set_mark(self, mark: int) -> None:
        pass

    def _is_closed(self) -> bool:
        signal = self._close_signal
        return signal is not None and signal.is_set()

    def _make_receive(self, channel: "queue.Queue[bytes]") -> ReceiveFunc:
        def receive(bufs: List[bytearray], sizes: List[int], eps: list) -> int:
            while True:
                if self._is_closed():
                    raise _closed_error()
                try:
                    rx = channel.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                break
            copied = min(len(bufs[0]), len(rx))
            bufs[0][:copied] = rx[:copied]
            sizes[0] = copied
            eps[0] = self._target6
            return 1

        return receive

    def send(self, bufs: Sequence[bytes], endpoint: Endpoint) -> None:
        if not isinstance(endpoint, ChannelEndpoint):
            raise WrongEndpointTypeError()
        for buf in bufs:
            if self._is_closed():
                raise _closed_error()
            packet = bytes(buf)
            if endpoint == self._target4:
                self._tx4.put(packet)
            elif endpoint == self._target6:
                self._tx6.put(packet)
            else:
                raise OSError(errno.EINVAL, "invalid argument")

    def parse_endpoint(self, s: str) -> ChannelEndpoint:
        return ChannelEndpoint(StdNetEndpoint.parse(s).port)


def new_channel_binds() -> Tuple[ChannelBind, ChannelBind]:
    """Two binds wired so that what one sends, the other receives."""
    arx4: "queue.Queue[bytes]" = queue.Queue(_CHANNEL_CAPACITY)
    brx4: "queue.Queue[bytes]" = queue.Queue(_CHANNEL_CAPACITY)
    arx6: "queue.Queue[bytes]" = queue.Queue(_CHANNEL_CAPACITY)
    brx6: "queue.Queue[bytes]" = queue.Queue(_CHANNEL_CAPACITY)
    target4 = (ChannelEndpoint(1), ChannelEndpoint(2))
    target6 = (ChannelEndpoint(3), ChannelEndpoint(4))
    first = ChannelBind(
        rx4=arx4,
        tx4=brx4,
        rx6=arx6,
        tx6=brx6,
        source4=target4[1],
        source6=target6[1],
        target4=target4[0],
        target6=target6[0],
    )
    second = ChannelBind(
        rx4=brx4,
        tx4=arx4,
        rx6=brx6,
        tx6=arx6,
        source4=target4[0],
        source6=target6[0],
        target4=target4[1],
        target6=target6[1],
    )
    return first, second