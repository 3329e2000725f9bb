"""UDP binds over standard sockets, one for IPv4 and one for IPv6."""

from __future__ import annotations

import errno
import ipaddress
import os
import socket
import struct
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from wgkit.batching import (
    UDP_SEGMENT_MAX_DATAGRAMS,
    Message,
    coalesce_messages,
    split_coalesced_messages,
)
from wgkit.conn import (
    IDEAL_BATCH_SIZE,
    Bind,
    BindAlreadyOpenError,
    Endpoint,
    ReceiveFunc,
    WrongEndpointTypeError,
    should_disable_udp_gso,
)
from wgkit.endpoint import (
    STICKY_CONTROL_SIZE,
    StdNetEndpoint,
    get_src_from_control,
    set_src_control,
)
from wgkit.gso import (
    GSO_CONTROL_SIZE,
    UDP_GRO,
    UDP_SEGMENT,
    get_gso_size,
    pack_control_message,
    parse_control_messages,
    set_gso_size,
)

SOCKET_BUFFER_SIZE = 7 << 20
"""Requested socket send and receive buffer size (7 MiB)."""

_IS_ANDROID = sys.platform == "android" or hasattr(sys, "getandroidapilevel")
_IS_LINUX = sys.platform.startswith("linux") or _IS_ANDROID
_IS_WINDOWS = sys.platform == "win32"
_BATCHING = _IS_LINUX
_STICKY = _IS_LINUX and not _IS_ANDROID

_CONTROL_SIZE = (STICKY_CONTROL_SIZE if _STICKY else 0) + (
    GSO_CONTROL_SIZE if _IS_LINUX else 0
)

_SO_RCVBUFFORCE = getattr(socket, "SO_RCVBUFFORCE", 33)
_SO_SNDBUFFORCE = getattr(socket, "SO_SNDBUFFORCE", 32)
_IP_PKTINFO = getattr(socket, "IP_PKTINFO", 8)
_IPV6_RECVPKTINFO = getattr(socket, "IPV6_RECVPKTINFO", 49)
_IPPROTO_UDP = getattr(socket, "IPPROTO_UDP", 17)
_MSG_DONTWAIT = getattr(socket, "MSG_DONTWAIT", 0x40)

_FAMILIES = {"udp4": socket.AF_INET, "udp6": socket.AF_INET6}


def _fwmark_option() -> int:
    if _IS_LINUX:
        return 36  # SO_MARK
    if sys.platform.startswith("freebsd"):
        return 0x1015  # SO_USER_COOKIE
    if sys.platform.startswith("openbsd"):
        return 0x1021  # SO_RTABLE
    return 0


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "use of closed network connection")


class UDPGSODisabledError(Exception):
    """Raised after UDP segmentation offload had to be turned off for a send."""

    def __init__(self, local_addr: str, retry_err: Optional[BaseException] = None) -> None:
        super().__init__(
            f"disabled UDP GSO on {local_addr}, NIC(s) may not support checksum offload"
        )
        self.local_addr = local_addr
        self.retry_err = retry_err


def _try_setsockopt(sock: socket.socket, level: int, option: int, value: int) -> None:
    try:
        sock.setsockopt(level, option, value)
    except OSError:
        pass


def _apply_socket_options(sock: socket.socket, network: str) -> None:
    """Apply buffer sizing, packet-info and offload options before binding."""
    _try_setsockopt(sock, socket.SOL_SOCKET, socket.SO_RCVBUF, SOCKET_BUFFER_SIZE)
    _try_setsockopt(sock, socket.SOL_SOCKET, socket.SO_SNDBUF, SOCKET_BUFFER_SIZE)
    if _IS_WINDOWS:
        return
    if not _IS_LINUX:
        if network == "udp6":
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        return
    # Beyond the mem_max limits when the process has CAP_NET_ADMIN.
    _try_setsockopt(sock, socket.SOL_SOCKET, _SO_RCVBUFFORCE, SOCKET_BUFFER_SIZE)
    _try_setsockopt(sock, socket.SOL_SOCKET, _SO_SNDBUFFORCE, SOCKET_BUFFER_SIZE)
    if network == "udp4":
        if not _IS_ANDROID:
            sock.setsockopt(socket.IPPROTO_IP, _IP_PKTINFO, 1)
    elif network == "udp6":
        if not _IS_ANDROID:
            sock.setsockopt(socket.IPPROTO_IPV6, _IPV6_RECVPKTINFO, 1)
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
    else:
        raise OSError(errno.EINVAL, f"unhandled network: {network}")
    _try_setsockopt(sock, _IPPROTO_UDP, UDP_GRO, 1)


def listen_udp(family: str, port: int) -> Tuple[socket.socket, int]:
    """Open a UDP socket for ``udp4`` or ``udp6`` on port; returns it and its port."""
    af = _FAMILIES.get(family)
    if af is None:
        raise OSError(errno.EINVAL, f"unhandled network: {family}")
    sock = socket.socket(af, socket.SOCK_DGRAM)
    try:
        _apply_socket_options(sock, family)
        sock.bind(("0.0.0.0" if af == socket.AF_INET else "::", port))
    except BaseException:
        sock.close()
        raise
    return sock, sock.getsockname()[1]


def _supports_udp_offload(sock: socket.socket) -> Tuple[bool, bool]:
    if not _IS_LINUX:
        return False, False
    try:
        sock.getsockopt(_IPPROTO_UDP, UDP_SEGMENT)
        tx = True
    except OSError:
        tx = False
    try:
        rx = sock.getsockopt(_IPPROTO_UDP, UDP_GRO) == 1
    except OSError:
        rx = False
    return tx, rx


@dataclass(eq=False)
class _Listener:
    sock: socket.socket
    tx_offload: bool = False
    rx_offload: bool = False
    closed: threading.Event = field(default_factory=threading.Event)

    def local_addr(self) -> str:
        host, port = self.sock.getsockname()[:2]
        if self.sock.family == socket.AF_INET6:
            return f"[{host}]:{port}"
        return f"{host}:{port}"

    def shutdown(self) -> None:
        self.closed.set()
        try:
            # Wakes up readers blocked on the socket.
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()


def _read_message(sock: socket.socket, msg: Message, flags: int) -> None:
    if hasattr(sock, "recvmsg_into"):
        nbytes, ancdata, _, address = sock.recvmsg_into([msg.buffer], _CONTROL_SIZE, flags)
        oob = b"".join(pack_control_message(level, type_, data) for level, type_, data in ancdata)
    else:
        nbytes, address = sock.recvfrom_into(msg.buffer, 0, flags)
        oob = b""
    msg.n = nbytes
    msg.oob = oob
    msg.nn = len(oob)
    msg.addr = address


def _read_batch(listener: _Listener, msgs: Sequence[Message]) -> int:
    if not msgs:
        return 0
    _read_message(listener.sock, msgs[0], 0)
    count = 1
    for msg in msgs[1:]:
        if listener.closed.is_set():
            break
        try:
            _read_message(listener.sock, msg, _MSG_DONTWAIT)
        except (BlockingIOError, InterruptedError):
            break
        count += 1
    return count


def _endpoint_from_sockaddr(address: Any) -> StdNetEndpoint:
    return StdNetEndpoint(ipaddress.ip_address(address[0]), address[1])


def _sockaddr(ep: StdNetEndpoint) -> tuple:
    ip = ep.dst_ip()
    if ip.version == 4:
        return (str(ip), ep.port)
    scope = ip.scope_id
    scope_index = 0
    if scope:
        scope_index = int(scope) if scope.isdigit() else socket.if_nametoindex(scope)
    return (str(ip).split("%", 1)[0], ep.port, 0, scope_index)


def _set_gso(control: bytes, gso_size: int) -> bytes:
    if not _IS_LINUX:
        return control
    return set_gso_size(control, gso_size, STICKY_CONTROL_SIZE + GSO_CONTROL_SIZE)


def _get_gso(control: bytes) -> int:
    return get_gso_size(control) if _IS_LINUX else 0


def _send_messages(sock: socket.socket, msgs: Sequence[Message]) -> None:
    for msg in msgs:
        if hasattr(sock, "sendmsg"):
            sock.sendmsg([msg.buffer], list(parse_control_messages(msg.oob)), 0, msg.addr)
        else:
            sock.sendto(msg.buffer, msg.addr)


class StdNetBind(Bind):
    """A bind using one standard UDP socket per address family."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._v4: Optional[_Listener] = None
        self._v6: Optional[_Listener] = None

    def __enter__(self) -> "StdNetBind":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def parse_endpoint(self, s: str) -> StdNetEndpoint:
        return StdNetEndpoint.parse(s)

    def open(self, port: int) -> Tuple[List[ReceiveFunc], int]:
        with self._lock:
            if self._v4 is not None or self._v6 is not None:
                raise BindAlreadyOpenError()
            tries = 0
            while True:
                actual = port
                v4: Optional[socket.socket] = None
                v6: Optional[socket.socket] = None
                try:
                    v4, actual = listen_udp("udp4", actual)
                except OSError as exc:
                    if exc.errno != errno.EAFNOSUPPORT:
                        raise
                    actual = 0
                try:
                    v6, actual = listen_udp("udp6", actual)
                except OSError as exc:
                    if port == 0 and exc.errno == errno.EADDRINUSE and tries < 100:
                        if v4 is not None:
                            v4.close()
                        tries += 1
                        continue
                    if exc.errno != errno.EAFNOSUPPORT:
                        if v4 is not None:
                            v4.close()
                        raise
                    if v4 is not None:
                        actual = v4.getsockname()[1]
                break

            fns: List[ReceiveFunc] = []
            if v4 is not None:
                listener = _Listener(v4, *_supports_udp_offload(v4))
                fns.append(self._make_receive_ipv4(listener))
                self._v4 = listener
            if v6 is not None:
                listener = _Listener(v6, *_supports_udp_offload(v6))
                fns.append(self._make_receive_ipv6(listener))
                self._v6 = listener
            if not fns:
                raise OSError(errno.EAFNOSUPPORT, os.strerror(errno.EAFNOSUPPORT))
            return fns, actual

    def _make_receive_ipv4(self, listener: _Listener) -> ReceiveFunc:
        def receive_ipv4(bufs: List[bytearray], sizes: List[int], eps: list) -> int:
            return self._receive(listener, bufs, sizes, eps)

        return receive_ipv4

    def _make_receive_ipv6(self, listener: _Listener) -> ReceiveFunc:
        def receive_ipv6(bufs: List[bytearray], sizes: List[int], eps: list) -> int:
            return self._receive(listener, bufs, sizes, eps)

        return receive_ipv6

    def _receive(
        self,
        listener: _Listener,
        bufs: List[bytearray],
        sizes: List[int],
        eps: list,
    ) -> int:
        if listener.closed.is_set():
            raise _closed_error()
        msgs = [Message(buffer=buf) for buf in bufs]
        try:
            if _BATCHING:
                if listener.rx_offload:
                    read_at = max(
                        len(msgs) - IDEAL_BATCH_SIZE // UDP_SEGMENT_MAX_DATAGRAMS, 0
                    )
                    _read_batch(listener, msgs[read_at:])
                    count = split_coalesced_messages(msgs, read_at, _get_gso)
                else:
                    count = _read_batch(listener, msgs)
            else:
                _read_message(listener.sock, msgs[0], 0)
                count = 1
        except OSError as exc:
            if listener.closed.is_set():
                raise _closed_error() from exc
            raise
        if listener.closed.is_set():
            raise _closed_error()
        for i, msg in enumerate(msgs[:count]):
            sizes[i] = msg.n
            if msg.n == 0:
                continue
            ep = _endpoint_from_sockaddr(msg.addr)
            if _STICKY:
                get_src_from_control(msg.oob[:msg.nn], ep)
            eps[i] = ep
        return count

    def batch_size(self) -> int:
        return IDEAL_BATCH_SIZE if _BATCHING else 1

    def close(self) -> None:
        with self._lock:
            listeners = (self._v4, self._v6)
            self._v4 = None
            self._v6 = None
        first: Optional[OSError] = None
        for listener in listeners:
            if listener is None:
                continue
            try:
                listener.shutdown()
            except OSError as exc:
                if first is None:
                    first = exc
        if first is not None:
            raise first

    def set_mark(self, mark: int) -> None:
        option = _fwmark_option()
        if option == 0:
            return
        with self._lock:
            listeners = [l for l in (self._v4, self._v6) if l is not None]
        for listener in listeners:
            listener.sock.setsockopt(socket.SOL_SOCKET, option, struct.pack("=I", mark))

    def _peek(self, listener: Optional[_Listener]) -> int:
        if listener is None:
            raise OSError(errno.EINVAL, os.strerror(errno.EINVAL))
        return listener.sock.fileno()

    def peek_socket_fd4(self) -> int:
        """The file descriptor of the IPv4 socket."""
        return self._peek(self._v4)

    def peek_socket_fd6(self) -> int:
        """The file descriptor of the IPv6 socket."""
        return self._peek(self._v6)

    def send(self, bufs: Sequence[bytes], endpoint: Endpoint) -> None:
        if not isinstance(endpoint, StdNetEndpoint):
            raise WrongEndpointTypeError()
        is6 = endpoint.dst_ip().version == 6
        with self._lock:
            listener = self._v6 if is6 else self._v4
            offload = listener.tx_offload if listener is not None else False
        if listener is None:
            raise OSError(errno.EAFNOSUPPORT, os.strerror(errno.EAFNOSUPPORT))

        addr = _sockaddr(endpoint)
        retried = False
        err: Optional[OSError] = None
        while True:
            if offload:
                msgs = [Message() for _ in bufs]
                count = coalesce_messages(addr, endpoint, bufs, msgs, _set_gso)
                try:
                    _send_messages(listener.sock, msgs[:count])
                    err = None
                except OSError as exc:
                    if should_disable_udp_gso(exc):
                        offload = False
                        with self._lock:
                            listener.tx_offload = False
                        retried = True
                        continue
                    err = exc
            else:
                src = set_src_control(endpoint)
                msgs = [Message(buffer=bytearray(buf), oob=src, addr=addr) for buf in bufs]
                try:
                    _send_messages(listener.sock, msgs)
                    err = None
                except OSError as exc:
                    err = exc
            break

        if retried:
            raise UDPGSODisabledError(listener.local_addr(), err) from err
        if err is not None:
            raise err


def new_default_bind() -> StdNetBind:
    """The bind used when none is chosen explicitly."""
    return StdNetBind()