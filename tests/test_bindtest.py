import errno
import ipaddress

import pytest

from wgkit.bindtest import ChannelBind, ChannelEndpoint, new_channel_binds
from wgkit.conn import WrongEndpointTypeError
from wgkit.endpoint import StdNetEndpoint


def _receive(fn, size=64):
    bufs = [bytearray(size)]
    sizes = [0]
    eps = [None]
    n = fn(bufs, sizes, eps)
    return n, bytes(bufs[0][: sizes[0]]), sizes[0], eps[0]


@pytest.fixture
def pair():
    a, b = new_channel_binds()
    fns_a, port_a = a.open(0)
    fns_b, port_b = b.open(0)
    yield a, b, fns_a, fns_b, port_a, port_b
    a.close()
    b.close()


def test_open_ports_come_from_partner_targets(pair):
    _, _, _, _, port_a, port_b = pair
    assert port_a in (2, 4)
    assert port_b in (1, 3)


def test_ipv4_round_trip(pair):
    a, _, _, fns_b, _, _ = pair
    a.send([b"hello"], ChannelEndpoint(1))
    n, data, size, ep = _receive(fns_b[0])
    assert n == 1
    assert data == b"hello"
    assert size == len(b"hello")
    assert ep == ChannelEndpoint(4)


def test_ipv6_round_trip(pair):
    _, b, fns_a, _, _, _ = pair
    b.send([b"pong"], ChannelEndpoint(4))
    n, data, _, ep = _receive(fns_a[1])
    assert n == 1
    assert data == b"pong"
    assert ep == ChannelEndpoint(3)


def test_send_copies_buffer(pair):
    a, _, _, fns_b, _, _ = pair
    buf = bytearray(b"abc")
    a.send([buf], ChannelEndpoint(1))
    buf[0] = ord("z")
    _, data, _, _ = _receive(fns_b[0])
    assert data == b"abc"


def test_receive_truncates_to_buffer(pair):
    a, _, _, fns_b, _, _ = pair
    a.send([b"abcdef"], ChannelEndpoint(1))
    _, data, size, _ = _receive(fns_b[0], size=2)
    assert data == b"ab"
    assert size == 2


def test_send_preserves_order(pair):
    a, _, _, fns_b, _, _ = pair
    packets = [b"one", b"two", b"three"]
    a.send(packets, ChannelEndpoint(1))
    received = [_receive(fns_b[0])[1] for _ in packets]
    assert received == packets


def test_send_to_unknown_endpoint(pair):
    a = pair[0]
    with pytest.raises(OSError) as info:
        a.send([b"x"], ChannelEndpoint(9))
    assert info.value.errno == errno.EINVAL


def test_send_wrong_endpoint_type(pair):
    a = pair[0]
    with pytest.raises(WrongEndpointTypeError):
        a.send([b"x"], StdNetEndpoint.parse("127.0.0.1:1"))


def test_close_stops_receive_and_send(pair):
    a, _, fns_a, _, _, _ = pair
    a.close()
    a.close()
    with pytest.raises(OSError):
        _receive(fns_a[0])
    with pytest.raises(OSError):
        a.send([b"x"], ChannelEndpoint(1))


def test_send_before_open_is_delivered():
    a, b = new_channel_binds()
    a.close()
    a.send([b"early"], ChannelEndpoint(1))
    fns_b, _ = b.open(0)
    _, data, _, _ = _receive(fns_b[0])
    b.close()
    assert data == b"early"


def test_reopen_after_close(pair):
    a, b, _, _, _, _ = pair
    a.close()
    fns_a, _ = a.open(0)
    b.send([b"again"], ChannelEndpoint(3))
    _, data, _, _ = _receive(fns_a[1])
    assert data == b"again"


def test_parse_endpoint(pair):
    a = pair[0]
    assert a.parse_endpoint("127.0.0.1:3") == ChannelEndpoint(3)
    with pytest.raises(ValueError):
        a.parse_endpoint("bogus")


def test_channel_endpoint_text_and_bytes():
    ep = ChannelEndpoint(7)
    assert ep.dst_to_string() == "127.0.0.1:7"
    assert ep.dst_to_bytes() == bytes([7])
    assert ep.dst_ip() == ipaddress.ip_address("127.0.0.1")
    assert ep.src_ip() is None
    assert ep.src_to_string() == ""


def test_batch_size_is_one(pair):
    a = pair[0]
    assert isinstance(a, ChannelBind)
    assert a.batch_size() == 1