from wgkit.kdf import hmac1, hmac2, is_zero, kdf1, kdf2, kdf3


def test_hmac2_is_concatenation():
    assert hmac2(b"k", b"ab", b"cd") == hmac1(b"k", b"abcd")
    assert len(hmac1(b"k", b"")) == 32


def test_kdf_prefix_consistency():
    key, data = b"chain" * 7, b"input"
    t0 = kdf1(key, data)
    a, b = kdf2(key, data)
    x, y, z = kdf3(key, data)
    assert t0 == a == x
    assert b == y
    assert len({a, b, z}) == 3


def test_kdf_depends_on_input():
    assert kdf1(b"k", b"a") != kdf1(b"k", b"b") or False
    assert kdf2(b"k", b"a")[1] != kdf2(b"k2", b"a")[1]


def test_is_zero():
    assert is_zero(bytes(32))
    assert is_zero(b"")
    assert not is_zero(b"\0\0\x01")