import pytest

from wgkit.keys import (
    InvalidPublicKeyError,
    NoisePresharedKey,
    NoisePrivateKey,
    NoisePublicKey,
)


def test_generate_is_clamped():
    k = NoisePrivateKey.generate()
    assert k[0] & 7 == 0
    assert k[31] & 128 == 0
    assert k[31] & 64 == 64


def test_from_hex_clamps():
    k = NoisePrivateKey.from_hex("ff" * 32)
    assert k[0] == 248 and k[31] == 127


def test_maybe_zero_keeps_zero():
    k = NoisePrivateKey.from_maybe_zero_hex("00" * 32)
    assert k.is_zero()
    assert not NoisePrivateKey.from_hex("00" * 32).is_zero()


def test_bad_hex():
    with pytest.raises(ValueError, match="does not fit"):
        NoisePublicKey.from_hex("00" * 31)
    with pytest.raises(ValueError):
        NoisePresharedKey.from_hex("zz" * 32)


def test_public_hex_round_trip():
    pk = NoisePrivateKey.generate().public_key()
    assert NoisePublicKey.from_hex(pk.hex()) == pk


def test_shared_secret_symmetric():
    a, b = NoisePrivateKey.generate(), NoisePrivateKey.generate()
    assert a.shared_secret(b.public_key()) == b.shared_secret(a.public_key())


def test_zero_public_key_rejected():
    with pytest.raises(InvalidPublicKeyError):
        NoisePrivateKey.generate().shared_secret(NoisePublicKey())