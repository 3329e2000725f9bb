"""HMAC-BLAKE2s and the HKDF derivations used by the handshake."""

from __future__ import annotations

import hashlib
import hmac
from typing import Tuple


def hmac1(key: bytes, in0: bytes) -> bytes:
    return hmac.new(bytes(key), bytes(in0), hashlib.blake2s).digest()


def hmac2(key: bytes, in0: bytes, in1: bytes) -> bytes:
    mac = hmac.new(bytes(key), bytes(in0), hashlib.blake2s)
    mac.update(bytes(in1))
    return mac.digest()


def kdf1(key: bytes, data: bytes) -> bytes:
    prk = hmac1(key, data)
    return hmac1(prk, b"\x01")


def kdf2(key: bytes, data: bytes) -> Tuple[bytes, bytes]:
    prk = hmac1(key, data)
    t0 = hmac1(prk, b"\x01")
    t1 = hmac2(prk, t0, b"\x02")
    return t0, t1


def kdf3(key: bytes, data: bytes) -> Tuple[bytes, bytes, bytes]:
    prk = hmac1(key, data)
    t0 = hmac1(prk, b"\x01")
    t1 = hmac2(prk, t0, b"\x02")
    t2 = hmac2(prk, t1, b"\x03")
    return t0, t1, t2


def is_zero(val: bytes) -> bool:
    """Constant-time check that every byte is zero."""
    val = bytes(val)
    return hmac.compare_digest(val, bytes(len(val)))