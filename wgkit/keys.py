"""Curve25519 keys and preshared keys."""

from __future__ import annotations

import hmac
import secrets
import string

from nacl.bindings import crypto_scalarmult, crypto_scalarmult_base
from nacl.exceptions import CryptoError

from wgkit.kdf import is_zero

KEY_SIZE = 32


class InvalidPublicKeyError(ValueError):
    def __init__(self, message: str = "invalid public key") -> None:
        super().__init__(message)


def _load_exact_hex(src: str) -> bytes:
    if len(src) % 2 or any(ch not in string.hexdigits for ch in src):
        raise ValueError(f"invalid hex string {src!r}")
    data = bytes.fromhex(src)
    if len(data) != KEY_SIZE:
        raise ValueError("hex string does not fit the slice")
    return data


def _clamp(data: bytes) -> bytes:
    b = bytearray(data)
    b[0] &= 248
    b[31] = (b[31] & 127) | 64
    return bytes(b)


class _Key(bytes):
    def __new__(cls, data: bytes = bytes(KEY_SIZE)):
        data = bytes(data)
        if len(data) != KEY_SIZE:
            raise ValueError(f"key must be {KEY_SIZE} bytes")
        return super().__new__(cls, data)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, (bytes, bytearray)):
            return NotImplemented
        return hmac.compare_digest(bytes(self), bytes(other))

    def __ne__(self, other: object) -> bool:
        result = self.__eq__(other)
        return result if result is NotImplemented else not result

    __hash__ = bytes.__hash__


class NoisePublicKey(_Key):
    @classmethod
    def from_hex(cls, src: str) -> "NoisePublicKey":
        return cls(_load_exact_hex(src))

    def is_zero(self) -> bool:
        return is_zero(self)


class NoisePresharedKey(_Key):
    @classmethod
    def from_hex(cls, src: str) -> "NoisePresharedKey":
        return cls(_load_exact_hex(src))


class NoisePrivateKey(_Key):
    @classmethod
    def from_hex(cls, src: str) -> "NoisePrivateKey":
        return cls(_clamp(_load_exact_hex(src)))

    @classmethod
    def from_maybe_zero_hex(cls, src: str) -> "NoisePrivateKey":
        """Like from_hex, but an all-zero key is kept unclamped."""
        data = _load_exact_hex(src)
        return cls(data if is_zero(data) else _clamp(data))

    @classmethod
    def generate(cls) -> "NoisePrivateKey":
        return cls(_clamp(secrets.token_bytes(KEY_SIZE)))

    def is_zero(self) -> bool:
        return is_zero(self)

    def public_key(self) -> NoisePublicKey:
        return NoisePublicKey(crypto_scalarmult_base(bytes(self)))

    def shared_secret(self, public_key: bytes) -> bytes:
        """X25519 with public_key; raises InvalidPublicKeyError on a zero result."""
        try:
            ss = crypto_scalarmult(bytes(self), bytes(public_key))
        except (CryptoError, RuntimeError) as exc:
            raise InvalidPublicKeyError() from exc
        if is_zero(ss):
            raise InvalidPublicKeyError()
        return ss