"""MAC1/MAC2 computation and cookie replies for denial-of-service protection."""

from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
import time
from typing import Callable, Optional

from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

from wgkit.constants import COOKIE_REFRESH_TIME
from wgkit.messages import (
    MAC_SIZE,
    WG_LABEL_COOKIE,
    WG_LABEL_MAC1,
    XNONCE_SIZE,
    MessageCookieReply,
    MessageType,
)

_KEY_SIZE = 32


def _hash(*parts: bytes) -> bytes:
    h = hashlib.blake2s()
    for part in parts:
        h.update(bytes(part))
    return h.digest()


def _mac(key: bytes, *parts: bytes) -> bytes:
    h = hashlib.blake2s(key=bytes(key), digest_size=MAC_SIZE)
    for part in parts:
        h.update(bytes(part))
    return h.digest()


def _mac_offsets(msg) -> tuple:
    size = len(msg)
    if size < 2 * MAC_SIZE:
        raise ValueError(f"message too short to carry MACs: {size} bytes")
    smac2 = size - MAC_SIZE
    return smac2 - MAC_SIZE, smac2


def _derived_keys(public_key: bytes) -> tuple:
    return (
        _hash(WG_LABEL_MAC1.encode(), bytes(public_key)),
        _hash(WG_LABEL_COOKIE.encode(), bytes(public_key)),
    )


class CookieChecker:
    """Verifies MACs on incoming handshakes and issues cookie replies."""

    def __init__(
        self,
        public_key: Optional[bytes] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._mac1_key = bytes(_KEY_SIZE)
        self._secret = bytes(_KEY_SIZE)
        self._secret_set: Optional[float] = None
        self._encryption_key = bytes(_KEY_SIZE)
        if public_key is not None:
            self.reset(public_key)

    def _secret_expired(self) -> bool:
        return (
            self._secret_set is None
            or self._clock() - self._secret_set > COOKIE_REFRESH_TIME
        )

    def reset(self, public_key: bytes) -> None:
        """Derive the MAC keys from our public key and forget the cookie secret."""
        with self._lock:
            self._mac1_key, self._encryption_key = _derived_keys(public_key)
            self._secret_set = None

    def check_mac1(self, msg: bytes) -> bool:
        smac1, smac2 = _mac_offsets(msg)
        with self._lock:
            mac1 = _mac(self._mac1_key, msg[:smac1])
        return hmac.compare_digest(mac1, bytes(msg[smac1:smac2]))

    def check_mac2(self, msg: bytes, src: bytes) -> bool:
        _, smac2 = _mac_offsets(msg)
        with self._lock:
            if self._secret_expired():
                return False
            cookie = _mac(self._secret, src)
        mac2 = _mac(cookie, msg[:smac2])
        return hmac.compare_digest(mac2, bytes(msg[smac2:]))

    def create_reply(self, msg: bytes, receiver: int, src: bytes) -> MessageCookieReply:
        """A cookie reply for the sender of msg, whose address bytes are src."""
        smac1, smac2 = _mac_offsets(msg)
        with self._lock:
            if self._secret_expired():
                self._secret = secrets.token_bytes(_KEY_SIZE)
                self._secret_set = self._clock()
            cookie = _mac(self._secret, src)
            encryption_key = self._encryption_key
        nonce = secrets.token_bytes(XNONCE_SIZE)
        sealed = crypto_aead_xchacha20poly1305_ietf_encrypt(
            cookie, bytes(msg[smac1:smac2]), nonce, encryption_key
        )
        return MessageCookieReply(
            type=MessageType.COOKIE_REPLY,
            receiver=receiver,
            nonce=nonce,
            cookie=sealed,
        )


class CookieGenerator:
    """Adds MACs to outgoing handshakes, using cookies received from the peer."""

    def __init__(
        self,
        public_key: Optional[bytes] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._mac1_key = bytes(_KEY_SIZE)
        self._cookie = bytes(MAC_SIZE)
        self._cookie_set: Optional[float] = None
        self._last_mac1: Optional[bytes] = None
        self._encryption_key = bytes(_KEY_SIZE)
        if public_key is not None:
            self.reset(public_key)

    def reset(self, public_key: bytes) -> None:
        """Derive the MAC keys from the peer's public key and drop any cookie."""
        with self._lock:
            self._mac1_key, self._encryption_key = _derived_keys(public_key)
            self._cookie_set = None

    def consume_reply(self, reply: MessageCookieReply) -> bool:
        """Decrypt and store the cookie in reply; False if it does not authenticate."""
        with self._lock:
            if self._last_mac1 is None:
                return False
            try:
                cookie = crypto_aead_xchacha20poly1305_ietf_decrypt(
                    bytes(reply.cookie),
                    self._last_mac1,
                    bytes(reply.nonce),
                    self._encryption_key,
                )
            except CryptoError:
                return False
            self._cookie_set = self._clock()
            self._cookie = cookie
            return True

    def add_macs(self, msg: bytearray) -> None:
        """Write mac1, and mac2 when a fresh cookie is held, into the end of msg."""
        smac1, smac2 = _mac_offsets(msg)
        with self._lock:
            mac1 = _mac(self._mac1_key, msg[:smac1])
            msg[smac1:smac2] = mac1
            self._last_mac1 = mac1
            if self._cookie_set is None or self._clock() - self._cookie_set > COOKIE_REFRESH_TIME:
                return
            msg[smac2:] = _mac(self._cookie, msg[:smac2])