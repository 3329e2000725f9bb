"""The Noise_IKpsk2 handshake and the session keypairs derived from it."""

from __future__ import annotations

import hashlib
import struct
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Optional, Tuple

from nacl.bindings import (
    crypto_aead_chacha20poly1305_ietf_decrypt,
    crypto_aead_chacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

from wgkit.constants import HANDSHAKE_INITIATION_RATE
from wgkit.indextable import IndexTable
from wgkit.kdf import is_zero, kdf1, kdf2, kdf3
from wgkit.keys import (
    InvalidPublicKeyError,
    NoisePresharedKey,
    NoisePrivateKey,
    NoisePublicKey,
)
from wgkit.logger import Logger
from wgkit.messages import (
    NOISE_CONSTRUCTION,
    TIMESTAMP_SIZE,
    WG_IDENTIFIER,
    MessageInitiation,
    MessageResponse,
    MessageType,
)

_HASH_SIZE = 32
_ZERO_NONCE = bytes(12)
_TAI64_BASE = (1 << 62) + 10
_TAI64N = struct.Struct(">QI")


def mix_hash(h: bytes, data: bytes) -> bytes:
    """BLAKE2s of the running hash followed by data."""
    digest = hashlib.blake2s()
    digest.update(bytes(h))
    digest.update(bytes(data))
    return digest.digest()


def mix_key(c: bytes, data: bytes) -> bytes:
    """The next chaining key after mixing in data."""
    return kdf1(c, data)


INITIAL_CHAIN_KEY = hashlib.blake2s(NOISE_CONSTRUCTION.encode()).digest()
INITIAL_HASH = mix_hash(INITIAL_CHAIN_KEY, WG_IDENTIFIER.encode())


def tai64n_now() -> bytes:
    """The current time as a 12-byte TAI64N label."""
    ns = time.time_ns()
    seconds, nanos = divmod(ns, 1_000_000_000)
    return _TAI64N.pack(_TAI64_BASE + seconds, nanos)


def _seal(key: bytes, plaintext: bytes, aad: bytes) -> bytes:
    return crypto_aead_chacha20poly1305_ietf_encrypt(
        bytes(plaintext), bytes(aad), _ZERO_NONCE, bytes(key)
    )


def _open(key: bytes, ciphertext: bytes, aad: bytes) -> bytes:
    return crypto_aead_chacha20poly1305_ietf_decrypt(
        bytes(ciphertext), bytes(aad), _ZERO_NONCE, bytes(key)
    )


class HandshakeError(Exception):
    """Raised when a handshake step is attempted in the wrong state."""


class HandshakeState(IntEnum):
    ZEROED = 0
    INITIATION_CREATED = 1
    INITIATION_CONSUMED = 2
    RESPONSE_CREATED = 3
    RESPONSE_CONSUMED = 4

    def __str__(self) -> str:
        return {
            HandshakeState.ZEROED: "handshakeZeroed",
            HandshakeState.INITIATION_CREATED: "handshakeInitiationCreated",
            HandshakeState.INITIATION_CONSUMED: "handshakeInitiationConsumed",
            HandshakeState.RESPONSE_CREATED: "handshakeResponseCreated",
            HandshakeState.RESPONSE_CONSUMED: "handshakeResponseConsumed",
        }[self]


@dataclass(eq=False)
class Handshake:
    """Per-peer handshake state."""

    remote_static: NoisePublicKey = field(default_factory=NoisePublicKey)
    preshared_key: NoisePresharedKey = field(default_factory=NoisePresharedKey)
    precomputed_static_static: bytes = bytes(_HASH_SIZE)
    state: HandshakeState = HandshakeState.ZEROED
    hash: bytes = bytes(_HASH_SIZE)
    chain_key: bytes = bytes(_HASH_SIZE)
    local_ephemeral: NoisePrivateKey = field(default_factory=NoisePrivateKey)
    remote_ephemeral: NoisePublicKey = field(default_factory=NoisePublicKey)
    local_index: int = 0
    remote_index: int = 0
    last_timestamp: bytes = bytes(TIMESTAMP_SIZE)
    last_initiation_consumption: Optional[float] = None
    last_sent_handshake: Optional[float] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def clear(self) -> None:
        """Forget ephemeral keys and the transcript."""
        with self.lock:
            self.local_ephemeral = NoisePrivateKey()
            self.remote_ephemeral = NoisePublicKey()
            self.chain_key = bytes(_HASH_SIZE)
            self.hash = bytes(_HASH_SIZE)
            self.local_index = 0
            self.state = HandshakeState.ZEROED


@dataclass(eq=False)
class StaticIdentity:
    """The local long-term key pair."""

    private_key: NoisePrivateKey = field(default_factory=NoisePrivateKey)
    public_key: NoisePublicKey = field(default_factory=NoisePublicKey)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __post_init__(self) -> None:
        if not self.private_key.is_zero() and self.public_key.is_zero():
            self.public_key = self.private_key.public_key()

    def set_private_key(self, private_key: NoisePrivateKey) -> NoisePublicKey:
        """Replace the key pair; returns the new public key."""
        with self.lock:
            if private_key == self.private_key:
                return self.public_key
            self.private_key = private_key
            self.public_key = (
                NoisePublicKey() if private_key.is_zero() else private_key.public_key()
            )
            return self.public_key


@dataclass(eq=False)
class Keypair:
    """Symmetric session keys derived from a completed handshake."""

    send_key: bytes
    receive_key: bytes
    is_initiator: bool
    created: float
    local_index: int
    remote_index: int
    send_nonce: int = 0


@dataclass(eq=False)
class Keypairs:
    """The previous, current and pending keypairs of a peer."""

    current: Optional[Keypair] = None
    previous: Optional[Keypair] = None
    next: Optional[Keypair] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def current_keypair(self) -> Optional[Keypair]:
        with self.lock:
            return self.current


def _delete_keypair(index_table: IndexTable, keypair: Optional[Keypair]) -> None:
    if keypair is not None:
        index_table.delete(keypair.local_index)


def create_message_initiation(
    identity: StaticIdentity,
    handshake: Handshake,
    index_table: IndexTable,
    peer: Any,
) -> MessageInitiation:
    """Start a handshake with the peer whose static key is in handshake."""
    with identity.lock, handshake.lock:
        handshake.hash = INITIAL_HASH
        handshake.chain_key = INITIAL_CHAIN_KEY
        handshake.local_ephemeral = NoisePrivateKey.generate()

        handshake.hash = mix_hash(handshake.hash, handshake.remote_static)
        ephemeral = handshake.local_ephemeral.public_key()
        handshake.chain_key = mix_key(handshake.chain_key, ephemeral)
        handshake.hash = mix_hash(handshake.hash, ephemeral)

        ss = handshake.local_ephemeral.shared_secret(handshake.remote_static)
        handshake.chain_key, key = kdf2(handshake.chain_key, ss)
        static = _seal(key, identity.public_key, handshake.hash)
        handshake.hash = mix_hash(handshake.hash, static)

        if is_zero(handshake.precomputed_static_static):
            raise InvalidPublicKeyError()
        handshake.chain_key, key = kdf2(
            handshake.chain_key, handshake.precomputed_static_static
        )
        timestamp = _seal(key, tai64n_now(), handshake.hash)

        index_table.delete(handshake.local_index)
        sender = index_table.new_index_for_handshake(peer, handshake)
        handshake.local_index = sender

        handshake.hash = mix_hash(handshake.hash, timestamp)
        handshake.state = HandshakeState.INITIATION_CREATED
        return MessageInitiation(
            type=MessageType.INITIATION,
            sender=sender,
            ephemeral=ephemeral,
            static=static,
            timestamp=timestamp,
        )


def consume_message_initiation(
    identity: StaticIdentity,
    msg: MessageInitiation,
    lookup: Callable[[NoisePublicKey], Optional[Tuple[Any, Handshake]]],
    logger: Optional[Logger] = None,
) -> Any:
    """Process an initiation; returns the peer, or None if it is rejected.

    lookup maps the initiator's static key to ``(peer, handshake)`` for a
    running peer, or None.
    """
    if msg.type != MessageType.INITIATION:
        return None

    with identity.lock:
        hash_ = mix_hash(INITIAL_HASH, identity.public_key)
        hash_ = mix_hash(hash_, msg.ephemeral)
        chain_key = mix_key(INITIAL_CHAIN_KEY, msg.ephemeral)

        try:
            ss = identity.private_key.shared_secret(msg.ephemeral)
        except InvalidPublicKeyError:
            return None
        chain_key, key = kdf2(chain_key, ss)
        try:
            peer_pk = _open(key, msg.static, hash_)
        except CryptoError:
            return None
        hash_ = mix_hash(hash_, msg.static)

        found = lookup(NoisePublicKey(peer_pk))
        if found is None:
            return None
        peer, handshake = found

        with handshake.lock:
            if is_zero(handshake.precomputed_static_static):
                return None
            chain_key, key = kdf2(chain_key, handshake.precomputed_static_static)
            try:
                timestamp = _open(key, msg.timestamp, hash_)
            except CryptoError:
                return None
            hash_ = mix_hash(hash_, msg.timestamp)

            now = time.monotonic()
            replay = not timestamp > handshake.last_timestamp
            last = handshake.last_initiation_consumption
            flood = last is not None and now - last <= HANDSHAKE_INITIATION_RATE

        if replay:
            if logger is not None:
                logger.verbosef(
                    "%s - ConsumeMessageInitiation: handshake replay @ %s",
                    peer,
                    timestamp.hex(),
                )
            return None
        if flood:
            if logger is not None:
                logger.verbosef("%s - ConsumeMessageInitiation: handshake flood", peer)
            return None

        with handshake.lock:
            handshake.hash = hash_
            handshake.chain_key = chain_key
            handshake.remote_index = msg.sender
            handshake.remote_ephemeral = NoisePublicKey(msg.ephemeral)
            if timestamp > handshake.last_timestamp:
                handshake.last_timestamp = timestamp
            now = time.monotonic()
            if (
                handshake.last_initiation_consumption is None
                or now > handshake.last_initiation_consumption
            ):
                handshake.last_initiation_consumption = now
            handshake.state = HandshakeState.INITIATION_CONSUMED
        return peer


def create_message_response(
    handshake: Handshake, index_table: IndexTable, peer: Any
) -> MessageResponse:
    """Answer a consumed initiation."""
    with handshake.lock:
        if handshake.state != HandshakeState.INITIATION_CONSUMED:
            raise HandshakeError("handshake initiation must be consumed first")

        index_table.delete(handshake.local_index)
        handshake.local_index = index_table.new_index_for_handshake(peer, handshake)

        handshake.local_ephemeral = NoisePrivateKey.generate()
        ephemeral = handshake.local_ephemeral.public_key()
        handshake.hash = mix_hash(handshake.hash, ephemeral)
        handshake.chain_key = mix_key(handshake.chain_key, ephemeral)

        ss = handshake.local_ephemeral.shared_secret(handshake.remote_ephemeral)
        handshake.chain_key = mix_key(handshake.chain_key, ss)
        ss = handshake.local_ephemeral.shared_secret(handshake.remote_static)
        handshake.chain_key = mix_key(handshake.chain_key, ss)

        handshake.chain_key, tau, key = kdf3(handshake.chain_key, handshake.preshared_key)
        handshake.hash = mix_hash(handshake.hash, tau)

        empty = _seal(key, b"", handshake.hash)
        handshake.hash = mix_hash(handshake.hash, empty)
        handshake.state = HandshakeState.RESPONSE_CREATED
        return MessageResponse(
            type=MessageType.RESPONSE,
            sender=handshake.local_index,
            receiver=handshake.remote_index,
            ephemeral=ephemeral,
            empty=empty,
        )


def consume_message_response(
    identity: StaticIdentity, msg: MessageResponse, index_table: IndexTable
) -> Any:
    """Process a response; returns the peer, or None if it is rejected."""
    if msg.type != MessageType.RESPONSE:
        return None
    entry = index_table.lookup(msg.receiver)
    handshake = entry.handshake
    if handshake is None:
        return None

    with handshake.lock:
        if handshake.state != HandshakeState.INITIATION_CREATED:
            return None
        with identity.lock:
            hash_ = mix_hash(handshake.hash, msg.ephemeral)
            chain_key = mix_key(handshake.chain_key, msg.ephemeral)
            try:
                ss = handshake.local_ephemeral.shared_secret(msg.ephemeral)
                chain_key = mix_key(chain_key, ss)
                ss = identity.private_key.shared_secret(msg.ephemeral)
                chain_key = mix_key(chain_key, ss)
            except InvalidPublicKeyError:
                return None
            chain_key, tau, key = kdf3(chain_key, handshake.preshared_key)
            hash_ = mix_hash(hash_, tau)
            try:
                _open(key, msg.empty, hash_)
            except CryptoError:
                return None
            hash_ = mix_hash(hash_, msg.empty)

        handshake.hash = hash_
        handshake.chain_key = chain_key
        handshake.remote_index = msg.sender
        handshake.state = HandshakeState.RESPONSE_CONSUMED
    return entry.peer


def begin_symmetric_session(
    handshake: Handshake, keypairs: Keypairs, index_table: IndexTable
) -> Keypair:
    """Derive a keypair from a finished handshake and rotate it into keypairs."""
    with handshake.lock:
        if handshake.state == HandshakeState.RESPONSE_CONSUMED:
            send_key, recv_key = kdf2(handshake.chain_key, b"")
            is_initiator = True
        elif handshake.state == HandshakeState.RESPONSE_CREATED:
            recv_key, send_key = kdf2(handshake.chain_key, b"")
            is_initiator = False
        else:
            raise HandshakeError(
                f"invalid state for keypair derivation: {handshake.state}"
            )

        handshake.chain_key = bytes(_HASH_SIZE)
        handshake.hash = bytes(_HASH_SIZE)
        handshake.local_ephemeral = NoisePrivateKey()
        handshake.state = HandshakeState.ZEROED

        keypair = Keypair(
            send_key=send_key,
            receive_key=recv_key,
            is_initiator=is_initiator,
            created=time.monotonic(),
            local_index=handshake.local_index,
            remote_index=handshake.remote_index,
        )

        index_table.swap_index_for_keypair(handshake.local_index, keypair)
        handshake.local_index = 0

        with keypairs.lock:
            previous = keypairs.previous
            next_ = keypairs.next
            current = keypairs.current
            if is_initiator:
                if next_ is not None:
                    keypairs.next = None
                    keypairs.previous = next_
                    _delete_keypair(index_table, current)
                else:
                    keypairs.previous = current
                _delete_keypair(index_table, previous)
                keypairs.current = keypair
            else:
                keypairs.next = keypair
                _delete_keypair(index_table, next_)
                keypairs.previous = None
                _delete_keypair(index_table, previous)
        return keypair


def received_with_keypair(
    keypairs: Keypairs, keypair: Keypair, index_table: IndexTable
) -> bool:
    """Promote the pending keypair once data arrives with it."""
    if keypairs.next is not keypair:
        return False
    with keypairs.lock:
        if keypairs.next is not keypair:
            return False
        old = keypairs.previous
        keypairs.previous = keypairs.current
        _delete_keypair(index_table, old)
        keypairs.current = keypairs.next
        keypairs.next = None
        return True