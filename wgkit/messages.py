"""Wire formats of the handshake, cookie and transport messages."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum

from wgkit.keys import NoisePublicKey

NOISE_CONSTRUCTION = "Noise_IKpsk2_25519_ChaChaPoly_BLAKE2s"
WG_IDENTIFIER = "WireGuard v1 zx2c4 [email]"
WG_LABEL_MAC1 = "mac1----"
WG_LABEL_COOKIE = "cookie--"

KEY_SIZE = 32
TAG_SIZE = 16
MAC_SIZE = 16
TIMESTAMP_SIZE = 12
XNONCE_SIZE = 24

MESSAGE_INITIATION_SIZE = 148
MESSAGE_RESPONSE_SIZE = 92
MESSAGE_COOKIE_REPLY_SIZE = 64
MESSAGE_TRANSPORT_HEADER_SIZE = 16
MESSAGE_TRANSPORT_SIZE = MESSAGE_TRANSPORT_HEADER_SIZE + TAG_SIZE
MESSAGE_KEEPALIVE_SIZE = MESSAGE_TRANSPORT_SIZE
MESSAGE_HANDSHAKE_SIZE = MESSAGE_INITIATION_SIZE

MESSAGE_TRANSPORT_OFFSET_RECEIVER = 4
MESSAGE_TRANSPORT_OFFSET_COUNTER = 8
MESSAGE_TRANSPORT_OFFSET_CONTENT = 16


class MessageType(IntEnum):
    """The first byte of every message; the next three bytes are zero."""

    INITIATION = 1
    RESPONSE = 2
    COOKIE_REPLY = 3
    TRANSPORT = 4


_INITIATION = struct.Struct(
    f"<II{KEY_SIZE}s{KEY_SIZE + TAG_SIZE}s{TIMESTAMP_SIZE + TAG_SIZE}s{MAC_SIZE}s{MAC_SIZE}s"
)
_RESPONSE = struct.Struct(f"<III{KEY_SIZE}s{TAG_SIZE}s{MAC_SIZE}s{MAC_SIZE}s")
_COOKIE_REPLY = struct.Struct(f"<II{XNONCE_SIZE}s{MAC_SIZE + TAG_SIZE}s")
_TRANSPORT_HEADER = struct.Struct("<IIQ")


def _exact(name: str, value: bytes, size: int) -> bytes:
    value = bytes(value)
    if len(value) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(value)}")
    return value


def _check_length(kind: str, data: bytes, size: int) -> bytes:
    data = bytes(data)
    if len(data) != size:
        raise ValueError(f"{kind} message must be {size} bytes, got {len(data)}")
    return data


@dataclass
class MessageInitiation:
    """First handshake message, sent by the initiator."""

    type: int = MessageType.INITIATION
    sender: int = 0
    ephemeral: bytes = bytes(KEY_SIZE)
    static: bytes = bytes(KEY_SIZE + TAG_SIZE)
    timestamp: bytes = bytes(TIMESTAMP_SIZE + TAG_SIZE)
    mac1: bytes = bytes(MAC_SIZE)
    mac2: bytes = bytes(MAC_SIZE)

    def __post_init__(self) -> None:
        self.ephemeral = NoisePublicKey(_exact("ephemeral", self.ephemeral, KEY_SIZE))
        self.static = _exact("static", self.static, KEY_SIZE + TAG_SIZE)
        self.timestamp = _exact("timestamp", self.timestamp, TIMESTAMP_SIZE + TAG_SIZE)
        self.mac1 = _exact("mac1", self.mac1, MAC_SIZE)
        self.mac2 = _exact("mac2", self.mac2, MAC_SIZE)

    def pack(self) -> bytes:
        return _INITIATION.pack(
            self.type,
            self.sender,
            bytes(self.ephemeral),
            self.static,
            self.timestamp,
            self.mac1,
            self.mac2,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "MessageInitiation":
        data = _check_length("initiation", data, MESSAGE_INITIATION_SIZE)
        return cls(*_INITIATION.unpack(data))


@dataclass
class MessageResponse:
    """Second handshake message, sent by the responder."""

    type: int = MessageType.RESPONSE
    sender: int = 0
    receiver: int = 0
    ephemeral: bytes = bytes(KEY_SIZE)
    empty: bytes = bytes(TAG_SIZE)
    mac1: bytes = bytes(MAC_SIZE)
    mac2: bytes = bytes(MAC_SIZE)

    def __post_init__(self) -> None:
        self.ephemeral = NoisePublicKey(_exact("ephemeral", self.ephemeral, KEY_SIZE))
        self.empty = _exact("empty", self.empty, TAG_SIZE)
        self.mac1 = _exact("mac1", self.mac1, MAC_SIZE)
        self.mac2 = _exact("mac2", self.mac2, MAC_SIZE)

    def pack(self) -> bytes:
        return _RESPONSE.pack(
            self.type,
            self.sender,
            self.receiver,
            bytes(self.ephemeral),
            self.empty,
            self.mac1,
            self.mac2,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "MessageResponse":
        data = _check_length("response", data, MESSAGE_RESPONSE_SIZE)
        return cls(*_RESPONSE.unpack(data))


@dataclass
class MessageCookieReply:
    """An encrypted cookie sent back to a peer under load."""

    type: int = MessageType.COOKIE_REPLY
    receiver: int = 0
    nonce: bytes = bytes(XNONCE_SIZE)
    cookie: bytes = bytes(MAC_SIZE + TAG_SIZE)

    def __post_init__(self) -> None:
        self.nonce = _exact("nonce", self.nonce, XNONCE_SIZE)
        self.cookie = _exact("cookie", self.cookie, MAC_SIZE + TAG_SIZE)

    def pack(self) -> bytes:
        return _COOKIE_REPLY.pack(self.type, self.receiver, self.nonce, self.cookie)

    @classmethod
    def unpack(cls, data: bytes) -> "MessageCookieReply":
        data = _check_length("cookie reply", data, MESSAGE_COOKIE_REPLY_SIZE)
        return cls(*_COOKIE_REPLY.unpack(data))


@dataclass
class MessageTransport:
    """An encrypted data packet; content includes the authentication tag."""

    type: int = MessageType.TRANSPORT
    receiver: int = 0
    counter: int = 0
    content: bytes = field(default=b"")

    def __post_init__(self) -> None:
        self.content = bytes(self.content)

    def pack(self) -> bytes:
        return _TRANSPORT_HEADER.pack(self.type, self.receiver, self.counter) + self.content

    @classmethod
    def unpack(cls, data: bytes) -> "MessageTransport":
        data = bytes(data)
        if len(data) < MESSAGE_TRANSPORT_HEADER_SIZE:
            raise ValueError(
                f"transport message must be at least {MESSAGE_TRANSPORT_HEADER_SIZE} bytes, "
                f"got {len(data)}"
            )
        type_, receiver, counter = _TRANSPORT_HEADER.unpack_from(data)
        return cls(type_, receiver, counter, data[MESSAGE_TRANSPORT_OFFSET_CONTENT:])