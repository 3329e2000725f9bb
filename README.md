# wgkit

Building blocks for a WireGuard implementation in pure Python.

What it contains:

- **Network binds** – `StdNetBind` opens paired IPv4/IPv6 UDP sockets on one
  port and sends and receives batches of datagrams. It applies sticky-source
  control messages and UDP GSO coalescing where the platform supports them.
  `new_default_bind()` returns the right bind for the running platform.
- **In-memory binds** – `new_channel_binds()` returns two `ChannelBind`
  objects that are wired to each other, so tests can run without sockets.
- **Batching helpers** – `coalesce_messages` and `split_coalesced_messages`
  pack datagrams into GSO segments and unpack them again. The helpers in
  `wgkit.gso` read and write `UDP_SEGMENT` / `UDP_GRO` control messages.
- **Endpoints** – `StdNetEndpoint` holds a destination address and port and,
  where available, the cached PKTINFO source.
- **Allowed IPs** – `AllowedIPs` is a longest-prefix-match trie that maps
  IPv4 and IPv6 prefixes to peers.
- **Keys and KDF** – `NoisePrivateKey`, `NoisePublicKey` and
  `NoisePresharedKey` wrap Curve25519 keys. `wgkit.kdf` has the BLAKE2s
  HMAC/HKDF chain.
- **Handshake** – `wgkit.noise` implements the `Noise_IKpsk2` initiation and
  response messages and the keypair rotation that follows them. The wire
  formats are in `wgkit.messages`.
- **Cookies** – `CookieGenerator` and `CookieChecker` compute and verify the
  mac1/mac2 fields and the XChaCha20-Poly1305 cookie replies used under load.

## Installation

```
pip install wgkit
```

## Examples

Routing with allowed IPs:

```python
import ipaddress
from wgkit.allowedips import AllowedIPs

table = AllowedIPs()
table.insert(ipaddress.ip_network("192.168.4.0/24"), "peer-a")
table.insert(ipaddress.ip_network("192.168.4.4/32"), "peer-b")

table.lookup(bytes([192, 168, 4, 20]))   # "peer-a"
table.lookup(bytes([192, 168, 4, 4]))    # "peer-b"

table.remove_by_peer("peer-a")
```

Key agreement:

```python
from wgkit.keys import NoisePrivateKey

alice = NoisePrivateKey.generate()
bob = NoisePrivateKey.generate()
assert alice.shared_secret(bob.public_key()) == bob.shared_secret(alice.public_key())
```

Cookie MACs on a handshake message:

```python
from wgkit.cookie import CookieChecker, CookieGenerator
from wgkit.keys import NoisePrivateKey

responder_public = NoisePrivateKey.generate().public_key()

generator = CookieGenerator()
checker = CookieChecker()
generator.reset(responder_public)
checker.reset(responder_public)

msg = bytearray(64)
generator.add_macs(msg)
assert checker.check_mac1(msg)
```

In-memory binds:

```python
from wgkit.bindtest import new_channel_binds

a, b = new_channel_binds()
receivers, port = b.open(0)
```

## Running the tests

```
pip install -e ".[test]"
pytest
```