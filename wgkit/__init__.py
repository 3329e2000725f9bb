"""WireGuard building blocks: binds, batching, allowed IPs, Noise handshake and cookies."""

__version__ = "0.1.0"