"""Table of local session indices to handshakes and keypairs."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass(frozen=True)
class IndexTableEntry:
    peer: Any = None
    handshake: Any = None
    keypair: Any = None


class IndexTable:
    """Assigns random unused 32-bit indices."""

    def __init__(self, rand_uint32: Optional[Callable[[], int]] = None) -> None:
        self._rand = rand_uint32 or (lambda: secrets.randbits(32))
        self._table: Dict[int, IndexTableEntry] = {}
        self._lock = threading.Lock()

    def delete(self, index: int) -> None:
        with self._lock:
            self._table.pop(index, None)

    def swap_index_for_keypair(self, index: int, keypair: Any) -> None:
        """Point an existing index at keypair instead of its handshake."""
        with self._lock:
            entry = self._table.get(index)
            if entry is not None:
                self._table[index] = IndexTableEntry(peer=entry.peer, keypair=keypair)

    def new_index_for_handshake(self, peer: Any, handshake: Any) -> int:
        """Reserve a fresh index for handshake and return it."""
        while True:
            index = self._rand()
            with self._lock:
                if index in self._table:
                    continue
                self._table[index] = IndexTableEntry(peer=peer, handshake=handshake)
                return index

    def lookup(self, index: int) -> IndexTableEntry:
        """The entry for index, or an empty one."""
        with self._lock:
            return self._table.get(index, IndexTableEntry())