"""Session keypairs and the table mapping local indices to handshakes and keypairs."""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(eq=False)
class Keypair:
    """The transport keys of one session."""

    send: Any = None
    receive: Any = None
    replay_filter: Any = None
    is_initiator: bool = False
    created: float = field(default_factory=time.monotonic)
    local_index: int = 0
    remote_index: int = 0
    send_nonce: int = 0


@dataclass(eq=False)
class Keypairs:
    """A peer's current, previous and next keypairs, guarded by ``lock``."""

    current: Optional[Keypair] = None
    previous: Optional[Keypair] = None
    next: Optional[Keypair] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


@dataclass(frozen=True)
class IndexTableEntry:
    """What a local index refers to: a pending handshake or a keypair."""

    peer: Any = None
    handshake: Any = None
    keypair: Optional[Keypair] = None


class IndexTable:
    """Random 32-bit local indices mapped to peers' handshakes and keypairs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._table: Dict[int, IndexTableEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._table)

    def __contains__(self, index: object) -> bool:
        with self._lock:
            return index in self._table

    def delete(self, index: int) -> None:
        """Forget ``index``; unknown indices are ignored."""
        with self._lock:
            self._table.pop(index, None)

    def swap_index_for_keypair(self, index: int, keypair: Keypair) -> None:
        """Point an existing ``index`` at ``keypair`` instead of its handshake."""
        with self._lock:
            entry = self._table.get(index)
            if entry is None:
                return
            self._table[index] = IndexTableEntry(peer=entry.peer, keypair=keypair)

    def new_index_for_handshake(self, peer: Any, handshake: Any) -> int:
        """Allocate an unused random index for ``handshake`` and return it."""
        while True:
            index = secrets.randbits(32)
            with self._lock:
                if index in self._table:
                    continue
                self._table[index] = IndexTableEntry(peer=peer, handshake=handshake)
                return index

    def lookup(self, index: int) -> IndexTableEntry:
        """Return the entry for ``index``, or an empty entry when unknown."""
        with self._lock:
            return self._table.get(index, IndexTableEntry())