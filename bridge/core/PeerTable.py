from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from shared.utils import format_endpoint


@dataclass(frozen=True)
class PeerEndpoint:
    host: str
    port: int

    @classmethod
    def from_address(cls, addr: Tuple) -> PeerEndpoint:
        # IPv6 addresses carry flowinfo/scope_id after (host, port)
        return cls(host=str(addr[0]), port=int(addr[1]))

    def as_tuple(self) -> Tuple[str, int]:
        return (self.host, self.port)

    def __str__(self) -> str:
        return format_endpoint(self.host, self.port)


class PeerSlot:
    """
    Holds the most recent UDP sender, or None before any datagram arrives.

    Written only by the receive path and read only by the send path. Both
    sides go through the lock since bus callbacks may run on other threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._peer: Optional[PeerEndpoint] = None

    def get(self) -> Optional[PeerEndpoint]:
        with self._lock:
            return self._peer

    def set(self, peer: PeerEndpoint) -> Optional[PeerEndpoint]:
        """Store a new peer and return the one it replaced."""
        with self._lock:
            previous, self._peer = self._peer, peer
            return previous

    def clear(self) -> None:
        with self._lock:
            self._peer = None

    @property
    def is_known(self) -> bool:
        return self.get() is not None
