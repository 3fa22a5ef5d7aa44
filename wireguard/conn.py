"""Network connection interfaces: binds, endpoints and receive functions."""

from __future__ import annotations

import ipaddress
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Tuple, Union

IDEAL_BATCH_SIZE = 128  # maximum number of packets handled per read and write

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# A receive function reads at least one packet into ``packets`` and returns the
# number of entries of ``packets``, ``sizes`` and ``endpoints`` to evaluate.
# Some sizes may be zero; callers ignore those entries.
ReceiveFunc = Callable[
    [Sequence[bytearray], List[int], List[Optional["Endpoint"]]], int
]


class BindAlreadyOpenError(RuntimeError):
    """Raised when opening a bind that is already open."""

    def __init__(self, message: str = "bind is already open") -> None:
        super().__init__(message)


class WrongEndpointTypeError(TypeError):
    """Raised when an endpoint does not belong to the bind it is used with."""

    def __init__(
        self, message: str = "endpoint type does not correspond with bind type"
    ) -> None:
        super().__init__(message)


class Endpoint(ABC):
    """Source and destination addressing cached for a peer."""

    @abstractmethod
    def clear_src(self) -> None:
        """Forget the cached source address."""

    @abstractmethod
    def src_to_string(self) -> str:
        """Return the local source address."""

    @abstractmethod
    def dst_to_string(self) -> str:
        """Return the destination address as ip:port."""

    @abstractmethod
    def dst_to_bytes(self) -> bytes:
        """Return the destination in the form used for cookie MACs."""

    @abstractmethod
    def dst_ip(self) -> Optional[IPAddress]:
        """Return the destination IP address."""

    @abstractmethod
    def src_ip(self) -> Optional[IPAddress]:
        """Return the source IP address, or None when unknown."""


class Bind(ABC):
    """Listens on a port for both IPv4 and IPv6 UDP traffic."""

    @abstractmethod
    def open(self, port: int) -> Tuple[List[ReceiveFunc], int]:
        """Start listening on ``port`` (0 picks one); return receivers and the port."""

    @abstractmethod
    def close(self) -> None:
        """Stop listening; receive functions must then raise."""

    @abstractmethod
    def set_mark(self, mark: int) -> None:
        """Set the firewall mark on outgoing packets."""

    @abstractmethod
    def send(self, bufs: Sequence[bytes], endpoint: Endpoint) -> None:
        """Send every buffer in ``bufs`` to ``endpoint``."""

    @abstractmethod
    def parse_endpoint(self, s: str) -> Endpoint:
        """Create an endpoint from its string form."""

    @abstractmethod
    def batch_size(self) -> int:
        """Return the number of buffers handled per receive or send."""


_ANONYMOUS_PARTS = frozenset({"<lambda>", "<locals>"})


def pretty_name(fn: Callable) -> str:
    """Return a short readable name for a receive function.

    Anonymous functions are named after the function that encloses them;
    names ending in IPv4 or IPv6 become "v4" or "v6".
    """
    qualname = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or ""
    parts = qualname.split(".")
    while parts and parts[-1] in _ANONYMOUS_PARTS:
        parts.pop()
    name = parts[-1] if parts else ""
    if not name:
        return hex(id(fn))
    lowered = name.lower()
    if lowered.endswith("ipv4"):
        return "v4"
    if lowered.endswith("ipv6"):
        return "v6"
    return name