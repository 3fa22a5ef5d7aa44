"""An in-memory pair of binds connected by queues, for tests."""

from __future__ import annotations

import ipaddress
import queue
import random
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .conn import Bind, Endpoint, IPAddress, ReceiveFunc, WrongEndpointTypeError

_QUEUE_SIZE = 8192
_POLL_INTERVAL = 0.01
_LOOPBACK = ipaddress.IPv4Address("127.0.0.1")


def _closed_error() -> ConnectionAbortedError:
    return ConnectionAbortedError("use of closed network connection")


@dataclass(frozen=True)
class ChannelEndpoint(Endpoint):
    """An endpoint identified only by a 16-bit number."""

    port: int

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    def clear_src(self) -> None:
        """Do nothing: channel endpoints have no source."""

    def src_to_string(self) -> str:
        return ""

    def dst_to_string(self) -> str:
        return f"127.0.0.1:{self.port}"

    def dst_to_bytes(self) -> bytes:
        return bytes([self.port & 0xFF])

    def dst_ip(self) -> IPAddress:
        return _LOOPBACK

    def src_ip(self) -> Optional[IPAddress]:
        return None


def _parse_addr_port(s: str) -> Tuple[IPAddress, int]:
    if s.startswith("["):
        host, sep, port = s[1:].partition("]:")
        if not sep:
            raise ValueError(f"invalid address and port: {s!r}")
        ip = ipaddress.ip_address(host)
        if ip.version != 6:
            raise ValueError(f"bracketed address is not IPv6: {s!r}")
    else:
        host, sep, port = s.rpartition(":")
        if not sep or ":" in host:
            raise ValueError(f"invalid address and port: {s!r}")
        ip = ipaddress.ip_address(host)
        if ip.version != 4:
            raise ValueError(f"unbracketed address is not IPv4: {s!r}")
    if not port.isdigit() or not port.isascii():
        raise ValueError(f"invalid port in {s!r}")
    number = int(port)
    if number > 0xFFFF:
        raise ValueError(f"port out of range in {s!r}")
    return ip, number


class ChannelBind(Bind):
    """A bind that exchanges packets with its twin through in-memory queues."""

    def __init__(
        self,
        rx4: "queue.Queue[bytes]",
        tx4: "queue.Queue[bytes]",
        rx6: "queue.Queue[bytes]",
        tx6: "queue.Queue[bytes]",
        source4: ChannelEndpoint,
        source6: ChannelEndpoint,
        target4: ChannelEndpoint,
        target6: ChannelEndpoint,
    ) -> None:
        self._rx4 = rx4
        self._tx4 = tx4
        self._rx6 = rx6
        self._tx6 = tx6
        self.source4 = source4
        self.source6 = source6
        self.target4 = target4
        self.target6 = target6
        self._closed: Optional[threading.Event] = None

    def open(self, port: int) -> Tuple[List[ReceiveFunc], int]:
        closed = threading.Event()
        self._closed = closed
        fns = [
            self._make_receive_func(self._rx4, closed),
            self._make_receive_func(self._rx6, closed),
        ]
        source = self.source4 if random.getrandbits(1) == 0 else self.source6
        return fns, source.port

    def close(self) -> None:
        if self._closed is not None:
            self._closed.set()

    def batch_size(self) -> int:
        return 1

    def set_mark(self, mark: int) -> None:
        """Do nothing: marks have no meaning here."""

    def _make_receive_func(
        self, channel: "queue.Queue[bytes]", closed: threading.Event
    ) -> ReceiveFunc:
        target = self.target6

        def receive(
            bufs: Sequence[bytearray],
            sizes: List[int],
            eps: List[Optional[Endpoint]],
        ) -> int:
            while True:
                if closed.is_set():
                    raise _closed_error()
                try:
                    packet = channel.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                break
            buf = bufs[0]
            copied = min(len(buf), len(packet))
            buf[:copied] = packet[:copied]
            sizes[0] = copied
            eps[0] = target
            return 1

        return receive

    def send(self, bufs: Sequence[bytes], endpoint: Endpoint) -> None:
        if not isinstance(endpoint, ChannelEndpoint):
            raise WrongEndpointTypeError()
        for buf in bufs:
            if self._closed is not None and self._closed.is_set():
                raise _closed_error()
            packet = bytes(buf)
            if endpoint == self.target4:
                self._tx4.put(packet)
            elif endpoint == self.target6:
                self._tx6.put(packet)
            else:
                raise ValueError("invalid argument")

    def parse_endpoint(self, s: str) -> ChannelEndpoint:
        _, port = _parse_addr_port(s)
        return ChannelEndpoint(port)


def new_channel_binds() -> Tuple[ChannelBind, ChannelBind]:
    """Return two binds whose sends arrive at each other."""
    arx4: "queue.Queue[bytes]" = queue.Queue(_QUEUE_SIZE)
    brx4: "queue.Queue[bytes]" = queue.Queue(_QUEUE_SIZE)
    arx6: "queue.Queue[bytes]" = queue.Queue(_QUEUE_SIZE)
    brx6: "queue.Queue[bytes]" = queue.Queue(_QUEUE_SIZE)
    a_target4, b_target4 = ChannelEndpoint(1), ChannelEndpoint(2)
    a_target6, b_target6 = ChannelEndpoint(3), ChannelEndpoint(4)
    first = ChannelBind(
        rx4=arx4,
        tx4=brx4,
        rx6=arx6,
        tx6=brx6,
        source4=b_target4,
        source6=b_target6,
        target4=a_target4,
        target6=a_target6,
    )
    second = ChannelBind(
        rx4=brx4,
        tx4=arx4,
        rx6=brx6,
        tx6=arx6,
        source4=a_target4,
        source6=a_target6,
        target4=b_target4,
        target6=b_target6,
    )
    return first, second