"""A UDP bind over standard sockets for IPv4 and IPv6."""

from __future__ import annotations

import errno
import ipaddress
import logging
import select
import socket
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from .conn import (
    IDEAL_BATCH_SIZE,
    Bind,
    BindAlreadyOpenError,
    Endpoint,
    IPAddress,
    ReceiveFunc,
    WrongEndpointTypeError,
)
from .control import (
    GSO_CONTROL_SIZE,
    STD_NET_SUPPORTS_STICKY_SOCKETS,
    STICKY_CONTROL_SIZE,
    ControlMessage,
    get_gso_size,
    parse_control_messages,
    set_gso_size,
    set_src_control,
    src_from_control,
    src_ifindex,
    src_ip,
)
from .sockopts import (
    configure_socket,
    set_mark,
    should_disable_udp_gso,
    supports_udp_offload,
)

# Exceeding these values results in EMSGSIZE. They account for layer 3 and
# layer 4 headers; the IPv6 payload length field excludes its own header.
MAX_IPV4_PAYLOAD_LEN = (1 << 16) - 1 - 20 - 8
MAX_IPV6_PAYLOAD_LEN = (1 << 16) - 1 - 8

# A hard limit imposed by the kernel.
UDP_SEGMENT_MAX_DATAGRAMS = 64

_LINUX = sys.platform.startswith("linux") or hasattr(sys, "getandroidapilevel")
_MSG_DONTWAIT = getattr(socket, "MSG_DONTWAIT", 0x40)
_CONTROL_CAPACITY = STICKY_CONTROL_SIZE + GSO_CONTROL_SIZE
_POLL_INTERVAL = 0.05
_MAX_BIND_TRIES = 100

SetGSOFunc = Callable[[bytes, int, int], bytes]
GetGSOFunc = Callable[[bytes], int]
BufferItem = Union[bytes, bytearray, memoryview, Tuple[bytes, int]]


def _closed_error() -> ConnectionAbortedError:
    return ConnectionAbortedError("use of closed network connection")


@dataclass
class Message:
    """One datagram with its control data, as read from or written to a socket.

    ``capacity`` bounds how many bytes may be coalesced into ``buffer``;
    ``oob_capacity`` bounds the size of ``oob``.
    """

    buffer: Any = field(default_factory=bytearray)
    n: int = 0
    oob: bytes = b""
    oob_capacity: int = _CONTROL_CAPACITY
    addr: Any = None
    capacity: int = 0


class UDPGSODisabledError(Exception):
    """Raised after a send had to be retried with UDP segmentation turned off."""

    def __init__(self, on_laddr: str, retry_error: Optional[BaseException] = None):
        super().__init__(
            f"disabled UDP GSO on {on_laddr}, NIC(s) may not support checksum offload"
        )
        self.on_laddr = on_laddr
        self.retry_error = retry_error


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
    if not port.isascii() or not port.isdigit():
        raise ValueError(f"invalid port in {s!r}")
    number = int(port)
    if number > 0xFFFF:
        raise ValueError(f"port out of range in {s!r}")
    return ip, number


@dataclass
class StdNetEndpoint(Endpoint):
    """A destination address and port, with the sticky source used to reach it."""

    ip: IPAddress
    port: int
    src: bytes = b""

    def clear_src(self) -> None:
        self.src = b""

    def dst_ip(self) -> IPAddress:
        return self.ip

    def src_ip(self) -> Optional[IPAddress]:
        if not STD_NET_SUPPORTS_STICKY_SOCKETS:
            return None
        return src_ip(self.src)

    def src_ifindex(self) -> int:
        """Return the interface index of the sticky source, or 0."""
        if not STD_NET_SUPPORTS_STICKY_SOCKETS:
            return 0
        return src_ifindex(self.src)

    def src_to_string(self) -> str:
        if not STD_NET_SUPPORTS_STICKY_SOCKETS:
            return ""
        ip = self.src_ip()
        return "invalid IP" if ip is None else str(ip)

    def dst_to_string(self) -> str:
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"

    def dst_to_bytes(self) -> bytes:
        raw = self.ip.packed
        scope = getattr(self.ip, "scope_id", None)
        if scope:
            raw += scope.encode()
        return raw + self.port.to_bytes(2, "little")


def _payload(item: BufferItem) -> Tuple[bytes, Optional[int]]:
    if isinstance(item, tuple):
        data, capacity = item
        return bytes(data), capacity
    return bytes(item), None


def coalesce_messages(
    addr: Any,
    endpoint: StdNetEndpoint,
    bufs: Sequence[BufferItem],
    msgs: List[Message],
    set_gso: SetGSOFunc,
) -> int:
    """Pack ``bufs`` into as few messages of ``msgs`` as segmentation allows.

    An item of ``bufs`` is bytes, or a ``(bytes, capacity)`` pair limiting how
    much may be coalesced into it. Returns the number of messages filled.
    """
    base = -1  # index of the message being coalesced into
    gso_size = 0  # segmentation size of msgs[base]
    dgram_cnt = 0  # datagrams coalesced into msgs[base]
    end_batch = False
    max_payload = MAX_IPV6_PAYLOAD_LEN if endpoint.dst_ip().version == 6 else MAX_IPV4_PAYLOAD_LEN
    last = len(bufs) - 1
    for i, item in enumerate(bufs):
        data, capacity = _payload(item)
        if i > 0:
            msg = msgs[base]
            msg_len = len(data)
            base_len = len(msg.buffer)
            free_capacity = msg.capacity - base_len
            if (
                msg_len + base_len <= max_payload
                and msg_len <= gso_size
                and msg_len <= free_capacity
                and dgram_cnt < UDP_SEGMENT_MAX_DATAGRAMS
                and not end_batch
            ):
                msg.buffer.extend(data)
                if i == last:
                    msg.oob = set_gso(msg.oob, gso_size, msg.oob_capacity)
                dgram_cnt += 1
                if msg_len < gso_size:
                    # A short tail datagram is legal but must end the batch.
                    end_batch = True
                continue
        if dgram_cnt > 1:
            msgs[base].oob = set_gso(msgs[base].oob, gso_size, msgs[base].oob_capacity)
        end_batch = False
        base += 1
        gso_size = len(data)
        msg = msgs[base]
        msg.oob = set_src_control(msg.oob, endpoint.src, msg.oob_capacity)
        msg.buffer = bytearray(data)
        msg.capacity = max_payload if capacity is None else capacity
        msg.addr = addr
        dgram_cnt = 1
    return base + 1


def split_coalesced_messages(
    msgs: List[Message], first_msg_at: int, get_gso: GetGSOFunc
) -> int:
    """Split segmented messages from ``first_msg_at`` on into the front of ``msgs``.

    Returns the number of messages to evaluate; raises ValueError on overflow.
    """
    n = 0
    for i, msg in enumerate(msgs[first_msg_at:], start=first_msg_at):
        if msg.n == 0:
            return n
        gso_size = get_gso(msg.oob)
        start = 0
        end = msg.n
        num_to_split = 1
        if gso_size > 0:
            num_to_split = (msg.n + gso_size - 1) // gso_size
            end = gso_size
        for _ in range(num_to_split):
            if n > i:
                raise ValueError("splitting coalesced packet resulted in overflow")
            chunk = bytes(msg.buffer[start:end])
            dest = msgs[n]
            copied = min(len(dest.buffer), len(chunk))
            dest.buffer[:copied] = chunk[:copied]
            dest.n = copied
            dest.addr = msg.addr
            start = end
            end += gso_size
            if end > msg.n:
                end = msg.n
            n += 1
        if i != n - 1:
            # Bytes may move within the source buffer, so only clear its length
            # when it was not the destination of the last split.
            msg.n = 0
    return n


def _encode_ancillary(ancdata: Sequence[Tuple[int, int, bytes]]) -> bytes:
    return b"".join(ControlMessage(level, kind, data).to_bytes() for level, kind, data in ancdata)


def _read_batch(sock: socket.socket, msgs: Sequence[Message]) -> int:
    count = 0
    for msg in msgs:
        flags = 0 if count == 0 else _MSG_DONTWAIT
        try:
            nbytes, ancdata, _, address = sock.recvmsg_into(
                [msg.buffer], _CONTROL_CAPACITY, flags
            )
        except BlockingIOError:
            break
        msg.n = nbytes
        msg.oob = _encode_ancillary(ancdata)
        msg.addr = address
        count += 1
    return count


def _listen(network: str, port: int) -> Tuple[socket.socket, int]:
    family = socket.AF_INET if network == "udp4" else socket.AF_INET6
    host = "0.0.0.0" if network == "udp4" else "::"
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        configure_socket(sock, network)
        sock.bind((host, port))
        return sock, sock.getsockname()[1]
    except BaseException:
        sock.close()
        raise


def _format_laddr(sock: socket.socket) -> str:
    try:
        host, port = sock.getsockname()[:2]
    except OSError:
        return ""
    return f"[{host}]:{port}" if sock.family == socket.AF_INET6 else f"{host}:{port}"


class StdNetBind(Bind):
    """A bind holding one UDP socket per address family."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._ipv4: Optional[socket.socket] = None
        self._ipv6: Optional[socket.socket] = None
        self._ipv4_tx_offload = False
        self._ipv4_rx_offload = False
        self._ipv6_tx_offload = False
        self._ipv6_rx_offload = False
        self._blackhole4 = False
        self._blackhole6 = False
        self._closed: Optional[threading.Event] = None

    def parse_endpoint(self, s: str) -> StdNetEndpoint:
        ip, port = _parse_addr_port(s)
        return StdNetEndpoint(ip, port)

    def _close_quietly(self, sock: Optional[socket.socket]) -> None:
        if sock is None:
            return
        try:
            sock.close()
        except OSError as err:
            self._logger.debug("error closing a v4 socket: %s", err)

    def open(self, port: int) -> Tuple[List[ReceiveFunc], int]:
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"port out of range: {port}")
        with self._lock:
            if self._ipv4 is not None or self._ipv6 is not None:
                raise BindAlreadyOpenError()
            tries = 0
            while True:
                actual = port
                v4: Optional[socket.socket] = None
                v6: Optional[socket.socket] = None
                try:
                    v4, actual = _listen("udp4", actual)
                except OSError as err:
                    if err.errno != errno.EAFNOSUPPORT:
                        raise
                try:
                    v6, actual = _listen("udp6", actual)
                except OSError as err:
                    if port == 0 and err.errno == errno.EADDRINUSE and tries < _MAX_BIND_TRIES:
                        self._close_quietly(v4)
                        tries += 1
                        continue
                    if err.errno != errno.EAFNOSUPPORT:
                        self._close_quietly(v4)
                        raise
                break

            closed = threading.Event()
            fns: List[ReceiveFunc] = []
            if v4 is not None:
                self._ipv4_tx_offload, self._ipv4_rx_offload = supports_udp_offload(v4)
                fns.append(self._make_receive_ipv4(v4, closed, self._ipv4_rx_offload))
                self._ipv4 = v4
            if v6 is not None:
                self._ipv6_tx_offload, self._ipv6_rx_offload = supports_udp_offload(v6)
                fns.append(self._make_receive_ipv6(v6, closed, self._ipv6_rx_offload))
                self._ipv6 = v6
            if not fns:
                raise OSError(errno.EAFNOSUPPORT, "address family not supported")
            self._closed = closed
            return fns, actual

    def _make_receive_ipv4(
        self, sock: socket.socket, closed: threading.Event, rx_offload: bool
    ) -> ReceiveFunc:
        def receive_ipv4(bufs, sizes, eps) -> int:
            return self._receive(sock, closed, rx_offload, bufs, sizes, eps)

        return receive_ipv4

    def _make_receive_ipv6(
        self, sock: socket.socket, closed: threading.Event, rx_offload: bool
    ) -> ReceiveFunc:
        def receive_ipv6(bufs, sizes, eps) -> int:
            return self._receive(sock, closed, rx_offload, bufs, sizes, eps)

        return receive_ipv6

    @staticmethod
    def _wait_readable(sock: socket.socket, closed: threading.Event) -> None:
        while True:
            if closed.is_set():
                raise _closed_error()
            try:
                readable, _, _ = select.select([sock], [], [], _POLL_INTERVAL)
            except (OSError, ValueError) as err:
                if closed.is_set():
                    raise _closed_error() from err
                raise
            if readable:
                return

    def _receive(
        self,
        sock: socket.socket,
        closed: threading.Event,
        rx_offload: bool,
        bufs: Sequence[bytearray],
        sizes: List[int],
        eps: List[Optional[Endpoint]],
    ) -> int:
        self._wait_readable(sock, closed)
        msgs = [Message(buffer=buf) for buf in bufs]
        try:
            if _LINUX:
                if rx_offload:
                    read_at = max(0, len(msgs) - IDEAL_BATCH_SIZE // UDP_SEGMENT_MAX_DATAGRAMS)
                    _read_batch(sock, msgs[read_at:])
                    num_msgs = split_coalesced_messages(msgs, read_at, get_gso_size)
                else:
                    num_msgs = _read_batch(sock, msgs)
            else:
                first = msgs[0]
                first.n, first.addr = sock.recvfrom_into(first.buffer)
                num_msgs = 1
        except OSError as err:
            if closed.is_set():
                raise _closed_error() from err
            raise
        for i, msg in enumerate(msgs[:num_msgs]):
            sizes[i] = msg.n
            if msg.n == 0:
                continue
            host, port = msg.addr[:2]
            src = src_from_control(msg.oob) if STD_NET_SUPPORTS_STICKY_SOCKETS else b""
            eps[i] = StdNetEndpoint(ipaddress.ip_address(host), port, src)
        return num_msgs

    def batch_size(self) -> int:
        return IDEAL_BATCH_SIZE if _LINUX else 1

    def close(self) -> None:
        with self._lock:
            if self._closed is not None:
                self._closed.set()
            errors: List[OSError] = []
            for sock in (self._ipv4, self._ipv6):
                if sock is None:
                    continue
                try:
                    sock.close()
                except OSError as err:
                    errors.append(err)
            self._ipv4 = None
            self._ipv6 = None
            self._blackhole4 = False
            self._blackhole6 = False
            self._ipv4_tx_offload = False
            self._ipv4_rx_offload = False
            self._ipv6_tx_offload = False
            self._ipv6_rx_offload = False
            if errors:
                raise errors[0]

    def set_mark(self, mark: int) -> None:
        with self._lock:
            set_mark(self._ipv4, mark)
            set_mark(self._ipv6, mark)

    def send(self, bufs: Sequence[bytes], endpoint: Endpoint) -> None:
        if not isinstance(endpoint, StdNetEndpoint):
            raise WrongEndpointTypeError()
        is6 = endpoint.dst_ip().version == 6
        with self._lock:
            if is6:
                blackhole, sock, offload = self._blackhole6, self._ipv6, self._ipv6_tx_offload
            else:
                blackhole, sock, offload = self._blackhole4, self._ipv4, self._ipv4_tx_offload
        if blackhole:
            return
        if sock is None:
            raise OSError(errno.EAFNOSUPPORT, "address family not supported")

        ip = endpoint.dst_ip()
        if is6:
            addr: Tuple[Any, ...] = (str(ipaddress.IPv6Address(ip.packed)), endpoint.port, 0, 0)
        else:
            addr = (str(ip), endpoint.port)

        retried = False
        error: Optional[OSError] = None
        if offload:
            msgs = [Message() for _ in bufs]
            count = coalesce_messages(addr, endpoint, bufs, msgs, set_gso_size)
            try:
                self._send(sock, msgs[:count])
            except OSError as err:
                if not should_disable_udp_gso(err):
                    raise
                with self._lock:
                    if is6:
                        self._ipv6_tx_offload = False
                    else:
                        self._ipv4_tx_offload = False
                retried = True
                offload = False
        if not offload:
            msgs = [
                Message(
                    buffer=bytes(buf),
                    addr=addr,
                    oob=set_src_control(b"", endpoint.src, _CONTROL_CAPACITY),
                )
                for buf in bufs
            ]
            try:
                self._send(sock, msgs)
            except OSError as err:
                if not retried:
                    raise
                error = err
        if retried:
            raise UDPGSODisabledError(_format_laddr(sock), error) from error

    @staticmethod
    def _send(sock: socket.socket, msgs: Sequence[Message]) -> None:
        for msg in msgs:
            if _LINUX:
                ancillary = [(m.level, m.type, m.data) for m in parse_control_messages(msg.oob)]
                sock.sendmsg([msg.buffer], ancillary, 0, msg.addr)
            else:
                sock.sendto(msg.buffer, msg.addr)

    @staticmethod
    def _peek_fd(sock: Optional[socket.socket]) -> int:
        if sock is None:
            raise OSError(errno.EINVAL, "invalid argument")
        return sock.fileno()

    def peek_socket_fd4(self) -> int:
        """Return the file descriptor of the IPv4 socket."""
        return self._peek_fd(self._ipv4)

    def peek_socket_fd6(self) -> int:
        """Return the file descriptor of the IPv6 socket."""
        return self._peek_fd(self._ipv6)


def new_default_bind() -> StdNetBind:
    """Return the bind used when none is given."""
    return StdNetBind(logging.getLogger("wireguard"))