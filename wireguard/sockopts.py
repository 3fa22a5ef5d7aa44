"""Platform socket options applied to the UDP sockets of a bind."""

from __future__ import annotations

import errno
import socket
import sys
from typing import Callable, List, Optional, Tuple

from .control import SOL_UDP, UDP_GRO, UDP_SEGMENT

# UDP socket read/write buffer size (7 MiB): the largest a default macOS
# configuration accepts. Some platforms silently clamp it further.
SOCKET_BUFFER_SIZE = 7 << 20

_ANDROID = sys.platform == "android" or hasattr(sys, "getandroidapilevel")
_LINUX = sys.platform.startswith("linux") or _ANDROID
_WINDOWS = sys.platform.startswith("win")

_SO_SNDBUFFORCE = getattr(socket, "SO_SNDBUFFORCE", 32)
_SO_RCVBUFFORCE = getattr(socket, "SO_RCVBUFFORCE", 33)
_IP_PKTINFO = getattr(socket, "IP_PKTINFO", 8)
_IPV6_RECVPKTINFO = getattr(socket, "IPV6_RECVPKTINFO", 49)
_IPV6_V6ONLY = getattr(socket, "IPV6_V6ONLY", 26)
_IPPROTO_IPV6 = getattr(socket, "IPPROTO_IPV6", 41)
_IPPROTO_UDP = getattr(socket, "IPPROTO_UDP", SOL_UDP)

ControlFn = Callable[[socket.socket, str], None]


def _best_effort(sock: socket.socket, level: int, option: int, value: int) -> None:
    try:
        sock.setsockopt(level, option, value)
    except OSError:
        pass


def _set_buffer_sizes(sock: socket.socket, network: str) -> None:
    _best_effort(sock, socket.SOL_SOCKET, socket.SO_RCVBUF, SOCKET_BUFFER_SIZE)
    _best_effort(sock, socket.SOL_SOCKET, socket.SO_SNDBUF, SOCKET_BUFFER_SIZE)


def _force_buffer_sizes(sock: socket.socket, network: str) -> None:
    # Going beyond the system maximum needs CAP_NET_ADMIN; failure only costs speed.
    _best_effort(sock, socket.SOL_SOCKET, _SO_RCVBUFFORCE, SOCKET_BUFFER_SIZE)
    _best_effort(sock, socket.SOL_SOCKET, _SO_SNDBUFFORCE, SOCKET_BUFFER_SIZE)


def _enable_pktinfo(sock: socket.socket, network: str) -> None:
    if network == "udp4":
        if not _ANDROID:
            sock.setsockopt(socket.IPPROTO_IP, _IP_PKTINFO, 1)
    elif network == "udp6":
        if not _ANDROID:
            sock.setsockopt(_IPPROTO_IPV6, _IPV6_RECVPKTINFO, 1)
        sock.setsockopt(_IPPROTO_IPV6, _IPV6_V6ONLY, 1)
    else:
        raise ValueError(f"unhandled network: {network}: invalid argument")


def _enable_gro(sock: socket.socket, network: str) -> None:
    _best_effort(sock, _IPPROTO_UDP, UDP_GRO, 1)


def _set_v6only(sock: socket.socket, network: str) -> None:
    if network == "udp6":
        sock.setsockopt(_IPPROTO_IPV6, _IPV6_V6ONLY, 1)


def _control_fns() -> List[ControlFn]:
    if _LINUX:
        return [
            _set_buffer_sizes,
            _force_buffer_sizes,
            _enable_pktinfo,
            _enable_gro,
        ]
    if _WINDOWS:
        return [_set_buffer_sizes]
    return [_set_buffer_sizes, _set_v6only]


_CONTROL_FNS: Tuple[ControlFn, ...] = tuple(_control_fns())


def configure_socket(sock: socket.socket, network: str) -> None:
    """Apply the platform's socket options to ``sock`` before it is bound.

    ``network`` is "udp4" or "udp6". Errors from required options propagate.
    """
    for fn in _CONTROL_FNS:
        fn(sock, network)


def supports_udp_offload(sock: socket.socket) -> Tuple[bool, bool]:
    """Report whether ``sock`` supports UDP segmentation (tx) and GRO (rx)."""
    if not _LINUX:
        return False, False
    try:
        sock.fileno()
    except OSError:
        return False, False
    try:
        sock.getsockopt(_IPPROTO_UDP, UDP_SEGMENT)
        tx_offload = True
    except OSError:
        tx_offload = False
    try:
        rx_offload = sock.getsockopt(_IPPROTO_UDP, UDP_GRO) == 1
    except OSError:
        rx_offload = False
    return tx_offload, rx_offload


def should_disable_udp_gso(err: BaseException) -> bool:
    """Report whether a send error means UDP segmentation must be turned off.

    Only EIO on Linux qualifies: the driver lacks tx checksum offload.
    """
    if not _LINUX:
        return False
    seen = set()
    exc: Optional[BaseException] = err
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, OSError):
            return exc.errno == errno.EIO
        seen.add(id(exc))
        exc = exc.__cause__
    return False


def _fwmark_option() -> int:
    if _LINUX:
        return 36  # SO_MARK
    if sys.platform.startswith("freebsd"):
        return 0x1015  # SO_USER_COOKIE
    if sys.platform.startswith("openbsd"):
        return 0x1021  # SO_RTABLE
    return 0


_FWMARK_OPTION = _fwmark_option()


def set_mark(sock: Optional[socket.socket], mark: int) -> None:
    """Set the firewall mark on ``sock``; a no-op where marks are unsupported."""
    if not 0 <= mark <= 0xFFFFFFFF:
        raise ValueError(f"mark out of range: {mark}")
    if _FWMARK_OPTION == 0 or sock is None:
        return
    value = mark - (1 << 32) if mark >= 1 << 31 else mark
    sock.setsockopt(socket.SOL_SOCKET, _FWMARK_OPTION, value)