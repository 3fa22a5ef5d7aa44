"""Socket control messages for UDP segmentation offload and sticky sources.

Messages use the Linux 64-bit ``cmsghdr`` layout in native byte order.
"""

from __future__ import annotations

import ipaddress
import struct
import sys
from dataclasses import dataclass
from typing import Iterator, Optional, Union

_HEADER = struct.Struct("=Qii")
CMSG_HEADER_SIZE = _HEADER.size
_ALIGN = 8

SOL_UDP = 17
UDP_SEGMENT = 103
UDP_GRO = 104
IPPROTO_IP = 0
IP_PKTINFO = 8
IPPROTO_IPV6 = 41
IPV6_PKTINFO = 50

_INET4_PKTINFO = struct.Struct("=i4s4s")
_INET6_PKTINFO = struct.Struct("=16sI")
INET4_PKTINFO_SIZE = _INET4_PKTINFO.size
INET6_PKTINFO_SIZE = _INET6_PKTINFO.size

_GSO = struct.Struct("=H")
GSO_DATA_SIZE = _GSO.size

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _align(length: int) -> int:
    return (length + _ALIGN - 1) & ~(_ALIGN - 1)


def cmsg_len(length: int) -> int:
    """Return the value of a header's length field for ``length`` data bytes."""
    return _align(CMSG_HEADER_SIZE) + length


def cmsg_space(length: int) -> int:
    """Return the bytes a message with ``length`` data bytes occupies."""
    return _align(CMSG_HEADER_SIZE) + _align(length)


_LINUX = sys.platform.startswith("linux")

STD_NET_SUPPORTS_STICKY_SOCKETS = _LINUX
STICKY_CONTROL_SIZE = cmsg_space(INET6_PKTINFO_SIZE) if _LINUX else 0
GSO_CONTROL_SIZE = cmsg_space(GSO_DATA_SIZE) if _LINUX else 0


@dataclass(frozen=True)
class ControlMessage:
    """One socket control message."""

    level: int
    type: int
    data: bytes

    def to_bytes(self) -> bytes:
        """Encode the message with its header and trailing alignment padding."""
        raw = _HEADER.pack(cmsg_len(len(self.data)), self.level, self.type)
        raw = raw.ljust(_align(CMSG_HEADER_SIZE), b"\0") + self.data
        return raw.ljust(cmsg_space(len(self.data)), b"\0")


def parse_control_messages(control: bytes) -> Iterator[ControlMessage]:
    """Yield the messages in ``control``; raise ValueError on a bad header."""
    rem = bytes(control)
    while len(rem) > CMSG_HEADER_SIZE:
        length, level, kind = _HEADER.unpack_from(rem)
        if length < CMSG_HEADER_SIZE or length > len(rem):
            raise ValueError(f"invalid control message length {length}")
        yield ControlMessage(level, kind, rem[_align(CMSG_HEADER_SIZE):length])
        rem = rem[_align(length):]


def get_gso_size(control: bytes) -> int:
    """Return the UDP_GRO segment size found in ``control``, or 0."""
    try:
        for msg in parse_control_messages(control):
            if (
                msg.level == SOL_UDP
                and msg.type == UDP_GRO
                and len(msg.data) >= GSO_DATA_SIZE
            ):
                return _GSO.unpack_from(msg.data)[0]
    except ValueError as exc:
        raise ValueError(f"error parsing socket control message: {exc}") from exc
    return 0


def set_gso_size(control: bytes, gso_size: int, capacity: int) -> bytes:
    """Append a UDP_SEGMENT message to ``control`` if ``capacity`` allows.

    Existing data is kept; when there is no room ``control`` is returned as is.
    """
    if not 0 <= gso_size <= 0xFFFF:
        raise ValueError(f"gso size out of range: {gso_size}")
    existing = bytes(control)
    if capacity - len(existing) < cmsg_space(GSO_DATA_SIZE):
        return existing
    msg = ControlMessage(SOL_UDP, UDP_SEGMENT, _GSO.pack(gso_size))
    return existing + msg.to_bytes()


def pack_pktinfo(addr: Union[str, IPAddress], ifindex: int) -> bytes:
    """Encode a PKTINFO message holding source ``addr`` and interface ``ifindex``."""
    ip = ipaddress.ip_address(addr)
    if ip.version == 4:
        data = _INET4_PKTINFO.pack(ifindex, ip.packed, bytes(4))
        return ControlMessage(IPPROTO_IP, IP_PKTINFO, data).to_bytes()
    data = _INET6_PKTINFO.pack(ip.packed, ifindex)
    return ControlMessage(IPPROTO_IPV6, IPV6_PKTINFO, data).to_bytes()


def _sticky_source(msg: ControlMessage, info_size: int) -> bytes:
    space = cmsg_space(info_size)
    buf = bytearray(space)
    header = _HEADER.pack(cmsg_len(len(msg.data)), msg.level, msg.type)
    buf[: len(header)] = header
    offset = cmsg_len(0)
    data = msg.data[: space - offset]
    buf[offset : offset + len(data)] = data
    return bytes(buf)


def src_from_control(control: bytes) -> bytes:
    """Return the first PKTINFO message in ``control`` as a sticky source, or b""."""
    try:
        for msg in parse_control_messages(control):
            if msg.level == IPPROTO_IP and msg.type == IP_PKTINFO:
                return _sticky_source(msg, INET4_PKTINFO_SIZE)
            if msg.level == IPPROTO_IPV6 and msg.type == IPV6_PKTINFO:
                return _sticky_source(msg, INET6_PKTINFO_SIZE)
    except ValueError:
        return b""
    return b""


def src_ip(src: bytes) -> Optional[IPAddress]:
    """Return the source address held by a sticky source, or None."""
    if len(src) == cmsg_space(INET4_PKTINFO_SIZE):
        _, spec_dst, _ = _INET4_PKTINFO.unpack_from(src, cmsg_len(0))
        return ipaddress.IPv4Address(spec_dst)
    if len(src) == cmsg_space(INET6_PKTINFO_SIZE):
        addr, _ = _INET6_PKTINFO.unpack_from(src, cmsg_len(0))
        return ipaddress.IPv6Address(addr)
    return None


def src_ifindex(src: bytes) -> int:
    """Return the interface index held by a sticky source, or 0."""
    if len(src) == cmsg_space(INET4_PKTINFO_SIZE):
        return _INET4_PKTINFO.unpack_from(src, cmsg_len(0))[0]
    if len(src) == cmsg_space(INET6_PKTINFO_SIZE):
        index = _INET6_PKTINFO.unpack_from(src, cmsg_len(0))[1]
        return index - (1 << 32) if index >= 1 << 31 else index
    return 0


def set_src_control(control: bytes, src: bytes, capacity: int) -> bytes:
    """Return control data carrying ``src``; empty when ``src`` is empty.

    If ``src`` does not fit in ``capacity``, ``control`` is returned unchanged.
    """
    if capacity < len(src):
        return bytes(control)
    return bytes(src)