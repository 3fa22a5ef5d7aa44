"""A routing table mapping IP prefixes to peers, built as a compressed binary trie."""

from __future__ import annotations

import ipaddress
import threading
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .constants import IPV4_LEN, IPV6_LEN

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
PrefixLike = Union[
    str, ipaddress.IPv4Network, ipaddress.IPv6Network,
    ipaddress.IPv4Interface, ipaddress.IPv6Interface,
]
AddressLike = Union[bytes, bytearray, str, ipaddress.IPv4Address, ipaddress.IPv6Address]

_ROOT_SLOT = 2


def common_bits(ip1: bytes, ip2: bytes) -> int:
    """Return the number of leading bits that ``ip1`` and ``ip2`` share."""
    size = len(ip1)
    if size not in (IPV4_LEN, IPV6_LEN):
        raise ValueError("wrong size bit string")
    diff = int.from_bytes(ip1, "big") ^ int.from_bytes(ip2[:size], "big")
    return size * 8 - diff.bit_length()


class _Root:
    __slots__ = ("node",)

    def __init__(self) -> None:
        self.node: Optional[_Node] = None


class _Node:
    __slots__ = ("peer", "child", "parent", "parent_bit", "cidr",
                 "bit_at_byte", "bit_at_shift", "bits")

    def __init__(self, bits: bytes, cidr: int, peer: Any = None) -> None:
        self.peer = peer
        self.child: List[Optional[_Node]] = [None, None]
        self.parent: Any = None
        self.parent_bit = _ROOT_SLOT
        self.cidr = cidr
        self.bit_at_byte = cidr // 8
        self.bit_at_shift = 7 - (cidr % 8)
        width = len(bits) * 8
        mask = ((1 << cidr) - 1) << (width - cidr)
        value = int.from_bytes(bits, "big") & mask
        self.bits = value.to_bytes(len(bits), "big")

    def choose(self, ip: bytes) -> int:
        return (ip[self.bit_at_byte] >> self.bit_at_shift) & 1

    def attach(self, parent: Any, bit: int) -> None:
        self.parent = parent
        self.parent_bit = bit
        _set_slot(parent, bit, self)

    def zeroize(self) -> None:
        self.peer = None
        self.child = [None, None]
        self.parent = None

    def placement(self, ip: bytes, cidr: int) -> Tuple[Optional["_Node"], bool]:
        parent: Optional[_Node] = None
        node: Optional[_Node] = self
        while node is not None and node.cidr <= cidr and common_bits(node.bits, ip) >= node.cidr:
            parent = node
            if parent.cidr == cidr:
                return parent, True
            node = node.child[node.choose(ip)]
        return parent, False


def _set_slot(parent: Any, bit: int, child: Optional[_Node]) -> None:
    if bit == _ROOT_SLOT:
        parent.node = child
    else:
        parent.child[bit] = child


def _lookup(node: Optional[_Node], ip: bytes) -> Any:
    found = None
    size = len(ip)
    while node is not None and common_bits(node.bits, ip) >= node.cidr:
        if node.peer is not None:
            found = node.peer
        if node.bit_at_byte == size:
            break
        node = node.child[node.choose(ip)]
    return found


def _to_network(prefix: PrefixLike) -> Network:
    if isinstance(prefix, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        return prefix.network
    if isinstance(prefix, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return prefix
    return ipaddress.ip_network(prefix, strict=False)


class AllowedIPs:
    """Longest-prefix-match table from IPv4 and IPv6 prefixes to peers."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ipv4 = _Root()
        self._ipv6 = _Root()
        self._entries: Dict[int, Tuple[Any, Dict[_Node, None]]] = {}

    def __bool__(self) -> bool:
        with self._lock:
            return self._ipv4.node is not None or self._ipv6.node is not None

    def _add_entry(self, node: _Node) -> None:
        key = id(node.peer)
        entry = self._entries.get(key)
        if entry is None:
            entry = (node.peer, {})
            self._entries[key] = entry
        entry[1][node] = None

    def _remove_entry(self, node: _Node) -> None:
        if node.peer is None:
            return
        key = id(node.peer)
        entry = self._entries.get(key)
        if entry is None or node not in entry[1]:
            return
        del entry[1][node]
        if not entry[1]:
            del self._entries[key]

    def _insert(self, root: _Root, ip: bytes, cidr: int, peer: Any) -> None:
        if root.node is None:
            node = _Node(ip, cidr, peer)
            self._add_entry(node)
            node.attach(root, _ROOT_SLOT)
            return
        node, exact = root.node.placement(ip, cidr)
        if exact:
            self._remove_entry(node)
            node.peer = peer
            self._add_entry(node)
            return

        new_node = _Node(ip, cidr, peer)
        self._add_entry(new_node)

        if node is None:
            down = root.node
        else:
            bit = node.choose(ip)
            down = node.child[bit]
            if down is None:
                new_node.attach(node, bit)
                return
        cidr = min(cidr, common_bits(down.bits, ip))
        parent = node

        if new_node.cidr == cidr:
            down.attach(new_node, new_node.choose(down.bits))
            if parent is None:
                new_node.attach(root, _ROOT_SLOT)
            else:
                new_node.attach(parent, parent.choose(new_node.bits))
            return

        middle = _Node(new_node.bits, cidr)
        down.attach(middle, middle.choose(down.bits))
        new_node.attach(middle, middle.choose(new_node.bits))
        if parent is None:
            middle.attach(root, _ROOT_SLOT)
        else:
            middle.attach(parent, parent.choose(middle.bits))

    def insert(self, prefix: PrefixLike, peer: Any) -> None:
        """Route ``prefix`` to ``peer``, replacing any peer routed for it."""
        network = _to_network(prefix)
        with self._lock:
            root = self._ipv6 if network.version == 6 else self._ipv4
            self._insert(root, network.network_address.packed, network.prefixlen, peer)

    def lookup(self, ip: AddressLike) -> Any:
        """Return the peer of the longest prefix containing ``ip``, or None."""
        if isinstance(ip, (bytes, bytearray)):
            raw = bytes(ip)
        else:
            raw = ipaddress.ip_address(ip).packed
        with self._lock:
            if len(raw) == IPV6_LEN:
                return _lookup(self._ipv6.node, raw)
            if len(raw) == IPV4_LEN:
                return _lookup(self._ipv4.node, raw)
        raise ValueError("looking up unknown address type")

    def entries_for_peer(self, peer: Any) -> Iterator[Network]:
        """Yield the prefixes routed to ``peer`` in insertion order."""
        with self._lock:
            entry = self._entries.get(id(peer))
            nodes = list(entry[1]) if entry is not None and entry[0] is peer else []
            networks = [
                ipaddress.ip_network((int.from_bytes(n.bits, "big") if len(n.bits) == IPV4_LEN
                                      else ipaddress.IPv6Address(n.bits), n.cidr))
                if len(n.bits) == IPV4_LEN
                else ipaddress.IPv6Network((ipaddress.IPv6Address(n.bits), n.cidr))
                for n in nodes
            ]
        return iter(networks)

    def remove_by_peer(self, peer: Any) -> None:
        """Remove every prefix routed to ``peer``."""
        with self._lock:
            entry = self._entries.get(id(peer))
            if entry is None or entry[0] is not peer:
                return
            for node in list(entry[1]):
                self._remove_entry(node)
                node.peer = None
                if node.child[0] is not None and node.child[1] is not None:
                    continue
                bit = 1 if node.child[0] is None else 0
                child = node.child[bit]
                if child is not None:
                    child.parent = node.parent
                    child.parent_bit = node.parent_bit
                _set_slot(node.parent, node.parent_bit, child)
                if (node.child[0] is not None or node.child[1] is not None
                        or node.parent_bit == _ROOT_SLOT):
                    node.zeroize()
                    continue
                parent: _Node = node.parent
                if parent.peer is not None:
                    node.zeroize()
                    continue
                sibling = parent.child[node.parent_bit ^ 1]
                if sibling is not None:
                    sibling.parent = parent.parent
                    sibling.parent_bit = parent.parent_bit
                _set_slot(parent.parent, parent.parent_bit, sibling)
                node.zeroize()
                parent.zeroize()