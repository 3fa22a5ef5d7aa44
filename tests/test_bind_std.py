import errno
import ipaddress
import logging
import struct
import sys

import pytest

from wireguard.bind_std import (
    MAX_IPV4_PAYLOAD_LEN,
    Message,
    StdNetBind,
    StdNetEndpoint,
    UDPGSODisabledError,
    coalesce_messages,
    new_default_bind,
    split_coalesced_messages,
)
from wireguard.bindtest import ChannelEndpoint
from wireguard.conn import (
    IDEAL_BATCH_SIZE,
    BindAlreadyOpenError,
    WrongEndpointTypeError,
    pretty_name,
)


def mock_set_gso(control, gso_size, capacity):
    buf = bytearray(bytes(control).ljust(capacity, b"\0"))
    buf[:2] = struct.pack("<H", gso_size)
    return bytes(buf)


def mock_get_gso(control):
    if len(control) < 2:
        return 0
    return struct.unpack_from("<H", control)[0]


@pytest.fixture
def bind():
    b = StdNetBind(logging.getLogger("test"))
    yield b
    b.close()


def test_receive_func_after_close_raises():
    b = StdNetBind(logging.getLogger("test"))
    fns, _ = b.open(0)
    assert fns
    b.close()
    bufs = [bytearray(1)]
    sizes = [0]
    eps = [None]
    for fn in fns:
        with pytest.raises(ConnectionAbortedError):
            fn(bufs, sizes, eps)


@pytest.mark.parametrize(
    "buffs,want_lens,want_gso",
    [
        ([(bytes(1), 1)], [1], [0]),
        ([(bytes(1), 2), (bytes(1), 1)], [2], [1]),
        ([(bytes(2), 3), (bytes(1), 1)], [3], [2]),
        ([(bytes(2), 3), (bytes(1), 1), (bytes(2), 2)], [3, 2], [2, 0]),
        ([(bytes(2), 4), (bytes(2), 2), (bytes(2), 2)], [4, 2], [2, 0]),
    ],
    ids=[
        "one message no coalesce",
        "two messages equal len coalesce",
        "two messages unequal len coalesce",
        "three messages second unequal len coalesce",
        "three messages limited cap coalesce",
    ],
)
def test_coalesce_messages(buffs, want_lens, want_gso):
    addr = ("127.0.0.1", 1)
    ep = StdNetEndpoint(ipaddress.ip_address("127.0.0.1"), 1)
    msgs = [Message(oob_capacity=2) for _ in buffs]
    got = coalesce_messages(addr, ep, buffs, msgs, mock_set_gso)
    assert got == len(want_lens)
    for msg, want_len, gso in zip(msgs[:got], want_lens, want_gso):
        assert msg.addr is addr
        assert len(msg.buffer) == want_len
        assert mock_get_gso(msg.oob) == gso


def test_coalesce_plain_bytes_are_limited_by_payload():
    ep = StdNetEndpoint(ipaddress.ip_address("10.0.0.1"), 9)
    msgs = [Message(oob_capacity=2) for _ in range(3)]
    got = coalesce_messages(("10.0.0.1", 9), ep, [b"ab", b"cd", b"ef"], msgs, mock_set_gso)
    assert got == 1
    assert bytes(msgs[0].buffer) == b"abcdef"
    assert mock_get_gso(msgs[0].oob) == 2
    assert msgs[0].capacity == MAX_IPV4_PAYLOAD_LEN


def _new_msg(n, gso):
    oob = struct.pack("<H", gso) if gso > 0 else b""
    return Message(buffer=bytearray((1 << 16) - 1), n=n, oob=oob)


@pytest.mark.parametrize(
    "specs,want_num_eval,want_lens,want_err",
    [
        ([(0, 0), (0, 0), (3, 1), (0, 0)], 3, [1, 1, 1, 0], False),
        ([(0, 0), (0, 0), (1, 0), (0, 0)], 1, [1, 0, 0, 0], False),
        ([(0, 0), (0, 0), (1, 0), (1, 0)], 2, [1, 1, 0, 0], False),
        ([(0, 0), (0, 0), (1, 0), (3, 1)], 4, [1, 1, 1, 1], False),
        ([(0, 0), (0, 0), (2, 1), (2, 1)], 4, [1, 1, 1, 1], False),
        ([(0, 0), (0, 0), (1, 0), (4, 1)], 4, [1, 1, 1, 1], True),
    ],
    ids=[
        "second last split last empty",
        "second last no split last empty",
        "second last no split last no split",
        "second last no split last split",
        "second last split last split",
        "second last no split last split overflow",
    ],
)
def test_split_coalesced_messages(specs, want_num_eval, want_lens, want_err):
    msgs = [_new_msg(n, gso) for n, gso in specs]
    if want_err:
        with pytest.raises(ValueError, match="overflow"):
            split_coalesced_messages(msgs, 2, mock_get_gso)
    else:
        assert split_coalesced_messages(msgs, 2, mock_get_gso) == want_num_eval
    assert [m.n for m in msgs] == want_lens


def test_split_moves_bytes_to_front():
    msgs = [_new_msg(0, 0), _new_msg(0, 0), _new_msg(3, 1), _new_msg(0, 0)]
    msgs[2].buffer[:3] = b"xyz"
    assert split_coalesced_messages(msgs, 2, mock_get_gso) == 3
    assert [bytes(m.buffer[: m.n]) for m in msgs[:3]] == [b"x", b"y", b"z"]


def test_parse_endpoint_ipv4(bind):
    ep = bind.parse_endpoint("127.0.0.1:51820")
    assert ep.dst_ip() == ipaddress.ip_address("127.0.0.1")
    assert ep.dst_to_string() == "127.0.0.1:51820"
    assert ep.dst_to_bytes() == bytes([127, 0, 0, 1]) + (51820).to_bytes(2, "little")


def test_parse_endpoint_ipv6(bind):
    ep = bind.parse_endpoint("[::1]:443")
    assert ep.dst_ip() == ipaddress.ip_address("::1")
    assert ep.dst_to_string() == "[::1]:443"
    assert ep.dst_to_bytes() == ipaddress.ip_address("::1").packed + (443).to_bytes(2, "little")


@pytest.mark.parametrize("text", ["127.0.0.1", "::1:80", "[1.2.3.4]:80", "1.2.3.4:70000", "x:1"])
def test_parse_endpoint_invalid(bind, text):
    with pytest.raises(ValueError):
        bind.parse_endpoint(text)


def test_clear_src_empties_source():
    ep = StdNetEndpoint(ipaddress.ip_address("127.0.0.1"), 1, src=b"\x01\x02")
    ep.clear_src()
    assert ep.src == b""
    assert ep.src_ifindex() == 0


def test_open_twice_raises(bind):
    bind.open(0)
    with pytest.raises(BindAlreadyOpenError):
        bind.open(0)


def test_receive_functions_are_named_by_family(bind):
    fns, port = bind.open(0)
    assert 0 < port <= 0xFFFF
    names = [pretty_name(fn) for fn in fns]
    assert names[0] == "v4"
    assert set(names) <= {"v4", "v6"}


def test_loopback_send_and_receive(bind):
    fns, port = bind.open(0)
    ep = bind.parse_endpoint(f"127.0.0.1:{port}")
    bind.send([b"hello"], ep)
    bufs = [bytearray(2048) for _ in range(4)]
    sizes = [0] * 4
    eps = [None] * 4
    n = fns[0](bufs, sizes, eps)
    assert n >= 1
    assert sizes[0] == 5
    assert bytes(bufs[0][:5]) == b"hello"
    assert eps[0].dst_ip() == ipaddress.ip_address("127.0.0.1")
    assert eps[0].port == port


def test_send_wrong_endpoint_type(bind):
    bind.open(0)
    with pytest.raises(WrongEndpointTypeError):
        bind.send([b"x"], ChannelEndpoint(1))


def test_send_on_closed_bind(bind):
    ep = bind.parse_endpoint("127.0.0.1:9")
    with pytest.raises(OSError) as info:
        bind.send([b"x"], ep)
    assert info.value.errno == errno.EAFNOSUPPORT


def test_peek_socket_fd(bind):
    bind.open(0)
    assert bind.peek_socket_fd4() >= 0
    bind.close()
    with pytest.raises(OSError) as info:
        bind.peek_socket_fd4()
    assert info.value.errno == errno.EINVAL


def test_default_bind_batch_size():
    expected = IDEAL_BATCH_SIZE if sys.platform.startswith("linux") else 1
    assert new_default_bind().batch_size() == expected


def test_gso_disabled_error_message():
    cause = OSError(errno.EIO, "io")
    err = UDPGSODisabledError("127.0.0.1:51820", cause)
    assert str(err) == (
        "disabled UDP GSO on 127.0.0.1:51820, NIC(s) may not support checksum offload"
    )
    assert err.retry_error is cause