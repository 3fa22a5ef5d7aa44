# wireguard

Building blocks for a WireGuard implementation, as a plain Python library.

## Modules

- `wireguard.conn`: the abstract `Bind` and `Endpoint` classes, the
  `IDEAL_BATCH_SIZE` constant, the errors `BindAlreadyOpenError` and
  `WrongEndpointTypeError`, and `pretty_name(fn)`, which gives a receive
  function a short name (`"v4"` or `"v6"` for names ending in IPv4/IPv6).
- `wireguard.bind_std`: `StdNetBind`, a bind holding one UDP socket per address
  family on a shared port, and `StdNetEndpoint`. `new_default_bind()` returns a
  `StdNetBind`. The batching helpers `coalesce_messages` and
  `split_coalesced_messages` pack and unpack datagrams for UDP segmentation
  offload; a send that had to fall back from segmentation raises
  `UDPGSODisabledError`.
- `wireguard.control`: socket control messages in the Linux 64-bit layout:
  `ControlMessage`, `parse_control_messages`, `get_gso_size`, `set_gso_size`,
  `pack_pktinfo`, `src_from_control`, `src_ip`, `src_ifindex`,
  `set_src_control`, `cmsg_len` and `cmsg_space`.
- `wireguard.sockopts`: socket options applied before binding:
  `configure_socket(sock, network)`, `supports_udp_offload(sock)`,
  `should_disable_udp_gso(err)` and `set_mark(sock, mark)`.
- `wireguard.bindtest`: `new_channel_binds()` returns two `ChannelBind`s joined by
  in-memory queues, with `ChannelEndpoint` addresses; useful in tests.
- `wireguard.constants`: protocol timing and size constants (durations in seconds)
  and IP header offsets.
- `wireguard.allowedips`: `AllowedIPs`, a longest-prefix-match trie from IPv4 and
  IPv6 prefixes to peers, with `insert`, `lookup`, `remove_by_peer` and
  `entries_for_peer`; `common_bits` counts shared leading bits.
- `wireguard.noise_helpers`: HMAC and HKDF over BLAKE2s (`hmac1`, `hmac2`,
  `kdf1`, `kdf2`, `kdf3`), `is_zero`, and Curve25519 keys (`clamp`,
  `new_private_key`, `public_key`, `shared_secret`, which raises
  `InvalidPublicKeyError` on an all-zero result).
- `wireguard.cookie`: `CookieChecker` (`check_mac1`, `check_mac2`,
  `create_reply`), `CookieGenerator` (`add_macs`, `consume_reply`) and the
  `CookieReply` message.
- `wireguard.indextable`: `IndexTable` mapping random 32-bit indices to
  `IndexTableEntry` values, and the `Keypair` and `Keypairs` records.

## Install

    pip install .

For development:

    pip install ".[test]"
    pytest

## Examples

Routing:

    from ipaddress import ip_network
    from wireguard.allowedips import AllowedIPs

    table = AllowedIPs()
    table.insert(ip_network("192.168.4.0/24"), "peer-a")
    table.insert(ip_network("192.168.0.0/16"), "peer-b")
    assert table.lookup(bytes([192, 168, 4, 20])) == "peer-a"
    assert table.lookup(bytes([192, 168, 200, 1])) == "peer-b"

Cookie MACs:

    from wireguard.noise_helpers import new_private_key, public_key
    from wireguard.cookie import CookieChecker, CookieGenerator

    pk = public_key(new_private_key())
    generator, checker = CookieGenerator(pk), CookieChecker(pk)
    msg = bytearray(64)
    generator.add_macs(msg)
    assert checker.check_mac1(msg)

In-memory binds:

    from wireguard.bindtest import new_channel_binds

    a, b = new_channel_binds()
    a.open(0)
    receivers, _ = b.open(0)
    a.send([b"hello"], a.parse_endpoint("127.0.0.1:1"))
    bufs, sizes, eps = [bytearray(64)], [0], [None]
    assert receivers[0](bufs, sizes, eps) == 1
    assert bytes(bufs[0][: sizes[0]]) == b"hello"

A UDP bind:

    from wireguard.bind_std import new_default_bind

    bind = new_default_bind()
    receivers, port = bind.open(0)   # 0 picks a free port
    ...
    bind.close()

## What this package does not do

It has no tunnel device, no handshake state machine, no transport encryption of
packets, no peer or device management and no configuration interface, and it
installs no command. It provides the pieces listed above for such a program to
be built on.