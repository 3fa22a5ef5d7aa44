from unittest.mock import patch

from wireguard.indextable import IndexTable, IndexTableEntry, Keypair, Keypairs


def test_new_index_registers_handshake():
    table = IndexTable()
    peer, handshake = object(), object()
    index = table.new_index_for_handshake(peer, handshake)
    assert 0 <= index <= 0xFFFFFFFF
    entry = table.lookup(index)
    assert entry.peer is peer
    assert entry.handshake is handshake
    assert entry.keypair is None


def test_lookup_unknown_returns_empty_entry():
    table = IndexTable()
    assert table.lookup(42) == IndexTableEntry()


def test_swap_replaces_handshake_with_keypair():
    table = IndexTable()
    peer = object()
    index = table.new_index_for_handshake(peer, object())
    keypair = Keypair(local_index=index)
    table.swap_index_for_keypair(index, keypair)
    entry = table.lookup(index)
    assert entry.peer is peer
    assert entry.handshake is None
    assert entry.keypair is keypair


def test_swap_unknown_index_does_nothing():
    table = IndexTable()
    table.swap_index_for_keypair(9, Keypair())
    assert 9 not in table
    assert len(table) == 0


def test_delete_removes_index():
    table = IndexTable()
    index = table.new_index_for_handshake(object(), object())
    assert index in table
    table.delete(index)
    assert index not in table
    table.delete(index)
    assert len(table) == 0


def test_collision_picks_another_index():
    table = IndexTable()
    with patch("secrets.randbits", side_effect=[5, 5, 7]):
        first = table.new_index_for_handshake("a", "ha")
        second = table.new_index_for_handshake("b", "hb")
    assert first == 5
    assert second == 7
    assert table.lookup(5).peer == "a"
    assert table.lookup(7).peer == "b"


def test_many_indices_are_unique():
    table = IndexTable()
    indices = {table.new_index_for_handshake(object(), object()) for _ in range(200)}
    assert len(indices) == 200
    assert len(table) == 200


def test_keypairs_hold_rotation():
    current, previous = Keypair(local_index=1), Keypair(local_index=2)
    pairs = Keypairs(current=current, previous=previous)
    with pairs.lock:
        pairs.previous, pairs.current = pairs.current, None
    assert pairs.previous is current
    assert pairs.current is None
    assert pairs.next is None