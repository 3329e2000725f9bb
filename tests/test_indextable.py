from wgkit.indextable import IndexTable, IndexTableEntry


def test_new_index_and_lookup():
    t = IndexTable()
    peer, hs = object(), object()
    idx = t.new_index_for_handshake(peer, hs)
    assert 0 <= idx < 1 << 32
    entry = t.lookup(idx)
    assert entry.peer is peer and entry.handshake is hs and entry.keypair is None


def test_missing_lookup_is_empty():
    assert IndexTable().lookup(5) == IndexTableEntry()


def test_collision_retries():
    values = iter([7, 7, 9])
    t = IndexTable(rand_uint32=lambda: next(values))
    assert t.new_index_for_handshake("a", "h1") == 7
    assert t.new_index_for_handshake("b", "h2") == 9


def test_swap_and_delete():
    t = IndexTable()
    idx = t.new_index_for_handshake("p", "h")
    t.swap_index_for_keypair(idx, "kp")
    assert t.lookup(idx) == IndexTableEntry(peer="p", keypair="kp")
    t.swap_index_for_keypair(idx + 1 if idx < 2**32 - 1 else 0, "x")
    assert t.lookup(idx).keypair == "kp"
    t.delete(idx)
    assert t.lookup(idx) == IndexTableEntry()