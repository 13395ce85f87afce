from shieldscan.blockstore import MemoryBlockSource, SqliteBlockStore
from shieldscan.scan_core.transaction import TransactionBuilder
from shieldscan.watcher import poll_once


def _chain(vk, heights):
    src = MemoryBlockSource()
    for h in heights:
        tx = TransactionBuilder().add_orchard_output(vk.orchard.address(), h).build()
        src.add_block(h, [tx], time=1_700_000_000 + h)
    return src


def test_poll_copies_blocks(tmp_path, vk):
    upstream = _chain(vk, [10, 11, 12])
    store = SqliteBlockStore(str(tmp_path / "chain.db"))

    assert poll_once(store, upstream, batch_blocks=100, start_height=10) == 3
    assert store.get_last_block() == 12
    assert [b.height for b in store.iter_blocks(10, 12)] == [10, 11, 12]
    # nothing new upstream
    assert poll_once(store, upstream, batch_blocks=100, start_height=10) == 0


def test_poll_in_batches(tmp_path, vk):
    upstream = _chain(vk, range(1, 8))
    store = SqliteBlockStore(str(tmp_path / "chain.db"))
    assert poll_once(store, upstream, batch_blocks=3) == 3
    assert store.get_last_block() == 3
    assert poll_once(store, upstream, batch_blocks=3) == 3
    assert poll_once(store, upstream, batch_blocks=3) == 1
    assert store.get_last_block() == 7


def test_cached_blocks_keep_outputs(tmp_path, vk):
    upstream = _chain(vk, [5])
    store = SqliteBlockStore(str(tmp_path / "chain.db"))
    poll_once(store, upstream, start_height=5)
    [original] = list(upstream.iter_blocks(5, 5))
    [cached] = list(store.iter_blocks(5, 5))
    assert cached.to_dict() == original.to_dict()
    assert cached.compact_outputs() == original.compact_outputs()


def test_read_through(tmp_path, vk):
    upstream = _chain(vk, [1, 2, 3])
    tx = TransactionBuilder().add_orchard_output(vk.orchard.address(), 9).build()
    upstream.add_transaction(tx, height=3)
    store = SqliteBlockStore(str(tmp_path / "chain.db"), upstream=upstream)

    assert [b.height for b in store.iter_blocks(1, 3)] == [1, 2, 3]
    assert store.get_last_block() == 3
    assert store.get_transaction(tx.txid()) == tx.to_bytes()
    assert store.transaction_height(tx.txid()) == 3
    assert store.get_transaction("ff" * 32) is None


def test_read_through_gap_keeps_marker(tmp_path, vk):
    upstream = _chain(vk, [1, 2, 3, 50, 51])
    store = SqliteBlockStore(str(tmp_path / "chain.db"), upstream=upstream)
    list(store.iter_blocks(1, 3))
    list(store.iter_blocks(50, 51))
    # blocks 4..49 were never fetched
    assert store.get_last_block() == 3
