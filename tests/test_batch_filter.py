import json

import pytest

from shieldscan.scan_core.capability import LocalBackend, TrialDecryptionBackend
from shieldscan.scan_core.errors import MalformedOutputError
from shieldscan.scan_core.scan import filter_matches, try_decrypt_output
from shieldscan.scan_core.transaction import CompactBlock, TransactionBuilder


@pytest.fixture(scope="module")
def mixed_outputs(vk, other_vk):
    """Ten orchard outputs, ours at positions 2, 5 and 9."""
    txs = []
    for i in range(10):
        to = vk if i in (2, 5, 9) else other_vk
        txs.append(TransactionBuilder().add_orchard_output(to.orchard.address(), 1_000 + i).build())
    return CompactBlock.from_transactions(2_000_000, txs, time=1_700_000_000).compact_outputs()


def test_ascending_indices(mixed_outputs, vk):
    assert filter_matches(mixed_outputs, vk) == [2, 5, 9]


def test_agrees_with_single_output(mixed_outputs, vk):
    expected = [i for i, o in enumerate(mixed_outputs) if try_decrypt_output(o, vk) is not None]
    assert filter_matches(mixed_outputs, vk) == expected


def test_parallel_path_same_result(mixed_outputs, vk):
    assert filter_matches(mixed_outputs, vk, max_workers=4, parallel_min=1) == [2, 5, 9]


def test_empty_batch(vk):
    assert filter_matches([], vk) == []


@pytest.mark.parametrize("key", ["", "nonsense", "t1Rv4exT7bqhZqi2j7xz8bUHDMxwosrjADU"])
def test_non_shielded_key(mixed_outputs, key):
    assert filter_matches(mixed_outputs, key) == []


def test_malformed_items_are_skipped(mixed_outputs, vk):
    items = [o.to_dict() for o in mixed_outputs]
    items[3]["ciphertext"] = "00"
    items[5]["cmx"] = "not hex"
    errors = []
    hits = filter_matches(items, vk, on_error=lambda i, e: errors.append((i, type(e))))
    # the corrupted match at 5 is lost, the rest of the batch is unaffected
    assert hits == [2, 9]
    assert sorted(errors) == [(3, MalformedOutputError), (5, MalformedOutputError)]


def test_malformed_items_parallel(mixed_outputs, vk):
    items = [o.to_dict() for o in mixed_outputs]
    items[0] = "junk"
    errors = []
    hits = filter_matches(items, vk, max_workers=3, parallel_min=1, on_error=lambda i, e: errors.append(i))
    assert hits == [2, 5, 9]
    assert errors == [0]


class TestLocalBackend:

    @pytest.fixture
    def backend(self):
        return LocalBackend(max_workers=2)

    def test_is_a_backend(self, backend):
        assert isinstance(backend, TrialDecryptionBackend)

    def test_detect_key_type(self, backend, uvk, sapling_key):
        assert backend.detect_key_type(uvk) == "unified"
        assert backend.detect_key_type(sapling_key) == "sapling"
        assert backend.detect_key_type("t1Rv4exT7bqhZqi2j7xz8bUHDMxwosrjADU") == "transparent"
        assert backend.detect_key_type("???") == "invalid"

    def test_batch_filter_json(self, backend, mixed_outputs, uvk):
        records = [o.to_dict() for o in mixed_outputs]
        result = json.loads(backend.batch_filter_compact_outputs(json.dumps(records), uvk))
        assert [m["index"] for m in result] == [2, 5, 9]
        assert all(m["height"] == 2_000_000 for m in result)
        assert result[0]["txid"] == mixed_outputs[2].txid
        assert result[0]["scope"] == "external"

    def test_batch_filter_keeps_positions(self, backend, mixed_outputs, uvk):
        records = [o.to_dict() for o in mixed_outputs]
        records.insert(0, {"bogus": True})
        result = json.loads(backend.batch_filter_compact_outputs(json.dumps(records), uvk))
        assert [m["index"] for m in result] == [3, 6, 10]

    @pytest.mark.parametrize("payload", ["not json", '{"a": 1}', "42"])
    def test_batch_filter_rejects_non_array(self, backend, uvk, payload):
        with pytest.raises(MalformedOutputError):
            backend.batch_filter_compact_outputs(payload, uvk)

    def test_batch_filter_transparent_key(self, backend, mixed_outputs):
        records = json.dumps([o.to_dict() for o in mixed_outputs])
        assert backend.batch_filter_compact_outputs(records, "t1Rv4exT7bqhZqi2j7xz8bUHDMxwosrjADU") == "[]"

    def test_decrypt_compact_output(self, backend, mixed_outputs, uvk):
        o = mixed_outputs[5]
        note = json.loads(backend.decrypt_compact_output(o.nullifier, o.cmx, o.ephemeral_key, o.ciphertext, uvk))
        assert note["value"] == 1_005
        assert note["amount"] == pytest.approx(0.00001005)
        assert note["pool"] == "orchard"

    def test_decrypt_compact_output_not_ours(self, backend, mixed_outputs, uvk):
        o = mixed_outputs[0]
        assert backend.decrypt_compact_output(o.nullifier, o.cmx, o.ephemeral_key, o.ciphertext, uvk) == "null"

    def test_decrypt_compact_output_malformed(self, backend, uvk):
        with pytest.raises(MalformedOutputError):
            backend.decrypt_compact_output("00" * 32, "00", "00" * 33, "00" * 52, uvk)

    def test_decrypt_memo(self, backend, vk, other_vk, uvk):
        tx = (TransactionBuilder()
              .add_orchard_output(vk.orchard.address(), 250_000_000, memo="coffee")
              .add_orchard_output(other_vk.orchard.address(), 1)
              .build())
        notes = json.loads(backend.decrypt_memo(tx.to_hex(), uvk))
        assert len(notes) == 1
        assert notes[0]["memo"] == "coffee"
        assert notes[0]["amount"] == 2.5
        assert notes[0]["kind"] == "incoming"

    def test_decrypt_memo_not_ours(self, backend, other_vk, uvk):
        tx = TransactionBuilder().add_orchard_output(other_vk.orchard.address(), 1).build()
        assert json.loads(backend.decrypt_memo(tx.to_hex(), uvk)) == []
