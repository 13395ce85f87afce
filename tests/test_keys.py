import pytest

from shieldscan.scan_core import bech32m
from shieldscan.scan_core.errors import InvalidViewingKeyError
from shieldscan.scan_core.keys import (
    ORCHARD, SAPLING, PoolTag, classify, decode_viewing_key, detect_key_type,
    generate_unified_key, key_network,
)


class TestClassify:

    @pytest.mark.parametrize("key", [
        "", "   ", "hello", "uview", "zxviews", "t1", "0x1234", "view1abc",
        "t1" + "0" * 30,           # '0' is not base58
        "t1abc",                   # too short for an address
        "tm" + "A" * 60,           # too long
    ])
    def test_junk_is_invalid(self, key):
        assert classify(key) == PoolTag.INVALID
        assert detect_key_type(key) == "invalid"

    @pytest.mark.parametrize("key", [None, 123, b"uview1abc", ["uview1"]])
    def test_non_string_is_invalid(self, key):
        assert classify(key) == PoolTag.INVALID

    def test_unified(self, uvk):
        assert uvk.startswith("uview1")
        assert classify(uvk) == PoolTag.UNIFIED
        assert key_network(uvk) == "mainnet"

    def test_unified_testnet(self):
        key = generate_unified_key(b"\x05" * 32, network="testnet")
        assert key.startswith("uviewtest1")
        assert classify(key) == PoolTag.UNIFIED
        assert key_network(key) == "testnet"

    def test_sapling(self, sapling_key):
        assert sapling_key.startswith("zxviews1")
        assert detect_key_type(sapling_key) == "sapling"

    @pytest.mark.parametrize("addr,net", [
        ("t1Rv4exT7bqhZqi2j7xz8bUHDMxwosrjADU", "mainnet"),
        ("tmHHBvJ5CNkqWVAqZDJ1aRFq3xeCM1K2ThM", "testnet"),
    ])
    def test_transparent(self, addr, net):
        assert classify(addr) == PoolTag.TRANSPARENT
        assert key_network(addr) == net

    def test_prefix_only_classification(self):
        # classification looks at the prefix; decoding is where the body is checked
        assert classify("uview1notreallyakey") == PoolTag.UNIFIED
        with pytest.raises(InvalidViewingKeyError):
            decode_viewing_key("uview1notreallyakey")

    def test_surrounding_whitespace(self, uvk):
        assert classify("  " + uvk + "\n") == PoolTag.UNIFIED


class TestDecode:

    def test_unified_carries_both_pools(self, vk):
        assert vk.sapling is not None and vk.orchard is not None
        assert vk.for_pool(ORCHARD) is vk.orchard
        assert vk.for_pool(SAPLING) is vk.sapling
        assert vk.for_pool("sprout") is None

    def test_orchard_only(self):
        key = decode_viewing_key(generate_unified_key(b"\x07" * 32, pools=(ORCHARD,)))
        assert key.sapling is None
        assert key.orchard is not None

    def test_sapling_key(self, sapling_key):
        key = decode_viewing_key(sapling_key)
        assert key.tag == PoolTag.SAPLING
        assert key.orchard is None
        assert key.sapling.address().pool == SAPLING

    def test_deterministic(self):
        assert generate_unified_key(b"\x09" * 32) == generate_unified_key(b"\x09" * 32)
        assert generate_unified_key(b"\x09" * 32) != generate_unified_key(b"\x0a" * 32)

    def test_bad_checksum(self, uvk):
        last = "q" if uvk[-1] != "q" else "p"
        with pytest.raises(InvalidViewingKeyError):
            decode_viewing_key(uvk[:-1] + last)

    def test_transparent_is_not_decodable(self):
        with pytest.raises(InvalidViewingKeyError):
            decode_viewing_key("t1Rv4exT7bqhZqi2j7xz8bUHDMxwosrjADU")

    def test_empty_unified_payload(self):
        with pytest.raises(InvalidViewingKeyError):
            decode_viewing_key(bech32m.encode("uview", b"", bech32m.BECH32M_CONST))

    def test_repr_hides_key(self, vk, uvk):
        assert uvk not in repr(vk)

    def test_fingerprint_stable(self, vk, uvk):
        assert vk.fingerprint() == decode_viewing_key(uvk).fingerprint()
        assert len(vk.fingerprint()) == 16

    def test_addresses_differ_per_index(self, vk):
        assert vk.orchard.address(0) != vk.orchard.address(1)
