# scan_core/keys.py
"""
Viewing keys: classification, decoding and (dev only) generation.

classify() is prefix based and total: whatever it is handed, it answers one of the
PoolTag values and never raises. decode_viewing_key() goes further and parses the
key body; it is only meaningful for the two shielded tags.

Encodings
  unified  : bech32m over a list of (typecode, length, item) records
             typecode 0x02 sapling fvk (ak||nk||ovk||dk, 128B)
             typecode 0x03 orchard fvk (ak||nk||rivk, 96B)
  sapling  : bech32 over the 169-byte extended full viewing key
             depth(1) || parent tag(4) || child index(4) || chain code(32) || ak||nk||ovk||dk
"""
import hashlib
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, Optional, Tuple

from . import bech32m
from .errors import InvalidViewingKeyError
from .primitives import (
    blake2b_256, diversified_base, point_mul, read_compactsize, to_scalar,
    u64le, write_compactsize,
)


class PoolTag(str, Enum):
    SAPLING = "sapling"
    UNIFIED = "unified"
    TRANSPARENT = "transparent"
    INVALID = "invalid"


class Scope(IntEnum):
    EXTERNAL = 0
    INTERNAL = 1


SAPLING = "sapling"
ORCHARD = "orchard"

TYPECODE_P2PKH = 0x00
TYPECODE_SAPLING = 0x02
TYPECODE_ORCHARD = 0x03

SAPLING_FVK_SIZE = 128
ORCHARD_FVK_SIZE = 96
SAPLING_EXTFVK_SIZE = 169
DIVERSIFIER_SIZE = 11

PERSONAL_IVK = b"Zcash_ivk"
PERSONAL_OVK = b"Zcash_ovk"
PERSONAL_DK = b"Zcash_dk"
PERSONAL_DIV = b"Zcash_div"
PERSONAL_KEYGEN = b"Zcash_DevKeyGen"

UNIFIED_HRP = {"mainnet": "uview", "testnet": "uviewtest", "regtest": "uviewregtest"}
SAPLING_HRP = {"mainnet": "zxviews", "testnet": "zxviewtestsapling", "regtest": "zxviewregtestsapling"}

_TRANSPARENT_PREFIXES = (("t1", "mainnet"), ("t3", "mainnet"), ("tm", "testnet"), ("t2", "testnet"))
_BASE58 = frozenset("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")


# =============================================================================
# Classification
# =============================================================================
def _match(key) -> Tuple[PoolTag, Optional[str]]:
    if not isinstance(key, str):
        return PoolTag.INVALID, None
    s = key.strip()
    low = s.lower()
    for net, hrp in UNIFIED_HRP.items():
        if low.startswith(hrp + "1"):
            return PoolTag.UNIFIED, net
    for net, hrp in SAPLING_HRP.items():
        if low.startswith(hrp + "1"):
            return PoolTag.SAPLING, net
    for prefix, net in _TRANSPARENT_PREFIXES:
        if s.startswith(prefix) and 26 <= len(s) <= 36 and all(c in _BASE58 for c in s):
            return PoolTag.TRANSPARENT, net
    return PoolTag.INVALID, None


def classify(key) -> PoolTag:
    return _match(key)[0]


def detect_key_type(key) -> str:
    return classify(key).value


def key_network(key) -> Optional[str]:
    return _match(key)[1]


# =============================================================================
# Key material
# =============================================================================
@dataclass(frozen=True)
class PaymentAddress:
    pool: str
    diversifier: bytes
    pk_d: bytes


@dataclass(frozen=True, repr=False)
class PoolViewingKey:
    """Full viewing key of one shielded pool.

    `ovk_seed` is the outgoing viewing key for sapling and rivk for orchard.
    """
    pool: str
    ak: bytes
    nk: bytes
    ovk_seed: bytes
    dk: bytes

    def __repr__(self) -> str:
        return f"PoolViewingKey(pool={self.pool!r})"

    @classmethod
    def from_bytes(cls, pool: str, data: bytes) -> "PoolViewingKey":
        if pool == SAPLING:
            if len(data) != SAPLING_FVK_SIZE:
                raise InvalidViewingKeyError(f"sapling fvk must be {SAPLING_FVK_SIZE} bytes, got {len(data)}")
            return cls(SAPLING, data[0:32], data[32:64], data[64:96], data[96:128])
        if len(data) != ORCHARD_FVK_SIZE:
            raise InvalidViewingKeyError(f"orchard fvk must be {ORCHARD_FVK_SIZE} bytes, got {len(data)}")
        ak, nk, rivk = data[0:32], data[32:64], data[64:96]
        return cls(ORCHARD, ak, nk, rivk, blake2b_256(PERSONAL_DK, ak, nk, rivk))

    def to_bytes(self) -> bytes:
        if self.pool == SAPLING:
            return self.ak + self.nk + self.ovk_seed + self.dk
        return self.ak + self.nk + self.ovk_seed

    def ivk(self, scope: Scope = Scope.EXTERNAL) -> int:
        return to_scalar(blake2b_256(
            PERSONAL_IVK, self.pool.encode(), self.ak, self.nk, self.ovk_seed, bytes([int(scope)])))

    def ovk(self, scope: Scope = Scope.EXTERNAL) -> bytes:
        if self.pool == SAPLING and scope == Scope.EXTERNAL:
            return self.ovk_seed
        return blake2b_256(PERSONAL_OVK, self.pool.encode(), self.ovk_seed, self.nk, bytes([int(scope)]))

    def diversifier(self, index: int = 0, scope: Scope = Scope.EXTERNAL) -> bytes:
        return blake2b_256(PERSONAL_DIV, self.dk, bytes([int(scope)]), u64le(index))[:DIVERSIFIER_SIZE]

    def address(self, index: int = 0, scope: Scope = Scope.EXTERNAL) -> PaymentAddress:
        d = self.diversifier(index, scope)
        pk_d = point_mul(diversified_base(d), self.ivk(scope)).format(compressed=True)
        return PaymentAddress(self.pool, d, pk_d)


@dataclass(frozen=True)
class ViewingKey:
    raw: str = field(repr=False)
    tag: PoolTag
    network: Optional[str]
    sapling: Optional[PoolViewingKey] = None
    orchard: Optional[PoolViewingKey] = None

    def for_pool(self, pool: str) -> Optional[PoolViewingKey]:
        return self.orchard if pool == ORCHARD else self.sapling if pool == SAPLING else None

    def pool_keys(self):
        return [k for k in (self.sapling, self.orchard) if k is not None]

    def fingerprint(self) -> str:
        return hashlib.sha256(self.raw.strip().encode("utf-8")).hexdigest()[:16]


# =============================================================================
# Decoding
# =============================================================================
def _parse_unified_items(payload: bytes) -> Dict[int, bytes]:
    items: Dict[int, bytes] = {}
    pos = 0
    try:
        while pos < len(payload):
            typecode, pos = read_compactsize(payload, pos)
            length, pos = read_compactsize(payload, pos)
            if pos + length > len(payload):
                raise ValueError("truncated item")
            if typecode in items:
                raise ValueError(f"duplicate typecode {typecode}")
            items[typecode] = payload[pos:pos + length]
            pos += length
    except ValueError as e:
        raise InvalidViewingKeyError(f"malformed unified key: {e}") from e
    return items


def decode_viewing_key(key: str) -> ViewingKey:
    tag, network = _match(key)
    if tag not in (PoolTag.UNIFIED, PoolTag.SAPLING):
        raise InvalidViewingKeyError(f"not a shielded viewing key (classified as {tag.value})")
    s = key.strip()

    if tag == PoolTag.UNIFIED:
        try:
            hrp, payload = bech32m.decode(s, bech32m.BECH32M_CONST)
        except ValueError as e:
            raise InvalidViewingKeyError(f"unified key decode failed: {e}") from e
        if hrp != UNIFIED_HRP[network]:
            raise InvalidViewingKeyError(f"unexpected unified key prefix {hrp!r}")
        items = _parse_unified_items(payload)
        sapling = orchard = None
        if TYPECODE_SAPLING in items:
            sapling = PoolViewingKey.from_bytes(SAPLING, items[TYPECODE_SAPLING])
        if TYPECODE_ORCHARD in items:
            orchard = PoolViewingKey.from_bytes(ORCHARD, items[TYPECODE_ORCHARD])
        if sapling is None and orchard is None:
            raise InvalidViewingKeyError("unified key carries no shielded viewing key")
        return ViewingKey(raw=s, tag=tag, network=network, sapling=sapling, orchard=orchard)

    try:
        hrp, payload = bech32m.decode(s, bech32m.BECH32_CONST)
    except ValueError as e:
        raise InvalidViewingKeyError(f"sapling key decode failed: {e}") from e
    if hrp != SAPLING_HRP[network]:
        raise InvalidViewingKeyError(f"unexpected sapling key prefix {hrp!r}")
    if len(payload) != SAPLING_EXTFVK_SIZE:
        raise InvalidViewingKeyError(
            f"sapling extended fvk must be {SAPLING_EXTFVK_SIZE} bytes, got {len(payload)}")
    sapling = PoolViewingKey.from_bytes(SAPLING, payload[41:])
    return ViewingKey(raw=s, tag=tag, network=network, sapling=sapling)


# =============================================================================
# Encoding / dev generation
# =============================================================================
def encode_unified_key(network: str, sapling: Optional[PoolViewingKey] = None,
                       orchard: Optional[PoolViewingKey] = None) -> str:
    payload = b""
    for typecode, pk in ((TYPECODE_SAPLING, sapling), (TYPECODE_ORCHARD, orchard)):
        if pk is None:
            continue
        item = pk.to_bytes()
        payload += write_compactsize(typecode) + write_compactsize(len(item)) + item
    return bech32m.encode(UNIFIED_HRP[network], payload, bech32m.BECH32M_CONST)


def encode_sapling_key(network: str, fvk: PoolViewingKey, depth: int = 0,
                       parent_tag: bytes = b"\x00" * 4, child_index: int = 0,
                       chain_code: bytes = b"\x00" * 32) -> str:
    payload = bytes([depth]) + parent_tag + child_index.to_bytes(4, "little") + chain_code + fvk.to_bytes()
    return bech32m.encode(SAPLING_HRP[network], payload, bech32m.BECH32_CONST)


def generate_pool_key(pool: str, seed: bytes) -> PoolViewingKey:
    """Deterministic key material from a 32-byte seed. For tests and demos only."""
    parts = [blake2b_256(PERSONAL_KEYGEN, pool.encode(), seed, label) for label in (b"ak", b"nk", b"ov", b"dk")]
    if pool == SAPLING:
        return PoolViewingKey.from_bytes(SAPLING, b"".join(parts))
    return PoolViewingKey.from_bytes(ORCHARD, b"".join(parts[:3]))


def generate_unified_key(seed: bytes, network: str = "mainnet", pools=(SAPLING, ORCHARD)) -> str:
    return encode_unified_key(
        network,
        sapling=generate_pool_key(SAPLING, seed) if SAPLING in pools else None,
        orchard=generate_pool_key(ORCHARD, seed) if ORCHARD in pools else None,
    )


def generate_sapling_key(seed: bytes, network: str = "mainnet") -> str:
    return encode_sapling_key(network, generate_pool_key(SAPLING, seed))
