# scan_core/primitives.py
"""
Curve and hash primitives shared by key handling and note encryption.

Points live on secp256k1 (coincurve) and are carried in 33-byte compressed form.
Every derivation hash is BLAKE2b-256 with a 16-byte personalization, the way the
shielded protocols domain-separate their PRFs.
"""
import hashlib

from coincurve import PublicKey

SECP_N = int("0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

POINT_SIZE = 33

PERSONAL_GD = b"Zcash_gd"
PERSONAL_EXPAND = b"Zcash_ExpandSeed"


def blake2b_256(personal: bytes, *parts: bytes) -> bytes:
    h = hashlib.blake2b(digest_size=32, person=personal)
    for p in parts:
        h.update(p)
    return h.digest()


def to_scalar(digest: bytes) -> int:
    """Map a digest into [1, n-1]."""
    return (int.from_bytes(digest, "big") % (SECP_N - 1)) + 1


def int_to_32be(x: int) -> bytes:
    return (x % SECP_N).to_bytes(32, "big")


def u64le(v: int) -> bytes:
    return int(v).to_bytes(8, "little")


def diversified_base(diversifier: bytes) -> PublicKey:
    """g_d: the base point an address with this diversifier is built on."""
    return PublicKey.from_secret(int_to_32be(to_scalar(blake2b_256(PERSONAL_GD, diversifier))))


def point_mul(point: PublicKey, k: int) -> PublicKey:
    return point.multiply(int_to_32be(k))


def expand_seed(rseed: bytes, domain: int) -> bytes:
    return blake2b_256(PERSONAL_EXPAND, rseed, bytes([domain]))


def strip0x(s: str) -> str:
    return s[2:] if isinstance(s, str) and s.lower().startswith("0x") else s


def write_compactsize(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    if n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    return b"\xff" + n.to_bytes(8, "little")


def read_compactsize(data: bytes, pos: int):
    """Return (value, new_pos). Raises ValueError on truncation or non-canonical encoding."""
    if pos >= len(data):
        raise ValueError("truncated compactsize")
    first = data[pos]
    if first < 0xFD:
        return first, pos + 1
    width = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    end = pos + 1 + width
    if end > len(data):
        raise ValueError("truncated compactsize")
    value = int.from_bytes(data[pos + 1:end], "little")
    if value < {2: 0xFD, 4: 0x10000, 8: 0x100000000}[width]:
        raise ValueError("non-canonical compactsize")
    return value, end
