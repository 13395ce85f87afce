# scan_core/bech32m.py
"""
Bech32 / Bech32m string codec for viewing keys.

Zcash key encodings are longer than the 90 character limit of BIP-173, so no
length limit is applied here.
"""
from typing import List, Tuple

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_REV = {c: i for i, c in enumerate(CHARSET)}

BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

_GEN = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)


def _polymod(values: List[int]) -> int:
    chk = 1
    for v in values:
        top = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ v
        for i in range(5):
            if (top >> i) & 1:
                chk ^= _GEN[i]
    return chk


def _hrp_expand(hrp: str) -> List[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _create_checksum(hrp: str, data: List[int], const: int) -> List[int]:
    pm = _polymod(_hrp_expand(hrp) + data + [0] * 6) ^ const
    return [(pm >> 5 * (5 - i)) & 31 for i in range(6)]


def convertbits(data: bytes, frombits: int, tobits: int, pad: bool = True) -> List[int]:
    acc = 0
    bits = 0
    out: List[int] = []
    maxv = (1 << tobits) - 1
    for value in data:
        if value < 0 or value >> frombits:
            raise ValueError("invalid data range")
        acc = (acc << frombits) | value
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            out.append((acc >> bits) & maxv)
    if pad:
        if bits:
            out.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise ValueError("invalid padding")
    return out


def encode(hrp: str, payload: bytes, const: int = BECH32M_CONST) -> str:
    data = convertbits(payload, 8, 5)
    checksum = _create_checksum(hrp, data, const)
    return hrp + "1" + "".join(CHARSET[d] for d in data + checksum)


def decode(s: str, const: int = BECH32M_CONST) -> Tuple[str, bytes]:
    """Return (hrp, payload). Raises ValueError on any encoding problem."""
    if s.lower() != s and s.upper() != s:
        raise ValueError("mixed case")
    s = s.lower()
    pos = s.rfind("1")
    if pos < 1 or pos + 7 > len(s):
        raise ValueError("missing separator or checksum")
    hrp = s[:pos]
    if any(ord(c) < 33 or ord(c) > 126 for c in hrp):
        raise ValueError("invalid hrp character")
    try:
        data = [_REV[c] for c in s[pos + 1:]]
    except KeyError as e:
        raise ValueError(f"invalid data character {e}")
    if _polymod(_hrp_expand(hrp) + data) != const:
        raise ValueError("bad checksum")
    payload = bytes(convertbits(bytes(data[:-6]), 5, 8, pad=False))
    return hrp, payload
