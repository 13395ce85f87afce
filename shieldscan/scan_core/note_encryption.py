# scan_core/note_encryption.py
"""
In-band note encryption for shielded outputs.

Sender
  rseed random, esk = H(rseed || 0x05), epk = esk * g_d
  K_enc = KDF(esk * pk_d, epk)
  enc_ciphertext = ChaCha20-Poly1305(K_enc, nonce=0)(0x02 || d || v || rseed || memo)
  out_ciphertext = ChaCha20-Poly1305(ock, nonce=0)(pk_d || esk)

Receiver (ivk)
  K_enc = KDF(ivk * epk, epk). Full outputs are authenticated by the Poly1305 tag;
  compact outputs carry only the first 52 bytes of the ciphertext (no tag), so a
  candidate is accepted only if epk == esk * g_d and the recomputed note
  commitment equals cmx.

Receiver (ovk)
  ock = H(ovk || cv || cmx || epk) opens out_ciphertext, which yields pk_d and esk.
"""
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from coincurve import PublicKey
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .keys import DIVERSIFIER_SIZE, ORCHARD, SAPLING, PaymentAddress
from .primitives import (
    POINT_SIZE, SECP_N, blake2b_256, diversified_base, expand_seed,
    int_to_32be, point_mul, to_scalar, u64le,
)

LEAD_BYTE = 0x02
COMPACT_NOTE_SIZE = 1 + DIVERSIFIER_SIZE + 8 + 32   # 52
MEMO_SIZE = 512
NOTE_PLAINTEXT_SIZE = COMPACT_NOTE_SIZE + MEMO_SIZE  # 564
AEAD_TAG_SIZE = 16
ENC_CIPHERTEXT_SIZE = NOTE_PLAINTEXT_SIZE + AEAD_TAG_SIZE  # 580
OUT_PLAINTEXT_SIZE = POINT_SIZE + 32
OUT_CIPHERTEXT_SIZE = OUT_PLAINTEXT_SIZE + AEAD_TAG_SIZE  # 81

_ZERO_NONCE = b"\x00" * 12

_KDF_PERSONAL = {SAPLING: b"Zcash_SaplingKDF", ORCHARD: b"Zcash_OrchardKDF"}
_OCK_PERSONAL = {SAPLING: b"Zcash_Derive_ock", ORCHARD: b"Zcash_Orchardock"}
_CM_PERSONAL = {SAPLING: b"Zcash_Sapl_cm", ORCHARD: b"Zcash_Orch_cm"}
PERSONAL_NF = b"Zcash_nf"
PERSONAL_CV = b"Zcash_cv"

MEMO_EMPTY_MARKER = 0xF6


# =============================================================================
# Memo field
# =============================================================================
def encode_memo(text: str = "") -> bytes:
    if not text:
        return bytes([MEMO_EMPTY_MARKER]) + b"\x00" * (MEMO_SIZE - 1)
    raw = text.encode("utf-8")
    if len(raw) > MEMO_SIZE:
        raise ValueError(f"memo too long: {len(raw)} > {MEMO_SIZE} bytes")
    return raw.ljust(MEMO_SIZE, b"\x00")


def decode_memo(memo: bytes) -> str:
    """Text memos start with a byte <= 0xF4; everything else decodes to ""."""
    if not memo or memo[0] > 0xF4:
        return ""
    text = memo.rstrip(b"\x00")
    try:
        return text.decode("utf-8")
    except UnicodeDecodeError:
        return ""


# =============================================================================
# Note
# =============================================================================
@dataclass(frozen=True)
class Note:
    pool: str
    diversifier: bytes
    pk_d: bytes
    value: int
    rseed: bytes
    rho: bytes = b""

    def commitment(self) -> bytes:
        rcm = expand_seed(self.rseed, 0x04)
        return blake2b_256(
            _CM_PERSONAL[self.pool], self.diversifier, self.pk_d, u64le(self.value), rcm, self.rho)

    def esk(self) -> int:
        return to_scalar(expand_seed(self.rseed, 0x05))

    def nullifier(self, nk: bytes) -> bytes:
        return blake2b_256(PERSONAL_NF, nk, self.commitment(), self.rseed)


@dataclass(frozen=True)
class EncryptedOutput:
    cv: bytes
    cmx: bytes
    epk: bytes
    enc_ciphertext: bytes
    out_ciphertext: bytes

    @property
    def compact_ciphertext(self) -> bytes:
        return self.enc_ciphertext[:COMPACT_NOTE_SIZE]


def kdf(pool: str, shared: bytes, epk: bytes) -> bytes:
    return blake2b_256(_KDF_PERSONAL[pool], shared, epk)


def derive_ock(pool: str, ovk: bytes, cv: bytes, cmx: bytes, epk: bytes) -> bytes:
    return blake2b_256(_OCK_PERSONAL[pool], ovk, cv, cmx, epk)


def value_commitment(value: int, rcv: bytes) -> bytes:
    return blake2b_256(PERSONAL_CV, u64le(value), rcv)


# =============================================================================
# Sender side
# =============================================================================
def new_note(address: PaymentAddress, value: int, rho: bytes = b"", rseed: Optional[bytes] = None) -> Note:
    if not 0 <= value < 2 ** 64:
        raise ValueError("note value out of range")
    return Note(address.pool, address.diversifier, address.pk_d, value, rseed or os.urandom(32), rho)


def encrypt_note(note: Note, memo: bytes, ovk: Optional[bytes] = None) -> EncryptedOutput:
    if len(memo) != MEMO_SIZE:
        raise ValueError(f"memo must be {MEMO_SIZE} bytes")
    esk = note.esk()
    g_d = diversified_base(note.diversifier)
    epk = point_mul(g_d, esk).format(compressed=True)
    shared = point_mul(PublicKey(note.pk_d), esk).format(compressed=True)
    plaintext = bytes([LEAD_BYTE]) + note.diversifier + u64le(note.value) + note.rseed + memo
    enc = ChaCha20Poly1305(kdf(note.pool, shared, epk)).encrypt(_ZERO_NONCE, plaintext, None)

    cmx = note.commitment()
    cv = value_commitment(note.value, os.urandom(32))
    # without an ovk the sender cannot recover the output later
    ock = derive_ock(note.pool, ovk, cv, cmx, epk) if ovk is not None else os.urandom(32)
    out = ChaCha20Poly1305(ock).encrypt(_ZERO_NONCE, note.pk_d + int_to_32be(esk), None)
    return EncryptedOutput(cv=cv, cmx=cmx, epk=epk, enc_ciphertext=enc, out_ciphertext=out)


# =============================================================================
# Receiver side
# =============================================================================
def _parse_plaintext(plaintext: bytes):
    if plaintext[0] != LEAD_BYTE:
        return None
    d = plaintext[1:1 + DIVERSIFIER_SIZE]
    value = int.from_bytes(plaintext[12:20], "little")
    rseed = plaintext[20:52]
    return d, value, rseed


def _shared_secret(epk: bytes, scalar: int) -> Optional[bytes]:
    try:
        return point_mul(PublicKey(epk), scalar).format(compressed=True)
    except ValueError:
        # not a curve point: cannot be one of ours
        return None


def _check_note(pool: str, d: bytes, pk_d: bytes, value: int, rseed: bytes,
                rho: bytes, epk: bytes, cmx: bytes) -> Optional[Note]:
    note = Note(pool, d, pk_d, value, rseed, rho)
    if point_mul(diversified_base(d), note.esk()).format(compressed=True) != epk:
        return None
    if note.commitment() != cmx:
        return None
    return note


def try_compact_note_decryption(pool: str, ivk: int, epk: bytes, cmx: bytes,
                                ciphertext: bytes, rho: bytes = b"") -> Optional[Note]:
    shared = _shared_secret(epk, ivk)
    if shared is None:
        return None
    key = kdf(pool, shared, epk)
    # ChaCha20-Poly1305 encrypts starting at block counter 1
    nonce = (1).to_bytes(4, "little") + _ZERO_NONCE
    dec = Cipher(algorithms.ChaCha20(key, nonce), mode=None).decryptor()
    plaintext = dec.update(ciphertext[:COMPACT_NOTE_SIZE]) + dec.finalize()
    parsed = _parse_plaintext(plaintext)
    if parsed is None:
        return None
    d, value, rseed = parsed
    pk_d = point_mul(diversified_base(d), ivk).format(compressed=True)
    return _check_note(pool, d, pk_d, value, rseed, rho, epk, cmx)


def try_note_decryption(pool: str, ivk: int, epk: bytes, cmx: bytes,
                        enc_ciphertext: bytes, rho: bytes = b"") -> Optional[Tuple[Note, bytes]]:
    shared = _shared_secret(epk, ivk)
    if shared is None:
        return None
    try:
        plaintext = ChaCha20Poly1305(kdf(pool, shared, epk)).decrypt(_ZERO_NONCE, enc_ciphertext, None)
    except InvalidTag:
        return None
    parsed = _parse_plaintext(plaintext)
    if parsed is None:
        return None
    d, value, rseed = parsed
    pk_d = point_mul(diversified_base(d), ivk).format(compressed=True)
    note = _check_note(pool, d, pk_d, value, rseed, rho, epk, cmx)
    if note is None:
        return None
    return note, plaintext[COMPACT_NOTE_SIZE:]


def try_output_recovery(pool: str, ovk: bytes, cv: bytes, cmx: bytes, epk: bytes,
                        enc_ciphertext: bytes, out_ciphertext: bytes,
                        rho: bytes = b"") -> Optional[Tuple[Note, bytes]]:
    ock = derive_ock(pool, ovk, cv, cmx, epk)
    try:
        op = ChaCha20Poly1305(ock).decrypt(_ZERO_NONCE, out_ciphertext, None)
    except InvalidTag:
        return None
    pk_d, esk = op[:POINT_SIZE], int.from_bytes(op[POINT_SIZE:], "big")
    if not 0 < esk < SECP_N:
        return None
    try:
        shared = point_mul(PublicKey(pk_d), esk).format(compressed=True)
    except ValueError:
        return None
    try:
        plaintext = ChaCha20Poly1305(kdf(pool, shared, epk)).decrypt(_ZERO_NONCE, enc_ciphertext, None)
    except InvalidTag:
        return None
    parsed = _parse_plaintext(plaintext)
    if parsed is None:
        return None
    d, value, rseed = parsed
    note = _check_note(pool, d, pk_d, value, rseed, rho, epk, cmx)
    if note is None or note.esk() != esk:
        return None
    return note, plaintext[COMPACT_NOTE_SIZE:]
