# scan_core/scan.py
"""
Trial decryption and batch filtering.

try_decrypt_output()      one compact output  -> DecryptedNote | None
try_decrypt_transaction() one full transaction -> [DecryptedNote]
filter_matches()          many compact outputs -> ascending indices that matched

"Not for us" is None / []. Only corrupted input raises (MalformedInputError family).
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .errors import MalformedOutputError
from .keys import ORCHARD, SAPLING, PoolTag, PoolViewingKey, Scope, ViewingKey, classify, decode_viewing_key
from .note_encryption import (
    COMPACT_NOTE_SIZE, decode_memo, try_compact_note_decryption,
    try_note_decryption, try_output_recovery,
)
from .primitives import POINT_SIZE, strip0x
from .transaction import CompactOutput, Transaction, parse_transaction

INCOMING = "incoming"
OUTGOING = "outgoing"

SCOPES = (Scope.EXTERNAL, Scope.INTERNAL)

# below this many outputs the thread pool costs more than it saves
PARALLEL_MIN = 64

KeyLike = Union[str, ViewingKey]


@dataclass(frozen=True)
class DecryptedNote:
    value: int
    memo: str
    kind: str
    txid: Optional[str]
    pool: str
    scope: str = Scope.EXTERNAL.name.lower()
    height: Optional[int] = None
    nullifier: Optional[str] = None
    timestamp: Optional[int] = None
    output_index: int = 0
    diversifier: Optional[str] = None  # hex, of the address the note pays

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_key(key: KeyLike) -> Optional[ViewingKey]:
    """Decode a key string; None for keys that cannot own shielded outputs."""
    if isinstance(key, ViewingKey):
        return key
    if classify(key) not in (PoolTag.SAPLING, PoolTag.UNIFIED):
        return None
    return decode_viewing_key(key)


def _unhex(name: str, value: str, sizes) -> bytes:
    if not isinstance(value, str):
        raise MalformedOutputError(f"{name}: expected hex string, got {type(value).__name__}")
    try:
        raw = bytes.fromhex(strip0x(value.strip()))
    except ValueError as e:
        raise MalformedOutputError(f"{name}: invalid hex ({e})") from e
    if len(raw) not in sizes:
        want = " or ".join(str(s) for s in sizes)
        raise MalformedOutputError(f"{name}: expected {want} bytes, got {len(raw)}")
    return raw


def _as_output(item: Union[CompactOutput, Dict[str, Any]]) -> CompactOutput:
    if isinstance(item, CompactOutput):
        return item
    if isinstance(item, dict):
        try:
            return CompactOutput.from_dict(item)
        except (TypeError, ValueError) as e:
            raise MalformedOutputError(f"malformed output record: {e}") from e
    raise MalformedOutputError(f"unsupported output type {type(item).__name__}")


def try_decrypt_output(output: Union[CompactOutput, Dict[str, Any]], key: KeyLike) -> Optional[DecryptedNote]:
    output = _as_output(output)
    # validate before the key check so corruption is reported regardless of key
    pool = output.pool if output.pool in (SAPLING, ORCHARD) else ORCHARD
    if pool == ORCHARD:
        nf = _unhex("nullifier", output.nullifier, (32,))
    else:
        nf = _unhex("nullifier", output.nullifier, (0, 32))
    cmx = _unhex("cmx", output.cmx, (32,))
    epk = _unhex("ephemeral_key", output.ephemeral_key, (POINT_SIZE,))
    ct = _unhex("ciphertext", output.ciphertext, (COMPACT_NOTE_SIZE,))

    vk = resolve_key(key)
    if vk is None:
        return None
    fvk = vk.for_pool(pool)
    if fvk is None:
        return None

    rho = nf if pool == ORCHARD else b""
    for scope in SCOPES:
        note = try_compact_note_decryption(pool, fvk.ivk(scope), epk, cmx, ct, rho)
        if note is not None:
            return DecryptedNote(
                value=note.value, memo="", kind=INCOMING, txid=output.txid, pool=pool,
                scope=scope.name.lower(), height=output.height,
                nullifier=note.nullifier(fvk.nk).hex(), timestamp=output.timestamp,
                output_index=output.output_index, diversifier=note.diversifier.hex(),
            )
    return None


def _decrypt_full(fvk: PoolViewingKey, txid: str, index: int, cv: bytes, cmx: bytes, epk: bytes,
                  enc: bytes, out: bytes, rho: bytes, height: Optional[int],
                  timestamp: Optional[int]) -> Optional[DecryptedNote]:
    pool = fvk.pool
    for scope in SCOPES:
        hit = try_note_decryption(pool, fvk.ivk(scope), epk, cmx, enc, rho)
        if hit is not None:
            note, memo = hit
            return DecryptedNote(
                value=note.value, memo=decode_memo(memo), kind=INCOMING, txid=txid, pool=pool,
                scope=scope.name.lower(), height=height, nullifier=note.nullifier(fvk.nk).hex(),
                timestamp=timestamp, output_index=index, diversifier=note.diversifier.hex(),
            )
    for scope in SCOPES:
        hit = try_output_recovery(pool, fvk.ovk(scope), cv, cmx, epk, enc, out, rho)
        if hit is not None:
            note, memo = hit
            return DecryptedNote(
                value=note.value, memo=decode_memo(memo), kind=OUTGOING, txid=txid, pool=pool,
                scope=scope.name.lower(), height=height, timestamp=timestamp, output_index=index,
                diversifier=note.diversifier.hex(),
            )
    return None


def try_decrypt_transaction(tx: Union[bytes, str, Transaction], key: KeyLike,
                            height: Optional[int] = None,
                            timestamp: Optional[int] = None) -> List[DecryptedNote]:
    """Every note of `tx` visible to `key`: incoming by ivk, otherwise outgoing by ovk.

    An output we received is reported once, as incoming, even when our ovk
    could also recover it.
    """
    if not isinstance(tx, Transaction):
        tx = parse_transaction(tx)
    vk = resolve_key(key)
    if vk is None:
        return []
    txid = tx.txid()
    notes: List[DecryptedNote] = []

    if vk.sapling is not None:
        for i, o in enumerate(tx.sapling_outputs):
            n = _decrypt_full(vk.sapling, txid, i, o.cv, o.cmu, o.epk, o.enc_ciphertext,
                              o.out_ciphertext, b"", height, timestamp)
            if n is not None:
                notes.append(n)
    if vk.orchard is not None:
        for i, a in enumerate(tx.orchard_actions):
            n = _decrypt_full(vk.orchard, txid, i, a.cv, a.cmx, a.epk, a.enc_ciphertext,
                              a.out_ciphertext, a.nullifier, height, timestamp)
            if n is not None:
                notes.append(n)
    return notes


def filter_matches(outputs: Iterable[Union[CompactOutput, Dict[str, Any]]], key: KeyLike,
                   max_workers: Optional[int] = None,
                   on_error: Optional[Callable[[int, Exception], None]] = None,
                   parallel_min: int = PARALLEL_MIN) -> List[int]:
    """
    Indices i (ascending) for which try_decrypt_output(outputs[i], key) matches.
    A malformed item is handed to on_error and skipped; the rest of the batch continues.
    """
    items = list(outputs)
    vk = resolve_key(key)
    if vk is None or not items:
        return []

    def check(i: int) -> bool:
        try:
            return try_decrypt_output(items[i], vk) is not None
        except MalformedOutputError as e:
            if on_error is not None:
                on_error(i, e)
            return False

    if len(items) < parallel_min or max_workers == 1:
        hits = [check(i) for i in range(len(items))]
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            hits = list(pool.map(check, range(len(items))))
    return [i for i, hit in enumerate(hits) if hit]
