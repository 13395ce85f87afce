# scan_core/transaction.py
"""
Transactions and compact blocks.

Binary layout (v5, all integers little endian)
  header         u32 (version | overwintered bit), version group id u32,
                 consensus branch id u32, lock time u32, expiry height u32
  transparent    compactsize n, n * (prev txid 32 | index u32 | script | sequence u32)
                 compactsize n, n * (value u64 | script)
  sapling        compactsize n, n * (cv 32 | nf 32 | rk 32)
                 compactsize n, n * (cv 32 | cmu 32 | epk 33 | enc 580 | out 81)
                 value balance i64            (only if any spend or output)
  orchard        compactsize n, n * (cv 32 | nf 32 | rk 32 | cmx 32 | epk 33 | enc 580 | out 81)
                 flags u8 | value balance i64 | anchor 32   (only if any action)

The compact form (what a light-wallet gateway serves) keeps nullifiers, note
commitments, ephemeral keys and the first 52 bytes of every note ciphertext.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import MalformedTransactionError
from .keys import ORCHARD, SAPLING, PaymentAddress, generate_pool_key
from .note_encryption import (
    COMPACT_NOTE_SIZE, ENC_CIPHERTEXT_SIZE, OUT_CIPHERTEXT_SIZE,
    encode_memo, encrypt_note, new_note,
)
from .primitives import POINT_SIZE, blake2b_256, read_compactsize, strip0x, write_compactsize

TX_VERSION = 5
OVERWINTERED = 1 << 31
VERSION_GROUP_ID = 0x26A7270A
NU5_BRANCH_ID = 0xC2D6D0B4

ORCHARD_FLAGS_DEFAULT = 0x03  # spends and outputs enabled

_SAPLING_SPEND_SIZE = 96
_SAPLING_OUTPUT_SIZE = 32 + 32 + POINT_SIZE + ENC_CIPHERTEXT_SIZE + OUT_CIPHERTEXT_SIZE
_ORCHARD_ACTION_SIZE = 32 * 4 + POINT_SIZE + ENC_CIPHERTEXT_SIZE + OUT_CIPHERTEXT_SIZE


@dataclass(frozen=True)
class TransparentInput:
    prev_txid: bytes
    prev_index: int
    script: bytes = b""
    sequence: int = 0xFFFFFFFF


@dataclass(frozen=True)
class TransparentOutput:
    value: int
    script: bytes = b""


@dataclass(frozen=True)
class SaplingSpend:
    cv: bytes
    nullifier: bytes
    rk: bytes


@dataclass(frozen=True)
class SaplingOutput:
    cv: bytes
    cmu: bytes
    epk: bytes
    enc_ciphertext: bytes
    out_ciphertext: bytes


@dataclass(frozen=True)
class OrchardAction:
    cv: bytes
    nullifier: bytes
    rk: bytes
    cmx: bytes
    epk: bytes
    enc_ciphertext: bytes
    out_ciphertext: bytes


@dataclass
class Transaction:
    branch_id: int = NU5_BRANCH_ID
    lock_time: int = 0
    expiry_height: int = 0
    transparent_inputs: List[TransparentInput] = field(default_factory=list)
    transparent_outputs: List[TransparentOutput] = field(default_factory=list)
    sapling_spends: List[SaplingSpend] = field(default_factory=list)
    sapling_outputs: List[SaplingOutput] = field(default_factory=list)
    sapling_value_balance: int = 0
    orchard_actions: List[OrchardAction] = field(default_factory=list)
    orchard_flags: int = ORCHARD_FLAGS_DEFAULT
    orchard_value_balance: int = 0
    orchard_anchor: bytes = b"\x00" * 32

    # ---- serialization ----
    def to_bytes(self) -> bytes:
        out = bytearray()
        for v in (TX_VERSION | OVERWINTERED, VERSION_GROUP_ID, self.branch_id, self.lock_time, self.expiry_height):
            out += v.to_bytes(4, "little")

        out += write_compactsize(len(self.transparent_inputs))
        for txin in self.transparent_inputs:
            out += txin.prev_txid + txin.prev_index.to_bytes(4, "little")
            out += write_compactsize(len(txin.script)) + txin.script
            out += txin.sequence.to_bytes(4, "little")
        out += write_compactsize(len(self.transparent_outputs))
        for txout in self.transparent_outputs:
            out += txout.value.to_bytes(8, "little")
            out += write_compactsize(len(txout.script)) + txout.script

        out += write_compactsize(len(self.sapling_spends))
        for sp in self.sapling_spends:
            out += sp.cv + sp.nullifier + sp.rk
        out += write_compactsize(len(self.sapling_outputs))
        for o in self.sapling_outputs:
            out += o.cv + o.cmu + o.epk + o.enc_ciphertext + o.out_ciphertext
        if self.sapling_spends or self.sapling_outputs:
            out += self.sapling_value_balance.to_bytes(8, "little", signed=True)

        out += write_compactsize(len(self.orchard_actions))
        for a in self.orchard_actions:
            out += a.cv + a.nullifier + a.rk + a.cmx + a.epk + a.enc_ciphertext + a.out_ciphertext
        if self.orchard_actions:
            out += bytes([self.orchard_flags])
            out += self.orchard_value_balance.to_bytes(8, "little", signed=True)
            out += self.orchard_anchor
        return bytes(out)

    def to_hex(self) -> str:
        return self.to_bytes().hex()

    def txid_bytes(self) -> bytes:
        return blake2b_256(b"ZcashTxHash_" + self.branch_id.to_bytes(4, "little"), self.to_bytes())

    def txid(self) -> str:
        """Display form: byte-reversed hex, as block explorers show it."""
        return self.txid_bytes()[::-1].hex()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Transaction":
        r = _Reader(data)
        header = r.u32()
        if header != TX_VERSION | OVERWINTERED:
            raise MalformedTransactionError(f"unsupported transaction header 0x{header:08x}")
        group = r.u32()
        if group != VERSION_GROUP_ID:
            raise MalformedTransactionError(f"unexpected version group id 0x{group:08x}")
        tx = cls(branch_id=r.u32(), lock_time=r.u32(), expiry_height=r.u32())

        for _ in range(r.count(41)):
            prev, idx = r.take(32), r.u32()
            tx.transparent_inputs.append(TransparentInput(prev, idx, r.take(r.count(1)), r.u32()))
        for _ in range(r.count(9)):
            value = r.u64()
            tx.transparent_outputs.append(TransparentOutput(value, r.take(r.count(1))))

        for _ in range(r.count(_SAPLING_SPEND_SIZE)):
            tx.sapling_spends.append(SaplingSpend(r.take(32), r.take(32), r.take(32)))
        for _ in range(r.count(_SAPLING_OUTPUT_SIZE)):
            tx.sapling_outputs.append(SaplingOutput(
                r.take(32), r.take(32), r.take(POINT_SIZE),
                r.take(ENC_CIPHERTEXT_SIZE), r.take(OUT_CIPHERTEXT_SIZE)))
        if tx.sapling_spends or tx.sapling_outputs:
            tx.sapling_value_balance = r.i64()

        for _ in range(r.count(_ORCHARD_ACTION_SIZE)):
            tx.orchard_actions.append(OrchardAction(
                r.take(32), r.take(32), r.take(32), r.take(32), r.take(POINT_SIZE),
                r.take(ENC_CIPHERTEXT_SIZE), r.take(OUT_CIPHERTEXT_SIZE)))
        if tx.orchard_actions:
            tx.orchard_flags = r.take(1)[0]
            tx.orchard_value_balance = r.i64()
            tx.orchard_anchor = r.take(32)

        if r.remaining():
            raise MalformedTransactionError(f"{r.remaining()} trailing bytes after transaction")
        return tx


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def remaining(self) -> int:
        return len(self.data) - self.pos

    def take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.data):
            raise MalformedTransactionError(f"truncated at offset {self.pos}: need {n} bytes")
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def u32(self) -> int:
        return int.from_bytes(self.take(4), "little")

    def u64(self) -> int:
        return int.from_bytes(self.take(8), "little")

    def i64(self) -> int:
        return int.from_bytes(self.take(8), "little", signed=True)

    def count(self, min_item_size: int) -> int:
        try:
            n, self.pos = read_compactsize(self.data, self.pos)
        except ValueError as e:
            raise MalformedTransactionError(f"bad length prefix at offset {self.pos}: {e}") from e
        if n * min_item_size > self.remaining():
            raise MalformedTransactionError(f"item count {n} exceeds remaining data")
        return n


def parse_transaction(data: Union[bytes, str]) -> Transaction:
    """Accepts raw bytes or a hex string (optionally 0x prefixed)."""
    if isinstance(data, str):
        try:
            data = bytes.fromhex(strip0x(data.strip()))
        except ValueError as e:
            raise MalformedTransactionError(f"transaction is not valid hex: {e}") from e
    if not data:
        raise MalformedTransactionError("empty transaction")
    return Transaction.from_bytes(bytes(data))


# =============================================================================
# Compact blocks
# =============================================================================
@dataclass(frozen=True)
class CompactOutput:
    """One shielded output as served by a light-wallet gateway. Byte fields are hex.

    `nullifier` is the action nullifier for orchard and empty for sapling outputs.
    """
    nullifier: str
    cmx: str
    ephemeral_key: str
    ciphertext: str
    txid: Optional[str] = None
    height: Optional[int] = None
    timestamp: Optional[int] = None
    pool: str = ORCHARD
    output_index: int = 0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CompactOutput":
        return cls(
            nullifier=d.get("nullifier") or d.get("nf") or "",
            cmx=d.get("cmx") or d.get("cmu") or "",
            ephemeral_key=d.get("ephemeral_key") or d.get("ephemeralKey") or d.get("epk") or "",
            ciphertext=d.get("ciphertext") or "",
            txid=d.get("txid"),
            height=d.get("height"),
            timestamp=d.get("timestamp"),
            pool=d.get("pool") or (ORCHARD if d.get("nullifier") else SAPLING if "cmu" in d else ORCHARD),
            output_index=int(d.get("output_index", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nullifier": self.nullifier,
            "cmx": self.cmx,
            "ephemeral_key": self.ephemeral_key,
            "ciphertext": self.ciphertext,
            "txid": self.txid,
            "height": self.height,
            "timestamp": self.timestamp,
            "pool": self.pool,
            "output_index": self.output_index,
        }


@dataclass
class CompactTx:
    index: int
    txid: str
    sapling_spends: List[str] = field(default_factory=list)
    sapling_outputs: List[Dict[str, str]] = field(default_factory=list)
    actions: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_transaction(cls, tx: Transaction, index: int = 0) -> "CompactTx":
        return cls(
            index=index,
            txid=tx.txid(),
            sapling_spends=[sp.nullifier.hex() for sp in tx.sapling_spends],
            sapling_outputs=[{
                "cmu": o.cmu.hex(),
                "ephemeralKey": o.epk.hex(),
                "ciphertext": o.enc_ciphertext[:COMPACT_NOTE_SIZE].hex(),
            } for o in tx.sapling_outputs],
            actions=[{
                "nullifier": a.nullifier.hex(),
                "cmx": a.cmx.hex(),
                "ephemeralKey": a.epk.hex(),
                "ciphertext": a.enc_ciphertext[:COMPACT_NOTE_SIZE].hex(),
            } for a in tx.orchard_actions],
        )

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CompactTx":
        return cls(
            index=int(d.get("index", 0)),
            txid=d["hash"],
            sapling_spends=[s["nf"] for s in d.get("spends", [])],
            sapling_outputs=list(d.get("outputs", [])),
            actions=list(d.get("actions", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "hash": self.txid,
            "spends": [{"nf": nf} for nf in self.sapling_spends],
            "outputs": self.sapling_outputs,
            "actions": self.actions,
        }


@dataclass
class CompactBlock:
    height: int
    hash: str = ""
    time: Optional[int] = None
    vtx: List[CompactTx] = field(default_factory=list)

    @classmethod
    def from_transactions(cls, height: int, txs: List[Transaction], time: Optional[int] = None,
                          block_hash: str = "") -> "CompactBlock":
        vtx = [CompactTx.from_transaction(tx, i) for i, tx in enumerate(txs)]
        if not block_hash:
            block_hash = blake2b_256(b"ZcashBlockHash", height.to_bytes(4, "little"),
                                     *(bytes.fromhex(t.txid) for t in vtx))[::-1].hex()
        return cls(height=height, hash=block_hash, time=time, vtx=vtx)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CompactBlock":
        try:
            return cls(
                height=int(d["height"]),
                hash=d.get("hash", ""),
                time=d.get("time"),
                vtx=[CompactTx.from_dict(t) for t in d.get("vtx", [])],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedTransactionError(f"malformed compact block: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {"height": self.height, "hash": self.hash, "time": self.time,
                "vtx": [t.to_dict() for t in self.vtx]}

    def compact_outputs(self) -> List[CompactOutput]:
        """All shielded outputs in block order: per transaction, sapling outputs then orchard actions."""
        out: List[CompactOutput] = []
        for tx in self.vtx:
            for i, o in enumerate(tx.sapling_outputs):
                out.append(CompactOutput(
                    nullifier="", cmx=o["cmu"], ephemeral_key=o["ephemeralKey"],
                    ciphertext=o["ciphertext"], txid=tx.txid, height=self.height,
                    timestamp=self.time, pool=SAPLING, output_index=i))
            for i, a in enumerate(tx.actions):
                out.append(CompactOutput(
                    nullifier=a["nullifier"], cmx=a["cmx"], ephemeral_key=a["ephemeralKey"],
                    ciphertext=a["ciphertext"], txid=tx.txid, height=self.height,
                    timestamp=self.time, pool=ORCHARD, output_index=i))
        return out

    def spent_nullifiers(self) -> List[Tuple[str, str, str]]:
        """(txid, pool, nullifier hex) for every shielded spend in the block."""
        out: List[Tuple[str, str, str]] = []
        for tx in self.vtx:
            out.extend((tx.txid, SAPLING, nf) for nf in tx.sapling_spends)
            out.extend((tx.txid, ORCHARD, a["nullifier"]) for a in tx.actions)
        return out


# =============================================================================
# Builder (sender side; tests and demo)
# =============================================================================
class TransactionBuilder:
    """Assembles a shielded transaction with real note encryption.

    Orchard spends and outputs are paired into actions. Unpaired slots are
    filled with dummies: a random nullifier for a missing spend, a zero-value
    note to a throwaway address for a missing output.
    """

    def __init__(self, branch_id: int = NU5_BRANCH_ID, expiry_height: int = 0):
        self.tx = Transaction(branch_id=branch_id, expiry_height=expiry_height)
        self._sapling_in = 0
        self._sapling_out = 0
        self._orchard_spends: List[Tuple[bytes, int]] = []
        self._orchard_outputs: List[Tuple[PaymentAddress, int, str, Optional[bytes]]] = []

    def add_transparent_input(self, prev_txid: bytes, prev_index: int, script: bytes = b""):
        self.tx.transparent_inputs.append(TransparentInput(prev_txid, prev_index, script))
        return self

    def add_transparent_output(self, value: int, script: bytes = b""):
        self.tx.transparent_outputs.append(TransparentOutput(value, script))
        return self

    def add_sapling_spend(self, nullifier: bytes, value: int = 0):
        self.tx.sapling_spends.append(SaplingSpend(os.urandom(32), nullifier, os.urandom(32)))
        self._sapling_in += value
        return self

    def add_sapling_output(self, address: PaymentAddress, value: int, memo: str = "",
                           ovk: Optional[bytes] = None):
        if address.pool != SAPLING:
            raise ValueError("sapling output needs a sapling address")
        note = new_note(address, value)
        enc = encrypt_note(note, encode_memo(memo), ovk)
        self.tx.sapling_outputs.append(
            SaplingOutput(enc.cv, enc.cmx, enc.epk, enc.enc_ciphertext, enc.out_ciphertext))
        self._sapling_out += value
        return self

    def add_orchard_spend(self, nullifier: bytes, value: int = 0):
        self._orchard_spends.append((nullifier, value))
        return self

    def add_orchard_output(self, address: PaymentAddress, value: int, memo: str = "",
                           ovk: Optional[bytes] = None):
        if address.pool != ORCHARD:
            raise ValueError("orchard output needs an orchard address")
        self._orchard_outputs.append((address, value, memo, ovk))
        return self

    def build(self) -> Transaction:
        tx = self.tx
        if tx.sapling_spends or tx.sapling_outputs:
            tx.sapling_value_balance = self._sapling_in - self._sapling_out

        n = max(len(self._orchard_spends), len(self._orchard_outputs))
        value_in = value_out = 0
        for i in range(n):
            if i < len(self._orchard_spends):
                nf, v = self._orchard_spends[i]
                value_in += v
            else:
                nf = os.urandom(32)
            if i < len(self._orchard_outputs):
                address, value, memo, ovk = self._orchard_outputs[i]
            else:
                address, value, memo, ovk = generate_pool_key(ORCHARD, os.urandom(32)).address(), 0, "", None
            value_out += value
            # the spent nullifier of an action is the rho of its output note
            note = new_note(address, value, rho=nf)
            enc = encrypt_note(note, encode_memo(memo), ovk)
            tx.orchard_actions.append(OrchardAction(
                enc.cv, nf, os.urandom(32), enc.cmx, enc.epk, enc.enc_ciphertext, enc.out_ciphertext))
        if n:
            tx.orchard_value_balance = value_in - value_out
        return tx
