# scan_core/capability.py
"""
String-in / string-out boundary of the trial-decryption engine.

Any backend (in process, subprocess, remote) exposes exactly these four
operations. Hex and JSON only, so the boundary can be crossed without shared
memory. Contract:
  decrypt_compact_output  -> JSON note object, or "null" when not ours
  detect_key_type         -> "sapling" | "unified" | "transparent" | "invalid"
  batch_filter_compact_outputs -> JSON [{index, txid, height, scope}, ...]
  decrypt_memo            -> JSON [note, ...] (empty list when nothing is ours)
Malformed input raises MalformedInputError; a non-match never raises.
"""
import json
from abc import ABC, abstractmethod
from typing import List, Optional

from .errors import MalformedOutputError
from .keys import detect_key_type as _detect_key_type
from .scan import (
    DecryptedNote, _as_output, filter_matches, resolve_key,
    try_decrypt_output, try_decrypt_transaction,
)
from .transaction import CompactOutput

ZATOSHI_PER_ZEC = 100_000_000


class TrialDecryptionBackend(ABC):

    @abstractmethod
    def decrypt_compact_output(self, nullifier_hex: str, cmx_hex: str, ephemeral_key_hex: str,
                               ciphertext_hex: str, viewing_key: str) -> str:
        ...

    @abstractmethod
    def detect_key_type(self, viewing_key: str) -> str:
        ...

    @abstractmethod
    def batch_filter_compact_outputs(self, outputs_json: str, viewing_key: str) -> str:
        ...

    @abstractmethod
    def decrypt_memo(self, tx_hex: str, viewing_key: str) -> str:
        ...


def _note_json(note: DecryptedNote) -> dict:
    d = note.to_dict()
    d["amount"] = note.value / ZATOSHI_PER_ZEC
    return d


class LocalBackend(TrialDecryptionBackend):
    """In-process backend on top of scan_core."""

    def __init__(self, max_workers: Optional[int] = None):
        self.max_workers = max_workers

    def decrypt_compact_output(self, nullifier_hex, cmx_hex, ephemeral_key_hex, ciphertext_hex, viewing_key):
        # sapling compact outputs carry no nullifier
        pool = "orchard" if nullifier_hex else "sapling"
        out = CompactOutput(nullifier=nullifier_hex, cmx=cmx_hex, ephemeral_key=ephemeral_key_hex,
                            ciphertext=ciphertext_hex, pool=pool)
        note = try_decrypt_output(out, viewing_key)
        return json.dumps(_note_json(note) if note is not None else None)

    def detect_key_type(self, viewing_key):
        return _detect_key_type(viewing_key)

    def batch_filter_compact_outputs(self, outputs_json, viewing_key):
        try:
            records = json.loads(outputs_json)
        except (TypeError, ValueError) as e:
            raise MalformedOutputError(f"outputs_json is not valid JSON: {e}") from e
        if not isinstance(records, list):
            raise MalformedOutputError("outputs_json must be a JSON array")

        vk = resolve_key(viewing_key)
        if vk is None:
            return "[]"
        outputs: List[CompactOutput] = []
        for i, r in enumerate(records):
            try:
                outputs.append(_as_output(r))
            except MalformedOutputError:
                # keep positions stable; an unusable record can never match
                outputs.append(CompactOutput("", "", "", "", pool="orchard", output_index=i))
        matches = []
        for i in filter_matches(outputs, vk, max_workers=self.max_workers):
            # second pass on the (few) hits only, for the scope
            note = try_decrypt_output(outputs[i], vk)
            matches.append({"index": i, "txid": outputs[i].txid, "height": outputs[i].height,
                            "scope": note.scope if note else None})
        return json.dumps(matches)

    def decrypt_memo(self, tx_hex, viewing_key):
        notes = try_decrypt_transaction(tx_hex, viewing_key)
        return json.dumps([_note_json(n) for n in notes])
