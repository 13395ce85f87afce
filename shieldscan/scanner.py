# shieldscan/scanner.py
# -*- coding: utf-8 -*-
"""
Scan orchestrator: one viewing key, one pass over the chain from its birthday.

- open the envelope (RSA private key of this service) to recover the viewing key
- stream compact blocks [birthday, tip] in chunks of SCAN_CHUNK_BLOCKS
- batch-filter every chunk's compact outputs; fetch the full transaction only
  for hits and for transactions spending one of our nullifiers
- accumulate unspent notes per pool, a per-transaction ledger, then answer
  the fields the requested action asks for

Environment (optional):
  SCAN_CHUNK_BLOCKS=1000
  SCAN_WORKERS=0            # 0 = ThreadPoolExecutor default
  BATCH_PARALLEL_MIN=64
  ALLOW_PLAINTEXT_UVK=false # accept a bare `uvk` field instead of an envelope
"""
import os
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from .blockstore import BlockSource
from .models import Analysis, Balances, ScanAction, ScanRequest, ScanResponse, SyncStatus, TxReport
from .scan_core.crypto import open_envelope
from .scan_core.errors import ConfigurationError, MalformedInputError
from .scan_core.keys import ORCHARD, SAPLING, PoolTag, ViewingKey, classify, decode_viewing_key
from .scan_core.scan import INCOMING, DecryptedNote, filter_matches, try_decrypt_transaction
from .scan_core.transaction import CompactBlock

# =============================================================================
# Environment
# =============================================================================
SCAN_CHUNK_BLOCKS   = int(os.getenv("SCAN_CHUNK_BLOCKS", "1000"))
SCAN_WORKERS        = int(os.getenv("SCAN_WORKERS", "0")) or None
BATCH_PARALLEL_MIN  = int(os.getenv("BATCH_PARALLEL_MIN", "64"))
ALLOW_PLAINTEXT_UVK = os.getenv("ALLOW_PLAINTEXT_UVK", "false").lower() in ("1", "true", "yes")

POOL_LABEL = {ORCHARD: "Orchard", SAPLING: "Sapling"}


class ScanRequestError(ValueError):
    """The request cannot be served as asked (bad key, birthday above tip, ...)."""


class ScanCancelled(Exception):
    pass


def format_block_time(ts: Optional[int]) -> str:
    if not ts:
        return "Unknown"
    return time.strftime("%Y-%m-%d %H:%M:%S UTC", time.gmtime(int(ts)))


# =============================================================================
# Progress
# =============================================================================
@dataclass
class SyncProgress:
    status: str = "not_running"
    start_block: int = 0
    current_block: Optional[int] = None
    latest_block: Optional[int] = None
    tx_count: int = 0
    error: Optional[str] = None
    finished_at: Optional[float] = None  # time.monotonic() of finish / fail
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def begin(self, start: int, tip: int):
        with self._lock:
            self.status = "in_progress"
            self.start_block = start
            self.current_block = start - 1
            self.latest_block = tip
            self.tx_count = 0
            self.error = None
            self.finished_at = None

    def advance(self, height: int, tx_count: int):
        with self._lock:
            self.current_block = height
            self.tx_count = tx_count

    def finish(self):
        with self._lock:
            self.status = "complete"
            self.finished_at = time.monotonic()
            if self.latest_block is not None:
                self.current_block = self.latest_block

    def fail(self, reason: str):
        with self._lock:
            self.status = "error"
            self.error = reason
            self.finished_at = time.monotonic()

    def snapshot(self) -> SyncStatus:
        with self._lock:
            scanned = 0
            pct = 0.0
            if self.current_block is not None and self.latest_block is not None:
                scanned = max(0, self.current_block - self.start_block + 1)
                total = self.latest_block - self.start_block + 1
                pct = 100.0 if total <= 0 else min(100.0, max(0.0, scanned * 100.0 / total))
            return SyncStatus(
                status=self.status, blocks_scanned=scanned, percent_scanned=round(pct, 2),
                tx_count=self.tx_count, error=self.error,
                current_block=self.current_block, latest_block=self.latest_block,
            )


# =============================================================================
# Per-pass ledger
# =============================================================================
@dataclass
class _TxLedger:
    txid: str
    height: Optional[int]
    timestamp: Optional[int]
    received: int = 0
    spent: int = 0
    sent: int = 0
    pools: set = field(default_factory=set)
    in_memos: List[str] = field(default_factory=list)
    out_memos: List[str] = field(default_factory=list)

    @property
    def is_send(self) -> bool:
        return self.spent > 0 or self.sent > 0

    def fee(self) -> Optional[int]:
        # what we put in minus what came back to us minus what went to others
        if self.spent == 0:
            return None
        return max(0, self.spent - self.received - self.sent)

    def add_note(self, note: DecryptedNote):
        self.pools.add(note.pool)
        if note.kind == INCOMING:
            self.received += note.value
            if note.memo:
                self.in_memos.append(note.memo)
        else:
            self.sent += note.value
            if note.memo:
                self.out_memos.append(note.memo)

    def report(self) -> TxReport:
        send = self.is_send
        return TxReport(
            txid=self.txid,
            datetime=format_block_time(self.timestamp),
            kind="Sent" if send else "Received",
            value=self.sent if send else self.received,
            fee=self.fee() if send else None,
            memos=self.in_memos + self.out_memos,
            height=self.height,
        )


@dataclass
class _PassState:
    unspent: Dict[str, DecryptedNote] = field(default_factory=dict)
    ledger: Dict[str, _TxLedger] = field(default_factory=dict)


# =============================================================================
# Orchestrator
# =============================================================================
class ScanOrchestrator:

    def __init__(self, source: BlockSource, private_key: Optional[rsa.RSAPrivateKey] = None,
                 chunk_blocks: int = SCAN_CHUNK_BLOCKS, max_workers: Optional[int] = SCAN_WORKERS,
                 parallel_min: int = BATCH_PARALLEL_MIN, allow_plaintext: bool = ALLOW_PLAINTEXT_UVK):
        if chunk_blocks < 1:
            raise ConfigurationError("SCAN_CHUNK_BLOCKS must be >= 1")
        self.source = source
        self.private_key = private_key
        self.chunk_blocks = chunk_blocks
        self.max_workers = max_workers
        self.parallel_min = parallel_min
        self.allow_plaintext = allow_plaintext

    # ---- key ----
    def recover_key(self, request: ScanRequest) -> str:
        envelope = request.envelope()
        if envelope is not None:
            if self.private_key is None:
                raise ConfigurationError("scanner has no private key to open envelopes")
            return open_envelope(envelope, self.private_key)
        if request.uvk and self.allow_plaintext:
            return request.uvk
        raise ScanRequestError("plaintext viewing keys are not accepted; send an encryption envelope")

    def viewing_key(self, raw_key: str) -> Optional[ViewingKey]:
        """None for a transparent address (nothing shielded to scan)."""
        tag = classify(raw_key)
        if tag == PoolTag.INVALID:
            raise ScanRequestError("Invalid viewing key")
        if tag == PoolTag.TRANSPARENT:
            return None
        return decode_viewing_key(raw_key)

    # ---- entry point ----
    def scan(self, request: ScanRequest, progress: Optional[SyncProgress] = None,
             cancel: Optional[threading.Event] = None) -> ScanResponse:
        vk = self.viewing_key(self.recover_key(request))
        if request.action == ScanAction.MEMO:
            return self.memo(request.txid, vk)
        return self.run_pass(vk, request.birthday, request.action, progress, cancel)

    def run_pass(self, vk: Optional[ViewingKey], birthday: int, action: ScanAction = ScanAction.ALL,
                 progress: Optional[SyncProgress] = None,
                 cancel: Optional[threading.Event] = None) -> ScanResponse:
        progress = progress if progress is not None else SyncProgress()
        tip = self.source.latest_height()
        if birthday > tip:
            raise ScanRequestError(f"birthday {birthday} is above the chain tip {tip}")

        label = vk.fingerprint() if vk is not None else "transparent"
        print(f"🔍 [scanner] key={label} blocks {birthday}-{tip} chunk={self.chunk_blocks}")
        progress.begin(birthday, tip)
        state = _PassState()
        try:
            for start in range(birthday, tip + 1, self.chunk_blocks):
                if cancel is not None and cancel.is_set():
                    raise ScanCancelled(f"scan cancelled at block {start}")
                end = min(tip, start + self.chunk_blocks - 1)
                if vk is not None:
                    blocks = list(self.source.iter_blocks(start, end))
                    self._scan_chunk(blocks, vk, state)
                progress.advance(end, len(state.ledger))
        except Exception as e:
            progress.fail(str(e))
            raise
        progress.finish()
        print(f"✅ [scanner] key={label} done: {len(state.ledger)} tx, {len(state.unspent)} unspent notes")
        return self._respond(state, action, tip)

    # ---- chunk ----
    def _scan_chunk(self, blocks: List[CompactBlock], vk: ViewingKey, state: _PassState):
        outputs = [o for b in blocks for o in b.compact_outputs()]
        times = {b.height: b.time for b in blocks}

        def on_error(i: int, err: Exception):
            o = outputs[i]
            print(f"[scanner] ⚠️ malformed output tx={o.txid} height={o.height}: {err}")

        hits = filter_matches(outputs, vk, max_workers=self.max_workers,
                              on_error=on_error, parallel_min=self.parallel_min)
        to_fetch: Dict[str, int] = {}
        for i in hits:
            to_fetch.setdefault(outputs[i].txid, outputs[i].height)
        for txid, height in to_fetch.items():
            self._decrypt_tx(txid, height, times.get(height), vk, state)

        # our notes spent in this chunk (received earlier, or in this chunk above)
        for b in blocks:
            for txid, pool, nf in b.spent_nullifiers():
                note = state.unspent.get(nf)
                if note is None or note.pool != pool:
                    continue
                del state.unspent[nf]
                if txid not in state.ledger:
                    self._decrypt_tx(txid, b.height, b.time, vk, state)
                entry = state.ledger[txid]
                entry.spent += note.value
                entry.pools.add(pool)

    def _decrypt_tx(self, txid: str, height: int, timestamp: Optional[int], vk: ViewingKey,
                    state: _PassState):
        if txid in state.ledger:
            return
        entry = state.ledger[txid] = _TxLedger(txid, height, timestamp)
        raw = self.source.get_transaction(txid)
        if raw is None:
            print(f"[scanner] ⚠️ full transaction {txid} unavailable at height {height}")
            return
        try:
            notes = try_decrypt_transaction(raw, vk, height=height, timestamp=timestamp)
        except MalformedInputError as e:
            print(f"[scanner] ⚠️ malformed transaction {txid} at height {height}: {e}")
            return
        for note in notes:
            entry.add_note(note)
            if note.kind == INCOMING and note.nullifier:
                state.unspent[note.nullifier] = note
        print(f"[scanner] ✅ MATCH tx={txid} height={height} received={entry.received} sent={entry.sent}")

    # ---- memo (no chain pass) ----
    def memo(self, txid: str, vk: Optional[ViewingKey]) -> ScanResponse:
        raw = self.source.get_transaction(txid)
        if raw is None:
            return ScanResponse(history=[], raw="Transaction not found.")
        height = self.source.transaction_height(txid)
        ts = None
        if height is not None:
            for b in self.source.iter_blocks(height, height):
                ts = b.time
        notes = try_decrypt_transaction(raw, vk, height=height, timestamp=ts) if vk is not None else []
        if not notes:
            return ScanResponse(history=[], raw="No memos found.")

        entry = _TxLedger(txid, height, ts)
        for n in notes:
            entry.add_note(n)
        memos = entry.in_memos + entry.out_memos
        lines = [f"Memo {i}: {m}" for i, m in enumerate(memos, 1)] or ["No memos found."]
        return ScanResponse(history=[entry.report()], raw="\n".join(lines))

    # ---- response ----
    def _respond(self, state: _PassState, action: ScanAction, tip: int) -> ScanResponse:
        entries = sorted(state.ledger.values(), key=lambda e: (e.height or 0))
        history = [e.report() for e in entries]
        resp = ScanResponse()
        if action.wants_balances:
            bal = Balances()
            for note in state.unspent.values():
                if note.pool == ORCHARD:
                    bal.orchard_balance += note.value
                else:
                    bal.sapling_balance += note.value
            resp.balances = bal
        if action.wants_analysis:
            resp.analysis = self._analysis(entries, history, tip)
        if action.wants_history:
            resp.history = history
        return resp

    @staticmethod
    def _analysis(entries: List[_TxLedger], history: List[TxReport], tip: int) -> Analysis:
        a = Analysis(last_synced_height=tip)
        a.total_transactions = len(history)
        a.total_received = sum(r.value for r in history if r.kind == "Received")
        a.total_sent = sum(r.value for r in history if r.kind == "Sent")
        a.total_fees = sum(r.fee or 0 for r in history)
        if history:
            a.avg_transaction_value = (a.total_received + a.total_sent) / len(history)

        days = Counter(r.datetime[:10] for r in history if r.datetime != "Unknown")
        if days:
            # ties go to the earliest day
            day, count = min(days.items(), key=lambda kv: (-kv[1], kv[0]))
            a.most_active_day, a.most_active_day_count = day, count

        for e in entries:
            for pool in e.pools:
                a.pool_distribution[POOL_LABEL[pool]] += 1
        a.type_distribution["Incoming"] = sum(1 for r in history if r.kind == "Received")
        a.type_distribution["Outgoing"] = sum(1 for r in history if r.kind == "Sent")
        return a
