# shieldscan/blockstore.py
# -*- coding: utf-8 -*-
"""
Chain data sources for the scanner.

  MemoryBlockSource   in-process, for tests and the demo
  SqliteBlockStore    compact block / raw tx cache (chain data only, never scan results)
  LightwalletdSource  HTTP light-wallet gateway + node JSON-RPC

Environment (optional):
  DB_PATH=shieldscan_chain.db
  LIGHTWALLETD_URL=http://127.0.0.1:9067     # gateway serving POST /lightwalletd/scan
  NODE_RPC_URL=http://127.0.0.1:8232         # getblockchaininfo / getrawtransaction
  HTTP_TIMEOUT_S=10
"""
import json
import os
import sqlite3
from typing import Dict, Iterator, List, Optional, Tuple

import requests

from .scan_core.errors import ConfigurationError
from .scan_core.transaction import CompactBlock, Transaction

# =============================================================================
# Environment
# =============================================================================
DB_PATH          = os.getenv("DB_PATH", "shieldscan_chain.db")
LIGHTWALLETD_URL = os.getenv("LIGHTWALLETD_URL", "http://127.0.0.1:9067")
NODE_RPC_URL     = os.getenv("NODE_RPC_URL", "")
HTTP_TIMEOUT_S   = float(os.getenv("HTTP_TIMEOUT_S", "10"))


class BlockSourceError(RuntimeError):
    """Upstream chain data could not be fetched. Retryable."""


class BlockSource:
    """Minimal light-wallet interface the scanner needs. Heights are inclusive."""

    def latest_height(self) -> int:
        raise NotImplementedError

    def iter_blocks(self, start: int, end: int) -> Iterator[CompactBlock]:
        raise NotImplementedError

    def get_transaction(self, txid: str) -> Optional[bytes]:
        raise NotImplementedError

    def transaction_height(self, txid: str) -> Optional[int]:
        return None

    def close(self):
        pass


# =============================================================================
# In-memory
# =============================================================================
class MemoryBlockSource(BlockSource):

    def __init__(self, tip: Optional[int] = None):
        self._blocks: Dict[int, CompactBlock] = {}
        self._txs: Dict[str, Tuple[bytes, Optional[int]]] = {}
        self.tip = tip

    def add_block(self, height: int, txs: List[Transaction], time: Optional[int] = None) -> CompactBlock:
        block = CompactBlock.from_transactions(height, txs, time=time)
        self._blocks[height] = block
        for tx in txs:
            self._txs[tx.txid()] = (tx.to_bytes(), height)
        return block

    def add_transaction(self, tx: Transaction, height: Optional[int] = None):
        self._txs[tx.txid()] = (tx.to_bytes(), height)

    def latest_height(self) -> int:
        if self.tip is not None:
            return self.tip
        return max(self._blocks) if self._blocks else 0

    def iter_blocks(self, start, end):
        for h in sorted(self._blocks):
            if start <= h <= end:
                yield self._blocks[h]

    def get_transaction(self, txid):
        hit = self._txs.get(txid)
        return hit[0] if hit else None

    def transaction_height(self, txid):
        hit = self._txs.get(txid)
        return hit[1] if hit else None


# =============================================================================
# HTTP gateway
# =============================================================================
class LightwalletdSource(BlockSource):
    """
    Gateway:  POST {base}/lightwalletd/scan {startHeight, endHeight} -> {"blocks": [...]} or [...]
    Node:     JSON-RPC getblockchaininfo (tip), getrawtransaction [txid, 1]

    Outputs are decoded with the secp256k1 note format of scan_core: a 33-byte
    compressed ephemeral key. Gateways serving real Zcash chain data hand out
    32-byte Jubjub / Pallas keys; those outputs are reported as malformed by
    the batch filter and never match, so scanning mainnet through this source
    finds nothing.
    """

    def __init__(self, base_url: str = LIGHTWALLETD_URL, rpc_url: str = NODE_RPC_URL,
                 timeout: float = HTTP_TIMEOUT_S, session: Optional[requests.Session] = None):
        if not base_url:
            raise ConfigurationError("LIGHTWALLETD_URL is not set")
        self.base_url = base_url.rstrip("/")
        self.rpc_url = (rpc_url or base_url).rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def _rpc(self, method: str, params: list):
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            resp = self.http.post(self.rpc_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            raise BlockSourceError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise BlockSourceError(f"{method}: invalid JSON response") from e
        if data.get("error"):
            err = data["error"]
            raise BlockSourceError(f"{method}: {err.get('message', err) if isinstance(err, dict) else err}")
        return data.get("result")

    def latest_height(self) -> int:
        info = self._rpc("getblockchaininfo", [])
        return int((info or {}).get("blocks", 0))

    def iter_blocks(self, start, end):
        try:
            resp = self.http.post(f"{self.base_url}/lightwalletd/scan",
                                  json={"startHeight": start, "endHeight": end}, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            raise BlockSourceError(f"compact blocks {start}-{end} failed: {e}") from e
        except ValueError as e:
            raise BlockSourceError(f"compact blocks {start}-{end}: invalid JSON response") from e
        blocks = data.get("blocks", []) if isinstance(data, dict) else data
        for b in sorted(blocks, key=lambda b: int(b["height"])):
            yield CompactBlock.from_dict(b)

    def _raw(self, txid: str) -> Optional[dict]:
        try:
            res = self._rpc("getrawtransaction", [txid, 1])
        except BlockSourceError as e:
            # node answers "No such mempool or blockchain transaction" as an RPC error
            if "no such" in str(e).lower():
                return None
            raise
        return res if isinstance(res, dict) else None

    def get_transaction(self, txid):
        res = self._raw(txid)
        if not res or not res.get("hex"):
            return None
        return bytes.fromhex(res["hex"])

    def transaction_height(self, txid):
        res = self._raw(txid)
        return int(res["height"]) if res and res.get("height") is not None else None

    def close(self):
        self.http.close()


# =============================================================================
# SQLite cache
# =============================================================================
class SqliteBlockStore(BlockSource):
    """Compact block cache, optionally read-through to an upstream source."""

    def __init__(self, db_path: str = DB_PATH, upstream: Optional[BlockSource] = None):
        self.db_path = db_path
        self.upstream = upstream
        self.ensure_tables()

    def _open_db(self):
        con = sqlite3.connect(self.db_path)
        # WAL: watcher writes while scans read
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.DatabaseError:
            pass
        return con

    def ensure_tables(self):
        con = self._open_db()
        cur = con.cursor()
        cur.execute("""
        CREATE TABLE IF NOT EXISTS meta(
          k TEXT PRIMARY KEY,
          v TEXT
        )""")
        cur.execute("""
        CREATE TABLE IF NOT EXISTS blocks(
          height INTEGER PRIMARY KEY,
          hash TEXT,
          time INTEGER,
          data TEXT,
          created_at INTEGER
        )""")
        cur.execute("""
        CREATE TABLE IF NOT EXISTS transactions(
          txid TEXT PRIMARY KEY,
          height INTEGER,
          raw BLOB,
          created_at INTEGER
        )""")
        cur.execute("INSERT OR IGNORE INTO meta(k,v) VALUES('last_block','0')")
        con.commit()
        con.close()

    # ---- meta ----
    def get_last_block(self) -> int:
        con = self._open_db()
        cur = con.cursor()
        cur.execute("SELECT v FROM meta WHERE k='last_block'")
        row = cur.fetchone()
        con.close()
        return int(row[0]) if row else 0

    def set_last_block(self, h: int):
        con = self._open_db()
        cur = con.cursor()
        cur.execute("UPDATE meta SET v=? WHERE k='last_block'", (str(h),))
        con.commit()
        con.close()

    # ---- writes ----
    def put_blocks(self, blocks: List[CompactBlock]):
        if not blocks:
            return
        con = self._open_db()
        cur = con.cursor()
        cur.executemany("""
          INSERT OR REPLACE INTO blocks(height, hash, time, data, created_at)
          VALUES(?,?,?,?, strftime('%s','now'))
        """, [(b.height, b.hash, b.time, json.dumps(b.to_dict())) for b in blocks])
        con.commit()
        con.close()

    def put_transaction(self, txid: str, raw: bytes, height: Optional[int] = None):
        con = self._open_db()
        cur = con.cursor()
        cur.execute("""
          INSERT OR REPLACE INTO transactions(txid, height, raw, created_at)
          VALUES(?,?,?, strftime('%s','now'))
        """, (txid, height, raw))
        con.commit()
        con.close()

    # ---- BlockSource ----
    def latest_height(self) -> int:
        if self.upstream is not None:
            return self.upstream.latest_height()
        con = self._open_db()
        cur = con.cursor()
        cur.execute("SELECT MAX(height) FROM blocks")
        row = cur.fetchone()
        con.close()
        return int(row[0]) if row and row[0] is not None else 0

    def _stored_blocks(self, start: int, end: int) -> List[CompactBlock]:
        con = self._open_db()
        cur = con.cursor()
        cur.execute("SELECT data FROM blocks WHERE height BETWEEN ? AND ? ORDER BY height", (start, end))
        rows = cur.fetchall()
        con.close()
        return [CompactBlock.from_dict(json.loads(r[0])) for r in rows]

    def iter_blocks(self, start, end):
        # cached prefix is served locally; anything past the cache comes from upstream
        last = self.get_last_block()
        if self.upstream is None or end <= last:
            yield from self._stored_blocks(start, end)
            return
        if start <= last:
            yield from self._stored_blocks(start, last)
            start = last + 1
        contiguous = start <= last + 1
        fetched = list(self.upstream.iter_blocks(start, end))
        self.put_blocks(fetched)
        if contiguous:
            self.set_last_block(end)
        yield from fetched

    def get_transaction(self, txid):
        con = self._open_db()
        cur = con.cursor()
        cur.execute("SELECT raw FROM transactions WHERE txid=?", (txid,))
        row = cur.fetchone()
        con.close()
        if row:
            return bytes(row[0])
        if self.upstream is None:
            return None
        raw = self.upstream.get_transaction(txid)
        if raw is not None:
            self.put_transaction(txid, raw, self.upstream.transaction_height(txid))
        return raw

    def transaction_height(self, txid):
        con = self._open_db()
        cur = con.cursor()
        cur.execute("SELECT height FROM transactions WHERE txid=?", (txid,))
        row = cur.fetchone()
        con.close()
        if row and row[0] is not None:
            return int(row[0])
        return self.upstream.transaction_height(txid) if self.upstream is not None else None

    def close(self):
        if self.upstream is not None:
            self.upstream.close()


def make_block_source(kind: str = None) -> BlockSource:
    """BLOCK_SOURCE=sqlite|lightwalletd|cached (default cached: sqlite over the gateway)."""
    kind = (kind or os.getenv("BLOCK_SOURCE", "cached")).lower()
    if kind == "sqlite":
        return SqliteBlockStore(DB_PATH)
    if kind == "lightwalletd":
        return LightwalletdSource()
    if kind == "cached":
        return SqliteBlockStore(DB_PATH, upstream=LightwalletdSource())
    raise ConfigurationError(f"unknown BLOCK_SOURCE {kind!r}")
