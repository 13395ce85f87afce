# shieldscan/watcher.py
# -*- coding: utf-8 -*-
"""
Block watcher: copies new compact blocks from the light-wallet gateway into the
SQLite cache so scans read locally.

Environment (optional):
  DB_PATH=shieldscan_chain.db
  LIGHTWALLETD_URL=http://127.0.0.1:9067
  WATCH_START_HEIGHT=0         # first block to cache on an empty database
  WATCH_BATCH_BLOCKS=4096
  LOOP_INTERVAL_S=5
"""
import os
import time
from typing import Optional

from dotenv import load_dotenv

from .blockstore import DB_PATH, BlockSource, BlockSourceError, LightwalletdSource, SqliteBlockStore

load_dotenv(override=False)

WATCH_START_HEIGHT = int(os.getenv("WATCH_START_HEIGHT", "0"))
WATCH_BATCH_BLOCKS = int(os.getenv("WATCH_BATCH_BLOCKS", "4096"))
LOOP_INTERVAL_S    = float(os.getenv("LOOP_INTERVAL_S", "5"))


def poll_once(store: SqliteBlockStore, upstream: BlockSource,
              batch_blocks: int = WATCH_BATCH_BLOCKS, start_height: int = WATCH_START_HEIGHT) -> int:
    """Cache the next batch of blocks. Returns the number of blocks stored."""
    last = store.get_last_block()
    if last == 0 and start_height > 0:
        last = start_height - 1

    tip = upstream.latest_height()
    if last >= tip:
        return 0

    start = last + 1
    end = min(tip, start + batch_blocks - 1)
    try:
        blocks = list(upstream.iter_blocks(start, end))
    except BlockSourceError as e:
        print(f"❌ [watcher] fetch {start}-{end} failed: {e}")
        return 0

    store.put_blocks(blocks)
    store.set_last_block(end)
    if blocks:
        n_out = sum(len(b.compact_outputs()) for b in blocks)
        print(f"📡 [watcher] blocks {start}-{end}: {len(blocks)} block(s), {n_out} shielded output(s)")
    return len(blocks)


def main(store: Optional[SqliteBlockStore] = None, upstream: Optional[BlockSource] = None):
    upstream = upstream or LightwalletdSource()
    store = store or SqliteBlockStore(DB_PATH)
    print("🔄 [watcher] starting…")
    print(f"💾 Database: {os.path.abspath(store.db_path)}")
    print(f"⛓️  Last cached block: {store.get_last_block()}")

    while True:
        try:
            stored = poll_once(store, upstream)
        except KeyboardInterrupt:
            print("\n👋 Watcher stopped")
            break
        except BlockSourceError as e:
            print(f"❌ [watcher] loop error: {e}")
            stored = 0
        if not stored:
            try:
                time.sleep(LOOP_INTERVAL_S)
            except KeyboardInterrupt:
                print("\n👋 Watcher stopped")
                break


if __name__ == "__main__":
    main()
