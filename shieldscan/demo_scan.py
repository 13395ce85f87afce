# shieldscan/demo_scan.py
# -*- coding: utf-8 -*-
"""
End-to-end demo without a network: a synthetic chain with one payment to a
dev key, scanned through the envelope exactly as a client would submit it.

  python -m shieldscan.demo_scan
"""
import os
import time

from .blockstore import MemoryBlockSource
from .models import ScanAction, ScanRequest
from .scan_core.crypto import generate_rsa_keypair, load_private_key, seal
from .scan_core.keys import decode_viewing_key, generate_unified_key
from .scan_core.transaction import TransactionBuilder
from .scanner import ScanOrchestrator


def build_chain(viewing_key: str, birthday: int = 1_000_000):
    vk = decode_viewing_key(viewing_key)
    stranger = decode_viewing_key(generate_unified_key(os.urandom(32)))
    source = MemoryBlockSource(tip=birthday + 10)

    pay = (TransactionBuilder()
           .add_orchard_output(vk.orchard.address(), 12_345_678, memo="hello")
           .add_orchard_output(stranger.orchard.address(), 5_000)
           .build())
    noise = TransactionBuilder().add_orchard_output(stranger.orchard.address(), 77).build()
    source.add_block(birthday + 5, [noise, pay], time=int(time.time()))
    return source, pay.txid()


def main():
    private_pem, public_pem = generate_rsa_keypair()
    uvk = generate_unified_key(os.urandom(32))
    source, txid = build_chain(uvk)
    orchestrator = ScanOrchestrator(source, private_key=load_private_key(private_pem))

    env = seal(uvk, public_pem).to_wire()
    req = ScanRequest(birthday=1_000_000, action=ScanAction.ALL, **env)
    resp = orchestrator.scan(req)
    print("balances:", resp.balances.model_dump())
    for h in resp.history:
        print(f"  {h.datetime} {h.kind:8s} {h.value:>12d} {h.txid[:16]}... memos={h.memos}")

    memo = orchestrator.scan(ScanRequest(birthday=1_000_000, action=ScanAction.MEMO, txid=txid, **env))
    print(memo.raw)
    if resp.balances.orchard_balance == 12_345_678:
        print("✅ Found the payment")
    else:
        print("❌ Payment not found")


if __name__ == "__main__":
    main()
