import threading
import time

import pytest
from fastapi.testclient import TestClient

from shieldscan.blockstore import MemoryBlockSource
from shieldscan.models import ScanAction, ScanRequest
from shieldscan.scan_core.crypto import seal
from shieldscan.scan_core.transaction import TransactionBuilder
from shieldscan.scanner import ScanCancelled, ScanOrchestrator
from shieldscan.server import ScanService, create_app

BIRTHDAY = 1_000_000


@pytest.fixture
def service(orchestrator):
    svc = ScanService(orchestrator, max_concurrent=2)
    yield svc
    svc.close()


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


@pytest.fixture
def paid_tx(source, vk, other_vk):
    tx = (TransactionBuilder()
          .add_orchard_output(vk.orchard.address(), 12_345_678, memo="hello")
          .add_orchard_output(other_vk.orchard.address(), 1)
          .build())
    source.add_block(BIRTHDAY + 5, [tx], time=1_700_000_000)
    return tx


def _body(uvk, pem, **kw):
    body = seal(uvk, pem).to_wire()
    body["birthday"] = BIRTHDAY
    body.update(kw)
    return body


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_public_key_round_trip(client, public_pem):
    r = client.get("/public_key")
    assert r.status_code == 200
    assert r.json()["public_key"] == public_pem


def test_scan_all(client, paid_tx, uvk, public_pem):
    r = client.post("/scan", json=_body(uvk, public_pem, action="all"))
    assert r.status_code == 200
    data = r.json()
    assert data["balances"]["orchard_balance"] == 12_345_678
    assert data["history"][0]["txid"] == paid_tx.txid()
    assert data["history"][0]["memos"] == ["hello"]
    assert "analysis" in data
    assert data["session_id"]


def test_scan_summary_omits_history(client, paid_tx, uvk, public_pem):
    data = client.post("/scan", json=_body(uvk, public_pem, action="summary")).json()
    assert "history" not in data
    assert set(data) >= {"balances", "analysis"}


def test_scan_history_only(client, paid_tx, uvk, public_pem):
    data = client.post("/scan", json=_body(uvk, public_pem, action="history")).json()
    assert "balances" not in data and "analysis" not in data
    assert set(data) == {"history", "session_id"}
    assert len(data["history"]) == 1


def test_scan_memo(client, paid_tx, uvk, public_pem):
    data = client.post("/scan", json=_body(uvk, public_pem, action="memo", txid=paid_tx.txid())).json()
    assert data["raw"] == "Memo 1: hello"


def test_memo_without_txid(client, uvk, public_pem):
    r = client.post("/scan", json=_body(uvk, public_pem, action="memo"))
    assert r.status_code == 400
    assert "txid" in r.json()["error"]


def test_missing_birthday(client, uvk, public_pem):
    body = seal(uvk, public_pem).to_wire()
    r = client.post("/scan", json=body)
    assert r.status_code == 400
    assert r.json() == {"error": "Missing UVK or Birthday"}


def test_missing_key(client):
    r = client.post("/scan", json={"birthday": BIRTHDAY})
    assert r.status_code == 400
    assert r.json() == {"error": "Missing UVK or Birthday"}


def test_unknown_action(client, uvk, public_pem):
    r = client.post("/scan", json=_body(uvk, public_pem, action="everything"))
    assert r.status_code == 400
    assert "error" in r.json()


def test_invalid_key(client, public_pem):
    r = client.post("/scan", json=_body("not a key", public_pem))
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid viewing key"


def test_tampered_envelope(client, uvk, public_pem):
    body = _body(uvk, public_pem)
    body["iv"] = seal(uvk, public_pem).iv
    r = client.post("/scan", json=body)
    assert r.status_code == 400
    assert "envelope" in r.json()["error"]


def test_birthday_above_tip(client, uvk, public_pem):
    r = client.post("/scan", json=_body(uvk, public_pem, birthday=BIRTHDAY + 100))
    assert r.status_code == 400


def test_status_unknown_session(client):
    r = client.get("/sync/status", params={"session_id": "nope"})
    assert r.status_code == 200
    assert r.json()["status"] == "not_running"


def test_status_after_scan(client, paid_tx, uvk, public_pem):
    sid = client.post("/scan", json=_body(uvk, public_pem, session_id="s-1")).json()["session_id"]
    assert sid == "s-1"
    status = client.get("/sync/status", params={"session_id": sid}).json()
    assert status["status"] == "complete"
    assert status["percent_scanned"] == 100.0




# =============================================================================
# Coalescing, cancellation and session expiry
# =============================================================================
class GatedSource(MemoryBlockSource):
    """Blocks every chunk read until `release` is set."""

    def __init__(self, tip):
        super().__init__(tip=tip)
        self.entered = threading.Event()
        self.release = threading.Event()

    def iter_blocks(self, start, end):
        self.entered.set()
        self.release.wait(5)
        yield from super().iter_blocks(start, end)


@pytest.fixture
def gated(private_key):
    src = GatedSource(tip=BIRTHDAY + 10)
    orch = ScanOrchestrator(src, private_key=private_key, chunk_blocks=4, allow_plaintext=True)
    svc = ScanService(orch, max_concurrent=2)
    yield src, svc
    src.release.set()
    svc.close()


def _request(uvk, pem, **kw):
    kw.setdefault("birthday", BIRTHDAY)
    return ScanRequest(**seal(uvk, pem).to_wire(), **kw)


def test_coalesced_submit(gated, uvk, public_pem):
    """A second request for the same key and birthday joins the running pass."""
    src, svc = gated
    sid1, fut1 = svc.submit(_request(uvk, public_pem, action=ScanAction.HISTORY))
    assert src.entered.wait(5)
    sid2, fut2 = svc.submit(_request(uvk, public_pem, action=ScanAction.SUMMARY))
    assert fut2 is fut1
    assert svc.in_flight() == 1
    assert svc.status(sid2).status == "in_progress"

    src.release.set()
    result = fut1.result(timeout=5)
    assert result.balances is not None and result.history is not None
    svc.detach(sid1)
    svc.detach(sid2)
    assert svc.status(sid1).status == svc.status(sid2).status == "complete"


def test_last_caller_leaving_cancels_pass(gated, uvk, public_pem):
    src, svc = gated
    sid, fut = svc.submit(_request(uvk, public_pem))
    assert src.entered.wait(5)
    svc.detach(sid)
    src.release.set()
    with pytest.raises(ScanCancelled):
        fut.result(timeout=5)
    status = svc.status(sid)
    assert status.status == "error"
    assert "cancelled" in status.error


def test_pass_survives_while_a_caller_waits(gated, uvk, public_pem):
    src, svc = gated
    sid1, fut = svc.submit(_request(uvk, public_pem))
    assert src.entered.wait(5)
    sid2, _ = svc.submit(_request(uvk, public_pem))
    svc.detach(sid1)
    src.release.set()
    assert fut.result(timeout=5).balances.orchard_balance == 0
    svc.detach(sid2)
    assert svc.status(sid2).status == "complete"


def test_detach_after_finish_is_harmless(service, uvk, public_pem):
    sid, fut = service.submit(_request(uvk, public_pem))
    fut.result(timeout=5)
    service.detach(sid)
    service.detach(sid)
    assert service.status(sid).status == "complete"


def test_finished_sessions_expire(orchestrator, uvk, public_pem):
    svc = ScanService(orchestrator, max_concurrent=1, session_ttl=0.05)
    try:
        sid, fut = svc.submit(_request(uvk, public_pem, session_id="s-ttl"))
        fut.result(timeout=5)
        assert svc.status(sid).status == "complete"
        time.sleep(0.1)
        assert svc.status(sid).status == "not_running"
        assert sid not in svc._sessions
    finally:
        svc.close()


def test_finished_sessions_are_bounded(orchestrator, uvk, public_pem):
    svc = ScanService(orchestrator, max_concurrent=1, max_sessions=2)
    try:
        for sid in ("s-1", "s-2", "s-3"):
            _, fut = svc.submit(_request(uvk, public_pem, session_id=sid))
            fut.result(timeout=5)
            svc.detach(sid)
        assert svc.status("s-1").status == "not_running"
        assert svc.status("s-2").status == "complete"
        assert svc.status("s-3").status == "complete"
        assert len(svc._sessions) <= 2
    finally:
        svc.close()


def test_memo_session_finishes(service, paid_tx, uvk, public_pem):
    sid, fut = service.submit(_request(uvk, public_pem, action=ScanAction.MEMO, txid=paid_tx.txid()))
    assert fut.result(timeout=5).raw == "Memo 1: hello"
    assert service.status(sid).status == "complete"
