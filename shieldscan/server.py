# shieldscan/server.py
# -*- coding: utf-8 -*-
"""
Scan protocol server.

  GET  /health
  GET  /public_key                  RSA public key (PEM) clients seal viewing keys to
  POST /scan                        {encrypted_uvk, encrypted_key, iv, birthday, action, txid?, session_id?}
  GET  /sync/status?session_id=...  progress of a running / finished scan

Every /scan response carries `session_id`, the id given in the request or one
minted by the server, which /sync/status accepts. It is an addition to the
scan protocol; clients that do not know it can ignore it.

Errors are JSON {"error": str} with a non-2xx status.

Run:
  python -m shieldscan.server
  uvicorn shieldscan.server:create_app --factory --port 8000

Environment (optional):
  SCAN_PRIVATE_KEY_PATH=scan_key.pem   # PEM, generated per process when unset
  CORS_ORIGINS=http://localhost:3000,http://127.0.0.1:3000
  HOST=127.0.0.1  PORT=8000
  SCAN_MAX_CONCURRENT=4
  SESSION_TTL_S=600          # finished sessions stay pollable this long
  SESSION_MAX=1024           # finished sessions kept at most
  DISCONNECT_POLL_S=1.0      # how often a waiting /scan checks for a gone client
"""
import asyncio
import hashlib
import os
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .blockstore import BlockSourceError, make_block_source
from .models import ScanAction, ScanRequest, ScanResponse, SyncStatus
from .scan_core.crypto import generate_rsa_keypair, load_private_key, public_pem_of
from .scan_core.errors import ConfigurationError, EnvelopeError, InvalidViewingKeyError, MalformedInputError
from .scanner import ScanCancelled, ScanOrchestrator, ScanRequestError, SyncProgress

load_dotenv(override=False)

SCAN_PRIVATE_KEY_PATH = os.getenv("SCAN_PRIVATE_KEY_PATH", "")
CORS_ORIGINS = [x.strip() for x in os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",") if x.strip()]
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))
SCAN_MAX_CONCURRENT = int(os.getenv("SCAN_MAX_CONCURRENT", "4"))
SESSION_TTL_S = float(os.getenv("SESSION_TTL_S", "600"))
SESSION_MAX = int(os.getenv("SESSION_MAX", "1024"))
DISCONNECT_POLL_S = float(os.getenv("DISCONNECT_POLL_S", "1.0"))


# =============================================================================
# Service: one chain pass per viewing key at a time
# =============================================================================
@dataclass
class _Pass:
    future: Future
    progress: SyncProgress
    cancel: threading.Event = field(default_factory=threading.Event)
    waiters: int = 0


class ScanService:
    """
    Runs chain passes on a thread pool. Requests for the same key and
    birthday share one pass; the pass is cancelled once every request
    attached to it has detached before it finished.

    Finished sessions stay pollable for `session_ttl` seconds. Past
    `max_sessions` the oldest finished ones are dropped early; running
    sessions are never dropped.
    """

    def __init__(self, orchestrator: ScanOrchestrator, max_concurrent: int = SCAN_MAX_CONCURRENT,
                 session_ttl: float = SESSION_TTL_S, max_sessions: int = SESSION_MAX):
        self.orchestrator = orchestrator
        self.session_ttl = session_ttl
        self.max_sessions = max_sessions
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="scan")
        self._lock = threading.RLock()  # done callbacks may fire inside submit
        self._inflight: Dict[Tuple[str, int], _Pass] = {}
        self._attached: Dict[str, _Pass] = {}
        self._sessions: Dict[str, SyncProgress] = {}

    @property
    def public_pem(self) -> str:
        return public_pem_of(self.orchestrator.private_key)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def submit(self, request: ScanRequest) -> Tuple[str, Future]:
        """
        Start (or join) the scan for this request. A pass already running for
        the same key and birthday is shared; every caller trims the full
        result to its own action. Callers must `detach(session_id)` when they
        stop waiting.
        """
        raw_key = self.orchestrator.recover_key(request)
        vk = self.orchestrator.viewing_key(raw_key)
        session_id = request.session_id or uuid.uuid4().hex

        if request.action == ScanAction.MEMO:
            progress = SyncProgress()
            with self._lock:
                self._remember(session_id, progress)
            return session_id, self._executor.submit(self._run_memo, request.txid, vk, progress)

        label = vk.fingerprint() if vk is not None else hashlib.sha256(raw_key.encode()).hexdigest()[:16]
        key = (label, request.birthday)
        with self._lock:
            running = self._inflight.get(key)
            if running is not None:
                print(f"[server] key={label} joined running scan (session {session_id})")
            else:
                running = _Pass(None, SyncProgress())
                running.future = self._executor.submit(
                    self.orchestrator.run_pass, vk, request.birthday, ScanAction.ALL,
                    running.progress, running.cancel)
                self._inflight[key] = running
                running.future.add_done_callback(lambda _f, k=key: self._done(k))
            running.waiters += 1
            self._attached[session_id] = running
            self._remember(session_id, running.progress)
        return session_id, running.future

    def detach(self, session_id: str):
        """The caller of `session_id` no longer waits; the last one out cancels the pass."""
        with self._lock:
            running = self._attached.pop(session_id, None)
            if running is None:
                return
            running.waiters -= 1
            if running.waiters > 0 or running.future.done():
                return
            running.cancel.set()
        print(f"[server] ⚠️ no caller left, cancelling scan (session {session_id})")

    def _run_memo(self, txid: str, vk, progress: SyncProgress) -> ScanResponse:
        try:
            result = self.orchestrator.memo(txid, vk)
        except Exception as e:
            progress.fail(str(e))
            raise
        progress.finish()
        return result

    def _done(self, key):
        with self._lock:
            self._inflight.pop(key, None)

    def _remember(self, session_id: str, progress: SyncProgress):
        # caller holds the lock
        self._sessions.pop(session_id, None)
        self._prune(time.monotonic(), room=1)
        self._sessions[session_id] = progress

    def _prune(self, now: float, room: int = 0):
        # caller holds the lock; dict order is registration order
        for sid in [sid for sid, p in self._sessions.items()
                    if p.finished_at is not None and now - p.finished_at > self.session_ttl]:
            del self._sessions[sid]
        limit = self.max_sessions - room
        if len(self._sessions) <= limit:
            return
        for sid in [sid for sid, p in self._sessions.items() if p.finished_at is not None]:
            if len(self._sessions) <= limit:
                break
            del self._sessions[sid]

    def status(self, session_id: Optional[str]) -> SyncStatus:
        with self._lock:
            self._prune(time.monotonic())
            progress = self._sessions.get(session_id) if session_id else None
        if progress is None:
            return SyncStatus(status="not_running")
        return progress.snapshot()

    def close(self):
        with self._lock:
            for running in self._inflight.values():
                running.cancel.set()
        self._executor.shutdown(wait=False)


# =============================================================================
# App
# =============================================================================
def _validation_message(exc: RequestValidationError) -> str:
    msgs = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        if err.get("type") == "missing" and loc and loc[-1] in ("birthday", "uvk"):
            return "Missing UVK or Birthday"
        msg = str(err.get("msg", "invalid request"))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        msgs.append(f"{'.'.join(loc)}: {msg}" if loc else msg)
    return "; ".join(msgs) or "invalid request"


def _load_or_create_key():
    if SCAN_PRIVATE_KEY_PATH:
        if not os.path.exists(SCAN_PRIVATE_KEY_PATH):
            raise ConfigurationError(f"SCAN_PRIVATE_KEY_PATH not found: {SCAN_PRIVATE_KEY_PATH}")
        with open(SCAN_PRIVATE_KEY_PATH, "rb") as f:
            return load_private_key(f.read())
    print("[server] ⚠️ SCAN_PRIVATE_KEY_PATH not set, using an ephemeral key (clients must refetch /public_key after restart)")
    private_pem, _ = generate_rsa_keypair()
    return load_private_key(private_pem)


def create_app(service: Optional[ScanService] = None) -> FastAPI:
    if service is None:
        orchestrator = ScanOrchestrator(make_block_source(), private_key=_load_or_create_key())
        service = ScanService(orchestrator)

    app = FastAPI(title="Shielded Scan Server")
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def _on_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @app.exception_handler(ScanRequestError)
    async def _on_request_error(request: Request, exc: ScanRequestError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(EnvelopeError)
    async def _on_envelope(request: Request, exc: EnvelopeError):
        return JSONResponse(status_code=400, content={"error": f"could not open envelope: {exc}"})

    @app.exception_handler(InvalidViewingKeyError)
    async def _on_key(request: Request, exc: InvalidViewingKeyError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(MalformedInputError)
    async def _on_malformed(request: Request, exc: MalformedInputError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(BlockSourceError)
    async def _on_upstream(request: Request, exc: BlockSourceError):
        print(f"[server] ❌ upstream: {exc}")
        return JSONResponse(status_code=502, content={"error": str(exc)})

    @app.exception_handler(ScanCancelled)
    async def _on_cancel(request: Request, exc: ScanCancelled):
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def _on_config(request: Request, exc: ConfigurationError):
        print(f"[server] ❌ configuration: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.get("/health")
    def health():
        return {"ok": True, "scans_in_flight": service.in_flight()}

    @app.get("/public_key")
    def public_key():
        return {"public_key": service.public_pem}

    @app.post("/scan")
    async def scan(req: ScanRequest, request: Request):
        print(f"[server] scan {req!r}")
        session_id, fut = service.submit(req)
        waiter = asyncio.wrap_future(fut)
        try:
            # never cancel `waiter`: that cancels the shared pass while it is still queued
            while not (await asyncio.wait({waiter}, timeout=DISCONNECT_POLL_S))[0]:
                if await request.is_disconnected():
                    print(f"[server] ⚠️ client gone (session {session_id})")
                    waiter.add_done_callback(lambda f: f.cancelled() or f.exception())
                    return JSONResponse(status_code=503, content={"error": "client disconnected"})
            result = waiter.result()
        except (ScanRequestError, ScanCancelled, BlockSourceError, ConfigurationError,
                EnvelopeError, InvalidViewingKeyError, MalformedInputError):
            raise
        except asyncio.CancelledError:
            waiter.add_done_callback(lambda f: f.cancelled() or f.exception())
            raise
        except Exception as e:
            print(f"[server] ❌ scan failed (session {session_id}): {e}")
            return JSONResponse(status_code=500, content={"error": str(e)})
        finally:
            service.detach(session_id)
        body = result.for_action(req.action).to_wire()
        body["session_id"] = session_id
        return body

    @app.get("/sync/status")
    def sync_status(session_id: Optional[str] = None):
        return service.status(session_id).model_dump()

    print(f"🚀 [server] scan server ready, CORS origins={CORS_ORIGINS}")
    return app


def main():
    import uvicorn
    uvicorn.run("shieldscan.server:create_app", factory=True, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
