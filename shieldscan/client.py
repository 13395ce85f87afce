# shieldscan/client.py
# -*- coding: utf-8 -*-
"""
Scan session client.

  SessionContext      network / connection / birthday, explicit load() and save()
  SyncStateMachine    idle -> submitting -> syncing -> synced | error
  ScanSessionClient   one state machine per viewing key; fetch the server key,
                      seal the viewing key, POST /scan,
                      poll /sync/status while the scan runs

Environment (optional):
  SCAN_API_URL=http://127.0.0.1:8000
  POLL_INTERVAL_S=1.0
  HTTP_TIMEOUT_S=10
  SCAN_TIMEOUT_S=3600
"""
import asyncio
import hashlib
import json
import os
import threading
import uuid
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import requests
from pydantic import ValidationError

from .models import ScanAction, ScanResponse, SyncStatus
from .scan_core.crypto import seal
from .scan_core.errors import ConfigurationError

SCAN_API_URL    = os.getenv("SCAN_API_URL", "http://127.0.0.1:8000")
POLL_INTERVAL_S = float(os.getenv("POLL_INTERVAL_S", "1.0"))
HTTP_TIMEOUT_S  = float(os.getenv("HTTP_TIMEOUT_S", "10"))
SCAN_TIMEOUT_S  = float(os.getenv("SCAN_TIMEOUT_S", "3600"))

DEFAULT_BIRTHDAY = 3_150_000


# =============================================================================
# Errors
# =============================================================================
class ScanClientError(Exception):
    pass


class BackendUnreachableError(ScanClientError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Scanning backend unreachable at {url}: is the scan server running?")


class ScanHTTPError(ScanClientError):
    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"API Error {status}: {body}")


class ResponseDecodeError(ScanClientError):
    pass


class ScanCancelledError(ScanClientError):
    pass


class InvalidTransitionError(ScanClientError):
    pass


# =============================================================================
# Sync state
# =============================================================================
class SyncPhase(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


@dataclass(frozen=True)
class SyncState:
    phase: SyncPhase = SyncPhase.IDLE
    current_height: Optional[int] = None
    network_height: Optional[int] = None
    reason: Optional[str] = None

    @property
    def progress(self) -> float:
        """current / network * 100, clamped to [0, 100]; 0 while either height is unknown."""
        if self.current_height is None or not self.network_height:
            return 0.0
        return max(0.0, min(100.0, self.current_height * 100.0 / self.network_height))

    @property
    def is_terminal(self) -> bool:
        return self.phase in (SyncPhase.SYNCED, SyncPhase.ERROR)

    @property
    def can_refresh(self) -> bool:
        return self.phase not in (SyncPhase.SUBMITTING, SyncPhase.SYNCING)


_ALLOWED = {
    SyncPhase.IDLE: {SyncPhase.SUBMITTING},
    SyncPhase.SUBMITTING: {SyncPhase.SUBMITTING, SyncPhase.SYNCING, SyncPhase.SYNCED},
    SyncPhase.SYNCING: {SyncPhase.SUBMITTING, SyncPhase.SYNCING, SyncPhase.SYNCED},
    SyncPhase.SYNCED: {SyncPhase.SUBMITTING},
    SyncPhase.ERROR: {SyncPhase.SUBMITTING},
}


class SyncStateMachine:
    """Thread-safe holder of the current SyncState. Listeners run outside the lock."""

    def __init__(self):
        self._state = SyncState()
        self._lock = threading.Lock()
        self._listeners: List[Callable[[SyncState], None]] = []

    @property
    def state(self) -> SyncState:
        with self._lock:
            return self._state

    def subscribe(self, listener: Callable[[SyncState], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def _move(self, new: SyncState, check: bool = True):
        with self._lock:
            old = self._state
            if check and new.phase not in _ALLOWED[old.phase]:
                raise InvalidTransitionError(f"{old.phase.value} -> {new.phase.value}")
            self._state = new
            listeners = list(self._listeners)
        for fn in listeners:
            fn(new)

    def start(self):
        self._move(SyncState(SyncPhase.SUBMITTING))

    def progress(self, current_height: Optional[int], network_height: Optional[int]):
        self._move(SyncState(SyncPhase.SYNCING, current_height, network_height))

    def complete(self, height: Optional[int]):
        prev = self.state
        network = prev.network_height if prev.network_height is not None else height
        self._move(SyncState(SyncPhase.SYNCED, height, network))

    def fail(self, reason: str):
        # any phase may fail
        self._move(replace(self.state, phase=SyncPhase.ERROR, reason=reason), check=False)

    def reset(self):
        self._move(SyncState(), check=False)


# =============================================================================
# Session context
# =============================================================================
@dataclass
class SessionContext:
    """
    Explicit per-application session state. The viewing key itself is never
    stored here; it lives only in memory for the duration of a scan call.
    """
    network: str = "mainnet"
    connected: bool = False
    birthday_height: Optional[int] = None
    last_synced_height: Optional[int] = None
    path: Optional[str] = None

    @classmethod
    def load(cls, path: str) -> "SessionContext":
        if not os.path.exists(path):
            return cls(path=path)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"unreadable session file {path}: {e}") from e
        ctx = cls(path=path)
        ctx.network = data.get("network", "mainnet")
        ctx.connected = bool(data.get("connected", False))
        ctx.birthday_height = data.get("birthday_height")
        ctx.last_synced_height = data.get("last_synced_height")
        return ctx

    def save(self, path: Optional[str] = None):
        path = path or self.path
        if not path:
            raise ConfigurationError("no session file path")
        data = asdict(self)
        data.pop("path")
        tmp = path + ".tmp"
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
        self.path = path

    def connect(self, birthday_height: Optional[int] = None):
        self.connected = True
        self.birthday_height = birthday_height

    def disconnect(self):
        self.connected = False
        self.birthday_height = None
        self.last_synced_height = None

    def switch_network(self, network: str):
        if network not in ("mainnet", "testnet"):
            raise ConfigurationError(f"unknown network {network!r}")
        if network != self.network:
            # a key belongs to one network: switching drops the connection
            self.disconnect()
        self.network = network

    def birthday(self) -> int:
        return self.birthday_height if self.birthday_height is not None else DEFAULT_BIRTHDAY


# =============================================================================
# Client
# =============================================================================
def _key_id(viewing_key: str) -> str:
    return hashlib.sha256(viewing_key.strip().encode("utf-8")).hexdigest()


class ScanSessionClient:
    """
    One logical session per viewing key: each key has its own SyncStateMachine
    (`machine_for`) and at most one chain pass in flight. `machine` is the
    machine of the key scanned most recently.
    """

    def __init__(self, base_url: str = SCAN_API_URL, timeout: float = HTTP_TIMEOUT_S,
                 scan_timeout: float = SCAN_TIMEOUT_S, poll_interval: float = POLL_INTERVAL_S,
                 http: Optional[requests.Session] = None,
                 machine: Optional[SyncStateMachine] = None,
                 context: Optional[SessionContext] = None):
        if not base_url or not base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"invalid scan backend URL {base_url!r}")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.scan_timeout = scan_timeout
        self.poll_interval = poll_interval
        self.http = http or requests.Session()
        self.context = context or SessionContext()
        # the machine handed in (or created here) belongs to the first key scanned
        self._first_machine = machine or SyncStateMachine()
        self._machines: Dict[str, SyncStateMachine] = {}
        self._active: Optional[str] = None
        self._inflight: Dict[Tuple[str, Optional[str]], asyncio.Task] = {}
        self._generation = 0

    # ---- blocking transport ----
    def _request(self, method: str, path: str, timeout: Optional[float] = None, **kw) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.http.request(method, url, timeout=timeout or self.timeout, **kw)
        except requests.ConnectionError as e:
            raise BackendUnreachableError(self.base_url) from e
        except requests.Timeout as e:
            raise ScanClientError(f"request to {url} timed out") from e
        except requests.RequestException as e:
            raise ScanClientError(f"request to {url} failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise ScanHTTPError(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise ResponseDecodeError(f"invalid JSON from {path}: {e}") from e
        if not isinstance(data, dict):
            raise ResponseDecodeError(f"unexpected JSON from {path}: {type(data).__name__}")
        return data

    def fetch_public_key(self) -> str:
        data = self._request("GET", "/public_key")
        pem = data.get("public_key")
        if not isinstance(pem, str) or not pem:
            raise ResponseDecodeError("server did not return a public key")
        return pem

    def build_request(self, viewing_key: str, public_pem: str, birthday: Optional[int] = None,
                      action: ScanAction = ScanAction.ALL, txid: Optional[str] = None,
                      session_id: Optional[str] = None) -> dict:
        action = ScanAction(action)
        if action == ScanAction.MEMO and not txid:
            raise ValueError("txid is required when action is 'memo'")
        payload = seal(viewing_key, public_pem).to_wire()
        payload["birthday"] = birthday if birthday is not None else self.context.birthday()
        payload["action"] = action.value
        if txid:
            payload["txid"] = txid
        if session_id:
            payload["session_id"] = session_id
        return payload

    def submit(self, payload: dict) -> ScanResponse:
        data = self._request("POST", "/scan", json=payload, timeout=self.scan_timeout)
        try:
            return ScanResponse.model_validate(data)
        except ValidationError as e:
            raise ResponseDecodeError(f"malformed scan response: {e}") from e

    def get_status(self, session_id: str) -> SyncStatus:
        data = self._request("GET", "/sync/status", params={"session_id": session_id})
        try:
            return SyncStatus.model_validate(data)
        except ValidationError as e:
            raise ResponseDecodeError(f"malformed status response: {e}") from e

    # ---- per-key state ----
    @property
    def machine(self) -> SyncStateMachine:
        if self._active is None:
            return self._first_machine
        return self._machines[self._active]

    def machine_for(self, viewing_key: str) -> SyncStateMachine:
        kid = _key_id(viewing_key)
        m = self._machines.get(kid)
        if m is None:
            m = self._first_machine if not self._machines else SyncStateMachine()
            self._machines[kid] = m
        return m

    # ---- async session ----
    async def scan(self, viewing_key: str, birthday: Optional[int] = None,
                   action: ScanAction = ScanAction.ALL, txid: Optional[str] = None) -> ScanResponse:
        """
        One chain pass per viewing key at a time. The pass always asks the
        server for every field; each caller, including one joining a pass
        already running, gets the fields of its own action.

        Memo lookups fetch one transaction, run next to a chain pass and do
        not touch the sync state.
        """
        action = ScanAction(action)
        if action == ScanAction.MEMO:
            if not txid:
                raise ValueError("txid is required when action is 'memo'")
            key = (_key_id(viewing_key), txid)
            factory = lambda gen: self._lookup(viewing_key, txid)
        else:
            key = (_key_id(viewing_key), None)
            machine = self.machine_for(viewing_key)
            self._active = key[0]
            factory = lambda gen: self._run(viewing_key, birthday, machine, gen)

        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory(self._generation))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise ScanCancelledError("scan cancelled")
            raise
        return result.for_action(action)

    def _forget(self, key, task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def cancel(self):
        """Abort every pending scan. Nothing those scans produce reaches a state machine."""
        self._generation += 1
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        for m in {id(m): m for m in [self._first_machine, *self._machines.values()]}.values():
            m.reset()

    def _apply(self, gen: int, fn, *args):
        if gen == self._generation:
            fn(*args)

    async def _lookup(self, viewing_key: str, txid: str) -> ScanResponse:
        pem = await asyncio.to_thread(self.fetch_public_key)
        payload = self.build_request(viewing_key, pem, action=ScanAction.MEMO, txid=txid)
        return await asyncio.to_thread(self.submit, payload)

    async def _run(self, viewing_key: str, birthday: Optional[int], machine: SyncStateMachine,
                   gen: int) -> ScanResponse:
        self._apply(gen, machine.start)
        session_id = uuid.uuid4().hex
        last_status: Optional[SyncStatus] = None
        try:
            pem = await asyncio.to_thread(self.fetch_public_key)
            payload = self.build_request(viewing_key, pem, birthday, ScanAction.ALL, None, session_id)
            post = asyncio.ensure_future(asyncio.to_thread(self.submit, payload))
            try:
                while True:
                    done, _ = await asyncio.wait({post}, timeout=self.poll_interval)
                    if done:
                        break
                    last_status = await asyncio.to_thread(self.get_status, session_id)
                    if last_status.status == "in_progress":
                        self._apply(gen, machine.progress,
                                    last_status.current_block, last_status.latest_block)
            finally:
                if not post.done():
                    post.cancel()
            result = post.result()
        except (ScanClientError, ConfigurationError, ValueError) as e:
            self._apply(gen, machine.fail, str(e))
            raise

        height = None
        if result.analysis is not None:
            height = result.analysis.last_synced_height
        elif last_status is not None:
            height = last_status.latest_block
        self._apply(gen, machine.complete, height)
        if gen == self._generation and height is not None:
            self.context.last_synced_height = height
        return result

    def close(self):
        self.cancel()
        self.http.close()
