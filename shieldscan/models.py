# shieldscan/models.py
"""Request / response models of the scan protocol."""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from .scan_core.crypto import EncryptionEnvelope


class ScanAction(str, Enum):
    ALL = "all"
    SUMMARY = "summary"
    HISTORY = "history"
    MEMO = "memo"

    @property
    def wants_balances(self) -> bool:
        return self in (ScanAction.ALL, ScanAction.SUMMARY)

    @property
    def wants_analysis(self) -> bool:
        return self in (ScanAction.ALL, ScanAction.SUMMARY)

    @property
    def wants_history(self) -> bool:
        return self in (ScanAction.ALL, ScanAction.HISTORY, ScanAction.MEMO)


class ScanRequest(BaseModel):
    # envelope (preferred)
    encrypted_uvk: Optional[str] = None
    encrypted_key: Optional[str] = None
    iv: Optional[str] = None
    # plaintext key, only honored when the server allows it
    uvk: Optional[str] = None

    birthday: int = Field(..., ge=0)
    action: ScanAction = ScanAction.ALL
    txid: Optional[str] = None
    session_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_fields(self):
        if self.action == ScanAction.MEMO and not self.txid:
            raise ValueError("txid is required when action is 'memo'")
        if not self.has_envelope() and not self.uvk:
            raise ValueError("Missing UVK or Birthday")
        return self

    def has_envelope(self) -> bool:
        return bool(self.encrypted_uvk and self.encrypted_key and self.iv)

    def envelope(self) -> Optional[EncryptionEnvelope]:
        if not self.has_envelope():
            return None
        return EncryptionEnvelope(self.encrypted_uvk, self.encrypted_key, self.iv)

    def __repr__(self) -> str:
        # never print key material
        return f"ScanRequest(birthday={self.birthday}, action={self.action.value}, txid={self.txid!r})"

    __str__ = __repr__


class Balances(BaseModel):
    sapling_balance: int = 0
    orchard_balance: int = 0
    transparent_balance: int = 0


class Analysis(BaseModel):
    total_transactions: int = 0
    total_received: int = 0
    total_sent: int = 0
    total_fees: int = 0
    avg_transaction_value: float = 0.0
    most_active_day: str = "None"
    most_active_day_count: int = 0
    pool_distribution: Dict[str, int] = Field(
        default_factory=lambda: {"Orchard": 0, "Sapling": 0, "Transparent": 0})
    type_distribution: Dict[str, int] = Field(
        default_factory=lambda: {"Incoming": 0, "Outgoing": 0})
    scan_status: str = "complete"
    percent_complete: float = 100.0
    last_synced_height: int = 0


class TxReport(BaseModel):
    txid: str
    datetime: str
    kind: str
    value: int
    fee: Optional[int] = None
    memos: List[str] = Field(default_factory=list)
    height: Optional[int] = None


class ScanResponse(BaseModel):
    balances: Optional[Balances] = None
    analysis: Optional[Analysis] = None
    history: Optional[List[TxReport]] = None
    raw: Optional[str] = None
    session_id: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)

    def for_action(self, action: ScanAction) -> "ScanResponse":
        """Copy holding only the fields `action` asks for."""
        action = ScanAction(action)
        return ScanResponse(
            balances=self.balances if action.wants_balances else None,
            analysis=self.analysis if action.wants_analysis else None,
            history=self.history if action.wants_history else None,
            raw=self.raw if action == ScanAction.MEMO else None,
            session_id=self.session_id,
        )


class SyncStatus(BaseModel):
    status: str = "not_running"
    blocks_scanned: int = 0
    percent_scanned: float = 0.0
    tx_count: int = 0
    error: Optional[str] = None
    current_block: Optional[int] = None
    latest_block: Optional[int] = None
