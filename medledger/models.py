from pydantic import BaseModel, Field, field_validator
from typing import Dict, List, Optional, Any, Tuple
from web3 import Web3
import datetime

from medledger.constants import ROLES

PENDING_PROOF = "pending_proof"
PROVEN = "proven"

CLAIM_STATUSES = ["submitted", "verified", "rejected", "paid"]

# Draft kind -> ledger event that proves it
PROOF_EVENTS = {
    "identity": "UserRegistered",
    "record": "RecordSubmitted",
    "grant": "AccessGranted",
    "revocation": "AccessRevoked",
    "claim": "ClaimSubmitted",
    "claim_status": "ClaimStatusChanged",
}

# Ledger event -> (entity table, id argument)
EVENT_ENTITIES = {
    "UserRegistered": ("identity", "uid"),
    "RecordSubmitted": ("record", "recordId"),
    "AccessGranted": ("grant", "grantId"),
    "AccessRevoked": ("grant", "grantId"),
    "ClaimSubmitted": ("claim", "claimId"),
    "ClaimStatusChanged": ("claim", "claimId"),
}


def normalize_address(address: Optional[str]) -> Optional[str]:
    if address is None:
        return None
    return Web3.to_checksum_address(address)


class IdentityDraft(BaseModel):
    """Model for a user registration"""
    uid: str
    wallet_address: str
    username: str
    role: str

    @field_validator("wallet_address")
    @classmethod
    def checksum(cls, v):
        return normalize_address(v)

    @field_validator("role")
    @classmethod
    def known_role(cls, v):
        if v not in ROLES.values():
            raise ValueError(f"unknown role {v}")
        return v


class RecordDraft(BaseModel):
    """Model for a medical record whose content is already in the content store"""
    record_id: str
    content_id: str
    content_hash: str
    owner_uid: Optional[str] = None
    record_type: Optional[str] = None


class GrantDraft(BaseModel):
    """Model for a time-bounded access grant; expires_at is a unix timestamp"""
    grant_id: str
    patient_uid: str
    grantee_uid: str
    expires_at: int


class RevocationDraft(BaseModel):
    """Model for revoking an existing grant"""
    grant_id: str
    patient_uid: Optional[str] = None
    grantee_uid: Optional[str] = None


class ClaimDraft(BaseModel):
    """Model for an insurance claim; amount is in minor currency units"""
    claim_id: str
    policy_id: str
    amount: int
    treatment_content_id: str


class ClaimStatusDraft(BaseModel):
    """Model for a claim status change"""
    claim_id: str
    status: str

    @field_validator("status")
    @classmethod
    def known_status(cls, v):
        if v not in CLAIM_STATUSES:
            raise ValueError(f"unknown claim status {v}")
        return v


DRAFT_MODELS = {
    "identity": IdentityDraft,
    "record": RecordDraft,
    "grant": GrantDraft,
    "revocation": RevocationDraft,
    "claim": ClaimDraft,
    "claim_status": ClaimStatusDraft,
}


class EventCursor(BaseModel):
    """Ledger position of the last consumed event"""
    block_number: int
    log_index: int

    def as_tuple(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


class LedgerEvent(BaseModel):
    """Model for a decoded event emitted by the ledger contract"""
    name: str
    args: Dict[str, Any]
    tx_hash: str
    block_number: int
    log_index: int

    @property
    def entity(self) -> str:
        return EVENT_ENTITIES[self.name][0]

    @property
    def entity_id(self) -> str:
        return str(self.args[EVENT_ENTITIES[self.name][1]])

    @property
    def key(self) -> Tuple[str, str]:
        return (self.entity, self.entity_id)

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)

    def cursor(self) -> EventCursor:
        return EventCursor(block_number=self.block_number, log_index=self.log_index)


class Receipt(BaseModel):
    """Model for a transaction receipt and the events it emitted"""
    tx_hash: str
    status: int
    block_number: int
    events: List[LedgerEvent] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class EntityView(BaseModel):
    """Model for a business row as returned to the API layer"""
    kind: str
    entity_id: str
    proof_status: str
    ledger_tx_hash: Optional[str] = None
    needs_enrichment: bool = False
    fields: Dict[str, Any] = Field(default_factory=dict)


class AuditEntryView(BaseModel):
    """Model for one audit log entry"""
    seq: int
    subject_uid: Optional[str] = None
    action: str
    target_id: str
    ledger_tx_hash: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    observed_at: datetime.datetime


class SubmitRequest(BaseModel):
    """Model for a submitEntity call"""
    draft: Dict[str, Any]
    tx_hash: str
    subject_uid: Optional[str] = None


class UploadRequest(BaseModel):
    """Model for a record content upload; content is base64 encoded"""
    owner_uid: str
    content_b64: str
    record_type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AccessQuery(BaseModel):
    """Model for a checkAccess call; now defaults to the current time"""
    grantee_uid: str
    patient_uid: str
    resource_kind: Optional[str] = None
    now: Optional[int] = None
