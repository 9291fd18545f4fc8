import hashlib
from typing import Any, Dict, List, Optional

import ipfshttpclient
from web3 import Web3

from medledger.errors import LedgerUnavailable
from medledger.ledger import LedgerReader, decode_event
from medledger.models import EventCursor, LedgerEvent, Receipt

# Test accounts
TEST_ACCOUNTS = {
    "Patient 1": {
        "uid": "p1",
        "address": "0xEDB64f85F1fC9357EcA100C2970f7F84a5faAD4A",
        "role": "patient"
    },
    "Doctor 1": {
        "uid": "d1",
        "address": "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
        "role": "doctor"
    },
    "Insurer 1": {
        "uid": "i1",
        "address": "0x28B317594b44483D24EE8AdCb13A1b148497C6ba",
        "role": "insurer"
    },
    "Doctor 2": {
        "uid": "d2",
        "address": "0x3Fa2c09c14453c7acaC39E3fd57e0c6F1da3f5ce",
        "role": "doctor"
    },
}

PATIENT = TEST_ACCOUNTS["Patient 1"]
DOCTOR = TEST_ACCOUNTS["Doctor 1"]
INSURER = TEST_ACCOUNTS["Insurer 1"]
OTHER_DOCTOR = TEST_ACCOUNTS["Doctor 2"]


class FakeLedger(LedgerReader):
    """
    In-memory ledger. emit() mines one transaction per call, in its own
    block unless told otherwise, and records the receipt and the events.
    """

    def __init__(self):
        self.receipts: Dict[str, Receipt] = {}
        self.events: List[LedgerEvent] = []
        self.users: Dict[str, Dict[str, Any]] = {}
        self.unfinalized = set()
        # State lookups time out while set
        self.unreachable = False
        self.block_number = 0
        self.tx_count = 0
        self.receipt_lookups = 0

    def next_tx_hash(self) -> str:
        self.tx_count += 1
        return "0x" + format(self.tx_count, "064x")

    def emit(self, name: str, args: Dict[str, Any], status: int = 1, tx_hash: Optional[str] = None,
             block_number: Optional[int] = None, log_index: int = 0) -> Receipt:
        if block_number is None:
            self.block_number += 1
            block_number = self.block_number
        else:
            self.block_number = max(self.block_number, block_number)
        tx_hash = tx_hash or self.next_tx_hash()
        event = decode_event(name, args, tx_hash, block_number, log_index)

        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            receipt = Receipt(tx_hash=tx_hash, status=status, block_number=block_number)
            self.receipts[tx_hash] = receipt
        if status == 1:
            receipt.events.append(event)
            self.events.append(event)
            if name == "UserRegistered":
                self.users[Web3.to_checksum_address(args["wallet"])] = {
                    "uid": args["uid"], "wallet": Web3.to_checksum_address(args["wallet"]),
                    "username": args["username"], "role": args["role"],
                }
        return receipt

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        self.receipt_lookups += 1
        if tx_hash in self.unfinalized:
            return None
        return self.receipts.get(tx_hash)

    def get_user(self, address: str) -> Optional[Dict[str, Any]]:
        if self.unreachable:
            raise LedgerUnavailable("Ledger call users did not resolve", detail={"call": "users"})
        return self.users.get(Web3.to_checksum_address(address))

    def get_access_grant(self, grant_id: str) -> Optional[Dict[str, Any]]:
        if self.unreachable:
            raise LedgerUnavailable("Ledger call grants did not resolve", detail={"call": "grants"})
        state = None
        for event in self.events:
            if event.name == "AccessGranted" and event.args["grantId"] == grant_id:
                state = {**event.args, "revoked": False}
            elif event.name == "AccessRevoked" and event.args["grantId"] == grant_id and state:
                state["revoked"] = True
        return state

    def fetch_events(self, after: Optional[EventCursor] = None, limit: int = 100) -> List[LedgerEvent]:
        ordered = sorted(self.events, key=lambda e: e.position)
        if after is not None:
            ordered = [e for e in ordered if e.position > after.as_tuple()]
        return ordered[:limit]

    # Shorthands for the contract's write functions

    def register(self, account: Dict[str, str], username: Optional[str] = None, **kwargs) -> Receipt:
        return self.emit("UserRegistered", {"uid": account["uid"], "wallet": account["address"],
                                            "username": username or account["uid"],
                                            "role": account["role"]}, **kwargs)

    def submit_record(self, record_id: str, owner: Dict[str, str], content_id: str, digest: str,
                      **kwargs) -> Receipt:
        return self.emit("RecordSubmitted", {"recordId": record_id, "owner": owner["address"],
                                             "contentId": content_id, "contentHash": digest}, **kwargs)

    def grant(self, grant_id: str, patient: Dict[str, str], grantee: Dict[str, str], expires_at: int,
              **kwargs) -> Receipt:
        return self.emit("AccessGranted", {"grantId": grant_id, "patient": patient["address"],
                                           "grantee": grantee["address"], "expiresAt": expires_at}, **kwargs)

    def revoke(self, grant_id: str, patient: Dict[str, str], grantee: Dict[str, str], **kwargs) -> Receipt:
        return self.emit("AccessRevoked", {"grantId": grant_id, "patient": patient["address"],
                                           "grantee": grantee["address"]}, **kwargs)

    def submit_claim(self, claim_id: str, policy_id: str, amount: int, treatment_content_id: str,
                     **kwargs) -> Receipt:
        return self.emit("ClaimSubmitted", {"claimId": claim_id, "policyId": policy_id, "amount": amount,
                                            "treatmentContentId": treatment_content_id}, **kwargs)

    def set_claim_status(self, claim_id: str, status: str, **kwargs) -> Receipt:
        return self.emit("ClaimStatusChanged", {"claimId": claim_id, "status": status}, **kwargs)


class FakeIPFSClient:
    """Stands in for an ipfshttpclient client: add_bytes / cat over a dict."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    def add_bytes(self, data):
        cid = "Qm" + hashlib.sha256(data).hexdigest()[:44]
        self.blobs[cid] = data
        return cid

    def cat(self, cid):
        if cid not in self.blobs:
            raise ipfshttpclient.exceptions.ErrorResponse("merkledag: not found", None)
        return self.blobs[cid]

    def tamper(self, cid, data):
        self.blobs[cid] = data


# Fixed "now" for access decisions
T = 1_700_000_000


def register(engine, ledger, account):
    """Register an account on the ledger and submit the matching identity."""
    receipt = ledger.register(account)
    draft = {"uid": account["uid"], "wallet_address": account["address"],
             "username": account["uid"], "role": account["role"]}
    return engine.submit("identity", draft, receipt.tx_hash, subject_uid=account["uid"])


def prove_grant(engine, ledger, grant_id, expires_at, patient=PATIENT, grantee=DOCTOR):
    receipt = ledger.grant(grant_id, patient, grantee, expires_at)
    draft = {"grant_id": grant_id, "patient_uid": patient["uid"], "grantee_uid": grantee["uid"],
             "expires_at": expires_at}
    return engine.submit("grant", draft, receipt.tx_hash, subject_uid=patient["uid"])


def prove_revocation(engine, ledger, grant_id, patient=PATIENT, grantee=DOCTOR):
    receipt = ledger.revoke(grant_id, patient, grantee)
    draft = {"grant_id": grant_id, "patient_uid": patient["uid"], "grantee_uid": grantee["uid"]}
    return engine.submit("revocation", draft, receipt.tx_hash, subject_uid=patient["uid"])


def actions(audit, target_id):
    return [entry.action for entry in audit.trail(target_id)]
