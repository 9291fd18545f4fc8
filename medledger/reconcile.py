"""
Reconciliation engine: keeps the record store consistent with what the
ledger proves.

Two channels feed it. submit() is called by the API layer after a wallet
signed a transaction: the claimed receipt is fetched independently, its
event is compared field by field with the submitted draft, and only then is
the row written. ingest_ledger_event() is fed by the event stream and
catches actions whose backend write never arrived.

Every apply runs as one record store transaction (read, validate, write,
audit, commit) and is re-run from the read on conflict. Ledger and content
store calls happen before the transaction opens, so a cancelled call never
leaves a partial write behind.
"""

import uuid
import logging
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session
from web3 import Web3

from medledger.access import AccessControlEvaluator
from medledger.audit import AuditLogger
from medledger.content_store import ContentStore, content_hash
from medledger.db import (
    ENTITY_TABLES, AccessGrant, Identity, InsuranceClaim, MedicalRecord, RecordStore,
    advance_position, ledger_position, mark_proven, to_view, utcnow,
)
from medledger.errors import (
    AccessDenied, ContentIntegrityViolation, DecodeError, InvalidTransition, NotFound,
    ProofMismatch, ReceiptFailed, ReceiptNotFound, ReconcileError,
)
from medledger.ledger import LedgerReader
from medledger.models import (
    CLAIM_STATUSES, DRAFT_MODELS, EVENT_ENTITIES, PENDING_PROOF, PROOF_EVENTS, PROVEN,
    EntityView, LedgerEvent,
)

logger = logging.getLogger(__name__)

# Audit action for each accepted ledger fact
ACTIONS = {
    "UserRegistered": "registered",
    "RecordSubmitted": "record_submitted",
    "AccessGranted": "access_granted",
    "AccessRevoked": "access_revoked",
    "ClaimSubmitted": "claim_submitted",
    "ClaimStatusChanged": "claim_status_changed",
}

REQUIRED_ARGS = {
    "UserRegistered": ("uid", "wallet", "username", "role"),
    "RecordSubmitted": ("recordId", "owner", "contentId", "contentHash"),
    "AccessGranted": ("grantId", "patient", "grantee", "expiresAt"),
    "AccessRevoked": ("grantId", "patient", "grantee"),
    "ClaimSubmitted": ("claimId", "policyId", "amount", "treatmentContentId"),
    "ClaimStatusChanged": ("claimId", "status"),
}

PARTY_ARGS = ("owner", "patient", "grantee")

# Claim status moves forward only
NEXT_STATUSES = {
    "submitted": {"verified", "rejected"},
    "verified": {"paid"},
    "rejected": set(),
    "paid": set(),
}

# Domain fields the ledger does not carry
ENRICHABLE_FIELDS = {
    "identity": set(),
    "record": {"record_type"},
    "grant": set(),
    "claim": set(),
}

ID_FIELDS = {
    "identity": "uid",
    "record": "record_id",
    "grant": "grant_id",
    "revocation": "grant_id",
    "claim": "claim_id",
    "claim_status": "claim_id",
}


def status_reachable(current: str, target: str) -> bool:
    """True when target lies strictly ahead of current on the claim lifecycle."""
    frontier = set(NEXT_STATUSES[current])
    seen = set()
    while frontier:
        status = frontier.pop()
        if status == target:
            return True
        seen.add(status)
        frontier |= NEXT_STATUSES[status] - seen
    return False


def expected_fields(kind: str, event: LedgerEvent, parties: Dict[str, Optional[str]]) -> Dict[str, Any]:
    """What the event proves, expressed in the draft's field names."""
    args = event.args
    if kind == "identity":
        return {"uid": args["uid"], "wallet_address": Web3.to_checksum_address(args["wallet"]),
                "username": args["username"], "role": args["role"]}
    if kind == "record":
        return {"record_id": args["recordId"], "content_id": args["contentId"],
                "content_hash": args["contentHash"], "owner_uid": parties.get("owner")}
    if kind == "grant":
        return {"grant_id": args["grantId"], "patient_uid": parties.get("patient"),
                "grantee_uid": parties.get("grantee"), "expires_at": int(args["expiresAt"])}
    if kind == "revocation":
        return {"grant_id": args["grantId"], "patient_uid": parties.get("patient"),
                "grantee_uid": parties.get("grantee")}
    if kind == "claim":
        return {"claim_id": args["claimId"], "policy_id": args["policyId"],
                "amount": int(args["amount"]), "treatment_content_id": args["treatmentContentId"]}
    if kind == "claim_status":
        return {"claim_id": args["claimId"], "status": args["status"]}
    raise ValueError(f"Unknown entity kind {kind}")


def event_target(event: LedgerEvent) -> str:
    """Audit target of an event; events without a usable id are keyed by their log."""
    id_arg = EVENT_ENTITIES.get(event.name, (None, None))[1]
    entity_id = event.args.get(id_arg) if id_arg else None
    return str(entity_id) if entity_id not in (None, "") else f"{event.name}:{event.tx_hash}"


def diff_fields(expected: Dict[str, Any], actual: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Fields present in actual whose value differs from expected."""
    mismatches = {}
    for name, value in actual.items():
        if value is None or name not in expected:
            continue
        if expected[name] != value:
            mismatches[name] = {"submitted": value, "ledger": expected[name]}
    return mismatches


class ReconciliationEngine:
    def __init__(self, store: RecordStore, ledger: LedgerReader, audit: Optional[AuditLogger] = None,
                 content_store: Optional[ContentStore] = None,
                 evaluator: Optional[AccessControlEvaluator] = None):
        self.store = store
        self.ledger = ledger
        self.audit = audit or AuditLogger(store)
        self.content_store = content_store
        self.evaluator = evaluator or AccessControlEvaluator(store, ledger)

    # ------------------------------------------------------------------
    # Validation helpers (no transaction held)
    # ------------------------------------------------------------------

    def parse_draft(self, kind: str, draft: Union[BaseModel, Dict[str, Any]]) -> BaseModel:
        if kind not in DRAFT_MODELS:
            raise ValueError(f"Unknown entity kind {kind}")
        if isinstance(draft, DRAFT_MODELS[kind]):
            return draft
        if isinstance(draft, BaseModel):
            draft = draft.model_dump()
        return DRAFT_MODELS[kind].model_validate(draft)

    def validate_event(self, event: LedgerEvent):
        """
        Check that an event can be applied.

        Raises:
            DecodeError: Unknown event, missing arguments or malformed values
        """
        if event.name not in EVENT_ENTITIES:
            raise DecodeError(f"Unknown ledger event {event.name}", tx_hash=event.tx_hash)
        missing = [a for a in REQUIRED_ARGS[event.name] if event.args.get(a) in (None, "")]
        if missing:
            raise DecodeError(f"{event.name} is missing {', '.join(missing)}",
                              target_id=str(event.args.get(EVENT_ENTITIES[event.name][1]) or ""),
                              tx_hash=event.tx_hash, detail={"missing": missing})
        target_id = event.entity_id
        try:
            for arg in PARTY_ARGS + ("wallet",):
                if arg in event.args:
                    Web3.to_checksum_address(event.args[arg])
            for arg in ("amount", "expiresAt"):
                if arg in event.args:
                    int(event.args[arg])
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Malformed {event.name} event: {e}", target_id=target_id, tx_hash=event.tx_hash)
        if event.name == "ClaimStatusChanged" and event.args["status"] not in CLAIM_STATUSES:
            raise DecodeError(f"Unknown claim status {event.args['status']}", target_id=target_id,
                              tx_hash=event.tx_hash)

    def uid_for_address(self, address: str) -> Optional[str]:
        """
        Proven local identity first, then the ledger's user-by-address mapping.

        Staged identities are never consulted: anyone can stage a row.

        Raises:
            LedgerUnavailable: The ledger lookup did not resolve
        """
        address = Web3.to_checksum_address(address)
        with self.store.transaction() as session:
            uid = session.scalars(
                select(Identity.uid).where(Identity.wallet_address == address, Identity.proof_status == PROVEN)
            ).first()
        if uid is not None:
            return uid
        user = self.ledger.get_user(address)
        return user["uid"] if user else None

    def resolve_parties(self, event: LedgerEvent) -> Dict[str, Optional[str]]:
        return {arg: self.uid_for_address(event.args[arg]) for arg in PARTY_ARGS if arg in event.args}

    def find_proof_event(self, kind: str, receipt, target_id: str) -> LedgerEvent:
        wanted = PROOF_EVENTS[kind]
        candidates = [e for e in receipt.events if e.name == wanted]
        for event in candidates:
            if str(event.args.get(EVENT_ENTITIES[wanted][1])) == target_id:
                return event
        proven_ids = [str(e.args.get(EVENT_ENTITIES[wanted][1])) for e in candidates]
        raise ProofMismatch(
            f"Transaction {receipt.tx_hash} does not emit {wanted} for {target_id}",
            target_id=target_id, tx_hash=receipt.tx_hash,
            detail={"expected_event": wanted, "proven_ids": proven_ids,
                    "events": [e.name for e in receipt.events]},
        )

    def _reject(self, error: ReconcileError, target_id: str, tx_hash: Optional[str],
                subject_uid: Optional[str], source: str, once: bool = True):
        """
        Audit a terminal error in its own transaction.

        With once=False every occurrence gets an entry; the proof hash then
        goes into the detail so the (target, tx, action) key stays free.
        """
        error.target_id = error.target_id or target_id
        error.tx_hash = error.tx_hash or tx_hash
        logger.error(f"Rejected {source} for {error.target_id} tx={error.tx_hash}: {error.message}")
        detail = {"error": error.code, "message": error.message, "source": source, **error.detail}
        if once:
            self.audit.record_rejection(error.audit_action, error.target_id, error.tx_hash, subject_uid, detail)
        else:
            detail["proof_tx_hash"] = error.tx_hash
            self.audit.record_rejection(error.audit_action, error.target_id, None, subject_uid, detail)

    # ------------------------------------------------------------------
    # Channel 1: client submissions
    # ------------------------------------------------------------------

    def submit(self, kind: str, draft: Union[BaseModel, Dict[str, Any]], claimed_tx_hash: str,
               subject_uid: Optional[str] = None) -> EntityView:
        """
        Verify a client-claimed transaction and commit the matching row.

        Args:
            kind: identity, record, grant, revocation, claim or claim_status
            draft: The off-chain payload (model instance or dict)
            claimed_tx_hash: Transaction the client says proves the draft
            subject_uid: Acting user, recorded in the audit trail

        Returns:
            EntityView: The proven row

        Raises:
            ReceiptNotFound: Not finalized yet (or lookup timed out); retry later
            ReceiptFailed: The transaction reverted
            ProofMismatch: The transaction does not prove these fields
            InvalidTransition: A claim status change that moves backwards
            ConflictRetry: Concurrent writers kept conflicting
        """
        draft = self.parse_draft(kind, draft)
        target_id = str(getattr(draft, ID_FIELDS[kind]))

        receipt = self.ledger.get_receipt(claimed_tx_hash)
        if receipt is None:
            logger.info(f"Receipt {claimed_tx_hash} for {kind} {target_id} not available yet")
            raise ReceiptNotFound(f"No receipt for {claimed_tx_hash} yet", target_id=target_id,
                                  tx_hash=claimed_tx_hash)

        try:
            if not receipt.succeeded:
                raise ReceiptFailed(f"Transaction {claimed_tx_hash} reverted", target_id=target_id,
                                    tx_hash=claimed_tx_hash, detail={"block_number": receipt.block_number})
            event = self.find_proof_event(kind, receipt, target_id)
            self.validate_event(event)
            parties = self.resolve_parties(event)
            mismatches = diff_fields(expected_fields(kind, event, parties), draft.model_dump())
            if mismatches:
                raise ProofMismatch(f"{kind} {target_id} does not match transaction {claimed_tx_hash}",
                                    target_id=target_id, tx_hash=claimed_tx_hash,
                                    detail={"mismatches": mismatches})
            return self.store.run(self._apply, event, parties, draft, subject_uid, "submit")
        except ReconcileError as e:
            if not e.retryable:
                self._reject(e, target_id, claimed_tx_hash, subject_uid, f"submit:{kind}")
            raise

    # ------------------------------------------------------------------
    # Channel 2: ledger events
    # ------------------------------------------------------------------

    def ingest_ledger_event(self, event: LedgerEvent) -> EntityView:
        """
        Apply one ledger event idempotently.

        A proven row with the same hash is left alone, an unproven row is
        promoted in place, and a missing row is built from the event alone and
        flagged for enrichment. Events older than the row's last applied
        ledger position change nothing.
        """
        target_id = event_target(event)
        try:
            self.validate_event(event)
            parties = self.resolve_parties(event)
            return self.store.run(self._apply, event, parties, None, None, "ledger_event")
        except ReconcileError as e:
            if not e.retryable:
                self._reject(e, target_id, event.tx_hash, None, f"ledger_event:{event.name}")
            raise

    # ------------------------------------------------------------------
    # Transactional apply
    # ------------------------------------------------------------------

    def _apply(self, session: Session, event: LedgerEvent, parties: Dict[str, Optional[str]],
               draft: Optional[BaseModel], subject_uid: Optional[str], source: str) -> EntityView:
        handlers = {
            "UserRegistered": self._apply_identity,
            "RecordSubmitted": self._apply_record,
            "AccessGranted": self._apply_grant,
            "AccessRevoked": self._apply_revocation,
            "ClaimSubmitted": self._apply_claim,
            "ClaimStatusChanged": self._apply_claim_status,
        }
        row = handlers[event.name](session, event, parties, draft, subject_uid, source)
        session.flush()
        return to_view(row)

    def _audit_fact(self, session: Session, event: LedgerEvent, subject_uid: Optional[str], source: str,
                    **detail):
        self.audit.append_once(session, ACTIONS[event.name], event.entity_id, event.tx_hash, subject_uid,
                               detail={"source": source, "block_number": event.block_number,
                                       "log_index": event.log_index, **detail})

    def _promote(self, session: Session, row, event: LedgerEvent, ledger_values: Dict[str, Any],
                 subject_uid: Optional[str], source: str) -> bool:
        """
        Settle a creation event against an existing row.

        Returns True when the row changed. A proven row is immutable: the
        same transaction is a no-op and a different one is rejected.
        """
        if row.proof_status == PROVEN:
            if row.ledger_tx_hash == event.tx_hash:
                logger.debug(f"{row.kind} {row.entity_id} already proven by {event.tx_hash}")
                return False
            raise ProofMismatch(
                f"{row.kind} {row.entity_id} is already proven by {row.ledger_tx_hash}",
                target_id=row.entity_id, tx_hash=event.tx_hash,
                detail={"proven_tx_hash": row.ledger_tx_hash},
            )

        diverged = {}
        for name, ledger_value in ledger_values.items():
            local_value = getattr(row, name)
            if local_value is not None and local_value != ledger_value:
                diverged[name] = {"local": local_value, "ledger": ledger_value}
            setattr(row, name, ledger_value)
        if diverged:
            logger.warning(f"{row.kind} {row.entity_id} diverged from ledger {event.tx_hash}: {diverged}")
            self.audit.append_once(session, "diverged", row.entity_id, event.tx_hash, subject_uid,
                                   detail={"fields": diverged, "source": source})

        mark_proven(row, event.tx_hash, event.position)
        self._audit_fact(session, event, subject_uid, source, promoted=True)
        logger.info(f"Promoted {row.kind} {row.entity_id} with proof {event.tx_hash}")
        return True

    def _create(self, session: Session, row, event: LedgerEvent, draft: Optional[BaseModel],
                subject_uid: Optional[str], source: str):
        row.needs_enrichment = draft is None
        mark_proven(row, event.tx_hash, event.position)
        session.add(row)
        self._audit_fact(session, event, subject_uid, source, created_from_event=draft is None)
        logger.info(f"Created proven {row.kind} {row.entity_id} from {source} {event.tx_hash}")
        return row

    def _confirm_backend_write(self, session: Session, row, event: LedgerEvent, draft: Optional[BaseModel],
                               subject_uid: Optional[str]):
        """The backend write arrived for a row that ingestion already built."""
        if draft is None or not row.needs_enrichment or row.ledger_tx_hash != event.tx_hash:
            return
        fields = {}
        for name in ENRICHABLE_FIELDS[row.kind]:
            value = getattr(draft, name, None)
            if value is not None:
                setattr(row, name, value)
                fields[name] = value
        row.needs_enrichment = False
        self.audit.append_once(session, "enriched", row.entity_id, event.tx_hash, subject_uid,
                               detail={"fields": fields, "source": "submit"})

    def _apply_identity(self, session, event, parties, draft, subject_uid, source):
        args = event.args
        wallet = Web3.to_checksum_address(args["wallet"])
        bound = session.scalars(
            select(Identity).where(Identity.wallet_address == wallet, Identity.uid != args["uid"])
        ).first()
        if bound is not None and bound.proof_status == PROVEN:
            raise ProofMismatch(f"Wallet {wallet} is already bound to {bound.uid}",
                                target_id=args["uid"], tx_hash=event.tx_hash,
                                detail={"bound_uid": bound.uid, "proof_status": bound.proof_status})
        if bound is not None:
            # An unproven claim on the wallet yields to the ledger
            logger.warning(f"Staged identity {bound.uid} held wallet {wallet}, displaced by {args['uid']} "
                           f"proven in {event.tx_hash}")
            self.audit.append_once(session, "diverged", bound.uid, event.tx_hash, subject_uid,
                                   detail={"displaced_by": args["uid"], "wallet_address": wallet,
                                           "source": source})
            session.delete(bound)
            session.flush()

        row = session.get(Identity, args["uid"])
        values = {"wallet_address": wallet, "username": args["username"], "role": args["role"]}
        if row is None:
            return self._create(session, Identity(uid=args["uid"], **values), event, draft, subject_uid, source)
        if row.proof_status == PROVEN and row.wallet_address != wallet:
            raise ProofMismatch(f"Identity {row.uid} is bound to {row.wallet_address}",
                                target_id=row.uid, tx_hash=event.tx_hash,
                                detail={"bound_wallet": row.wallet_address, "ledger_wallet": wallet})
        if not self._promote(session, row, event, values, subject_uid, source):
            self._confirm_backend_write(session, row, event, draft, subject_uid)
        return row

    def _apply_record(self, session, event, parties, draft, subject_uid, source):
        args = event.args
        row = session.get(MedicalRecord, args["recordId"])
        values = {"content_id": args["contentId"], "content_hash": args["contentHash"]}
        if parties.get("owner") is not None:
            values["owner_uid"] = parties["owner"]
        if row is None:
            row = MedicalRecord(record_id=args["recordId"], record_type=getattr(draft, "record_type", None),
                                **values)
            return self._create(session, row, event, draft, subject_uid, source)
        if not self._promote(session, row, event, values, subject_uid, source):
            self._confirm_backend_write(session, row, event, draft, subject_uid)
        elif draft is not None and draft.record_type and row.record_type is None:
            row.record_type = draft.record_type
        return row

    def _apply_grant(self, session, event, parties, draft, subject_uid, source):
        args = event.args
        if parties.get("patient") is None or parties.get("grantee") is None:
            raise DecodeError(f"Grant {args['grantId']} names an unregistered party",
                              target_id=args["grantId"], tx_hash=event.tx_hash,
                              detail={"patient": args["patient"], "grantee": args["grantee"]})
        row = session.get(AccessGrant, args["grantId"])
        values = {"patient_uid": parties["patient"], "grantee_uid": parties["grantee"],
                  "expires_at": int(args["expiresAt"])}
        if row is None:
            return self._create(session, AccessGrant(grant_id=args["grantId"], **values),
                                event, draft, subject_uid, source)
        if not self._promote(session, row, event, values, subject_uid, source):
            self._confirm_backend_write(session, row, event, draft, subject_uid)
        return row

    def _apply_revocation(self, session, event, parties, draft, subject_uid, source):
        args = event.args
        row = session.get(AccessGrant, args["grantId"])
        if row is None:
            if parties.get("patient") is None or parties.get("grantee") is None:
                raise DecodeError(f"Revocation of {args['grantId']} names an unregistered party",
                                  target_id=args["grantId"], tx_hash=event.tx_hash)
            # Revocation seen before the grant itself: keep what the event proves
            row = AccessGrant(grant_id=args["grantId"], patient_uid=parties["patient"],
                              grantee_uid=parties["grantee"], revoked_at=utcnow(),
                              revoke_tx_hash=event.tx_hash, proof_status=PENDING_PROOF,
                              needs_enrichment=True)
            advance_position(row, event.position)
            session.add(row)
            self._audit_fact(session, event, subject_uid, source, created_from_event=True)
            logger.info(f"Created revoked grant {row.grant_id} from {source} {event.tx_hash}")
            return row

        if (parties.get("patient"), parties.get("grantee")) != (row.patient_uid, row.grantee_uid):
            raise ProofMismatch(f"Revocation {event.tx_hash} names different parties than grant {row.grant_id}",
                                target_id=row.grant_id, tx_hash=event.tx_hash,
                                detail={"grant": [row.patient_uid, row.grantee_uid],
                                        "ledger": [parties.get("patient"), parties.get("grantee")]})
        if row.revoked_at is not None:
            # null -> set only; a second revocation changes nothing
            logger.debug(f"Grant {row.grant_id} already revoked by {row.revoke_tx_hash}")
            return row
        row.revoked_at = utcnow()
        row.revoke_tx_hash = event.tx_hash
        advance_position(row, event.position)
        self._audit_fact(session, event, subject_uid, source)
        logger.info(f"Revoked grant {row.grant_id} ({row.patient_uid} -> {row.grantee_uid})")
        return row

    def _apply_claim(self, session, event, parties, draft, subject_uid, source):
        args = event.args
        row = session.get(InsuranceClaim, args["claimId"])
        values = {"policy_id": args["policyId"], "amount": int(args["amount"]),
                  "treatment_content_id": args["treatmentContentId"]}
        if row is None:
            return self._create(session, InsuranceClaim(claim_id=args["claimId"], status="submitted", **values),
                                event, draft, subject_uid, source)
        # Status is left alone: a later status change may already be applied
        if not self._promote(session, row, event, values, subject_uid, source):
            self._confirm_backend_write(session, row, event, draft, subject_uid)
        return row

    def _apply_claim_status(self, session, event, parties, draft, subject_uid, source):
        args = event.args
        target = args["status"]
        row = session.get(InsuranceClaim, args["claimId"])
        if row is None:
            row = InsuranceClaim(claim_id=args["claimId"], status=target, status_tx_hash=event.tx_hash,
                                 proof_status=PENDING_PROOF, needs_enrichment=True)
            advance_position(row, event.position)
            session.add(row)
            self._audit_fact(session, event, subject_uid, source, created_from_event=True, to=target)
            logger.info(f"Created claim {row.claim_id} in status {target} from {source} {event.tx_hash}")
            return row

        current_position = ledger_position(row)
        if current_position is not None and event.position <= current_position:
            logger.debug(f"Ignoring stale status {target} for claim {row.claim_id} at {event.position}, "
                         f"row is at {current_position}")
            return row
        if target == row.status:
            advance_position(row, event.position)
            return row
        if not status_reachable(row.status, target):
            raise InvalidTransition(f"Claim {row.claim_id} cannot move from {row.status} to {target}",
                                    target_id=row.claim_id, tx_hash=event.tx_hash,
                                    detail={"from": row.status, "to": target})
        previous = row.status
        row.status = target
        row.status_tx_hash = event.tx_hash
        advance_position(row, event.position)
        self._audit_fact(session, event, subject_uid, source, **{"from": previous, "to": target})
        logger.info(f"Claim {row.claim_id}: {previous} -> {target}")
        return row

    # ------------------------------------------------------------------
    # Local rows, enrichment and disclosure
    # ------------------------------------------------------------------

    def stage(self, kind: str, draft: Union[BaseModel, Dict[str, Any]],
              subject_uid: Optional[str] = None) -> EntityView:
        """Write an unproven row ahead of its ledger transaction."""
        if kind not in ENTITY_TABLES:
            raise ValueError(f"Only entity kinds can be staged, not {kind}")
        draft = self.parse_draft(kind, draft)

        def _stage(session: Session) -> EntityView:
            table = ENTITY_TABLES[kind]
            entity_id = getattr(draft, ID_FIELDS[kind])
            row = session.get(table, entity_id)
            if row is not None:
                return to_view(row)
            row = table(**draft.model_dump(), proof_status=PENDING_PROOF)
            session.add(row)
            self.audit.append(session, "staged", entity_id, None, subject_uid, detail={"kind": kind})
            session.flush()
            return to_view(row)

        return self.store.run(_stage)

    def upload_record(self, owner_uid: str, data: bytes, record_type: str,
                      metadata: Optional[Dict[str, Any]] = None, record_id: Optional[str] = None) -> EntityView:
        """
        Put record bytes into the content store and create the PENDING_PROOF row.

        The row becomes disclosable only after submit() or the event stream
        proves the matching on-chain submission.
        """
        if self.content_store is None:
            raise RuntimeError("No content store configured")
        record_id = record_id or uuid.uuid4().hex
        content_id, digest = self.content_store.put(
            data, {**(metadata or {}), "owner_uid": owner_uid, "record_type": record_type})

        def _create_pending(session: Session) -> EntityView:
            if session.get(MedicalRecord, record_id) is not None:
                raise ValueError(f"Record {record_id} already exists")
            row = MedicalRecord(record_id=record_id, owner_uid=owner_uid, content_id=content_id,
                                content_hash=digest, record_type=record_type, proof_status=PENDING_PROOF)
            session.add(row)
            self.audit.append(session, "content_uploaded", record_id, None, owner_uid,
                              detail={"content_id": content_id, "content_hash": digest})
            session.flush()
            return to_view(row)

        return self.store.run(_create_pending)

    def enrich(self, kind: str, entity_id: str, fields: Dict[str, Any],
               subject_uid: Optional[str] = None) -> EntityView:
        """Fill domain fields of a row that was built from a ledger event."""
        if kind not in ENTITY_TABLES:
            raise ValueError(f"Unknown entity kind {kind}")
        unknown = set(fields) - ENRICHABLE_FIELDS.get(kind, set())
        if unknown:
            raise ValueError(f"Fields {sorted(unknown)} of {kind} are ledger-backed or unknown")

        def _enrich(session: Session) -> EntityView:
            row = session.get(ENTITY_TABLES[kind], entity_id)
            if row is None:
                raise NotFound(f"{kind} {entity_id} not found", target_id=entity_id)
            for name, value in fields.items():
                setattr(row, name, value)
            row.needs_enrichment = False
            self.audit.append(session, "enriched", entity_id, None, subject_uid, detail={"fields": fields})
            session.flush()
            return to_view(row)

        return self.store.run(_enrich)

    def get(self, kind: str, entity_id: str) -> EntityView:
        if kind not in ENTITY_TABLES:
            raise ValueError(f"Unknown entity kind {kind}")
        with self.store.transaction() as session:
            row = session.get(ENTITY_TABLES[kind], entity_id)
            if row is None:
                raise NotFound(f"{kind} {entity_id} not found", target_id=entity_id)
            return to_view(row)

    def _proven_record(self, record_id: str) -> Tuple[str, str, str, Optional[str], bool]:
        with self.store.transaction() as session:
            row = session.get(MedicalRecord, record_id)
            if row is None:
                raise NotFound(f"Record {record_id} not found", target_id=record_id)
            if row.proof_status != PROVEN:
                raise AccessDenied(f"Record {record_id} has no verified ledger proof", target_id=record_id)
            return row.content_id, row.content_hash, row.ledger_tx_hash, row.owner_uid, row.integrity_violation

    def _flag_integrity_violation(self, record_id: str, tx_hash: str, stored_hash: Optional[str],
                                  proven_hash: str) -> ContentIntegrityViolation:
        def _flag(session: Session):
            row = session.get(MedicalRecord, record_id)
            row.integrity_violation = True
        self.store.run(_flag)
        problem = "is missing" if stored_hash is None else "does not match its proven hash"
        return ContentIntegrityViolation(
            f"Stored content of {record_id} {problem}",
            target_id=record_id, tx_hash=tx_hash,
            detail={"stored_hash": stored_hash, "proven_hash": proven_hash},
        )

    def _fetch_verified(self, record_id: str, content_id: str, tx_hash: str, proven_hash: str) -> bytes:
        """Stored bytes of a proven record; missing or altered bytes flag the row."""
        try:
            data = self.content_store.get(content_id)
        except NotFound:
            raise self._flag_integrity_violation(record_id, tx_hash, None, proven_hash)
        stored_hash = content_hash(data)
        if stored_hash != proven_hash:
            raise self._flag_integrity_violation(record_id, tx_hash, stored_hash, proven_hash)
        return data

    def verify_record_content(self, record_id: str) -> bool:
        """
        Re-hash the stored bytes of a proven record.

        Raises:
            ContentIntegrityViolation: The bytes do not match the proven hash
        """
        content_id, proven_hash, tx_hash, _, flagged = self._proven_record(record_id)
        try:
            if flagged:
                raise ContentIntegrityViolation(f"Record {record_id} is flagged for an integrity violation",
                                                target_id=record_id, tx_hash=tx_hash)
            self._fetch_verified(record_id, content_id, tx_hash, proven_hash)
        except ContentIntegrityViolation as e:
            self._reject(e, record_id, tx_hash, None, "verify")
            raise
        return True

    def read_record(self, record_id: str, requester_uid: str, now: Optional[int] = None) -> bytes:
        """
        Disclose the bytes of a proven record to its owner or an authorized grantee.

        Raises:
            NotFound: Unknown record
            AccessDenied: Unproven record, or requester not authorized
            ContentIntegrityViolation: Stored bytes are missing or do not match the proven hash
        """
        try:
            content_id, proven_hash, tx_hash, owner_uid, flagged = self._proven_record(record_id)
            if flagged:
                raise ContentIntegrityViolation(f"Record {record_id} is flagged for an integrity violation",
                                                target_id=record_id, tx_hash=tx_hash)
            if requester_uid != owner_uid and not self.evaluator.is_authorized(
                    requester_uid, owner_uid, "record", now):
                raise AccessDenied(f"{requester_uid} is not authorized for records of {owner_uid}",
                                   target_id=record_id, tx_hash=tx_hash)
            data = self._fetch_verified(record_id, content_id, tx_hash, proven_hash)
        except AccessDenied as e:
            self._reject(e, record_id, None, requester_uid, "read", once=False)
            raise
        except ContentIntegrityViolation as e:
            self._reject(e, record_id, None, requester_uid, "read", once=False)
            raise

        def _log_disclosure(session: Session):
            self.audit.append(session, "record_disclosed", record_id, None, requester_uid,
                              detail={"proof_tx_hash": tx_hash, "content_id": content_id})
        self.store.run(_log_disclosure)
        return data
