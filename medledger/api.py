import base64
import binascii
import time
import logging
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from medledger.access import AccessControlEvaluator
from medledger.audit import AuditLogger
from medledger.errors import (
    AccessDenied, ConflictRetry, ContentIntegrityViolation, InvalidTransition, LedgerUnavailable, NotFound,
    ProofMismatch, ReceiptFailed, ReceiptNotFound, ReconcileError,
)
from medledger.models import DRAFT_MODELS, AccessQuery, SubmitRequest, UploadRequest
from medledger.reconcile import ReconciliationEngine

logger = logging.getLogger(__name__)

STATUS_CODES = {
    ReceiptNotFound: 404,
    NotFound: 404,
    AccessDenied: 403,
    ConflictRetry: 409,
    ContentIntegrityViolation: 409,
    ProofMismatch: 422,
    ReceiptFailed: 422,
    InvalidTransition: 422,
    LedgerUnavailable: 503,
}


# Standard API response helpers
def success_response(data=None, message=None):
    """
    Create a standardized success response.

    Args:
        data: Optional data to include in the response
        message: Optional message to include in the response

    Returns:
        dict: A standardized success response
    """
    response = {"status": "success"}

    if data is not None:
        response["data"] = data

    if message is not None:
        response["message"] = message

    return response


def error_response(message, status_code=400, **extra):
    """
    Create a standardized error response and raise an HTTPException.

    Raises:
        HTTPException: With the specified status code and error details
    """
    raise HTTPException(
        status_code=status_code,
        detail={"status": "error", "error": message, **extra}
    )


def status_for(error: ReconcileError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 400


def reconcile_error_response(error: ReconcileError):
    status_code = status_for(error)
    if status_code >= 500 or error.retryable:
        logger.warning(f"{error.code}: {error.message}")
    extra = error.to_dict()
    extra["code"] = extra.pop("error")
    extra.pop("message")
    error_response(error.message, status_code, **extra)


def create_app(engine: ReconciliationEngine, evaluator: Optional[AccessControlEvaluator] = None,
               audit: Optional[AuditLogger] = None) -> FastAPI:
    """Build the HTTP surface over an already wired reconciliation engine."""
    evaluator = evaluator or engine.evaluator
    audit = audit or engine.audit

    app = FastAPI(title="MedLedger Reconciliation API")

    # Enable CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def check_kind(kind: str):
        if kind not in DRAFT_MODELS:
            error_response(f"Unknown entity kind {kind}", 404)

    @app.get("/health")
    @app.get("/api/health")
    async def health_check():
        """Health check endpoint for Docker healthcheck"""
        return success_response(
            data={"timestamp": int(time.time())},
            message="Service is healthy"
        )

    @app.post("/api/entities/{kind}")
    def submit_entity(kind: str, request: SubmitRequest):
        """
        Verify a wallet-signed transaction and commit the matching entity.

        Args:
            kind: identity, record, grant, revocation, claim or claim_status
            request: Draft fields, the claimed transaction hash and the acting user

        Returns:
            dict: The proven entity
        """
        check_kind(kind)
        try:
            view = engine.submit(kind, request.draft, request.tx_hash, request.subject_uid)
        except ValidationError as e:
            error_response(f"Invalid {kind} draft", 422, errors=e.errors(include_url=False, include_context=False))
        except ReconcileError as e:
            reconcile_error_response(e)
        return success_response(data=view.model_dump(), message=f"{kind} {view.entity_id} is proven")

    @app.post("/api/entities/{kind}/stage")
    def stage_entity(kind: str, draft: Dict[str, Any] = Body(...), subject_uid: Optional[str] = None):
        """Store an entity ahead of its ledger transaction (pending proof)."""
        check_kind(kind)
        try:
            view = engine.stage(kind, draft, subject_uid)
        except ValidationError as e:
            error_response(f"Invalid {kind} draft", 422, errors=e.errors(include_url=False, include_context=False))
        except ValueError as e:
            error_response(str(e), 400)
        except ReconcileError as e:
            reconcile_error_response(e)
        return success_response(data=view.model_dump())

    @app.get("/api/entities/{kind}/{entity_id}")
    def get_entity(kind: str, entity_id: str):
        try:
            view = engine.get(kind, entity_id)
        except ValueError as e:
            error_response(str(e), 404)
        except ReconcileError as e:
            reconcile_error_response(e)
        return success_response(data=view.model_dump())

    @app.post("/api/entities/{kind}/{entity_id}/enrich")
    def enrich_entity(kind: str, entity_id: str, fields: Dict[str, Any] = Body(...),
                      subject_uid: Optional[str] = None):
        """Fill domain fields of an entity that was created from a ledger event."""
        try:
            view = engine.enrich(kind, entity_id, fields, subject_uid)
        except ValueError as e:
            error_response(str(e), 400)
        except ReconcileError as e:
            reconcile_error_response(e)
        return success_response(data=view.model_dump())

    @app.get("/api/access")
    def check_access(query: AccessQuery = Depends()):
        """
        Decide whether a grantee may currently read a patient's records.

        Returns:
            dict: authorized flag plus the grant that decided it, if any
        """
        now = query.now if query.now is not None else int(time.time())
        try:
            authorized = evaluator.is_authorized(query.grantee_uid, query.patient_uid, query.resource_kind, now)
        except ReconcileError as e:
            reconcile_error_response(e)
        grants = [g.model_dump() for g in evaluator.active_grants(query.patient_uid, now)
                  if g.fields["grantee_uid"] == query.grantee_uid]
        return success_response(data={
            "authorized": authorized,
            "grantee_uid": query.grantee_uid,
            "patient_uid": query.patient_uid,
            "now": now,
            "grants": grants,
        })

    @app.get("/api/audit/{target_id}")
    def get_audit_trail(target_id: str):
        entries = audit.trail(target_id)
        return success_response(data=[e.model_dump(mode="json") for e in entries])

    @app.get("/api/audit")
    def export_audit(after_seq: int = 0, limit: int = 100):
        """Compliance export: entries after a sequence number, in order."""
        entries = audit.tail(after_seq, min(limit, 1000))
        return success_response(data=[e.model_dump(mode="json") for e in entries])

    @app.post("/api/records/upload")
    def upload_record(request: UploadRequest):
        """
        Store record bytes and create the record pending its ledger proof.

        The returned content_id and content_hash are what the client puts
        into the on-chain submission.
        """
        try:
            data = base64.b64decode(request.content_b64, validate=True)
        except binascii.Error:
            error_response("content_b64 is not valid base64", 400)
        try:
            view = engine.upload_record(request.owner_uid, data, request.record_type, request.metadata)
        except ReconcileError as e:
            reconcile_error_response(e)
        return success_response(data=view.model_dump(), message="Record stored, awaiting ledger proof")

    @app.get("/api/records/{record_id}/content")
    def read_record(record_id: str, requester_uid: str, now: Optional[int] = None):
        try:
            data = engine.read_record(record_id, requester_uid, now)
        except ReconcileError as e:
            reconcile_error_response(e)
        return Response(content=data, media_type="application/octet-stream")

    @app.post("/api/records/{record_id}/verify")
    def verify_record(record_id: str):
        try:
            engine.verify_record_content(record_id)
        except ReconcileError as e:
            reconcile_error_response(e)
        return success_response(data={"record_id": record_id, "intact": True})

    return app
