"""
Record Store: the transactional relational side of the system.

Each class is one table. Business rows carry the ledger proof columns
(ledger_tx_hash, proof_status and the ledger position of the last applied
fact) plus a version counter used for optimistic concurrency. The audit log
is insert-only and its sequence is a row in `sequences`, so it stays correct
with several writer processes.
"""

import os
import time
import logging
import datetime
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from sqlalchemy import (
    JSON, Boolean, DateTime, Integer, BigInteger, String, Text, UniqueConstraint, Index,
    create_engine, select,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from medledger.constants import DATABASE_URL, CONFLICT_RETRY_ATTEMPTS
from medledger.errors import ConflictRetry, backoff_delay
from medledger.models import PENDING_PROOF, PROVEN, EntityView, EventCursor

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


# ── 1. Identity ───────────────────────────────────────────────────────────────
class Identity(Base):
    __tablename__ = "identities"

    uid: Mapped[str] = mapped_column(String(128), primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False)   # bound once
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    ledger_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    proof_status: Mapped[str] = mapped_column(String(20), default=PENDING_PROOF)
    needs_enrichment: Mapped[bool] = mapped_column(Boolean, default=False)
    ledger_block: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    ledger_log_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    kind = "identity"

    @property
    def entity_id(self):
        return self.uid

    def fields(self):
        return {"uid": self.uid, "wallet_address": self.wallet_address,
                "username": self.username, "role": self.role}


# ── 2. Medical records ────────────────────────────────────────────────────────
class MedicalRecord(Base):
    __tablename__ = "medical_records"

    record_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_uid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    content_id: Mapped[str] = mapped_column(String(255), nullable=False)      # IPFS CID
    content_hash: Mapped[str] = mapped_column(String(128), nullable=False)    # sha256 hex
    record_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    integrity_violation: Mapped[bool] = mapped_column(Boolean, default=False)
    ledger_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    proof_status: Mapped[str] = mapped_column(String(20), default=PENDING_PROOF)
    needs_enrichment: Mapped[bool] = mapped_column(Boolean, default=False)
    ledger_block: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    ledger_log_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    kind = "record"

    @property
    def entity_id(self):
        return self.record_id

    def fields(self):
        return {"record_id": self.record_id, "owner_uid": self.owner_uid,
                "content_id": self.content_id, "content_hash": self.content_hash,
                "record_type": self.record_type,
                "created_at": self.created_at.isoformat() if self.created_at else None,
                "integrity_violation": self.integrity_violation}


# ── 3. Access grants ──────────────────────────────────────────────────────────
class AccessGrant(Base):
    __tablename__ = "access_grants"

    grant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    patient_uid: Mapped[str] = mapped_column(String(128), nullable=False)
    grantee_uid: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)   # unix seconds
    revoked_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime, nullable=True)  # null -> set only
    revoke_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    ledger_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    proof_status: Mapped[str] = mapped_column(String(20), default=PENDING_PROOF)
    needs_enrichment: Mapped[bool] = mapped_column(Boolean, default=False)
    ledger_block: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    ledger_log_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_grant_pair", "patient_uid", "grantee_uid"),
    )

    kind = "grant"

    @property
    def entity_id(self):
        return self.grant_id

    def fields(self):
        return {"grant_id": self.grant_id, "patient_uid": self.patient_uid,
                "grantee_uid": self.grantee_uid, "expires_at": self.expires_at,
                "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
                "revoke_tx_hash": self.revoke_tx_hash}


# ── 4. Insurance claims ───────────────────────────────────────────────────────
class InsuranceClaim(Base):
    __tablename__ = "insurance_claims"

    claim_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    policy_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)      # minor units
    treatment_content_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="submitted")
    status_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    ledger_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    proof_status: Mapped[str] = mapped_column(String(20), default=PENDING_PROOF)
    needs_enrichment: Mapped[bool] = mapped_column(Boolean, default=False)
    ledger_block: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    ledger_log_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    kind = "claim"

    @property
    def entity_id(self):
        return self.claim_id

    def fields(self):
        return {"claim_id": self.claim_id, "policy_id": self.policy_id, "amount": self.amount,
                "treatment_content_id": self.treatment_content_id, "status": self.status,
                "status_tx_hash": self.status_tx_hash}


# ── 5. Audit log ──────────────────────────────────────────────────────────────
class AuditEntry(Base):
    """Append-only; rows are never updated or deleted."""

    __tablename__ = "audit_log"

    seq: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True,
                                     autoincrement=False)
    subject_uid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    ledger_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    detail: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    observed_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("target_id", "ledger_tx_hash", "action", name="uq_audit_target_tx_action"),
    )


class Sequence(Base):
    __tablename__ = "sequences"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class IngestCursor(Base):
    __tablename__ = "ingest_cursors"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


ENTITY_TABLES = {
    "identity": Identity,
    "record": MedicalRecord,
    "grant": AccessGrant,
    "claim": InsuranceClaim,
}


def ledger_position(row) -> Optional[Tuple[int, int]]:
    if row.ledger_block is None:
        return None
    return (row.ledger_block, row.ledger_log_index or 0)


def mark_proven(row, tx_hash: str, position: Tuple[int, int]):
    """Attach proof to a row and move its ledger position forward."""
    row.ledger_tx_hash = tx_hash
    row.proof_status = PROVEN
    advance_position(row, position)


def advance_position(row, position: Tuple[int, int]):
    current = ledger_position(row)
    if current is None or position > current:
        row.ledger_block, row.ledger_log_index = position


def to_view(row) -> EntityView:
    return EntityView(
        kind=row.kind,
        entity_id=row.entity_id,
        proof_status=row.proof_status,
        ledger_tx_hash=row.ledger_tx_hash,
        needs_enrichment=bool(row.needs_enrichment),
        fields=row.fields(),
    )


class RecordStore:
    """Owns the engine and session factory and runs unit-of-work transactions."""

    def __init__(self, url: str = DATABASE_URL, attempts: int = CONFLICT_RETRY_ATTEMPTS,
                 retry_backoff: float = 0.05, echo: bool = False):
        self.url = url
        self.attempts = attempts
        self.retry_backoff = retry_backoff

        engine_kwargs = {"echo": echo}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            path = url.split("///", 1)[1] if "///" in url else ""
            if path in ("", ":memory:"):
                engine_kwargs["poolclass"] = StaticPool
            elif os.path.dirname(path):
                os.makedirs(os.path.dirname(path), exist_ok=True)

        self.engine = create_engine(url, **engine_kwargs)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_schema(self):
        Base.metadata.create_all(self.engine)
        logger.info(f"Record store schema ready at {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def transaction(self):
        """One unit of work: commit on success, roll back on any error."""
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """
        Run fn(session, *args, **kwargs) as one transaction.

        A conflicting concurrent writer (stale version, duplicate insert, lock
        contention) aborts the whole attempt and fn runs again from its first
        read. Errors raised by fn itself propagate untouched.

        Raises:
            ConflictRetry: When every attempt conflicted
        """
        last_error = None
        for attempt in range(self.attempts):
            try:
                with self.transaction() as session:
                    return fn(session, *args, **kwargs)
            except (StaleDataError, IntegrityError, OperationalError) as e:
                last_error = e
                logger.warning(f"Transaction conflict in {getattr(fn, '__name__', fn)} "
                               f"(attempt {attempt + 1}/{self.attempts}): {e}")
                if self.retry_backoff:
                    time.sleep(backoff_delay(attempt, base=self.retry_backoff, cap=self.retry_backoff * 20))
        raise ConflictRetry(f"Gave up after {self.attempts} conflicting attempts: {last_error}")

    def load_cursor(self, name: str) -> Optional[EventCursor]:
        with self.transaction() as session:
            row = session.get(IngestCursor, name)
            if row is None:
                return None
            return EventCursor(block_number=row.block_number, log_index=row.log_index)

    def save_cursor(self, name: str, cursor: EventCursor):
        def _save(session: Session):
            row = session.get(IngestCursor, name)
            if row is None:
                session.add(IngestCursor(name=name, block_number=cursor.block_number,
                                         log_index=cursor.log_index))
            elif cursor.as_tuple() > (row.block_number, row.log_index):
                row.block_number = cursor.block_number
                row.log_index = cursor.log_index
        self.run(_save)

    def get(self, kind: str, entity_id: str):
        with self.transaction() as session:
            return session.get(ENTITY_TABLES[kind], entity_id)

    def count(self, kind: str) -> int:
        table = ENTITY_TABLES[kind]
        with self.transaction() as session:
            return len(session.scalars(select(table)).all())
