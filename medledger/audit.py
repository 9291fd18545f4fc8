"""
Audit logger for the compliance trail.

Every accepted state transition and every rejected submission is appended
here. Entries are insert-only; a correction is a new entry that references
the same target_id. The sequence number comes from the `sequences` row,
locked for the duration of the caller's transaction.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from medledger.db import AuditEntry, RecordStore, Sequence, utcnow
from medledger.models import AuditEntryView

logger = logging.getLogger(__name__)

AUDIT_SEQUENCE = "audit"


def to_view(entry: AuditEntry) -> AuditEntryView:
    return AuditEntryView(
        seq=entry.seq,
        subject_uid=entry.subject_uid,
        action=entry.action,
        target_id=entry.target_id,
        ledger_tx_hash=entry.ledger_tx_hash,
        detail=entry.detail,
        observed_at=entry.observed_at,
    )


class AuditLogger:
    def __init__(self, store: RecordStore):
        self.store = store

    def next_seq(self, session: Session) -> int:
        counter = session.execute(
            select(Sequence).where(Sequence.name == AUDIT_SEQUENCE).with_for_update()
        ).scalar_one_or_none()
        if counter is None:
            counter = Sequence(name=AUDIT_SEQUENCE, value=0)
            session.add(counter)
        counter.value += 1
        return counter.value

    def append(self, session: Session, action: str, target_id: str,
               tx_hash: Optional[str] = None, subject_uid: Optional[str] = None,
               detail: Optional[Dict[str, Any]] = None) -> int:
        """
        Append an entry inside the caller's transaction.

        Args:
            session: Open session of the business transaction
            action: What happened (e.g. "record_submitted", "rejected")
            target_id: Natural id of the entity the entry is about
            tx_hash: Ledger transaction backing the action, if any
            subject_uid: Who caused it, when known
            detail: JSON-serializable context

        Returns:
            int: The sequence number assigned to the entry
        """
        seq = self.next_seq(session)
        session.add(AuditEntry(
            seq=seq,
            subject_uid=subject_uid,
            action=action,
            target_id=target_id,
            ledger_tx_hash=tx_hash,
            detail=detail,
            observed_at=utcnow(),
        ))
        session.flush()
        logger.info(f"Audit #{seq}: {action} {target_id} tx={tx_hash}")
        return seq

    def exists(self, session: Session, target_id: str, tx_hash: Optional[str], action: str) -> bool:
        query = select(AuditEntry.seq).where(
            AuditEntry.target_id == target_id,
            AuditEntry.action == action,
        )
        if tx_hash is None:
            query = query.where(AuditEntry.ledger_tx_hash.is_(None))
        else:
            query = query.where(AuditEntry.ledger_tx_hash == tx_hash)
        return session.execute(query.limit(1)).first() is not None

    def append_once(self, session: Session, action: str, target_id: str,
                    tx_hash: Optional[str] = None, subject_uid: Optional[str] = None,
                    detail: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """Append unless an entry for (target_id, tx_hash, action) is already there."""
        if tx_hash is not None and self.exists(session, target_id, tx_hash, action):
            logger.debug(f"Audit entry {action} {target_id} tx={tx_hash} already present")
            return None
        return self.append(session, action, target_id, tx_hash, subject_uid, detail)

    def record_rejection(self, action: str, target_id: str, tx_hash: Optional[str] = None,
                         subject_uid: Optional[str] = None,
                         detail: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """
        Write a rejection in its own transaction.

        The business transaction has already been rolled back at this point,
        so the entry must not depend on it.
        """
        return self.store.run(self.append_once, action, target_id, tx_hash, subject_uid, detail)

    def trail(self, target_id: str) -> List[AuditEntryView]:
        with self.store.transaction() as session:
            entries = session.scalars(
                select(AuditEntry).where(AuditEntry.target_id == target_id).order_by(AuditEntry.seq)
            ).all()
            return [to_view(e) for e in entries]

    def tail(self, after_seq: int = 0, limit: int = 100) -> List[AuditEntryView]:
        with self.store.transaction() as session:
            entries = session.scalars(
                select(AuditEntry).where(AuditEntry.seq > after_seq).order_by(AuditEntry.seq).limit(limit)
            ).all()
            return [to_view(e) for e in entries]
