"""
Access control evaluation over proven grants.

Expiry is lazy: it is decided at call time from expires_at, there is no
sweep. Revocation is immediate once the revoking transaction is proven
(revoked_at is only ever set by the reconciliation engine after proof).
With a ledger reader attached, a grant that passes locally is also
re-checked on-chain, so a revocation the event stream has not delivered yet
still denies access.
"""

import time
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from medledger.db import AccessGrant, RecordStore, to_view
from medledger.ledger import LedgerReader
from medledger.models import PROVEN, EntityView

logger = logging.getLogger(__name__)


def _valid_grants_query(patient_uid: str):
    return select(AccessGrant).where(
        AccessGrant.patient_uid == patient_uid,
        AccessGrant.proof_status == PROVEN,
        AccessGrant.revoked_at.is_(None),
        AccessGrant.expires_at.is_not(None),
    )


class AccessControlEvaluator:
    def __init__(self, store: RecordStore, ledger: Optional[LedgerReader] = None):
        self.store = store
        self.ledger = ledger

    def governing_grant(self, session: Session, grantee_uid: str, patient_uid: str) -> Optional[AccessGrant]:
        """The proven, non-revoked grant with the latest expiry for the pair."""
        query = (_valid_grants_query(patient_uid)
                 .where(AccessGrant.grantee_uid == grantee_uid)
                 .order_by(AccessGrant.expires_at.desc(), AccessGrant.ledger_block.desc())
                 .limit(1))
        return session.scalars(query).first()

    def is_authorized(self, grantee_uid: str, patient_uid: str, resource_kind: Optional[str] = None,
                      now: Optional[int] = None) -> bool:
        """
        Check whether grantee_uid may currently access patient_uid's records.

        Args:
            grantee_uid: Who is asking
            patient_uid: Whose records are asked for
            resource_kind: Kind of resource (grants currently cover all kinds)
            now: Unix time of the decision; defaults to the current time

        Returns:
            bool: True iff a proven, non-revoked grant exists and now < expires_at
        """
        if now is None:
            now = int(time.time())
        if grantee_uid == patient_uid:
            return True

        with self.store.transaction() as session:
            grant = self.governing_grant(session, grantee_uid, patient_uid)
            if grant is None:
                logger.debug(f"No valid grant from {patient_uid} to {grantee_uid}")
                return False
            grant_id, expires_at = grant.grant_id, grant.expires_at
        allowed = now < expires_at
        logger.debug(f"Grant {grant_id} ({patient_uid} -> {grantee_uid}, {resource_kind}) "
                     f"expires {expires_at}, now {now}: {'allow' if allowed else 'deny'}")
        if allowed and self.ledger is not None:
            allowed = self.confirmed_on_ledger(grant_id)
        return allowed

    def confirmed_on_ledger(self, grant_id: str) -> bool:
        """
        Check that the ledger still holds the grant unrevoked.

        Raises:
            LedgerUnavailable: The ledger lookup did not resolve
        """
        state = self.ledger.get_access_grant(grant_id)
        if state is None:
            logger.warning(f"Grant {grant_id} is proven locally but unknown to the ledger")
            return False
        if state["revoked"]:
            logger.warning(f"Grant {grant_id} is revoked on the ledger; revocation not ingested yet")
            return False
        return True

    def active_grants(self, patient_uid: str, now: Optional[int] = None) -> List[EntityView]:
        if now is None:
            now = int(time.time())
        with self.store.transaction() as session:
            grants = session.scalars(
                _valid_grants_query(patient_uid)
                .where(AccessGrant.expires_at > now)
                .order_by(AccessGrant.expires_at.desc())
            ).all()
            return [to_view(g) for g in grants]
