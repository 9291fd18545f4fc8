"""
Ledger-backed medical record synchronization.

Keeps the relational record store, the content store and the ledger
consistent: nothing is treated as authorized, payable or disclosable until
the ledger independently proves it.
"""

from medledger.access import AccessControlEvaluator
from medledger.audit import AuditLogger
from medledger.content_store import ContentStore, IPFSContentStore, LocalContentStore, content_hash
from medledger.db import RecordStore
from medledger.errors import (
    AccessDenied, ConflictRetry, ContentIntegrityViolation, DecodeError, InternalError, InvalidTransition,
    LedgerUnavailable, NotFound, ProofMismatch, ReceiptFailed, ReceiptNotFound, ReconcileError,
    retry_with_backoff,
)
from medledger.ingest import EventIngestor
from medledger.ledger import LedgerReader, Web3LedgerReader
from medledger.reconcile import ReconciliationEngine

__version__ = "0.1.0"
