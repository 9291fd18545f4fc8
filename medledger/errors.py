"""
Error taxonomy for reconciliation between the record store, the content
store and the ledger.

Retryable errors mean "try again later" (the ledger has not finalized, or
a concurrent writer touched the same row). Terminal errors are surfaced to
the caller and always leave an audit entry behind.
"""

import random
import time
import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from medledger.constants import CONFLICT_RETRY_ATTEMPTS, RETRY_BACKOFF_BASE, RETRY_BACKOFF_CAP

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReconcileError(Exception):
    """Base class for every failure raised by the reconciliation core."""

    retryable = False
    audit_action = "rejected"
    code = "reconcile_error"

    def __init__(self, message: str, target_id: Optional[str] = None, tx_hash: Optional[str] = None,
                 detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.target_id = target_id
        self.tx_hash = tx_hash
        self.detail = detail or {}

    def to_dict(self):
        return {
            "error": self.code,
            "message": self.message,
            "target_id": self.target_id,
            "tx_hash": self.tx_hash,
            "retryable": self.retryable,
            "detail": self.detail,
        }


class ReceiptNotFound(ReconcileError):
    """The ledger has no receipt for the hash yet, or the lookup timed out."""

    retryable = True
    code = "receipt_not_found"


class ReceiptFailed(ReconcileError):
    """The on-chain transaction itself reverted."""

    code = "receipt_failed"


class ProofMismatch(ReconcileError):
    """The claimed transaction does not prove the submitted fields."""

    code = "proof_mismatch"


class DecodeError(ProofMismatch):
    """An event could not be decoded into a known entity kind."""

    code = "decode_error"


class InvalidTransition(ReconcileError):
    """A claim status change that would move the claim backwards."""

    code = "invalid_transition"


class ContentIntegrityViolation(ReconcileError):
    """Stored bytes do not hash to the content hash proven on-chain."""

    audit_action = "integrity_violation"
    code = "content_integrity_violation"


class LedgerUnavailable(ReconcileError):
    """A ledger state lookup did not resolve in time; the answer is unknown, not negative."""

    retryable = True
    code = "ledger_unavailable"


class ConflictRetry(ReconcileError):
    """Optimistic concurrency conflict that outlived its retry budget."""

    retryable = True
    code = "conflict_retry"


class InternalError(ReconcileError):
    """An unexpected failure while applying a ledger event."""

    code = "internal_error"


class NotFound(ReconcileError):
    code = "not_found"


class AccessDenied(ReconcileError):
    audit_action = "access_denied"
    code = "access_denied"


def backoff_delay(attempt: int, base: float = RETRY_BACKOFF_BASE, cap: float = RETRY_BACKOFF_CAP) -> float:
    """Exponential backoff with full jitter, capped."""
    return random.uniform(0, min(cap, base * (2 ** attempt)))


def retry_with_backoff(
    fn: Callable[[], T],
    attempts: int = CONFLICT_RETRY_ATTEMPTS,
    base: float = RETRY_BACKOFF_BASE,
    cap: float = RETRY_BACKOFF_CAP,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn until it succeeds or raises a terminal error.

    Args:
        fn: Zero-argument callable, typically a bound submit
        attempts: Maximum number of calls
        base: First backoff delay in seconds
        cap: Upper bound on a single delay
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever fn returns

    Raises:
        ReconcileError: The last retryable error once attempts are exhausted,
            or the first terminal error
    """
    for attempt in range(attempts):
        try:
            return fn()
        except ReconcileError as e:
            if not e.retryable or attempt == attempts - 1:
                raise
            delay = backoff_delay(attempt, base, cap)
            logger.warning(f"{e.code} for {e.target_id or e.tx_hash}, retrying in {delay:.2f}s "
                           f"(attempt {attempt + 1}/{attempts})")
            sleep(delay)
    raise ValueError("attempts must be at least 1")
