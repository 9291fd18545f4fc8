"""
Event ingestion worker.

Reads the ledger's event stream in batches from a persisted cursor and
feeds each event to the reconciliation engine. Events for the same entity
are applied one after another in ledger order; different entities may run
in parallel lanes. The cursor only moves past events that are fully
handled, so a restart resumes without skipping anything and replays are
harmless because ingestion is idempotent.
"""

import time
import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional, Set, Tuple

from medledger.constants import INGEST_BATCH_SIZE, INGEST_POLL_INTERVAL, INGEST_WORKERS
from medledger.audit import AuditLogger
from medledger.db import RecordStore
from medledger.errors import InternalError, ReconcileError
from medledger.ledger import LedgerReader
from medledger.models import EVENT_ENTITIES, LedgerEvent
from medledger.reconcile import ReconciliationEngine, event_target

logger = logging.getLogger(__name__)


def lane_key(event: LedgerEvent) -> Tuple[str, str]:
    if event.name in EVENT_ENTITIES and event.args.get(EVENT_ENTITIES[event.name][1]) is not None:
        return event.key
    # Undecodable events get a lane of their own
    return ("unknown", f"{event.tx_hash}:{event.log_index}")


class EventIngestor:
    def __init__(self, engine: ReconciliationEngine, reader: LedgerReader, store: RecordStore,
                 name: str = "ledger", batch_size: int = INGEST_BATCH_SIZE, workers: int = INGEST_WORKERS,
                 poll_interval: float = INGEST_POLL_INTERVAL, audit: Optional[AuditLogger] = None):
        self.engine = engine
        self.reader = reader
        self.store = store
        self.audit = audit or AuditLogger(store)
        self.name = name
        self.batch_size = batch_size
        self.workers = max(1, workers)
        self.poll_interval = poll_interval

    def _run_lane(self, lane: List[Tuple[int, LedgerEvent]]) -> Set[int]:
        """Apply one entity's events in order; stop at the first retryable failure."""
        done = set()
        for index, event in lane:
            try:
                self.engine.ingest_ledger_event(event)
            except ReconcileError as e:
                if e.retryable:
                    logger.warning(f"Deferring {event.name} {event.tx_hash} and later events for "
                                   f"{lane_key(event)}: {e.message}")
                    break
                # Already audited by the engine; the event is settled
                logger.error(f"Ledger event {event.name} at {event.position} rejected: {e.message}")
            except Exception as e:
                logger.exception(f"Ledger event {event.name} at {event.position} failed unexpectedly")
                if not self._reject_unexpected(event, e):
                    break
            done.add(index)
        return done

    def _reject_unexpected(self, event: LedgerEvent, error: Exception) -> bool:
        """Audit an event the engine could not apply. False when the audit write itself failed."""
        rejection = InternalError(f"{type(error).__name__}: {error}", target_id=event_target(event),
                                  tx_hash=event.tx_hash)
        try:
            self.audit.record_rejection(rejection.audit_action, rejection.target_id, rejection.tx_hash,
                                        detail={"error": rejection.code, "message": rejection.message,
                                                "source": f"ledger_event:{event.name}"})
        except Exception as e:
            logger.error(f"Could not audit failed event {event.name} {event.tx_hash}, will retry: {e}")
            return False
        return True

    def poll_once(self) -> int:
        """
        Process one batch of events after the stored cursor.

        Returns:
            int: Number of events the cursor moved past
        """
        cursor = self.store.load_cursor(self.name)
        events = self.reader.fetch_events(cursor, self.batch_size)
        if not events:
            return 0

        lanes = OrderedDict()
        for index, event in enumerate(events):
            lanes.setdefault(lane_key(event), []).append((index, event))

        done: Set[int] = set()
        if self.workers == 1 or len(lanes) == 1:
            for lane in lanes.values():
                done |= self._run_lane(lane)
        else:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                futures = {executor.submit(self._run_lane, lane): key for key, lane in lanes.items()}
                for future in as_completed(futures):
                    try:
                        done |= future.result()
                    except Exception as e:
                        logger.error(f"Lane {futures[future]} failed, retrying next poll: {e}")

        processed = 0
        while processed < len(events) and processed in done:
            processed += 1
        if processed:
            self.store.save_cursor(self.name, events[processed - 1].cursor())
            logger.info(f"Ingested {processed}/{len(events)} events, cursor at "
                        f"{events[processed - 1].position}")
        return processed

    def run_forever(self, stop_event: Optional[threading.Event] = None):
        """Poll until stop_event is set, sleeping when caught up or when the ledger is unreachable."""
        stop_event = stop_event or threading.Event()
        logger.info(f"Starting ledger ingestion '{self.name}' with {self.workers} worker(s)")
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                processed = self.poll_once()
            except Exception as e:
                logger.error(f"Ingestion poll failed: {e}")
                processed = 0
            if processed < self.batch_size:
                stop_event.wait(max(0.0, self.poll_interval - (time.monotonic() - started)))
        logger.info(f"Stopped ledger ingestion '{self.name}'")
