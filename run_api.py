#!/usr/bin/env python3
"""
Script to run the reconciliation API together with the ledger ingestion worker.
"""

import logging
import threading

import uvicorn

from medledger.api import create_app
from medledger.audit import AuditLogger
from medledger.constants import IPFS_URL, LOCAL_STORAGE_DIR
from medledger.content_store import IPFSContentStore, LocalContentStore
from medledger.db import RecordStore
from medledger.ingest import EventIngestor
from medledger.ledger import Web3LedgerReader
from medledger.reconcile import ReconciliationEngine

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def build_content_store():
    try:
        return IPFSContentStore(urls=[IPFS_URL, "http://127.0.0.1:5001", "http://ipfs:5001"])
    except ConnectionError as e:
        logger.warning(f"IPFS not available ({e}), falling back to local storage in {LOCAL_STORAGE_DIR}")
        return LocalContentStore(LOCAL_STORAGE_DIR)


def build():
    store = RecordStore()
    store.create_schema()
    reader = Web3LedgerReader()
    audit = AuditLogger(store)
    engine = ReconciliationEngine(store, reader, audit=audit, content_store=build_content_store())
    return store, reader, engine


# Run the FastAPI application
if __name__ == "__main__":
    store, reader, engine = build()
    stop_event = threading.Event()
    ingestor = EventIngestor(engine, reader, store)
    worker = threading.Thread(target=ingestor.run_forever, args=(stop_event,), daemon=True)
    worker.start()
    try:
        uvicorn.run(create_app(engine), host="0.0.0.0", port=8000)
    finally:
        stop_event.set()
        worker.join(timeout=10)
