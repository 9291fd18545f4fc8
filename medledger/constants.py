"""
Constants for the medical record ledger synchronization service.

This module defines the configuration read from the environment (database,
ledger and IPFS endpoints, retry and ingestion tuning) and the role
definitions shared by every component.
"""

import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Role definitions
ROLES = {
    "PATIENT": "patient",
    "DOCTOR": "doctor",
    "INSURER": "insurer",
    "ADMIN": "admin"
}

# Relational store
LOCAL_STORAGE_DIR = os.getenv("LOCAL_STORAGE_DIR", "local_storage")
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{LOCAL_STORAGE_DIR}/medledger.db")

# RPC URL and contract
RPC_URL = os.getenv("RPC_URL", "http://127.0.0.1:8545")
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "0x0000000000000000000000000000000000000000")
CONTRACT_ABI_PATH = os.getenv("CONTRACT_ABI_PATH", "artifacts/contracts/MedLedger.sol/MedLedger.json")

# IPFS URL
IPFS_URL = os.getenv("IPFS_URL", "/ip4/127.0.0.1/tcp/5001")

# Ledger lookups (seconds / blocks)
LEDGER_TIMEOUT = float(os.getenv("LEDGER_TIMEOUT", "10"))
LEDGER_START_BLOCK = int(os.getenv("LEDGER_START_BLOCK", "0"))
LEDGER_CONFIRMATIONS = int(os.getenv("LEDGER_CONFIRMATIONS", "0"))

# Event ingestion
INGEST_BATCH_SIZE = int(os.getenv("INGEST_BATCH_SIZE", "100"))
INGEST_POLL_INTERVAL = float(os.getenv("INGEST_POLL_INTERVAL", "5"))
INGEST_WORKERS = int(os.getenv("INGEST_WORKERS", "1"))

# Retries
CONFLICT_RETRY_ATTEMPTS = int(os.getenv("CONFLICT_RETRY_ATTEMPTS", "5"))
RETRY_BACKOFF_BASE = float(os.getenv("RETRY_BACKOFF_BASE", "0.5"))
RETRY_BACKOFF_CAP = float(os.getenv("RETRY_BACKOFF_CAP", "30"))
