"""
Ledger reader: independent, read-only access to what the chain proves.

The reconciliation engine never trusts a client-supplied receipt. It asks
this module for the receipt of a transaction hash, for the current value of
an on-chain mapping, or for the ordered stream of contract events.
A receipt lookup that does not resolve within LEDGER_TIMEOUT comes back as
None, which the engine reports as ReceiptNotFound. A state lookup that does
not resolve raises LedgerUnavailable, so "unknown" is never read as "absent".
Both are retryable.
"""

import json
import time
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional

import requests
from web3 import Web3
from web3.exceptions import LogTopicError, MismatchedABI, TimeExhausted, TransactionNotFound

from medledger.constants import (
    CONTRACT_ABI_PATH, CONTRACT_ADDRESS, INGEST_BATCH_SIZE, INGEST_POLL_INTERVAL,
    LEDGER_CONFIRMATIONS, LEDGER_START_BLOCK, LEDGER_TIMEOUT, RPC_URL,
)
from medledger.errors import LedgerUnavailable
from medledger.models import CLAIM_STATUSES, EVENT_ENTITIES, EventCursor, LedgerEvent, Receipt

logger = logging.getLogger(__name__)

ADDRESS_ARGS = {"wallet", "owner", "patient", "grantee"}

# Blocks scanned per get_logs call
BLOCK_RANGE = 2000


def _inputs(*fields):
    return [{"indexed": indexed, "internalType": t, "name": n, "type": t} for n, t, indexed in fields]


def _event(name, *fields):
    return {"anonymous": False, "inputs": _inputs(*fields), "name": name, "type": "event"}


def _view(name, inputs, outputs):
    return {
        "inputs": [{"internalType": t, "name": n, "type": t} for n, t in inputs],
        "name": name,
        "outputs": [{"internalType": t, "name": n, "type": t} for n, t in outputs],
        "stateMutability": "view",
        "type": "function",
    }


# Minimal ABI of the MedLedger contract, used when no build artifact is available
LEDGER_ABI = [
    _event("UserRegistered", ("uid", "string", False), ("wallet", "address", True),
           ("username", "string", False), ("role", "string", False)),
    _event("RecordSubmitted", ("recordId", "string", False), ("owner", "address", True),
           ("contentId", "string", False), ("contentHash", "string", False)),
    _event("AccessGranted", ("grantId", "string", False), ("patient", "address", True),
           ("grantee", "address", True), ("expiresAt", "uint256", False)),
    _event("AccessRevoked", ("grantId", "string", False), ("patient", "address", True),
           ("grantee", "address", True)),
    _event("ClaimSubmitted", ("claimId", "string", False), ("policyId", "string", False),
           ("amount", "uint256", False), ("treatmentContentId", "string", False)),
    _event("ClaimStatusChanged", ("claimId", "string", False), ("status", "uint8", False)),
    _view("users", [("wallet", "address")], [("uid", "string"), ("username", "string"), ("role", "string")]),
    _view("grants", [("grantId", "string")],
          [("patient", "address"), ("grantee", "address"), ("expiresAt", "uint256"), ("revoked", "bool")]),
]


def load_abi(path: str = CONTRACT_ABI_PATH) -> List[Dict]:
    """Load the contract ABI from a build artifact, falling back to LEDGER_ABI."""
    try:
        with open(path, "r") as f:
            abi = json.load(f)["abi"]
            logger.info(f"Loaded contract ABI from {path}")
            return abi
    except (FileNotFoundError, json.JSONDecodeError, KeyError) as e:
        logger.warning(f"Could not load ABI from {path} ({e}), using built-in ABI")
        return LEDGER_ABI


def _normalize(name: str, value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    if name in ADDRESS_ARGS and isinstance(value, str):
        return Web3.to_checksum_address(value)
    if name == "status" and isinstance(value, int):
        return CLAIM_STATUSES[value]
    return value


def decode_event(name: str, args: Dict[str, Any], tx_hash: Any, block_number: int,
                 log_index: int) -> LedgerEvent:
    """
    Build a LedgerEvent from decoded log arguments.

    Values that cannot be normalized are passed through as they are; the
    reconciliation engine validates events and audits the ones it rejects.
    """
    normalized = {}
    for key, value in dict(args).items():
        try:
            normalized[key] = _normalize(key, value)
        except (IndexError, ValueError):
            normalized[key] = value
    if not isinstance(tx_hash, str):
        tx_hash = Web3.to_hex(tx_hash)
    return LedgerEvent(name=name, args=normalized, tx_hash=tx_hash,
                       block_number=int(block_number), log_index=int(log_index))


class LedgerReader:
    """Read-only view of the ledger used by the reconciliation engine."""

    batch_size = INGEST_BATCH_SIZE

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        raise NotImplementedError

    def get_user(self, address: str) -> Optional[Dict[str, Any]]:
        """
        Registration of a wallet on the ledger, or None when it has none.

        Raises:
            LedgerUnavailable: The lookup did not resolve
        """
        raise NotImplementedError

    def get_access_grant(self, grant_id: str) -> Optional[Dict[str, Any]]:
        """Current on-chain state of a grant, including its revoked flag."""
        raise NotImplementedError

    def fetch_events(self, after: Optional[EventCursor] = None, limit: int = INGEST_BATCH_SIZE) -> List[LedgerEvent]:
        """Events strictly after `after`, in (block_number, log_index) order."""
        raise NotImplementedError

    def subscribe(self, event_filter: Optional[Iterable[str]] = None, after: Optional[EventCursor] = None,
                  poll_interval: float = INGEST_POLL_INTERVAL, sleep=time.sleep) -> Iterator[LedgerEvent]:
        """
        Lazy, infinite, ordered stream of ledger events.

        Restart it from the last cursor a consumer persisted and it resumes
        with the next event, without replaying or skipping any.

        Args:
            event_filter: Event names to yield; None yields everything
            after: Resume point; None starts from the configured start block
            poll_interval: Seconds to wait when caught up with the chain head
            sleep: Sleep function (injectable for tests)
        """
        names = set(event_filter) if event_filter else None
        cursor = after
        while True:
            events = self.fetch_events(cursor, self.batch_size)
            for event in events:
                cursor = event.cursor()
                if names is None or event.name in names:
                    yield event
            if not events:
                sleep(poll_interval)


class Web3LedgerReader(LedgerReader):
    """LedgerReader over an EVM contract reached through web3's HTTP provider."""

    def __init__(self, rpc_url: str = RPC_URL, contract_address: str = CONTRACT_ADDRESS,
                 abi: Optional[List[Dict]] = None, timeout: float = LEDGER_TIMEOUT,
                 start_block: int = LEDGER_START_BLOCK, confirmations: int = LEDGER_CONFIRMATIONS,
                 w3: Optional[Web3] = None):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address),
                                             abi=abi or load_abi())
        self.timeout = timeout
        self.start_block = start_block
        self.confirmations = confirmations

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            raw = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            logger.info(f"No receipt yet for {tx_hash}")
            return None
        except (TimeExhausted, requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"Receipt lookup for {tx_hash} did not resolve: {e}")
            return None

        events = []
        if raw["status"] == 1:
            for log in raw["logs"]:
                if Web3.to_checksum_address(log["address"]) != self.contract.address:
                    continue
                event = self._decode_log(log)
                if event is not None:
                    events.append(event)
        return Receipt(tx_hash=Web3.to_hex(raw["transactionHash"]), status=raw["status"],
                       block_number=raw["blockNumber"], events=events)

    def _decode_log(self, log) -> Optional[LedgerEvent]:
        for name in EVENT_ENTITIES:
            try:
                decoded = getattr(self.contract.events, name)().process_log(log)
            except (MismatchedABI, LogTopicError):
                # Topic belongs to another event type
                continue
            return decode_event(name, decoded["args"], decoded["transactionHash"],
                                decoded["blockNumber"], decoded["logIndex"])
        logger.warning(f"Unrecognized contract log in {Web3.to_hex(log['transactionHash'])}")
        return None

    def _call(self, fn_name: str, *args):
        try:
            return getattr(self.contract.functions, fn_name)(*args).call()
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"Ledger call {fn_name}{args} did not resolve: {e}")
            raise LedgerUnavailable(f"Ledger call {fn_name} did not resolve: {e}", detail={"call": fn_name})

    def get_user(self, address: str) -> Optional[Dict[str, Any]]:
        result = self._call("users", Web3.to_checksum_address(address))
        if not result or not result[0]:
            return None
        uid, username, role = result
        return {"uid": uid, "wallet": Web3.to_checksum_address(address), "username": username, "role": role}

    def get_access_grant(self, grant_id: str) -> Optional[Dict[str, Any]]:
        result = self._call("grants", grant_id)
        if not result or int(result[0], 16) == 0:
            return None
        patient, grantee, expires_at, revoked = result
        return {"grantId": grant_id, "patient": patient, "grantee": grantee,
                "expiresAt": expires_at, "revoked": revoked}

    def fetch_events(self, after: Optional[EventCursor] = None, limit: int = INGEST_BATCH_SIZE) -> List[LedgerEvent]:
        try:
            head = self.w3.eth.block_number - self.confirmations
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"Could not read chain head: {e}")
            return []

        from_block = after.block_number if after else self.start_block
        collected: List[LedgerEvent] = []
        while from_block <= head and len(collected) < limit:
            to_block = min(head, from_block + BLOCK_RANGE - 1)
            for name in EVENT_ENTITIES:
                logs = getattr(self.contract.events, name).get_logs(from_block=from_block, to_block=to_block)
                for entry in logs:
                    event = decode_event(name, entry["args"], entry["transactionHash"],
                                         entry["blockNumber"], entry["logIndex"])
                    if after is None or event.position > after.as_tuple():
                        collected.append(event)
            from_block = to_block + 1

        collected.sort(key=lambda e: e.position)
        return collected[:limit]
