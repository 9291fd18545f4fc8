import pytest

from medledger.access import AccessControlEvaluator
from medledger.audit import AuditLogger
from medledger.content_store import IPFSContentStore
from medledger.db import RecordStore
from medledger.reconcile import ReconciliationEngine

from helpers import DOCTOR, INSURER, OTHER_DOCTOR, PATIENT, FakeIPFSClient, FakeLedger, register


@pytest.fixture
def store():
    store = RecordStore("sqlite://", retry_backoff=0)
    store.create_schema()
    yield store
    store.engine.dispose()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def ipfs_client():
    return FakeIPFSClient()


@pytest.fixture
def content_store(ipfs_client, tmp_path):
    return IPFSContentStore(client=ipfs_client, storage_dir=str(tmp_path))


@pytest.fixture
def audit(store):
    return AuditLogger(store)


@pytest.fixture
def evaluator(store, ledger):
    return AccessControlEvaluator(store, ledger)


@pytest.fixture
def engine(store, ledger, audit, content_store, evaluator):
    return ReconciliationEngine(store, ledger, audit=audit, content_store=content_store, evaluator=evaluator)


@pytest.fixture
def users(engine, ledger):
    """Patient, two doctors and an insurer, all proven."""
    for account in (PATIENT, DOCTOR, OTHER_DOCTOR, INSURER):
        register(engine, ledger, account)
    return {"patient": PATIENT, "doctor": DOCTOR, "other_doctor": OTHER_DOCTOR, "insurer": INSURER}


@pytest.fixture
def proven_record(engine, ledger, users):
    """A record uploaded by the patient and proven on-chain."""
    view = engine.upload_record(PATIENT["uid"], b'{"diagnosis": "Hypertension"}', "lab_result",
                                record_id="r1")
    receipt = ledger.submit_record("r1", PATIENT, view.fields["content_id"], view.fields["content_hash"])
    draft = {"record_id": "r1", "content_id": view.fields["content_id"],
             "content_hash": view.fields["content_hash"], "owner_uid": PATIENT["uid"]}
    return engine.submit("record", draft, receipt.tx_hash, subject_uid=PATIENT["uid"])
