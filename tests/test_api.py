import base64

import pytest
from fastapi.testclient import TestClient

from medledger.api import create_app

from helpers import DOCTOR, PATIENT, T, prove_grant


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def identity_request(account, tx_hash, **overrides):
    draft = {"uid": account["uid"], "wallet_address": account["address"],
             "username": account["uid"], "role": account["role"], **overrides}
    return {"draft": draft, "tx_hash": tx_hash, "subject_uid": account["uid"]}


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "success"


def test_submit_entity(client, ledger):
    receipt = ledger.register(PATIENT)

    response = client.post("/api/entities/identity", json=identity_request(PATIENT, receipt.tx_hash))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["proof_status"] == "proven"
    assert data["ledger_tx_hash"] == receipt.tx_hash


def test_submit_mismatch_is_422_and_audited(client, ledger):
    receipt = ledger.register(PATIENT)

    response = client.post("/api/entities/identity",
                           json=identity_request(PATIENT, receipt.tx_hash, username="someone-else"))

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "proof_mismatch"
    trail = client.get("/api/audit/p1").json()["data"]
    assert [e["action"] for e in trail] == ["rejected"]


def test_unfinalized_receipt_is_retryable_404(client, ledger):
    receipt = ledger.register(PATIENT)
    ledger.unfinalized.add(receipt.tx_hash)

    response = client.post("/api/entities/identity", json=identity_request(PATIENT, receipt.tx_hash))

    assert response.status_code == 404
    detail = response.json()["detail"]
    assert detail["code"] == "receipt_not_found"
    assert detail["retryable"] is True


def test_invalid_draft_is_422(client, ledger):
    receipt = ledger.register(PATIENT)

    response = client.post("/api/entities/identity",
                           json=identity_request(PATIENT, receipt.tx_hash, role="pharmacist"))

    assert response.status_code == 422


def test_unknown_kind_is_404(client):
    response = client.post("/api/entities/prescription", json={"draft": {}, "tx_hash": "0x1"})

    assert response.status_code == 404


def test_check_access(client, engine, ledger, users):
    prove_grant(engine, ledger, "g1", T + 86400)

    allowed = client.get("/api/access", params={"grantee_uid": "d1", "patient_uid": "p1", "now": T})
    expired = client.get("/api/access", params={"grantee_uid": "d1", "patient_uid": "p1", "now": T + 86400})

    assert allowed.json()["data"]["authorized"] is True
    assert [g["entity_id"] for g in allowed.json()["data"]["grants"]] == ["g1"]
    assert expired.json()["data"]["authorized"] is False


def test_upload_submit_and_read(client, ledger, users):
    content = b"blood panel"
    uploaded = client.post("/api/records/upload", json={
        "owner_uid": "p1", "content_b64": base64.b64encode(content).decode(), "record_type": "lab_result",
    }).json()["data"]
    record_id = uploaded["entity_id"]
    assert uploaded["proof_status"] == "pending_proof"

    # Not disclosed until proven
    assert client.get(f"/api/records/{record_id}/content", params={"requester_uid": "p1"}).status_code == 403

    receipt = ledger.submit_record(record_id, PATIENT, uploaded["fields"]["content_id"],
                                   uploaded["fields"]["content_hash"])
    client.post("/api/entities/record", json={"draft": {
        "record_id": record_id, "content_id": uploaded["fields"]["content_id"],
        "content_hash": uploaded["fields"]["content_hash"], "owner_uid": "p1",
    }, "tx_hash": receipt.tx_hash})

    response = client.get(f"/api/records/{record_id}/content", params={"requester_uid": "p1"})
    assert response.status_code == 200
    assert response.content == content

    denied = client.get(f"/api/records/{record_id}/content", params={"requester_uid": DOCTOR["uid"]})
    assert denied.status_code == 403


def test_upload_rejects_bad_base64(client):
    response = client.post("/api/records/upload", json={
        "owner_uid": "p1", "content_b64": "not base64!", "record_type": "lab_result",
    })

    assert response.status_code == 400


def test_ledger_outage_is_503(client, engine, ledger, users):
    prove_grant(engine, ledger, "g1", T + 86400)
    ledger.unreachable = True

    response = client.get("/api/access", params={"grantee_uid": "d1", "patient_uid": "p1", "now": T})

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "ledger_unavailable"
    assert response.json()["detail"]["retryable"] is True


def test_tampered_record_is_409(client, ipfs_client, proven_record):
    ipfs_client.tamper(proven_record.fields["content_id"], b"forged")

    response = client.get("/api/records/r1/content", params={"requester_uid": "p1"})

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "content_integrity_violation"


def test_get_and_enrich_entity(client, ledger, engine, users):
    receipt = ledger.submit_record("r5", PATIENT, "Qm5", "h5")
    engine.ingest_ledger_event(receipt.events[0])

    before = client.get("/api/entities/record/r5").json()["data"]
    enriched = client.post("/api/entities/record/r5/enrich", json={"record_type": "xray"}).json()["data"]

    assert before["needs_enrichment"] is True
    assert enriched["needs_enrichment"] is False
    assert enriched["fields"]["record_type"] == "xray"
    assert client.get("/api/entities/record/missing").status_code == 404


def test_audit_export(client, users):
    entries = client.get("/api/audit", params={"after_seq": 0, "limit": 2}).json()["data"]

    assert [e["seq"] for e in entries] == [1, 2]
