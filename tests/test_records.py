import pytest

from medledger.errors import AccessDenied, ContentIntegrityViolation, NotFound

from helpers import DOCTOR, PATIENT, T, actions, prove_grant, prove_revocation

CONTENT = b'{"diagnosis": "Hypertension"}'


def test_owner_reads_proven_record(engine, proven_record):
    assert engine.read_record("r1", PATIENT["uid"], now=T) == CONTENT


def test_disclosure_is_audited(engine, audit, proven_record):
    engine.read_record("r1", PATIENT["uid"], now=T)
    engine.read_record("r1", PATIENT["uid"], now=T)

    disclosures = [e for e in audit.trail("r1") if e.action == "record_disclosed"]
    assert len(disclosures) == 2
    assert disclosures[0].detail["proof_tx_hash"] == proven_record.ledger_tx_hash


def test_grantee_needs_a_grant(engine, ledger, audit, proven_record):
    with pytest.raises(AccessDenied):
        engine.read_record("r1", DOCTOR["uid"], now=T)
    with pytest.raises(AccessDenied):
        engine.read_record("r1", DOCTOR["uid"], now=T)

    assert actions(audit, "r1").count("access_denied") == 2

    prove_grant(engine, ledger, "g1", T + 86400)
    assert engine.read_record("r1", DOCTOR["uid"], now=T) == CONTENT

    prove_revocation(engine, ledger, "g1")
    with pytest.raises(AccessDenied):
        engine.read_record("r1", DOCTOR["uid"], now=T)


def test_unproven_record_is_never_disclosed(engine, users):
    engine.upload_record(PATIENT["uid"], CONTENT, "lab_result", record_id="r2")

    with pytest.raises(AccessDenied):
        engine.read_record("r2", PATIENT["uid"], now=T)


def test_unknown_record(engine, users):
    with pytest.raises(NotFound):
        engine.read_record("missing", PATIENT["uid"], now=T)


def test_tampered_content_blocks_disclosure(engine, ipfs_client, audit, store, proven_record):
    cid = proven_record.fields["content_id"]
    ipfs_client.tamper(cid, b'{"diagnosis": "none"}')

    with pytest.raises(ContentIntegrityViolation):
        engine.read_record("r1", PATIENT["uid"], now=T)

    assert store.get("record", "r1").integrity_violation
    [entry] = [e for e in audit.trail("r1") if e.action == "integrity_violation"]
    assert entry.detail["proven_hash"] == proven_record.fields["content_hash"]

    # Restoring the bytes does not lift the flag
    ipfs_client.tamper(cid, CONTENT)
    with pytest.raises(ContentIntegrityViolation):
        engine.read_record("r1", PATIENT["uid"], now=T)
    assert actions(audit, "r1").count("record_disclosed") == 0


def test_verify_record_content(engine, ipfs_client, proven_record):
    assert engine.verify_record_content("r1")

    ipfs_client.tamper(proven_record.fields["content_id"], b"garbage")

    with pytest.raises(ContentIntegrityViolation):
        engine.verify_record_content("r1")
    assert engine.get("record", "r1").fields["integrity_violation"]


def test_upload_requires_new_record_id(engine, proven_record):
    with pytest.raises(ValueError):
        engine.upload_record(PATIENT["uid"], b"other", "lab_result", record_id="r1")


def test_every_blocked_read_is_audited(engine, ipfs_client, audit, proven_record):
    ipfs_client.tamper(proven_record.fields["content_id"], b"forged")

    for _ in range(3):
        with pytest.raises(ContentIntegrityViolation):
            engine.read_record("r1", PATIENT["uid"], now=T)

    assert actions(audit, "r1").count("integrity_violation") == 3


def test_missing_content_is_an_integrity_violation(engine, ipfs_client, audit, store, proven_record):
    del ipfs_client.blobs[proven_record.fields["content_id"]]

    with pytest.raises(ContentIntegrityViolation):
        engine.read_record("r1", PATIENT["uid"], now=T)

    assert store.get("record", "r1").integrity_violation
    [entry] = [e for e in audit.trail("r1") if e.action == "integrity_violation"]
    assert entry.detail["stored_hash"] is None
    assert entry.detail["proof_tx_hash"] == proven_record.ledger_tx_hash
