import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest
from pydantic import ValidationError as SchemaError

from medaudit.audit_backends import AuditMirror, S3ObjectLockMirror, get_audit_mirror
from medaudit.classifier import BUCKET_TABLE, Classification, Classifier
from medaudit.compliance import CERTIFICATION_LEVEL, FDA_COMPLIANT, HIPAA_COMPLIANT, REGULATORY_NOTES
from medaudit.errors import NotFoundError, SigningError, StorageError, ValidationError
from medaudit.models import AuditAction, PatientMetadata
from medaudit.signing import LocalEd25519Oracle, format_confidence, record_message
from conftest import KEY_NAME, blob, make_service, run


class BrokenSignOracle(LocalEd25519Oracle):
    async def sign(self, key_ref, digest):
        raise RuntimeError("oracle rejected request")


class CountingOracle(LocalEd25519Oracle):
    sign_calls = 0

    async def sign(self, key_ref, digest):
        self.sign_calls += 1
        return await super().sign(key_ref, digest)


class VerboseClassifier(Classifier):
    def classify(self, data):
        base = BUCKET_TABLE[0]
        return Classification(base.label * 200, base.confidence, list(base.findings))


class RecordingMirror(AuditMirror):
    def __init__(self):
        self.envelopes = []

    def write_entry(self, envelope):
        self.envelopes.append(envelope)


class FailingMirror(AuditMirror):
    def write_entry(self, envelope):
        raise StorageError("mirror unavailable")


def create(service, metadata, size=2048, seed=0, principal="tester"):
    return run(service.create_record(blob(size, seed), metadata, principal))


# End-to-end: 2048-byte blob for P001
def test_end_to_end_create(service, metadata):
    rec = create(service, metadata)
    assert rec.id == 1
    assert rec.signature and rec.public_key
    assert rec.fda_compliant and rec.hipaa_compliant
    assert rec.findings
    assert rec.model_version == "MedicalAI-v2.1.0"
    assert rec.patient_metadata == metadata
    assert service.get_record(1) == rec

    trail = service.list_audit_entries()
    assert len(trail) == 1
    assert trail[0].action == AuditAction.RECORD_CREATED
    assert trail[0].record_id == 1
    assert trail[0].principal == "tester"
    assert trail[0].details == f"Medical image analyzed: {rec.diagnosis}"


def test_ids_increase_by_one_in_both_spaces(service, metadata):
    recs = [create(service, metadata, seed=s) for s in range(4)]
    assert [r.id for r in recs] == [1, 2, 3, 4]
    run(service.compliance_report(2))
    assert [e.id for e in service.list_audit_entries()] == [1, 2, 3, 4, 5]
    assert [r.id for r in service.list_records()] == [1, 2, 3, 4]


def test_validation_failure_leaves_no_state(service, metadata):
    with pytest.raises(ValidationError):
        create(service, metadata, size=100)
    assert service.list_records() == []
    assert service.list_audit_entries() == []
    assert create(service, metadata).id == 1


def test_signing_failure_leaves_no_state(settings, metadata):
    svc = make_service(settings, BrokenSignOracle.generate(KEY_NAME))
    try:
        with pytest.raises(SigningError) as exc:
            create(svc, metadata)
        assert "Failed to create signature" in exc.value.message
        assert svc.list_records() == []
        assert svc.list_audit_entries() == []
        assert svc.health().records == 0
    finally:
        svc.close()


def test_failed_commit_rolls_back_record(settings, oracle, metadata):
    svc = make_service(settings, oracle, mirror=FailingMirror())
    try:
        with pytest.raises(StorageError):
            create(svc, metadata)
        assert svc.list_records() == []
        assert svc.list_audit_entries() == []
    finally:
        svc.close()


def test_mirror_receives_chained_envelopes(settings, oracle, metadata):
    mirror = RecordingMirror()
    svc = make_service(settings, oracle, mirror=mirror)
    try:
        create(svc, metadata)
        run(svc.compliance_report(1))
        assert [e["entry"]["action"] for e in mirror.envelopes] == [
            "RECORD_CREATED", "COMPLIANCE_REPORT_GENERATED"
        ]
        assert mirror.envelopes[1]["prev_entry_hash"] == mirror.envelopes[0]["entry_hash"]
    finally:
        svc.close()


def test_not_found_everywhere(service, metadata):
    create(service, metadata)
    assert service.get_record(99) is None
    with pytest.raises(NotFoundError):
        service.list_audit_entries_for_record(99)
    with pytest.raises(NotFoundError):
        run(service.verify_signature(99))
    with pytest.raises(NotFoundError):
        run(service.compliance_report(99))
    # lookups of missing records never write
    assert len(service.list_audit_entries()) == 1


def test_audit_trail_for_record_is_ordered_subset(service, metadata):
    create(service, metadata, seed=1)
    create(service, metadata, seed=2)
    for rid in (1, 2, 1):
        run(service.compliance_report(rid))
    everything = service.list_audit_entries()
    trail = service.list_audit_entries_for_record(1)
    assert trail == [e for e in everything if e.record_id == 1]
    assert [e.id for e in trail] == [1, 3, 5]


def test_verify_signature(service, metadata):
    rec = create(service, metadata)
    assert run(service.verify_signature(rec.id)) is True


def test_stored_signature_covers_canonical_message(service, metadata):
    rec = create(service, metadata)
    assert record_message(rec) == f"{rec.diagnosis}|{format_confidence(rec.confidence_score)}|{rec.timestamp}|P001"
    forged = rec.model_copy(update={"diagnosis": rec.diagnosis + " (amended)"})
    signer = service._signer
    assert run(signer.verify_message(record_message(forged), rec.signature, rec.public_key)) is False


def test_compliance_report_for_compliant_record(service, metadata):
    rec = create(service, metadata)
    before = len(service.list_audit_entries_for_record(rec.id))
    report = run(service.compliance_report(rec.id, principal="auditor"))

    assert report.record_id == rec.id
    assert report.fda_status == FDA_COMPLIANT
    assert "COMPLIANT" in report.fda_status
    assert report.hipaa_status == HIPAA_COMPLIANT
    assert report.audit_trail_complete is True
    assert report.signature_verified is True
    assert report.regulatory_notes == REGULATORY_NOTES
    assert report.certification_level == CERTIFICATION_LEVEL

    trail = service.list_audit_entries_for_record(rec.id)
    assert len(trail) == before + 1
    assert trail[-1].action == AuditAction.COMPLIANCE_REPORT_GENERATED
    assert trail[-1].principal == "auditor"


def test_compliance_report_is_regenerable(service, metadata):
    rec = create(service, metadata)
    first = run(service.compliance_report(rec.id))
    second = run(service.compliance_report(rec.id))
    assert first.model_dump(exclude={"generated_timestamp"}) == second.model_dump(exclude={"generated_timestamp"})

    reports = [e for e in service.list_audit_entries_for_record(rec.id)
               if e.action == AuditAction.COMPLIANCE_REPORT_GENERATED]
    assert len(reports) == 2
    assert reports[0].id != reports[1].id


def test_health(service, metadata):
    create(service, metadata)
    run(service.compliance_report(1))
    h = service.health()
    assert (h.records, h.audit_entries) == (1, 2)
    assert service.health_summary() == (
        "Medical AI System Status: HEALTHY | Records: 1 | Audit Entries: 2 | Model: MedicalAI-v2.1.0"
    )


def test_ids_continue_after_restart(settings, oracle, metadata):
    first = make_service(settings, oracle)
    create(first, metadata)
    run(first.compliance_report(1))
    first.close()

    second = make_service(settings, LocalEd25519Oracle.generate(KEY_NAME))
    try:
        rec = create(second, metadata, seed=9)
        assert rec.id == 2
        assert [e.id for e in second.list_audit_entries()] == [1, 2, 3]
        assert second.audit_proof()["chain_valid"] is True
    finally:
        second.close()


def test_legacy_bucket_mode(settings, oracle, metadata):
    svc = make_service(replace(settings, classifier_bucket_mode="legacy_prefix"), oracle)
    try:
        diagnoses = {create(svc, metadata, seed=s).diagnosis for s in range(3)}
        assert diagnoses == {"Possible pleural effusion - Suggest further imaging"}
        assert len(svc.get_record(1).findings) == 1
    finally:
        svc.close()


def test_interleaved_creations_commit_consistently(service, metadata):
    async def many():
        return await asyncio.gather(*[
            service.create_record(blob(2048, s), metadata, "tester") for s in range(6)
        ])

    recs = run(many())
    assert sorted(r.id for r in recs) == [1, 2, 3, 4, 5, 6]
    records = service.list_records()
    created = [e for e in service.list_audit_entries() if e.action == AuditAction.RECORD_CREATED]
    assert [e.record_id for e in created] == [r.id for r in records]
    assert all(r.signature for r in records)


def test_threaded_creations(service, metadata):
    with ThreadPoolExecutor(max_workers=4) as pool:
        recs = list(pool.map(lambda s: create(service, metadata, seed=s), range(8)))
    assert sorted(r.id for r in recs) == list(range(1, 9))
    assert service.audit_proof() == {
        "entries": 8,
        "head_entry_hash": service.audit.latest_entry_hash(),
        "chain_valid": True,
        "broken_at": None,
    }


def test_s3_mirror_writes_locked_objects():
    class FakeS3:
        def __init__(self):
            self.puts = []

        def put_object(self, **kw):
            self.puts.append(kw)

    mirror = S3ObjectLockMirror(bucket="audit", prefix="trail", retention_days=30)
    mirror._client = FakeS3()
    mirror.write_entry({"entry": {"id": 7, "record_id": 3, "action": "RECORD_CREATED"}, "entry_hash": "ab"})
    put = mirror._client.puts[0]
    assert put["Bucket"] == "audit"
    assert put["Key"] == "trail/00000000000000000007-RECORD_CREATED-3.json"
    assert put["ObjectLockMode"] == "COMPLIANCE"


def test_mirror_factory():
    assert type(get_audit_mirror("none")).__name__ == "NullMirror"
    with pytest.raises(ValueError):
        get_audit_mirror("tape")


def test_unstorable_record_rejected_before_signing(settings, metadata):
    oracle = CountingOracle.generate(KEY_NAME)
    svc = make_service(settings, oracle, classifier=VerboseClassifier())
    try:
        with pytest.raises(ValidationError) as exc:
            create(svc, metadata)
        assert exc.value.message == "Record too large to store"
        assert oracle.sign_calls == 0
        assert svc.list_records() == []
        assert svc.list_audit_entries() == []
    finally:
        svc.close()

    svc = make_service(settings, oracle)
    try:
        assert create(svc, metadata).id == 1
    finally:
        svc.close()


def test_oversized_metadata_refused_by_model():
    with pytest.raises(SchemaError):
        PatientMetadata(anonymized_id="P" * 9000, age_range="40-50",
                        study_type="chest-xray", acquisition_date="2024-01-01")


def test_long_principal_rejected_without_writes(service, metadata):
    with pytest.raises(ValidationError):
        create(service, metadata, principal="x" * 5000)
    rec = create(service, metadata)
    assert rec.id == 1
    with pytest.raises(ValidationError):
        run(service.compliance_report(rec.id, principal="x" * 5000))
    assert [e.id for e in service.list_audit_entries()] == [1]
    run(service.compliance_report(rec.id))
    assert [e.id for e in service.list_audit_entries()] == [1, 2]


def test_failed_commit_hands_ids_back(settings, oracle, metadata):
    failing = make_service(settings, oracle, mirror=FailingMirror())
    try:
        with pytest.raises(StorageError):
            create(failing, metadata)
    finally:
        failing.close()

    mirror = RecordingMirror()
    svc = make_service(settings, oracle, mirror=mirror)
    try:
        rec = create(svc, metadata)
        assert rec.id == 1
        assert mirror.envelopes[0]["entry"]["id"] == 1
    finally:
        svc.close()


def test_failed_commit_in_same_service_reuses_ids(settings, oracle, metadata):
    class FlakyMirror(AuditMirror):
        fail = True

        def write_entry(self, envelope):
            if self.fail:
                self.fail = False
                raise StorageError("mirror unavailable")

    svc = make_service(settings, oracle, mirror=FlakyMirror())
    try:
        with pytest.raises(StorageError):
            create(svc, metadata)
        rec = create(svc, metadata)
        assert rec.id == 1
        assert [e.id for e in svc.list_audit_entries()] == [1]
    finally:
        svc.close()
