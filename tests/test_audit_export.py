import io
import json
import zipfile

import pytest

from certledger.audit_export import (
    build_audit_package,
    package_bytes,
    verify_audit_package,
    write_audit_package,
)
from certledger.errors import NotFoundError, ValidationError
from certledger.export_backends import LocalDirectoryBackend
from certledger.models import Actor

AUDITOR = Actor("auditor-7")


@pytest.fixture
def populated(ledger, clerk, clock):
    ledger.register_subject("E1", ["FALL-PROTECTION", "OSHA-10"], clerk)
    r1 = ledger.create_certification("E1", "FALL-PROTECTION", {
        "issue_date": "2024-01-01", "expiration_date": "2025-03-01", "proof_references": ["p1"],
    }, clerk)
    clock.advance(days=1)
    r2 = ledger.correct_certification(r1.id, "renewed", {"expiration_date": "2026-03-01"}, clerk)
    ledger.create_certification("E1", "OSHA-10", {
        "issue_date": "2020-01-01", "non_expiring": True, "proof_references": ["p2"],
    }, clerk)
    clock.advance(hours=1)
    ledger.record_verification("E1", "qr")
    return r1, r2


def test_package_contains_every_version(ledger, populated):
    r1, r2 = populated
    package = build_audit_package(ledger, ["E1"], AUDITOR)

    fall = [c for c in package.contents["certifications"] if c["type_id"] == "FALL-PROTECTION"]
    assert [(c["id"], c["version"], c["is_current"]) for c in fall] == [
        (r1.id, 1, False),
        (r2.id, 2, True),
    ]
    assert package.contents["subjects"][0]["enforcement"]["state"] == "CLEARED"
    assert len(package.contents["verifications"]) == 1
    assert package.manifest["counts"]["certifications"] == 3
    assert package.manifest["exported_by"] == "auditor-7"
    assert "signatures" not in package.manifest


def test_signed_package_verifies(ledger, populated, keys):
    package = build_audit_package(ledger, ["E1"], AUDITOR, keys)
    data = package_bytes(package)
    assert verify_audit_package(data, keys.get_trust_store()) == []

    with zipfile.ZipFile(io.BytesIO(data)) as z:
        assert sorted(z.namelist()) == sorted([
            "README.txt", "manifest.json", "subjects.json", "certifications.json",
            "ledger_events.json", "verifications.json",
        ])


def test_modified_package_fails_verification(ledger, populated, keys):
    data = package_bytes(build_audit_package(ledger, ["E1"], AUDITOR, keys))
    src = zipfile.ZipFile(io.BytesIO(data))
    certs = json.loads(src.read("certifications.json"))
    certs[0]["expiration_date"] = "2099-01-01"

    out = io.BytesIO()
    with zipfile.ZipFile(out, "w") as z:
        for name in src.namelist():
            if name == "certifications.json":
                z.writestr(name, json.dumps(certs))
            else:
                z.writestr(name, src.read(name))

    errors = verify_audit_package(out.getvalue(), keys.get_trust_store())
    assert "certifications.json: hash does not match manifest" in errors
    assert "integrity_hash does not match contents" in errors


def test_unsigned_package_fails_signature_check(ledger, populated, keys):
    data = package_bytes(build_audit_package(ledger, ["E1"], AUDITOR))
    assert verify_audit_package(data) == []
    assert "manifest is not signed" in verify_audit_package(data, keys.get_trust_store())


def test_time_bounded_export_shows_what_was_known(ledger, populated, clock):
    r1, _ = populated
    before_correction = r1.created_at
    package = build_audit_package(ledger, ["E1"], AUDITOR, to_time=before_correction)

    fall = [c for c in package.contents["certifications"] if c["type_id"] == "FALL-PROTECTION"]
    assert [(c["id"], c["is_current"]) for c in fall] == [(r1.id, True)]
    assert package.contents["verifications"] == []
    assert package.manifest["date_range"]["start"] == "ALL_TIME"


def test_export_requires_known_subjects(ledger):
    with pytest.raises(ValidationError):
        build_audit_package(ledger, [], AUDITOR)
    with pytest.raises(NotFoundError):
        build_audit_package(ledger, ["nobody"], AUDITOR)


def test_local_backend_never_overwrites(ledger, populated, tmp_path):
    package = build_audit_package(ledger, ["E1"], AUDITOR)
    backend = LocalDirectoryBackend(str(tmp_path / "exports"))
    location = write_audit_package(package, backend)
    assert location.endswith(package.filename)

    with pytest.raises(FileExistsError):
        write_audit_package(package, backend)
