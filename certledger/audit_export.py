"""
Audit package export.

An audit package is a zip holding, for a set of subjects, every
certification chain (all versions, numbered), the ledger events of each
related evidence node, the verification scans and the enforcement state
at export time. ``manifest.json`` carries per-file SHA-256 hashes, an
integrity hash over the canonical contents and an Ed25519 signature.
"""

import io
import json
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from . import db
from .core import CertLedger
from .errors import NotFoundError, ValidationError
from .export_backends import ExportBackend, get_export_backend
from .keys import KeyProvider, public_key_for, verify_ed25519
from .ledger import verify_event_dicts
from .logging_config import audit_log
from .models import Actor, EntityType, chain_key
from .util import canonicalize, ensure_utc, format_ts, generate_id, sha256_hex

PACKAGE_FORMAT_VERSION = 1

CONTENT_FILES = {
    "subjects": "subjects.json",
    "certifications": "certifications.json",
    "ledger_events": "ledger_events.json",
    "verifications": "verifications.json",
}

README = """Audit Package Export

manifest.json           export metadata, file hashes, integrity hash, signature
subjects.json           required certification types and enforcement state
certifications.json     every certification version, oldest first, with version numbers
ledger_events.json      hash-chained ledger events of every related evidence node
verifications.json      public verification scans with the status shown at scan time

All records are immutable. The integrity hash in manifest.json is the
SHA-256 of the canonical JSON of the four content files.
"""


@dataclass
class AuditPackage:
    manifest: Dict[str, Any]
    contents: Dict[str, Any]

    @property
    def package_id(self) -> str:
        return self.manifest["package_id"]

    @property
    def filename(self) -> str:
        return f"audit-package-{self.package_id}.zip"


def _file_bytes(data: Any) -> bytes:
    return (json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n").encode("utf-8")


def build_audit_package(
    ledger: CertLedger,
    subject_ids: Iterable[str],
    exported_by: Actor,
    keys: Optional[KeyProvider] = None,
    from_time: Optional[datetime] = None,
    to_time: Optional[datetime] = None
) -> AuditPackage:
    """
    Collect everything an auditor needs for ``subject_ids``.

    Certification versions created after ``to_time`` are left out, so an
    export bounded by ``to_time`` shows what was known at that time.
    """
    subject_ids = list(dict.fromkeys(subject_ids))
    from_time = ensure_utc(from_time) if from_time else None
    to_time = ensure_utc(to_time) if to_time else None
    if not subject_ids:
        raise ValidationError("subject_ids", "at least one subject is required")
    if not isinstance(exported_by, Actor):
        raise ValidationError("exported_by", "a resolved actor is required")
    for subject_id in subject_ids:
        if not db.subject_exists(subject_id):
            raise NotFoundError("subject", subject_id)

    as_of = to_time or ledger.now()
    subjects: List[Dict[str, Any]] = []
    certifications: List[Dict[str, Any]] = []
    events: List[Dict[str, Any]] = []
    verifications: List[Dict[str, Any]] = []

    for subject_id in subject_ids:
        decision = ledger.employee_enforcement_state(subject_id, as_of)
        subjects.append({
            "subject_id": subject_id,
            "required_types": ledger.snapshots.required_types(subject_id, as_of),
            "enforcement": decision.to_dict(),
        })

        nodes = []
        employee = ledger.ledger.find_node(EntityType.EMPLOYEE, subject_id)
        if employee is not None:
            nodes.append(employee)

        for type_id in db.chain_type_ids(subject_id):
            chain = [r for r in ledger.chains.chain_for(subject_id, type_id)
                     if to_time is None or r.created_at <= to_time]
            for version, record in enumerate(chain, start=1):
                row = record.to_dict()
                row["version"] = version
                row["is_current"] = version == len(chain)
                certifications.append(row)
            node = ledger.ledger.find_node(EntityType.CERTIFICATION, chain_key(subject_id, type_id))
            if node is not None:
                nodes.append(node)

        for node in nodes:
            events.extend(e.to_dict() for e in ledger.read(node.id, from_time, to_time))

        verifications.extend(
            v.to_dict() for v in ledger.verifications.list_verifications(subject_id, from_time, to_time)
        )

    contents = {
        "subjects": subjects,
        "certifications": certifications,
        "ledger_events": events,
        "verifications": verifications,
    }
    manifest: Dict[str, Any] = {
        "format_version": PACKAGE_FORMAT_VERSION,
        "package_id": generate_id("pkg", 8),
        "exported_at": format_ts(ledger.now()),
        "exported_by": exported_by.actor_id,
        "catalog_version": ledger.catalog.version,
        "subjects": subject_ids,
        "date_range": {
            "start": format_ts(from_time) if from_time else "ALL_TIME",
            "end": format_ts(to_time) if to_time else "PRESENT",
        },
        "counts": {name: len(items) for name, items in contents.items()},
        "files": {CONTENT_FILES[name]: sha256_hex(_file_bytes(items)) for name, items in contents.items()},
        "integrity_hash": sha256_hex(canonicalize(contents)),
    }
    if keys is not None:
        kid, sig_b64 = keys.sign(canonicalize(manifest))
        manifest["signatures"] = [{"kid": kid, "alg": "ed25519", "sig_b64": sig_b64}]

    return AuditPackage(manifest=manifest, contents=contents)


def package_bytes(package: AuditPackage) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as z:
        z.writestr("README.txt", README)
        z.writestr("manifest.json", _file_bytes(package.manifest))
        for name, filename in CONTENT_FILES.items():
            z.writestr(filename, _file_bytes(package.contents[name]))
    return buf.getvalue()


def write_audit_package(package: AuditPackage, backend: Optional[ExportBackend] = None) -> str:
    backend = backend or get_export_backend()
    location = backend.put(package.filename, package_bytes(package))
    audit_log.audit_package_exported(package.package_id, len(package.manifest["subjects"]), location)
    return location


def verify_audit_package(data: bytes, trust_store: Optional[Dict[str, Any]] = None) -> List[str]:
    """
    Re-check a package zip. Returns a list of problems; empty means intact.
    Signatures are checked only when a trust store is given.
    """
    errors: List[str] = []
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as z:
            manifest = json.loads(z.read("manifest.json"))
            raw = {name: z.read(filename) for name, filename in CONTENT_FILES.items()}
    except (zipfile.BadZipFile, KeyError, ValueError) as e:
        return [f"unreadable package: {e}"]

    for name, filename in CONTENT_FILES.items():
        expected = manifest.get("files", {}).get(filename)
        if sha256_hex(raw[name]) != expected:
            errors.append(f"{filename}: hash does not match manifest")

    contents = {name: json.loads(blob) for name, blob in raw.items()}
    if sha256_hex(canonicalize(contents)) != manifest.get("integrity_hash"):
        errors.append("integrity_hash does not match contents")

    errors.extend(f"ledger_events.json: {e}" for e in verify_event_dicts(contents["ledger_events"]))

    if trust_store is not None:
        signatures = manifest.get("signatures") or []
        if not signatures:
            errors.append("manifest is not signed")
        body = canonicalize({k: v for k, v in manifest.items() if k != "signatures"})
        for sig in signatures:
            public_key = public_key_for(trust_store, sig.get("kid", ""))
            if public_key is None:
                errors.append(f"unknown signing key {sig.get('kid')}")
            elif not verify_ed25519(sig.get("sig_b64", ""), body, public_key):
                errors.append(f"bad manifest signature from {sig.get('kid')}")
    return errors
