#!/usr/bin/env python3
"""
CertLedger Command Line Interface

Usage:
    certledger init-db
    certledger status --subject <id> --type <type> [--at <timestamp>]
    certledger snapshot --subject <id> [--at <timestamp>]
    certledger enforcement --subject <id> [--at <timestamp>]
    certledger chain --record <id>
    certledger verify-ledger
    certledger rebuild-index
    certledger export-audit --subject <id> [--subject <id> ...] --actor <id>
    certledger keygen
"""

import argparse
import json
import sys
from datetime import datetime
from typing import Optional

from . import config, db
from .errors import CertLedgerError
from .util import parse_ts


def _at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return parse_ts(value)


def _print(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _ledger():
    from .core import CertLedger
    db.init_db()
    return CertLedger()


def cmd_init_db(args):
    """Create the schema."""
    db.init_db()
    print(f"Initialized {db.get_db_path()}", file=sys.stderr)
    return 0


def cmd_status(args):
    from .status import failure_reason
    ledger = _ledger()
    instant = _at(args.at) or ledger.now()
    record = ledger.snapshots.record_as_of(args.subject, args.type, instant)
    status = ledger.status_as_of(args.subject, args.type, instant)
    _print({
        "subject_id": args.subject,
        "type_id": args.type,
        "status": status.value,
        "reason": failure_reason(record, instant) if record else None,
        "record_id": record.id if record else None,
    })
    return 0


def cmd_snapshot(args):
    ledger = _ledger()
    snapshot = ledger.employee_snapshot(args.subject, _at(args.at))
    _print({k: v.value for k, v in snapshot.items()})
    return 0


def cmd_enforcement(args):
    """Exit code 0 when CLEARED, 1 otherwise."""
    ledger = _ledger()
    decision = ledger.employee_enforcement_state(args.subject, _at(args.at))
    _print(decision.to_dict())
    return 0 if decision.state.value == "CLEARED" else 1


def cmd_chain(args):
    ledger = _ledger()
    chain = ledger.get_chain(args.record)
    _print([dict(r.to_dict(), version=i) for i, r in enumerate(chain, start=1)])
    return 0


def cmd_verify_ledger(args):
    """Recompute every hash chain and cross-check records against the ledger."""
    report = _ledger().integrity_report()
    _print(report)
    if report["ok"]:
        print(f"\n✓ {report['nodes_checked']} evidence nodes verified", file=sys.stderr)
        return 0
    print("\n✗ INTEGRITY VIOLATION", file=sys.stderr)
    return 1


def cmd_rebuild_index(args):
    report = _ledger().rebuild_head_index()
    _print(report.to_dict())
    return 1 if report.quarantined else 0


def cmd_export_audit(args):
    from .audit_export import build_audit_package, write_audit_package
    from .export_backends import LocalDirectoryBackend, get_export_backend
    from .keys import get_key_provider
    from .models import Actor

    keys = None
    if not args.unsigned:
        keys = get_key_provider(
            signer_type=config.SIGNER,
            signing_key_path=config.SIGNING_KEY_PATH,
            trust_store_path=config.TRUST_STORE_PATH,
            kms_key_id=config.AWS_KMS_KEY_ID or None,
            kms_region=config.AWS_REGION,
            kms_kid=config.AWS_KMS_KID,
        )
    package = build_audit_package(
        _ledger(), args.subject, Actor(args.actor, "user"), keys, _at(args.from_time), _at(args.to_time)
    )
    backend = LocalDirectoryBackend(args.output_dir) if args.output_dir else get_export_backend()
    location = write_audit_package(package, backend)
    print(location)
    print(f"integrity_hash: {package.manifest['integrity_hash']}", file=sys.stderr)
    return 0


def cmd_keygen(args):
    """Generate an Ed25519 signing key and publish it in the trust store."""
    from .keys import generate_keypair
    public_key = generate_keypair(args.key_path, args.trust_store, args.key_id)
    print(f"Generated key: {args.key_id}", file=sys.stderr)
    print(f"Public key: {public_key}", file=sys.stderr)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="CertLedger compliance evidence ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  certledger init-db
  certledger status --subject E1 --type OSHA-10 --at 2025-06-01T00:00:00Z
  certledger enforcement --subject E1
  certledger verify-ledger
  certledger export-audit --subject E1 --actor auditor-7
        """
    )
    parser.add_argument("--db", help="SQLite database path (default: CERTLEDGER_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("init-db", help="Create the database schema")

    status_parser = subparsers.add_parser("status", help="Status of one certification at an instant")
    status_parser.add_argument("-s", "--subject", required=True, help="Subject (employee) id")
    status_parser.add_argument("-t", "--type", required=True, help="Certification type id")
    status_parser.add_argument("--at", help="ISO-8601 instant (default: now)")

    snapshot_parser = subparsers.add_parser("snapshot", help="Per-type statuses for a subject")
    snapshot_parser.add_argument("-s", "--subject", required=True, help="Subject (employee) id")
    snapshot_parser.add_argument("--at", help="ISO-8601 instant (default: now)")

    enf_parser = subparsers.add_parser("enforcement", help="CLEARED / BLOCKED / PENDING for a subject")
    enf_parser.add_argument("-s", "--subject", required=True, help="Subject (employee) id")
    enf_parser.add_argument("--at", help="ISO-8601 instant (default: now)")

    chain_parser = subparsers.add_parser("chain", help="Correction chain of a record")
    chain_parser.add_argument("-r", "--record", required=True, help="Any version id in the chain")

    subparsers.add_parser("verify-ledger", help="Verify hash chains and record/ledger pairing")
    subparsers.add_parser("rebuild-index", help="Rebuild the chain head index from raw records")

    export_parser = subparsers.add_parser("export-audit", help="Write a signed audit package")
    export_parser.add_argument("-s", "--subject", action="append", required=True, help="Subject id (repeatable)")
    export_parser.add_argument("-a", "--actor", required=True, help="Exporting actor id")
    export_parser.add_argument("--from-time", help="Start of the event range")
    export_parser.add_argument("--to-time", help="End of the event range")
    export_parser.add_argument("-o", "--output-dir", help="Write to this directory instead of the configured backend")
    export_parser.add_argument("--unsigned", action="store_true", help="Do not sign the manifest")

    keygen_parser = subparsers.add_parser("keygen", help="Generate signing key")
    keygen_parser.add_argument("-k", "--key-id", default="certledger-signing-01", help="Key identifier")
    keygen_parser.add_argument("--key-path", default=config.SIGNING_KEY_PATH, help="Private key output")
    keygen_parser.add_argument("--trust-store", default=config.TRUST_STORE_PATH, help="Trust store to update")

    args = parser.parse_args(argv)
    if args.db:
        db.set_db_path(args.db)

    commands = {
        "init-db": cmd_init_db,
        "status": cmd_status,
        "snapshot": cmd_snapshot,
        "enforcement": cmd_enforcement,
        "chain": cmd_chain,
        "verify-ledger": cmd_verify_ledger,
        "rebuild-index": cmd_rebuild_index,
        "export-audit": cmd_export_audit,
        "keygen": cmd_keygen,
    }
    if args.command not in commands:
        parser.print_help()
        return 2

    try:
        return commands[args.command](args)
    except CertLedgerError as e:
        print(f"✗ {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
