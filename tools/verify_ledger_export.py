"""Verify the hash chains of a ledger export without a database.

Accepts either the JSON list returned by GET /ledger/nodes/{id}/events or
a ledger_events.json taken from an audit package.
"""
import json
import sys

from certledger.ledger import verify_event_dicts


def main(path):
    with open(path, "r", encoding="utf-8") as f:
        events = json.load(f)
    errors = verify_event_dicts(events)
    if errors:
        for e in errors:
            print("FAIL:", e)
        sys.exit(1)
    print(f"PASS: {len(events)} ledger events, hash chains valid")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python tools/verify_ledger_export.py <ledger_events.json>")
        raise SystemExit(2)
    main(sys.argv[1])
