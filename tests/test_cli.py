import json
import zipfile

import pytest

from certledger import config
from certledger.cli import main


@pytest.fixture
def db_arg(tmp_path):
    return ["--db", str(tmp_path / "certledger.db")]


@pytest.fixture
def certified(ledger, clerk):
    ledger.register_subject("E1", ["OSHA-10"], clerk)
    return ledger.create_certification("E1", "OSHA-10", {
        "issue_date": "2020-01-01", "non_expiring": True, "proof_references": ["p1"],
    }, clerk)


def test_no_command_prints_help(db_arg):
    assert main(db_arg) == 2


def test_init_db(db_arg):
    assert main(db_arg + ["init-db"]) == 0


def test_status(db_arg, certified, capsys):
    assert main(db_arg + ["status", "-s", "E1", "-t", "OSHA-10"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["status"] == "PASS"
    assert out["record_id"] == certified.id


def test_status_before_record_existed(db_arg, certified, capsys):
    assert main(db_arg + ["status", "-s", "E1", "-t", "OSHA-10", "--at", "2001-01-01T00:00:00Z"]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "UNKNOWN"


def test_enforcement_exit_code(db_arg, certified, ledger, clerk, capsys):
    assert main(db_arg + ["enforcement", "-s", "E1"]) == 0
    ledger.require_types("E1", ["LOTO"], clerk)
    assert main(db_arg + ["enforcement", "-s", "E1"]) == 1
    out = capsys.readouterr().out
    assert '"PENDING"' in out


def test_chain_of_unknown_record_fails(db_arg, capsys):
    assert main(db_arg + ["chain", "-r", "cert_missing"]) == 1
    assert "NotFoundError" in capsys.readouterr().err


def test_verify_ledger(db_arg, certified, capsys):
    assert main(db_arg + ["verify-ledger"]) == 0
    assert json.loads(capsys.readouterr().out)["ok"] is True


def test_rebuild_index(db_arg, certified, capsys):
    assert main(db_arg + ["rebuild-index"]) == 0
    assert json.loads(capsys.readouterr().out)["chains"] == 1


def test_keygen_then_signed_export(db_arg, certified, tmp_path, monkeypatch, capsys):
    key_path = str(tmp_path / "k.json")
    trust_path = str(tmp_path / "trust.json")
    assert main(["keygen", "-k", "cli-key", "--key-path", key_path, "--trust-store", trust_path]) == 0
    monkeypatch.setattr(config, "SIGNING_KEY_PATH", key_path)
    monkeypatch.setattr(config, "TRUST_STORE_PATH", trust_path)

    out_dir = tmp_path / "exports"
    assert main(db_arg + ["export-audit", "-s", "E1", "-a", "auditor-7", "-o", str(out_dir)]) == 0
    location = capsys.readouterr().out.strip().splitlines()[-1]

    with zipfile.ZipFile(location) as z:
        manifest = json.loads(z.read("manifest.json"))
    assert manifest["signatures"][0]["kid"] == "cli-key"
    assert manifest["subjects"] == ["E1"]


def test_unsigned_export(db_arg, certified, tmp_path, capsys):
    out_dir = tmp_path / "exports"
    assert main(db_arg + ["export-audit", "-s", "E1", "-a", "auditor-7", "-o", str(out_dir), "--unsigned"]) == 0
    assert len(list(out_dir.iterdir())) == 1
