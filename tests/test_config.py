import json

from certledger import config
from certledger.catalog import effective_catalog, load_catalog


def test_validate_config_reports_missing_files(monkeypatch, tmp_path):
    key = tmp_path / "key.json"
    key.write_text("{}")
    monkeypatch.setattr(config, "SIGNING_KEY_PATH", str(key))
    monkeypatch.setattr(config, "TRUST_STORE_PATH", str(tmp_path / "missing.json"))
    monkeypatch.setattr(config, "CATALOG_PATH", "")
    assert config.validate_config() == {"signing_key": True, "trust_store": False}


def test_json_catalog_replaces_presets(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps({
        "version": "site-7",
        "types": [
            {"type_id": "SCAFFOLD", "name": "Scaffold User", "category": "CONSTRUCTION_SAFETY"},
            {"type_id": "BADGE", "requires_expiration": False},
        ],
    }))
    catalog = load_catalog(str(path))
    assert catalog.version == "site-7"
    assert len(catalog) == 2
    assert not catalog.require("BADGE").requires_expiration
    assert "OSHA-10" not in catalog


def test_presets_without_configured_path():
    catalog = effective_catalog("")
    assert catalog.version == "presets-1"
    assert not catalog.require("OSHA-30").requires_expiration
    assert catalog.require("FALL-PROTECTION").requires_expiration
