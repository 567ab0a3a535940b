"""Tests for config signing and manifest verification."""

import json
import os
from pathlib import Path

import pytest

from pricewager.config_signing import (
    ConfigTamperError,
    compute_file_hash,
    generate_manifest,
    load_verified_config,
    operator_key_from_env,
    verify_manifest,
)

OPERATOR_KEY = "test-operator-key-2026"


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """A config directory holding engine.json and assets.json."""
    (tmp_path / "engine.json").write_text(json.dumps({"fee_bps": 50, "fee_recipient": "0xfees"}))
    (tmp_path / "assets.json").write_text(json.dumps({
        "payment": [{"asset": "0xusdc", "oracle": "usdc-usd", "decimals": 6}],
        "wager": [{"asset": "0xwbtc", "oracle": "btc-usd"}],
    }))
    return tmp_path


def test_compute_file_hash(tmp_path: Path) -> None:
    """SHA-256 hash is deterministic for same content."""
    f = tmp_path / "test.txt"
    f.write_text("hello world")
    assert compute_file_hash(f) == compute_file_hash(f)
    assert len(compute_file_hash(f)) == 64


def test_manifest_generation(config_dir: Path) -> None:
    """Both signed files are hashed and manifest.json is written."""
    manifest = generate_manifest(config_dir, OPERATOR_KEY)
    assert sorted(manifest["file_hashes"]) == ["assets.json", "engine.json"]
    assert manifest["schema_version"] == "pricewager.manifest.v1"
    assert (config_dir / "manifest.json").exists()


def test_manifest_verification_passes(config_dir: Path) -> None:
    """An untouched directory verifies."""
    generate_manifest(config_dir, OPERATOR_KEY)
    assert verify_manifest(config_dir, OPERATOR_KEY) is True


def test_manifest_tamper_detection(config_dir: Path) -> None:
    """Editing assets.json after signing is detected."""
    generate_manifest(config_dir, OPERATOR_KEY)
    (config_dir / "assets.json").write_text('{"payment": [], "wager": []}')
    with pytest.raises(ConfigTamperError, match="Hash mismatch for assets.json"):
        verify_manifest(config_dir, OPERATOR_KEY)


def test_manifest_wrong_key(config_dir: Path) -> None:
    """Wrong operator key fails signature verification."""
    generate_manifest(config_dir, OPERATOR_KEY)
    with pytest.raises(ConfigTamperError, match="signature verification failed"):
        verify_manifest(config_dir, "wrong-key")


def test_manifest_missing_file(config_dir: Path) -> None:
    """A removed signed file fails verification."""
    generate_manifest(config_dir, OPERATOR_KEY)
    os.remove(config_dir / "engine.json")
    with pytest.raises(ConfigTamperError, match="missing"):
        verify_manifest(config_dir, OPERATOR_KEY)


def test_manifest_missing_manifest_file(config_dir: Path) -> None:
    """Missing manifest.json triggers ConfigTamperError."""
    with pytest.raises(ConfigTamperError, match="not found"):
        verify_manifest(config_dir, OPERATOR_KEY)


def test_manifest_wrong_schema(config_dir: Path) -> None:
    """A manifest from another schema version is refused."""
    manifest = generate_manifest(config_dir, OPERATOR_KEY)
    manifest["schema_version"] = "other.v0"
    (config_dir / "manifest.json").write_text(json.dumps(manifest))
    with pytest.raises(ConfigTamperError, match="schema"):
        verify_manifest(config_dir, OPERATOR_KEY)


def test_load_verified_config(config_dir: Path) -> None:
    """After verification the engine config and assets are returned."""
    generate_manifest(config_dir, OPERATOR_KEY)
    cfg, assets = load_verified_config(config_dir, OPERATOR_KEY)
    assert cfg.fee_bps == 50
    assert cfg.fee_recipient == "0xfees"
    assert assets["wager"][0]["asset"] == "0xwbtc"


def test_load_verified_config_refuses_tampered(config_dir: Path) -> None:
    """Nothing is loaded from a tampered directory."""
    generate_manifest(config_dir, OPERATOR_KEY)
    (config_dir / "engine.json").write_text('{"fee_bps": 0}')
    with pytest.raises(ConfigTamperError):
        load_verified_config(config_dir, OPERATOR_KEY)


def test_operator_key_from_env() -> None:
    """The key comes from PRICEWAGER_OPERATOR_KEY and must be set."""
    assert operator_key_from_env({"PRICEWAGER_OPERATOR_KEY": "k"}) == "k"
    with pytest.raises(ConfigTamperError, match="not set"):
        operator_key_from_env({})
