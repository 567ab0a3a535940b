"""Config signing and manifest verification.

Implements HMAC-SHA256 signing over engine.json and assets.json.  A config
directory is only loaded after its manifest verifies; on failure callers
catch ConfigTamperError and exit non-zero.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pricewager.config import EngineConfig

logger = logging.getLogger(__name__)

ENGINE_FILE = "engine.json"
ASSETS_FILE = "assets.json"
MANIFEST_NAME = "manifest.json"
MANIFEST_FILES = (ASSETS_FILE, ENGINE_FILE)
MANIFEST_SCHEMA = "pricewager.manifest.v1"
OPERATOR_KEY_ENV = "PRICEWAGER_OPERATOR_KEY"


class ConfigTamperError(Exception):
    """Raised when manifest verification fails."""


def operator_key_from_env(environ: Optional[Dict[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    key = env.get(OPERATOR_KEY_ENV, "")
    if not key:
        raise ConfigTamperError("{} is not set".format(OPERATOR_KEY_ENV))
    return key


def compute_file_hash(path: Path) -> str:
    """Return the SHA-256 hex digest of a file's contents."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def _file_hashes(config_dir: Path) -> Dict[str, str]:
    hashes = {}  # type: Dict[str, str]
    for fname in sorted(MANIFEST_FILES):
        fpath = config_dir / fname
        if not fpath.is_file():
            raise ConfigTamperError("Required config file missing: {}".format(fpath))
        hashes[fname] = compute_file_hash(fpath)
    return hashes


def _sign(hashes: Dict[str, str], operator_key: str) -> str:
    payload = "\n".join("{}={}".format(k, v) for k, v in sorted(hashes.items()))
    return hmac.new(
        operator_key.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def generate_manifest(config_dir: Path, operator_key: str) -> Dict[str, Any]:
    """Sign the config directory and write config_dir/manifest.json."""
    config_dir = Path(config_dir)
    hashes = _file_hashes(config_dir)
    manifest = {
        "schema_version": MANIFEST_SCHEMA,
        "file_hashes": hashes,
        "signature": _sign(hashes, operator_key),
    }  # type: Dict[str, Any]

    path = config_dir / MANIFEST_NAME
    path.write_text(json.dumps(manifest, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    logger.info("Manifest written to %s", path)
    return manifest


def verify_manifest(config_dir: Path, operator_key: str) -> bool:
    """Check every signed file against the manifest.

    Raises ConfigTamperError on any mismatch.  Returns True on success.
    """
    config_dir = Path(config_dir)
    path = config_dir / MANIFEST_NAME
    if not path.is_file():
        raise ConfigTamperError("Manifest file not found: {}".format(path))

    try:
        manifest = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigTamperError("Manifest is not valid JSON: {}".format(e)) from e

    if "file_hashes" not in manifest or "signature" not in manifest:
        raise ConfigTamperError("Manifest missing required fields")
    if manifest.get("schema_version") != MANIFEST_SCHEMA:
        raise ConfigTamperError(
            "Unsupported manifest schema: {}".format(manifest.get("schema_version"))
        )

    stored = manifest["file_hashes"]
    current = _file_hashes(config_dir)
    for fname in sorted(MANIFEST_FILES):
        if fname not in stored:
            raise ConfigTamperError("Manifest missing hash for: {}".format(fname))
        if stored[fname] != current[fname]:
            raise ConfigTamperError(
                "Hash mismatch for {}: manifest={}... current={}...".format(
                    fname, stored[fname][:16], current[fname][:16],
                )
            )

    if not hmac.compare_digest(manifest["signature"], _sign(current, operator_key)):
        raise ConfigTamperError("Manifest signature verification failed")

    logger.info("Config manifest verified OK")
    return True


def load_verified_config(config_dir: Path, operator_key: str) -> Tuple[EngineConfig, Dict[str, Any]]:
    """Verify the manifest, then return (engine config, parsed assets.json)."""
    config_dir = Path(config_dir)
    verify_manifest(config_dir, operator_key)
    config = EngineConfig.from_file(config_dir / ENGINE_FILE)
    assets = json.loads((config_dir / ASSETS_FILE).read_text(encoding="utf-8"))
    if not isinstance(assets, dict):
        raise ConfigTamperError("{} must be a JSON object".format(ASSETS_FILE))
    return config, assets
