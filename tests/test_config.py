"""Tests for EngineConfig defaults, overrides and fee arithmetic."""

import json
from decimal import Decimal
from pathlib import Path

import pytest

from pricewager.config import ConfigError, EngineConfig


def test_defaults() -> None:
    """Defaults match the locked protocol values."""
    cfg = EngineConfig()
    assert cfg.fee_bps == 50
    assert cfg.min_duration_sec == 86400
    assert cfg.min_notional_usd == Decimal("9.95")
    assert cfg.fee_recipient == "fee-sink"
    assert cfg.block_flagged_creation is False


def test_from_env() -> None:
    """PRICEWAGER_* variables override defaults with type coercion."""
    cfg = EngineConfig.from_env({
        "PRICEWAGER_FEE_BPS": "25",
        "PRICEWAGER_MIN_NOTIONAL_USD": "1.5",
        "PRICEWAGER_BLOCK_FLAGGED_CREATION": "yes",
        "UNRELATED": "x",
    })
    assert cfg.fee_bps == 25
    assert cfg.min_notional_usd == Decimal("1.5")
    assert cfg.block_flagged_creation is True


def test_from_file(tmp_path: Path) -> None:
    """engine.json values are applied; unknown keys are ignored."""
    path = tmp_path / "engine.json"
    path.write_text(json.dumps({"fee_bps": 0, "min_duration_sec": 60, "colour": "blue"}))
    cfg = EngineConfig.from_file(path)
    assert cfg.fee_bps == 0
    assert cfg.min_duration_sec == 60


def test_from_file_unreadable(tmp_path: Path) -> None:
    """Missing or non-object files raise ConfigError."""
    with pytest.raises(ConfigError):
        EngineConfig.from_file(tmp_path / "absent.json")
    bad = tmp_path / "list.json"
    bad.write_text("[1, 2]")
    with pytest.raises(ConfigError, match="JSON object"):
        EngineConfig.from_file(bad)


def test_validation() -> None:
    """Out-of-range values are refused."""
    with pytest.raises(ConfigError):
        EngineConfig(fee_bps=10000)
    with pytest.raises(ConfigError):
        EngineConfig(fee_bps=-1)
    with pytest.raises(ConfigError):
        EngineConfig(oracle_max_staleness_sec=0)
    with pytest.raises(ConfigError):
        EngineConfig(min_notional_usd="abc")
    with pytest.raises(ConfigError):
        EngineConfig(fee_recipient="  ")


def test_fee_floors_net() -> None:
    """The fee is gross minus the floored net, so dust goes to the fee."""
    cfg = EngineConfig()
    assert cfg.fee_for(10000) == 50
    assert cfg.fee_for(199) == 1
    assert cfg.fee_for(1) == 1
    assert EngineConfig(fee_bps=0).fee_for(12345) == 0


def test_to_dict_round_trips() -> None:
    """to_dict() output rebuilds an equal config."""
    cfg = EngineConfig(fee_bps=10, fee_recipient="0xFEES")
    again = EngineConfig.from_mapping(cfg.to_dict())
    assert again.to_dict() == cfg.to_dict()
    assert again.fee_recipient == "0xfees"
