"""Engine configuration.

Defaults come from constants.py.  Overrides are read from PRICEWAGER_*
environment variables or from an engine.json file (verified against the
signed manifest by the CLI before loading).
"""

from __future__ import annotations

import json
import logging
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pricewager.constants import (
    BPS_DENOMINATOR,
    FEE_BPS,
    MIN_DURATION_SEC,
    MIN_NOTIONAL_USD,
    ORACLE_MAX_STALENESS_SEC,
)
from pricewager.registry import normalise_identity

logger = logging.getLogger(__name__)

ENV_PREFIX = "PRICEWAGER_"
DEFAULT_FEE_RECIPIENT = "fee-sink"


class ConfigError(Exception):
    """Raised when a configuration value is invalid."""


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class EngineConfig:
    """Tunable engine parameters."""

    def __init__(
        self,
        fee_bps: int = FEE_BPS,
        min_duration_sec: int = MIN_DURATION_SEC,
        min_notional_usd: Decimal = MIN_NOTIONAL_USD,
        oracle_max_staleness_sec: int = ORACLE_MAX_STALENESS_SEC,
        fee_recipient: str = DEFAULT_FEE_RECIPIENT,
        block_flagged_creation: bool = False,
    ) -> None:
        self.fee_bps = int(fee_bps)
        self.min_duration_sec = int(min_duration_sec)
        try:
            self.min_notional_usd = Decimal(str(min_notional_usd))
        except InvalidOperation as e:
            raise ConfigError("Invalid min_notional_usd: {}".format(min_notional_usd)) from e
        self.oracle_max_staleness_sec = int(oracle_max_staleness_sec)
        self.fee_recipient = normalise_identity(fee_recipient)
        self.block_flagged_creation = _parse_bool(block_flagged_creation)
        self.validate()

    def validate(self) -> None:
        if not 0 <= self.fee_bps < BPS_DENOMINATOR:
            raise ConfigError("fee_bps must be in [0, {}), got {}".format(BPS_DENOMINATOR, self.fee_bps))
        if self.min_duration_sec < 0:
            raise ConfigError("min_duration_sec must be non-negative")
        if self.min_notional_usd < 0:
            raise ConfigError("min_notional_usd must be non-negative")
        if self.oracle_max_staleness_sec <= 0:
            raise ConfigError("oracle_max_staleness_sec must be positive")
        if not self.fee_recipient:
            raise ConfigError("fee_recipient must not be empty")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EngineConfig":
        known = (
            "fee_bps",
            "min_duration_sec",
            "min_notional_usd",
            "oracle_max_staleness_sec",
            "fee_recipient",
            "block_flagged_creation",
        )
        unknown = sorted(set(data) - set(known))
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: data[k] for k in known if k in data})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build from PRICEWAGER_* variables, e.g. PRICEWAGER_FEE_BPS=50."""
        env = os.environ if environ is None else environ
        data = {}  # type: Dict[str, Any]
        for key in (
            "fee_bps",
            "min_duration_sec",
            "min_notional_usd",
            "oracle_max_staleness_sec",
            "fee_recipient",
            "block_flagged_creation",
        ):
            name = ENV_PREFIX + key.upper()
            if name in env:
                data[key] = env[name]
        return cls.from_mapping(data)

    @classmethod
    def from_file(cls, path: Path) -> "EngineConfig":
        """Load from an engine.json file."""
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError("Cannot read config {}: {}".format(path, e)) from e
        if not isinstance(data, dict):
            raise ConfigError("Config {} must be a JSON object".format(path))
        logger.info("Engine config loaded from %s", path)
        return cls.from_mapping(data)

    def fee_for(self, gross: int) -> int:
        """Fee on a gross deposit; the net (gross - fee) is floored."""
        net = gross * (BPS_DENOMINATOR - self.fee_bps) // BPS_DENOMINATOR
        return gross - net

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fee_bps": self.fee_bps,
            "min_duration_sec": self.min_duration_sec,
            "min_notional_usd": str(self.min_notional_usd),
            "oracle_max_staleness_sec": self.oracle_max_staleness_sec,
            "fee_recipient": self.fee_recipient,
            "block_flagged_creation": self.block_flagged_creation,
        }
