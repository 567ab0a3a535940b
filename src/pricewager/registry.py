"""Asset Registry: owner-curated allow-lists.

Handles:
- Identity normalisation (Unicode NFKC, trim, lowercase)
- Payment-asset and wager-asset allow-lists, each bound to an oracle reference
- Upsert semantics: re-registering silently replaces the oracle binding
- Parsing registry entries from assets.json
- registry_hash (SHA-256) over the current allow-lists
- RefundFlags: per-asset refundable-since timestamps, set once and never cleared
"""

from __future__ import annotations

import hashlib
import json
import logging
import unicodedata
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pricewager.constants import DEFAULT_ASSET_DECIMALS
from pricewager.errors import LengthMismatch, UnsupportedAsset, ValidationError

logger = logging.getLogger(__name__)

ROLE_PAYMENT = "payment"
ROLE_WAGER = "wager"


def normalise_identity(identity: Optional[str]) -> str:
    """Normalise an asset or account identity.

    Steps: Unicode NFKC -> trim -> lowercase.  None becomes "".
    """
    if identity is None:
        return ""
    text = unicodedata.normalize("NFKC", str(identity))
    return text.strip().lower()


class AssetEntry:
    """Allow-status and oracle binding for one asset in one role."""

    def __init__(
        self,
        asset: str,
        allowed: bool,
        oracle: str,
        decimals: int = DEFAULT_ASSET_DECIMALS,
    ) -> None:
        self.asset = asset
        self.allowed = allowed
        self.oracle = oracle
        self.decimals = decimals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "allowed": self.allowed,
            "oracle": self.oracle,
            "decimals": self.decimals,
        }


class AssetRegistry:
    """Payment and wager allow-lists.

    Wagers copy the entries they need at creation, so later changes here
    never reach back into wagers already created.
    """

    def __init__(self) -> None:
        self._payment = {}  # type: Dict[str, AssetEntry]
        self._wager = {}  # type: Dict[str, AssetEntry]

    def _table(self, role: str) -> Dict[str, AssetEntry]:
        if role == ROLE_PAYMENT:
            return self._payment
        if role == ROLE_WAGER:
            return self._wager
        raise ValueError("Invalid registry role: {}".format(role))

    def _upsert(
        self,
        role: str,
        assets: Sequence[str],
        oracles: Sequence[str],
        enabled: bool,
        decimals: Optional[Sequence[int]] = None,
    ) -> List[str]:
        if len(assets) != len(oracles):
            raise LengthMismatch(
                "assets ({}) and oracles ({}) differ in length".format(len(assets), len(oracles))
            )
        if decimals is not None and len(decimals) != len(assets):
            raise LengthMismatch(
                "assets ({}) and decimals ({}) differ in length".format(len(assets), len(decimals))
            )

        # Validate everything before touching the table
        staged = []  # type: List[AssetEntry]
        for i, raw in enumerate(assets):
            asset = normalise_identity(raw)
            if not asset:
                raise ValidationError("Empty asset identity at index {}".format(i))
            oracle = normalise_identity(oracles[i])
            if decimals is not None:
                dec = int(decimals[i])
            else:
                existing = self._table(role).get(asset)
                dec = existing.decimals if existing else DEFAULT_ASSET_DECIMALS
            if dec < 0:
                raise ValidationError("Negative decimals for {}".format(asset))
            staged.append(AssetEntry(asset, bool(enabled), oracle, dec))

        table = self._table(role)
        for entry in staged:
            previous = table.get(entry.asset)
            if previous is not None and previous.oracle != entry.oracle:
                logger.info(
                    "Registry %s %s oracle rebound: %s -> %s",
                    role, entry.asset, previous.oracle, entry.oracle,
                )
            table[entry.asset] = entry

        logger.info(
            "Registry %s update: %d asset(s) enabled=%s",
            role, len(staged), enabled,
        )
        return [e.asset for e in staged]

    def set_payment_assets(
        self,
        assets: Sequence[str],
        oracles: Sequence[str],
        enabled: bool,
        decimals: Optional[Sequence[int]] = None,
    ) -> List[str]:
        """Upsert payment assets.  Returns the normalised identities."""
        return self._upsert(ROLE_PAYMENT, assets, oracles, enabled, decimals)

    def set_wager_assets(
        self,
        assets: Sequence[str],
        oracles: Sequence[str],
        enabled: bool,
        decimals: Optional[Sequence[int]] = None,
    ) -> List[str]:
        """Upsert wager (subject) assets.  Returns the normalised identities."""
        return self._upsert(ROLE_WAGER, assets, oracles, enabled, decimals)

    def is_payment_asset(self, asset: str) -> bool:
        entry = self._payment.get(normalise_identity(asset))
        return entry is not None and entry.allowed

    def is_wager_asset(self, asset: str) -> bool:
        entry = self._wager.get(normalise_identity(asset))
        return entry is not None and entry.allowed

    def entry(self, role: str, asset: str) -> Optional[AssetEntry]:
        return self._table(role).get(normalise_identity(asset))

    def require(self, role: str, asset: str) -> AssetEntry:
        """Return the entry if allowed, else raise UnsupportedAsset."""
        entry = self.entry(role, asset)
        if entry is None or not entry.allowed:
            raise UnsupportedAsset("{} is not an allowed {} asset".format(asset, role))
        return entry

    def oracle_for(self, role: str, asset: str) -> Optional[str]:
        entry = self.entry(role, asset)
        return entry.oracle if entry else None

    def checkpoint(self) -> Tuple[Dict[str, AssetEntry], Dict[str, AssetEntry]]:
        """Entries are replaced, never mutated, so shallow copies suffice."""
        return dict(self._payment), dict(self._wager)

    def rollback(self, state: Tuple[Dict[str, AssetEntry], Dict[str, AssetEntry]]) -> None:
        self._payment, self._wager = dict(state[0]), dict(state[1])

    def to_dict(self) -> Dict[str, Any]:
        return {
            ROLE_PAYMENT: [e.to_dict() for _, e in sorted(self._payment.items())],
            ROLE_WAGER: [e.to_dict() for _, e in sorted(self._wager.items())],
        }


class RefundFlags:
    """Per-asset emergency refund markers.

    A flag holds the timestamp it was raised at.  Zero means not flagged.
    There is no way to clear a flag.
    """

    def __init__(self) -> None:
        self._flags = {}  # type: Dict[str, int]

    def refundable_since(self, asset: str) -> int:
        return self._flags.get(normalise_identity(asset), 0)

    def is_flagged(self, asset: str) -> bool:
        return self.refundable_since(asset) > 0

    def flag(self, asset: str, ts: int) -> Tuple[int, bool]:
        """Raise the flag at ts unless already raised.

        Returns (refundable_since, newly_set).
        """
        asset_id = normalise_identity(asset)
        if not asset_id:
            raise ValidationError("Empty asset identity")
        if ts <= 0:
            raise ValidationError("Refund flag timestamp must be positive, got {}".format(ts))
        current = self._flags.get(asset_id, 0)
        if current:
            return current, False
        self._flags[asset_id] = ts
        return ts, True

    def restore(self, asset: str, ts: int) -> None:
        """Re-apply a persisted flag."""
        asset_id = normalise_identity(asset)
        if ts > 0 and not self._flags.get(asset_id):
            self._flags[asset_id] = ts

    def checkpoint(self) -> Dict[str, int]:
        return dict(self._flags)

    def rollback(self, flags: Dict[str, int]) -> None:
        self._flags = dict(flags)

    def to_dict(self) -> Dict[str, int]:
        return dict(sorted(self._flags.items()))


def compute_registry_hash(registry: AssetRegistry) -> str:
    """SHA-256 of the canonical registry contents (sorted keys, ASCII)."""
    canonical = json.dumps(registry.to_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_asset_entry(raw: Dict[str, Any]) -> Optional[Tuple[str, str, bool, int]]:
    """Parse one assets.json entry into (asset, oracle, enabled, decimals).

    Returns None if the entry lacks an asset identity.
    """
    asset = normalise_identity(raw.get("asset", raw.get("address", "")))
    if not asset:
        return None
    oracle = normalise_identity(raw.get("oracle", raw.get("feed", "")))
    enabled = bool(raw.get("enabled", True))
    decimals = int(raw.get("decimals", DEFAULT_ASSET_DECIMALS))
    return asset, oracle, enabled, decimals


def load_registry(data: Dict[str, Any], registry: Optional[AssetRegistry] = None) -> AssetRegistry:
    """Populate a registry from parsed assets.json content.

    Expected shape: {"payment": [...entries], "wager": [...entries]}.
    Unparseable entries are skipped with a warning.
    """
    registry = registry or AssetRegistry()

    for role, setter in (
        (ROLE_PAYMENT, registry.set_payment_assets),
        (ROLE_WAGER, registry.set_wager_assets),
    ):
        skipped = 0
        for raw in data.get(role, []):
            parsed = parse_asset_entry(raw)
            if parsed is None:
                skipped += 1
                continue
            asset, oracle, enabled, decimals = parsed
            setter([asset], [oracle], enabled, [decimals])
        if skipped:
            logger.warning("Registry load: skipped %d %s entr(ies) without an asset", skipped, role)

    return registry
