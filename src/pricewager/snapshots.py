"""Price snapshots pinned to historical oracle rounds.

Implements:
- PriceSnapshot: immutable reading tied to one round of one feed
- PriceSnapshotAdapter.snapshot_at: binary search for the round covering a timestamp
- Canonical JSON + SHA-256 snapshot_hash for deterministic fingerprints
- USD notional conversion for the creation floor

A snapshot is never the "latest" price.  It is the round whose coverage
[updated_at, next.updated_at) contains the requested timestamp.  Timestamps in
the future, before the first round, or past the staleness window of the
latest round raise OracleUnavailable.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from decimal import Decimal, localcontext
from typing import Any, Callable, Dict, Optional

from pricewager.constants import ORACLE_MAX_STALENESS_SEC
from pricewager.errors import OracleUnavailable
from pricewager.oracle import FIRST_ROUND_ID, PriceOracle, RoundData

logger = logging.getLogger(__name__)


class PriceSnapshot:
    """Immutable oracle reading for one asset at one instant."""

    __slots__ = (
        "asset", "feed", "requested_at", "round_id",
        "price", "round_updated_at", "decimals", "snapshot_hash",
    )

    def __init__(
        self,
        asset: str,
        feed: str,
        requested_at: int,
        round_id: int,
        price: int,
        round_updated_at: int,
        decimals: int,
    ) -> None:
        object.__setattr__(self, "asset", asset)
        object.__setattr__(self, "feed", feed)
        object.__setattr__(self, "requested_at", requested_at)
        object.__setattr__(self, "round_id", round_id)
        object.__setattr__(self, "price", price)
        object.__setattr__(self, "round_updated_at", round_updated_at)
        object.__setattr__(self, "decimals", decimals)
        object.__setattr__(self, "snapshot_hash", compute_snapshot_hash(canonical_snapshot_json(self)))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("PriceSnapshot is immutable")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "feed": self.feed,
            "requested_at": self.requested_at,
            "round_id": self.round_id,
            "price": self.price,
            "round_updated_at": self.round_updated_at,
            "decimals": self.decimals,
            "snapshot_hash": self.snapshot_hash,
        }

    def __reduce__(self) -> Any:
        return (
            self.__class__,
            (self.asset, self.feed, self.requested_at, self.round_id,
             self.price, self.round_updated_at, self.decimals),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PriceSnapshot):
            return NotImplemented
        return self.snapshot_hash == other.snapshot_hash

    def __hash__(self) -> int:
        return hash(self.snapshot_hash)


def canonical_snapshot_json(snap: PriceSnapshot) -> str:
    """Deterministic JSON of the identifying snapshot fields."""
    obj = {
        "asset": snap.asset,
        "decimals": snap.decimals,
        "feed": snap.feed,
        "price": str(snap.price),
        "requested_at": snap.requested_at,
        "round_id": snap.round_id,
        "round_updated_at": snap.round_updated_at,
    }
    return json.dumps(obj, sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def compute_snapshot_hash(canonical_json: str) -> str:
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


class PriceSnapshotAdapter:
    """Wraps a PriceOracle to answer "what was the price at time T"."""

    def __init__(
        self,
        oracle: PriceOracle,
        max_staleness_sec: int = ORACLE_MAX_STALENESS_SEC,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.oracle = oracle
        self.max_staleness_sec = max_staleness_sec
        self._clock = clock or (lambda: int(time.time()))

    def _round(self, feed: str, round_id: int) -> RoundData:
        rd = self.oracle.price_at_round(feed, round_id)
        if rd.price <= 0:
            raise OracleUnavailable(
                "Feed {} round {} reported non-positive price {}".format(feed, round_id, rd.price)
            )
        return rd

    def _fresh(self, feed: str, rd: RoundData, timestamp: int) -> RoundData:
        age = timestamp - rd.updated_at
        if age > self.max_staleness_sec:
            raise OracleUnavailable(
                "Feed {} stale at {}: round {} is {}s old (> {}s)".format(
                    feed, timestamp, rd.round_id, age, self.max_staleness_sec,
                )
            )
        return rd

    def find_round(self, feed: str, timestamp: int) -> RoundData:
        """Binary search for the last round with updated_at <= timestamp.

        The chosen round, latest or historical, must be no older than
        max_staleness_sec at timestamp.
        """
        if timestamp > self._clock():
            raise OracleUnavailable(
                "Feed {} cannot answer for future timestamp {}".format(feed, timestamp)
            )

        latest_id = self.oracle.latest_round_for(feed)
        latest = self._round(feed, latest_id)

        if latest.updated_at <= timestamp:
            return self._fresh(feed, latest, timestamp)

        lo, hi = FIRST_ROUND_ID, latest_id - 1
        found = None  # type: Optional[RoundData]
        while lo <= hi:
            mid = (lo + hi) // 2
            rd = self.oracle.price_at_round(feed, mid)
            if rd.updated_at <= timestamp:
                found = rd
                lo = mid + 1
            else:
                hi = mid - 1

        if found is None:
            raise OracleUnavailable(
                "Feed {} has no round at or before {}".format(feed, timestamp)
            )
        logger.debug("Round walk: feed=%s ts=%d -> round=%d", feed, timestamp, found.round_id)
        return self._fresh(feed, self._round(feed, found.round_id), timestamp)

    def snapshot_at(self, asset: str, timestamp: int, feed: Optional[str] = None) -> PriceSnapshot:
        """Return the price pinned to the round covering timestamp.

        feed is the oracle reference bound to the asset; it defaults to the
        asset identity itself.
        """
        feed = feed or asset
        rd = self.find_round(feed, int(timestamp))
        return PriceSnapshot(
            asset=asset,
            feed=feed,
            requested_at=int(timestamp),
            round_id=rd.round_id,
            price=rd.price,
            round_updated_at=rd.updated_at,
            decimals=self.oracle.decimals(feed),
        )


def usd_notional(amount: int, asset_decimals: int, snap: PriceSnapshot) -> Decimal:
    """Convert a base-unit amount to USD using a snapshot price."""
    with localcontext() as ctx:
        ctx.prec = 78
        return (
            Decimal(amount) * Decimal(snap.price)
            / (Decimal(10) ** asset_decimals)
            / (Decimal(10) ** snap.decimals)
        )


def snapshot_from_dict(data: Dict[str, Any]) -> PriceSnapshot:
    """Rebuild a snapshot from to_dict() output, verifying its hash."""
    snap = PriceSnapshot(
        asset=data["asset"],
        feed=data["feed"],
        requested_at=int(data["requested_at"]),
        round_id=int(data["round_id"]),
        price=int(data["price"]),
        round_updated_at=int(data["round_updated_at"]),
        decimals=int(data["decimals"]),
    )
    stored = data.get("snapshot_hash")
    if stored and stored != snap.snapshot_hash:
        raise ValueError("Snapshot hash mismatch for {} round {}".format(snap.feed, snap.round_id))
    return snap
