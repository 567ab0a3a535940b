"""Price oracle collaborator: round-based price feeds.

Implements:
- RoundData: one reported round (id, price, started_at, updated_at)
- PriceOracle: the collaborator interface (latest_round_for, price_at_round)
- RoundBook: in-memory feed store used for paper runs and tests
- HTTP feed fetch (aiohttp) that loads historical rounds into a RoundBook

Feeds are keyed by oracle reference (the value the registry binds to an
asset).  Round ids are contiguous and start at 1.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from pricewager.constants import DEFAULT_ORACLE_DECIMALS
from pricewager.errors import OracleUnavailable
from pricewager.registry import normalise_identity

logger = logging.getLogger(__name__)

FIRST_ROUND_ID = 1


class RoundData:
    """A single oracle round."""

    __slots__ = ("round_id", "price", "started_at", "updated_at")

    def __init__(self, round_id: int, price: int, started_at: int, updated_at: int) -> None:
        self.round_id = round_id
        self.price = price
        self.started_at = started_at
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "price": self.price,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
        }

    def __repr__(self) -> str:
        return "RoundData(round_id={}, price={}, updated_at={})".format(
            self.round_id, self.price, self.updated_at,
        )


class PriceOracle:
    """Collaborator interface consumed by PriceSnapshotAdapter."""

    def decimals(self, feed: str) -> int:
        return DEFAULT_ORACLE_DECIMALS

    def latest_round_for(self, feed: str) -> int:
        """Return the id of the most recent round for a feed."""
        raise NotImplementedError

    def price_at_round(self, feed: str, round_id: int) -> RoundData:
        """Return the round data for a round id."""
        raise NotImplementedError


class RoundBook(PriceOracle):
    """In-memory append-only store of oracle rounds."""

    def __init__(self) -> None:
        self._rounds = {}  # type: Dict[str, List[RoundData]]
        self._decimals = {}  # type: Dict[str, int]

    def register_feed(self, feed: str, decimals: int = DEFAULT_ORACLE_DECIMALS) -> None:
        key = normalise_identity(feed)
        self._rounds.setdefault(key, [])
        self._decimals[key] = decimals

    def report(self, feed: str, price: int, updated_at: int, started_at: Optional[int] = None) -> RoundData:
        """Append a new round.  Timestamps must not go backwards."""
        key = normalise_identity(feed)
        rounds = self._rounds.setdefault(key, [])
        if rounds and updated_at < rounds[-1].updated_at:
            raise ValueError(
                "Round for {} reported out of order: {} < {}".format(key, updated_at, rounds[-1].updated_at)
            )
        rd = RoundData(
            round_id=len(rounds) + FIRST_ROUND_ID,
            price=int(price),
            started_at=updated_at if started_at is None else started_at,
            updated_at=updated_at,
        )
        rounds.append(rd)
        logger.debug("Round reported: feed=%s round=%d price=%d at=%d", key, rd.round_id, rd.price, updated_at)
        return rd

    def decimals(self, feed: str) -> int:
        return self._decimals.get(normalise_identity(feed), DEFAULT_ORACLE_DECIMALS)

    def latest_round_for(self, feed: str) -> int:
        rounds = self._rounds.get(normalise_identity(feed))
        if not rounds:
            raise OracleUnavailable("No rounds reported for feed {}".format(feed))
        return rounds[-1].round_id

    def price_at_round(self, feed: str, round_id: int) -> RoundData:
        rounds = self._rounds.get(normalise_identity(feed)) or []
        idx = round_id - FIRST_ROUND_ID
        if idx < 0 or idx >= len(rounds):
            raise OracleUnavailable("Round {} not found for feed {}".format(round_id, feed))
        return rounds[idx]

    @property
    def feeds(self) -> List[str]:
        return sorted(self._rounds)


def load_rounds(book: RoundBook, feed: str, payload: Dict[str, Any]) -> int:
    """Load a feed payload into a RoundBook.

    Payload shape: {"decimals": 8, "rounds": [{"price", "updated_at", "started_at"?}, ...]}.
    Rounds are sorted by updated_at before loading.  Returns rounds loaded.
    """
    book.register_feed(feed, int(payload.get("decimals", DEFAULT_ORACLE_DECIMALS)))
    rounds = sorted(payload.get("rounds", []), key=lambda r: int(r["updated_at"]))
    for r in rounds:
        book.report(
            feed,
            int(r["price"]),
            int(r["updated_at"]),
            started_at=int(r["started_at"]) if "started_at" in r else None,
        )
    logger.info("Loaded %d round(s) for feed %s", len(rounds), feed)
    return len(rounds)


async def fetch_feed_rounds(
    base_url: str,
    feed: str,
    since: Optional[int] = None,
) -> Dict[str, Any]:
    """Fetch historical rounds for a feed from an HTTP price service.

    GET {base_url}/feeds/{feed}/rounds[?since=ts] -> {"decimals": int, "rounds": [...]}
    """
    params = {}  # type: Dict[str, Any]
    if since is not None:
        params["since"] = since

    async with aiohttp.ClientSession() as session:
        url = "{}/feeds/{}/rounds".format(base_url.rstrip("/"), feed)
        async with session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=30)) as resp:
            resp.raise_for_status()
            return await resp.json()


async def sync_feed(book: RoundBook, base_url: str, feed: str) -> int:
    """Fetch a feed over HTTP and load it into the book."""
    payload = await fetch_feed_rounds(base_url, feed)
    return load_rounds(book, feed, payload)
