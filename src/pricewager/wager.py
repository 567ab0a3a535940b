"""Wager record and price terms.

A Wager is owned by the engine for its whole life.  Fields fixed at creation
are never reassigned; transition fields (user_b on open fill, filled_at,
is_filled, is_closed, is_redeemed) are each set once.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Union

from pricewager.constants import (
    KIND_CONDITIONAL,
    KIND_FIXED,
    OPEN_COUNTERPARTY,
    STATUS_CANCELLED,
    STATUS_CREATED,
    STATUS_FILLED,
    STATUS_REDEEMED,
)
from pricewager.errors import InvalidTerms
from pricewager.snapshots import PriceSnapshot


class ConditionalTerms:
    """Both parties' price guesses."""

    kind = KIND_CONDITIONAL

    def __init__(self, price_a: int, price_b: int) -> None:
        if int(price_a) <= 0 or int(price_b) <= 0:
            raise InvalidTerms("Price guesses must be positive")
        self.price_a = int(price_a)
        self.price_b = int(price_b)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "price_a": self.price_a, "price_b": self.price_b}


class FixedTerms:
    """One threshold and the creator's direction."""

    kind = KIND_FIXED

    def __init__(self, threshold: int, above: bool) -> None:
        if int(threshold) <= 0:
            raise InvalidTerms("Threshold must be positive")
        self.threshold = int(threshold)
        self.above = bool(above)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "threshold": self.threshold, "above": self.above}


PriceTerms = Union[ConditionalTerms, FixedTerms]


def terms_from_dict(data: Dict[str, Any]) -> PriceTerms:
    kind = data.get("kind")
    if kind == KIND_CONDITIONAL:
        return ConditionalTerms(data["price_a"], data["price_b"])
    if kind == KIND_FIXED:
        return FixedTerms(data["threshold"], data["above"])
    raise InvalidTerms("Unknown terms kind: {}".format(kind))


class Wager:
    """A two-party wager held in escrow."""

    def __init__(
        self,
        wager_id: int,
        user_a: str,
        user_b: str,
        wager_asset: str,
        payment_asset: str,
        terms: PriceTerms,
        amount_a: int,
        amount_b: int,
        duration: int,
        created_at: int,
        wager_oracle: str,
        payment_oracle: str,
        fee: int = 0,
        create_snapshot: Optional[PriceSnapshot] = None,
    ) -> None:
        self.wager_id = wager_id
        self.user_a = user_a
        self.user_b = user_b
        self.wager_asset = wager_asset
        self.payment_asset = payment_asset
        self.terms = terms
        self.amount_a = amount_a
        self.amount_b = amount_b
        self.duration = duration
        self.created_at = created_at
        self.wager_oracle = wager_oracle
        self.payment_oracle = payment_oracle
        self.fee = fee
        self.create_snapshot = create_snapshot

        self.is_p2p = user_b != OPEN_COUNTERPARTY
        self.filled_at = 0
        self.is_filled = False
        self.is_closed = False
        self.is_redeemed = False
        self.redeemed_at = 0

    @property
    def kind(self) -> str:
        return self.terms.kind

    @property
    def expires_at(self) -> int:
        """filled_at + duration, or 0 while unfilled."""
        if not self.is_filled:
            return 0
        return self.filled_at + self.duration

    @property
    def custody_total(self) -> int:
        """Value currently held in escrow for this wager."""
        if self.is_closed or self.is_redeemed:
            return 0
        return self.amount_a + (self.amount_b if self.is_filled else 0)

    @property
    def status(self) -> str:
        if self.is_redeemed:
            return STATUS_REDEEMED
        if self.is_closed:
            return STATUS_CANCELLED
        if self.is_filled:
            return STATUS_FILLED
        return STATUS_CREATED

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for events, storage and CLI output."""
        return {
            "wager_id": self.wager_id,
            "kind": self.kind,
            "status": self.status,
            "user_a": self.user_a,
            "user_b": self.user_b,
            "is_p2p": self.is_p2p,
            "wager_asset": self.wager_asset,
            "payment_asset": self.payment_asset,
            "terms": self.terms.to_dict(),
            "amount_a": self.amount_a,
            "amount_b": self.amount_b,
            "fee": self.fee,
            "duration": self.duration,
            "created_at": self.created_at,
            "filled_at": self.filled_at,
            "expires_at": self.expires_at,
            "redeemed_at": self.redeemed_at,
            "is_filled": self.is_filled,
            "is_closed": self.is_closed,
            "is_redeemed": self.is_redeemed,
            "wager_oracle": self.wager_oracle,
            "payment_oracle": self.payment_oracle,
            "create_snapshot": self.create_snapshot.to_dict() if self.create_snapshot else None,
        }
