"""Wager Lifecycle: create, fill, cancel.

Implements:
- create: registry + duration + notional checks, fee extraction, custody of the
  creator's gross deposit, creation-time price snapshot
- fill: peer restriction, self-wager rejection, custody of the counterparty stake
- cancel: return of the creator's net deposit while unfilled
- Lookup by id, full listing, listing by party

Each operation validates, reads prices and moves custody before it commits
anything to the wager record.  The event is emitted before the commit, so a
failed WAL write leaves the wager untouched and the engine rolls custody back.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from pricewager.config import EngineConfig
from pricewager.constants import (
    EVENT_WAGER_CANCELLED,
    EVENT_WAGER_CREATED,
    EVENT_WAGER_FILLED,
    OPEN_COUNTERPARTY,
)
from pricewager.custody import Custodian
from pricewager.errors import (
    InsufficientAmount,
    InvalidDuration,
    NotWagerParty,
    RestrictedP2P,
    SelfWager,
    UnsupportedAsset,
    WagerAlreadyClosed,
    WagerAlreadyFilled,
    WagerAlreadyRedeemed,
    WagerNotFound,
)
from pricewager.observability import EventLog
from pricewager.registry import (
    ROLE_PAYMENT,
    ROLE_WAGER,
    AssetRegistry,
    RefundFlags,
    normalise_identity,
)
from pricewager.snapshots import PriceSnapshotAdapter, usd_notional
from pricewager.wager import PriceTerms, Wager

logger = logging.getLogger(__name__)

FIRST_WAGER_ID = 0


def _counterparty(user_b: Optional[str]) -> str:
    ident = normalise_identity(user_b)
    return ident or OPEN_COUNTERPARTY


class WagerLifecycle:
    """Owns every wager record and the id sequence."""

    def __init__(
        self,
        registry: AssetRegistry,
        adapter: PriceSnapshotAdapter,
        custodian: Custodian,
        config: EngineConfig,
        events: EventLog,
        refund_flags: RefundFlags,
    ) -> None:
        self.registry = registry
        self.adapter = adapter
        self.custodian = custodian
        self.config = config
        self.events = events
        self.refund_flags = refund_flags
        self._wagers = {}  # type: Dict[int, Wager]
        self._next_id = FIRST_WAGER_ID

    # ── Lookup ───────────────────────────────────────────────────────────────

    def get_wager(self, wager_id: int) -> Wager:
        wager = self._wagers.get(wager_id)
        if wager is None:
            raise WagerNotFound("No wager with id {}".format(wager_id))
        return wager

    def all_wagers(self) -> List[Wager]:
        return [self._wagers[k] for k in sorted(self._wagers)]

    def wagers_for(self, identity: str) -> List[Wager]:
        ident = normalise_identity(identity)
        return [w for w in self.all_wagers() if ident in (w.user_a, w.user_b)]

    @property
    def next_id(self) -> int:
        return self._next_id

    def adopt(self, wager: Wager) -> None:
        """Install a wager loaded from storage and advance the id sequence."""
        if wager.wager_id in self._wagers:
            raise ValueError("Wager {} already loaded".format(wager.wager_id))
        self._wagers[wager.wager_id] = wager
        self._next_id = max(self._next_id, wager.wager_id + 1)

    def checkpoint(self) -> int:
        return self._next_id

    def rollback(self, next_id: int) -> None:
        """Drop wagers created after the checkpoint."""
        for wager_id in [k for k in self._wagers if k >= next_id]:
            del self._wagers[wager_id]
        self._next_id = next_id

    # ── Transitions ──────────────────────────────────────────────────────────

    def create(
        self,
        caller: str,
        user_b: Optional[str],
        wager_asset: str,
        payment_asset: str,
        terms: PriceTerms,
        amount_a: int,
        amount_b: int,
        duration: int,
        now: int,
        value: int = 0,
    ) -> Wager:
        """Open a new wager with the caller as userA.

        amount_a is the creator's gross deposit; the stored amount is net of
        the protocol fee.  amount_b is the stake the counterparty must match.
        """
        user_a = normalise_identity(caller)
        counterparty = _counterparty(user_b)

        wager_entry = self.registry.require(ROLE_WAGER, wager_asset)
        payment_entry = self.registry.require(ROLE_PAYMENT, payment_asset)

        if self.config.block_flagged_creation and self.refund_flags.is_flagged(wager_entry.asset):
            raise UnsupportedAsset(
                "{} is flagged for oracle malfunction".format(wager_entry.asset)
            )
        if duration < self.config.min_duration_sec:
            raise InvalidDuration(
                "Duration {}s is below the minimum {}s".format(duration, self.config.min_duration_sec)
            )
        if amount_a <= 0 or amount_b <= 0:
            raise InsufficientAmount("Stakes must be positive")
        if counterparty == user_a:
            raise SelfWager("Creator cannot name themselves as counterparty")

        fee = self.config.fee_for(amount_a)
        net = amount_a - fee

        payment_snap = self.adapter.snapshot_at(payment_entry.asset, now, payment_entry.oracle)
        notional = usd_notional(net, payment_entry.decimals, payment_snap)
        if notional < self.config.min_notional_usd:
            raise InsufficientAmount(
                "Net deposit worth ${} is below the ${} minimum".format(
                    notional.quantize(self.config.min_notional_usd), self.config.min_notional_usd,
                )
            )

        create_snap = self.adapter.snapshot_at(wager_entry.asset, now, wager_entry.oracle)

        self.custodian.take_custody(payment_entry.asset, user_a, amount_a, value)
        self.custodian.release(payment_entry.asset, self.config.fee_recipient, fee)

        wager = Wager(
            wager_id=self._next_id,
            user_a=user_a,
            user_b=counterparty,
            wager_asset=wager_entry.asset,
            payment_asset=payment_entry.asset,
            terms=terms,
            amount_a=net,
            amount_b=amount_b,
            duration=duration,
            created_at=now,
            wager_oracle=wager_entry.oracle,
            payment_oracle=payment_entry.oracle,
            fee=fee,
            create_snapshot=create_snap,
        )
        self.events.emit(EVENT_WAGER_CREATED, now, wager.wager_id, wager.to_dict())

        self._wagers[wager.wager_id] = wager
        self._next_id += 1
        logger.info(
            "Wager %d created: %s %s on %s, stake %d+%d fee %d",
            wager.wager_id, wager.kind, user_a, wager.wager_asset, net, amount_b, fee,
        )
        return wager

    def fill(self, caller: str, wager_id: int, now: int, value: int = 0) -> Wager:
        """Match the wager as userB and start its countdown."""
        taker = normalise_identity(caller)
        wager = self.get_wager(wager_id)

        if wager.is_closed:
            raise WagerAlreadyClosed("Wager {} is closed".format(wager_id))
        if wager.is_redeemed:
            raise WagerAlreadyRedeemed("Wager {} is redeemed".format(wager_id))
        if wager.is_filled:
            raise WagerAlreadyFilled("Wager {} is already filled".format(wager_id))
        if wager.is_p2p and taker != wager.user_b:
            raise RestrictedP2P("Wager {} is reserved for {}".format(wager_id, wager.user_b))
        if taker == wager.user_a:
            raise SelfWager("Creator cannot fill their own wager")

        self.custodian.take_custody(wager.payment_asset, taker, wager.amount_b, value)

        self.events.emit(EVENT_WAGER_FILLED, now, wager_id, {
            "wager_id": wager_id,
            "user_a": wager.user_a,
            "user_b": taker,
            "wager_asset": wager.wager_asset,
            "payment_asset": wager.payment_asset,
            "terms": wager.terms.to_dict(),
            "amount_a": wager.amount_a,
            "amount_b": wager.amount_b,
            "filled_at": now,
            "expires_at": now + wager.duration,
        })

        wager.user_b = taker
        wager.filled_at = now
        wager.is_filled = True
        logger.info("Wager %d filled by %s, expires at %d", wager_id, taker, wager.expires_at)
        return wager

    def cancel(self, caller: str, wager_id: int, now: int) -> Wager:
        """Close an unfilled wager and return the creator's net deposit."""
        who = normalise_identity(caller)
        wager = self.get_wager(wager_id)

        if wager.is_closed:
            raise WagerAlreadyClosed("Wager {} is already closed".format(wager_id))
        if wager.is_redeemed:
            raise WagerAlreadyRedeemed("Wager {} is redeemed".format(wager_id))
        if wager.is_filled:
            raise WagerAlreadyFilled("Wager {} is filled and can no longer be cancelled".format(wager_id))
        if who != wager.user_a and not (wager.is_p2p and who == wager.user_b):
            logger.warning("Cancel of wager %d rejected for %s", wager_id, who)
            raise NotWagerParty("{} may not cancel wager {}".format(who, wager_id))

        self.custodian.release(wager.payment_asset, wager.user_a, wager.amount_a)

        self.events.emit(EVENT_WAGER_CANCELLED, now, wager_id, {
            "wager_id": wager_id,
            "user_a": wager.user_a,
            "user_b": wager.user_b,
            "wager_asset": wager.wager_asset,
            "terms": wager.terms.to_dict(),
            "returned": wager.amount_a,
            "cancelled_by": who,
        })

        wager.is_closed = True
        logger.info("Wager %d cancelled by %s, %d returned to %s", wager_id, who, wager.amount_a, wager.user_a)
        return wager
