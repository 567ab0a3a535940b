"""Settlement Engine: winner determination, payouts, emergency refunds.

Implements:
- fixed_winner / conditional_winner: pure predicates over integer prices
- check_winner: realized price pinned to min(now, filled_at + duration)
- compute_payouts: winner-take-all, push (each side gets its own stake back)
  or refund, always summing to amount_a + amount_b held in escrow
- redeem: terminal release of custody
- flag_oracle_malfunction: irreversible per-asset refund flag

A refund flag raised before a wager expires wins over everything else:
redemption then returns each party's stake with no oracle read, however long
after expiry it runs.  A flag raised at or after expiry leaves the wager to
settle by price.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from pricewager.constants import (
    EVENT_ORACLE_MALFUNCTION,
    EVENT_WAGER_REDEEMED,
    KIND_CONDITIONAL,
    KIND_FIXED,
    OUTCOME_PUSH,
    OUTCOME_REFUND,
    OUTCOME_WINNER,
)
from pricewager.custody import Custodian
from pricewager.errors import (
    CustodyError,
    WagerAlreadyClosed,
    WagerAlreadyRedeemed,
    WagerNotExpired,
    WagerNotFilled,
)
from pricewager.lifecycle import WagerLifecycle
from pricewager.observability import EventLog
from pricewager.registry import RefundFlags, normalise_identity
from pricewager.snapshots import PriceSnapshotAdapter
from pricewager.wager import ConditionalTerms, FixedTerms, Wager

logger = logging.getLogger(__name__)

SIDE_A = "A"
SIDE_B = "B"


# ── Predicates ───────────────────────────────────────────────────────────────


def fixed_winner(terms: FixedTerms, realized: int) -> Optional[str]:
    """Side that wins a Fixed wager, or None on an exact hit of the threshold.

    userA wins when the price finished strictly on the chosen side.
    """
    if realized == terms.threshold:
        return None
    if terms.above:
        return SIDE_A if realized > terms.threshold else SIDE_B
    return SIDE_A if realized < terms.threshold else SIDE_B


def _qualifies(guess: int, realized: int, baseline: int) -> bool:
    if realized > baseline:
        return guess <= realized
    if realized < baseline:
        return guess >= realized
    return True


def conditional_winner(terms: ConditionalTerms, realized: int, baseline: int) -> Optional[str]:
    """Side whose guess came closest without overshooting the realized move.

    A guess overshoots when it lies beyond the realized price in the
    direction the price moved from the baseline.  With no move, guesses
    straddling the realized price cancel out.  Ties and the case with no
    qualifying guess return None.
    """
    a, b = terms.price_a, terms.price_b
    if realized == baseline and (a - realized) * (b - realized) < 0:
        return None

    a_ok = _qualifies(a, realized, baseline)
    b_ok = _qualifies(b, realized, baseline)
    if a_ok and not b_ok:
        return SIDE_A
    if b_ok and not a_ok:
        return SIDE_B
    if not a_ok and not b_ok:
        return None

    dist_a = abs(a - realized)
    dist_b = abs(b - realized)
    if dist_a < dist_b:
        return SIDE_A
    if dist_b < dist_a:
        return SIDE_B
    return None


def _decide_fixed(wager: Wager, realized: int) -> Optional[str]:
    return fixed_winner(wager.terms, realized)  # type: ignore[arg-type]


def _decide_conditional(wager: Wager, realized: int) -> Optional[str]:
    if wager.create_snapshot is None:
        raise ValueError("Conditional wager {} has no creation snapshot".format(wager.wager_id))
    return conditional_winner(wager.terms, realized, wager.create_snapshot.price)  # type: ignore[arg-type]


PREDICATES = {
    KIND_FIXED: _decide_fixed,
    KIND_CONDITIONAL: _decide_conditional,
}  # type: Dict[str, Callable[[Wager, int], Optional[str]]]


# ── Engine ───────────────────────────────────────────────────────────────────


class SettlementEngine:
    """Settles wagers owned by a WagerLifecycle."""

    def __init__(
        self,
        lifecycle: WagerLifecycle,
        adapter: PriceSnapshotAdapter,
        custodian: Custodian,
        events: EventLog,
        refund_flags: RefundFlags,
    ) -> None:
        self.lifecycle = lifecycle
        self.adapter = adapter
        self.custodian = custodian
        self.events = events
        self.refund_flags = refund_flags

    def refundable_since(self, asset: str) -> int:
        return self.refund_flags.refundable_since(asset)

    def is_refundable(self, wager: Wager) -> bool:
        """True when the asset was flagged while the wager could still settle.

        Unfilled wagers refund on any flag.  A filled wager refunds only if
        the flag predates its expiry; one flagged at or after expiry settles
        by price.
        """
        since = self.refund_flags.refundable_since(wager.wager_asset)
        if not since:
            return False
        return not wager.is_filled or since < wager.expires_at

    def settlement_time(self, wager: Wager, now: int) -> int:
        return min(now, wager.expires_at)

    def check_winner(self, wager_id: int, now: int) -> Optional[str]:
        """Winner identity for a filled wager, or None for a push.  No mutation."""
        wager = self.lifecycle.get_wager(wager_id)
        if wager.is_closed:
            raise WagerAlreadyClosed("Wager {} is closed".format(wager_id))
        if not wager.is_filled:
            raise WagerNotFilled("Wager {} has not been filled".format(wager_id))

        at = self.settlement_time(wager, now)
        snap = self.adapter.snapshot_at(wager.wager_asset, at, wager.wager_oracle)
        side = PREDICATES[wager.kind](wager, snap.price)
        logger.debug(
            "Wager %d checked at %d: price=%d round=%d side=%s",
            wager_id, at, snap.price, snap.round_id, side,
        )
        if side == SIDE_A:
            return wager.user_a
        if side == SIDE_B:
            return wager.user_b
        return None

    def compute_payouts(self, wager: Wager, now: int) -> Tuple[str, Optional[str], Dict[str, int]]:
        """Return (outcome, winner, payouts) for a wager still in escrow.

        payouts always sums to amount_a plus amount_b when filled.
        """
        if self.is_refundable(wager):
            payouts = {wager.user_a: wager.amount_a}
            if wager.is_filled:
                payouts[wager.user_b] = wager.amount_b
            return OUTCOME_REFUND, None, payouts

        if not wager.is_filled:
            raise WagerNotFilled("Wager {} has not been filled".format(wager.wager_id))
        if now < wager.expires_at:
            raise WagerNotExpired(
                "Wager {} expires at {}, now {}".format(wager.wager_id, wager.expires_at, now)
            )

        winner = self.check_winner(wager.wager_id, now)
        if winner is None:
            return OUTCOME_PUSH, None, {wager.user_a: wager.amount_a, wager.user_b: wager.amount_b}
        return OUTCOME_WINNER, winner, {winner: wager.amount_a + wager.amount_b}

    def redeem(self, caller: str, wager_id: int, now: int) -> Dict[str, Any]:
        """Release escrow for a wager and mark it terminal."""
        wager = self.lifecycle.get_wager(wager_id)
        if wager.is_redeemed:
            raise WagerAlreadyRedeemed("Wager {} was already redeemed".format(wager_id))
        if wager.is_closed:
            raise WagerAlreadyClosed("Wager {} is closed".format(wager_id))

        outcome, winner, payouts = self.compute_payouts(wager, now)
        if sum(payouts.values()) != wager.custody_total:
            raise CustodyError(
                "Wager {} payouts {} do not match escrow {}".format(
                    wager_id, sum(payouts.values()), wager.custody_total,
                )
            )

        for account, amount in sorted(payouts.items()):
            self.custodian.release(wager.payment_asset, account, amount)

        result = {
            "wager_id": wager_id,
            "outcome": outcome,
            "winner": winner,
            "payouts": payouts,
            "payment_asset": wager.payment_asset,
            "redeemed_by": caller,
        }  # type: Dict[str, Any]
        self.events.emit(EVENT_WAGER_REDEEMED, now, wager_id, result)

        wager.is_redeemed = True
        wager.redeemed_at = now
        if outcome == OUTCOME_REFUND:
            logger.warning("Wager %d refunded: %s", wager_id, payouts)
        else:
            logger.info("Wager %d redeemed: outcome=%s winner=%s", wager_id, outcome, winner or "-")
        return result

    def flag_oracle_malfunction(self, wager_asset: str, now: int) -> int:
        """Mark every wager on wager_asset refundable.  Returns the flag time."""
        asset = normalise_identity(wager_asset)
        since, newly_set = self.refund_flags.flag(asset, now)
        if newly_set:
            self.events.emit(EVENT_ORACLE_MALFUNCTION, now, None, {
                "wager_asset": asset,
                "refundable_since": since,
            })
            logger.warning("Oracle malfunction flagged for %s at %d", asset, since)
        else:
            logger.info("Oracle malfunction already flagged for %s since %d", asset, since)
        return since
