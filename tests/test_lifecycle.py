"""Tests for wager creation, fill and cancel."""

from decimal import Decimal
from typing import Any, Tuple

import pytest

from pricewager.config import EngineConfig
from pricewager.constants import (
    EVENT_WAGER_CANCELLED,
    EVENT_WAGER_CREATED,
    EVENT_WAGER_FILLED,
    NATIVE_ASSET,
    OPEN_COUNTERPARTY,
    STATUS_CANCELLED,
    STATUS_CREATED,
    STATUS_FILLED,
)
from pricewager.custody import Ledger
from pricewager.engine import WagerEngine
from pricewager.errors import (
    InsufficientAllowance,
    InsufficientAmount,
    InvalidDuration,
    NotWagerParty,
    OracleUnavailable,
    RestrictedP2P,
    SelfWager,
    UnsupportedAsset,
    ValueMismatch,
    WagerAlreadyClosed,
    WagerAlreadyFilled,
    WagerNotFound,
)
from pricewager.oracle import RoundBook
from pricewager.scenario import ManualClock
from pricewager.wager import ConditionalTerms, FixedTerms

T0 = 1700000000
DAY = 86400
OWNER = "0xowner"
ALICE = "0xa11ce"
BOB = "0xb0b"
CAROL = "0xca201"
USDC = "0xusdc"
WBTC = "0xwbtc"
USDC_UNIT = 10 ** 6
BTC_30K = 30000 * 10 ** 8


def _build(**overrides: Any) -> Tuple[WagerEngine, RoundBook, Ledger, ManualClock]:
    clock = ManualClock(T0)
    book = RoundBook()
    for feed, price in (("usdc-usd", 10 ** 8), ("eth-usd", 2000 * 10 ** 8), ("btc-usd", BTC_30K)):
        book.register_feed(feed, 8)
        book.report(feed, price, T0 - 3600)
    ledger = Ledger()
    engine = WagerEngine(
        OWNER, oracle=book, custodian=ledger, config=EngineConfig(**overrides), clock=clock,
    )
    engine.set_payment_assets(OWNER, [USDC, NATIVE_ASSET], ["usdc-usd", "eth-usd"], True, [6, 18])
    engine.set_wager_assets(OWNER, [WBTC], ["btc-usd"], True)
    for who in (ALICE, BOB, CAROL):
        ledger.mint(USDC, who, 1000 * USDC_UNIT)
        ledger.approve(USDC, who, 1000 * USDC_UNIT)
        ledger.mint(NATIVE_ASSET, who, 10 ** 18)
    return engine, book, ledger, clock


def _create(engine: WagerEngine, **kw: Any) -> int:
    args = {
        "caller": ALICE,
        "user_b": None,
        "wager_asset": WBTC,
        "payment_asset": USDC,
        "terms": FixedTerms(31000 * 10 ** 8, above=True),
        "amount_a": 20 * USDC_UNIT,
        "amount_b": 15 * USDC_UNIT,
        "duration": DAY,
    }
    args.update(kw)
    return engine.create_wager(**args)


# ── Create ───────────────────────────────────────────────────────────────────


def test_create_stores_net_of_fee() -> None:
    """Stored amount_a is gross * 0.995 floored; the fee goes to the fee sink."""
    engine, _, ledger, _ = _build()
    wid = _create(engine, amount_a=20 * USDC_UNIT)
    wager = engine.get_wager(wid)

    assert wager.amount_a == 19900000
    assert wager.fee == 100000
    assert wager.amount_b == 15 * USDC_UNIT
    assert ledger.balance_of(USDC, ALICE) == 980 * USDC_UNIT
    assert ledger.balance_of(USDC, "fee-sink") == 100000
    assert ledger.escrow_balance(USDC) == 19900000


def test_create_fee_truncates_toward_zero() -> None:
    """Odd gross amounts floor the net, so the fee takes the remainder."""
    engine, _, _, _ = _build()
    wid = _create(engine, amount_a=12345679)
    wager = engine.get_wager(wid)
    assert wager.amount_a == 12345679 * 9950 // 10000
    assert wager.amount_a + wager.fee == 12345679


def test_create_ids_are_sequential() -> None:
    """Ids start at 0 and increase by one per wager."""
    engine, _, _, _ = _build()
    assert [_create(engine) for _ in range(3)] == [0, 1, 2]


def test_create_initial_state() -> None:
    """A new open wager is CREATED, unfilled and peer-to-market."""
    engine, _, _, _ = _build()
    wager = engine.get_wager(_create(engine))
    assert wager.status == STATUS_CREATED
    assert wager.user_b == OPEN_COUNTERPARTY
    assert not wager.is_p2p
    assert wager.filled_at == 0
    assert wager.expires_at == 0


def test_create_pins_snapshot_and_oracles() -> None:
    """The wager asset price at creation and both oracle bindings are captured."""
    engine, _, _, _ = _build()
    wager = engine.get_wager(_create(engine))
    assert wager.create_snapshot is not None
    assert wager.create_snapshot.price == BTC_30K
    assert wager.create_snapshot.requested_at == T0
    assert wager.wager_oracle == "btc-usd"
    assert wager.payment_oracle == "usdc-usd"


def test_create_unsupported_wager_asset() -> None:
    """An unlisted wager asset is rejected."""
    engine, _, _, _ = _build()
    with pytest.raises(UnsupportedAsset):
        _create(engine, wager_asset="0xdoge")


def test_create_unsupported_payment_asset() -> None:
    """An unlisted payment asset is rejected."""
    engine, _, _, _ = _build()
    with pytest.raises(UnsupportedAsset):
        _create(engine, payment_asset="0xdai")


def test_create_disabled_asset() -> None:
    """A disabled entry counts as unlisted."""
    engine, _, _, _ = _build()
    engine.set_wager_assets(OWNER, [WBTC], ["btc-usd"], False)
    with pytest.raises(UnsupportedAsset):
        _create(engine)


def test_create_duration_floor() -> None:
    """One day is accepted; one second less is not."""
    engine, _, _, _ = _build()
    _create(engine, duration=DAY)
    with pytest.raises(InvalidDuration):
        _create(engine, duration=DAY - 1)


def test_create_min_notional_boundary() -> None:
    """Net exactly $9.95 passes; a hair below fails."""
    engine, _, _, _ = _build()
    _create(engine, amount_a=10 * USDC_UNIT)
    with pytest.raises(InsufficientAmount):
        _create(engine, amount_a=10 * USDC_UNIT - 1)


def test_create_min_notional_configurable() -> None:
    """The notional floor comes from config."""
    engine, _, _, _ = _build(min_notional_usd=Decimal("100"))
    with pytest.raises(InsufficientAmount):
        _create(engine, amount_a=50 * USDC_UNIT)


def test_create_zero_stake_rejected() -> None:
    """Both stakes must be positive."""
    engine, _, _, _ = _build()
    with pytest.raises(InsufficientAmount):
        _create(engine, amount_b=0)


def test_create_native_currency() -> None:
    """Native deposits require attached value equal to the gross amount."""
    engine, _, ledger, _ = _build()
    gross = 10 ** 16  # 0.01 ETH, $20
    wid = _create(engine, payment_asset=NATIVE_ASSET, amount_a=gross, amount_b=10 ** 16, value=gross)
    wager = engine.get_wager(wid)
    assert wager.amount_a == gross * 9950 // 10000
    assert ledger.balance_of(NATIVE_ASSET, ALICE) == 10 ** 18 - gross


def test_create_native_value_mismatch_rolls_back() -> None:
    """A wrong attached value fails and leaves no wager behind."""
    engine, _, ledger, _ = _build()
    with pytest.raises(ValueMismatch):
        _create(engine, payment_asset=NATIVE_ASSET, amount_a=10 ** 16, value=10 ** 15)
    assert engine.all_wagers() == []
    assert ledger.balance_of(NATIVE_ASSET, ALICE) == 10 ** 18
    assert ledger.balance_of(NATIVE_ASSET, "fee-sink") == 0


def test_create_token_with_value_rejected() -> None:
    """Token payments must not carry native value."""
    engine, _, _, _ = _build()
    with pytest.raises(ValueMismatch):
        _create(engine, value=1)


def test_create_insufficient_allowance_rolls_back() -> None:
    """A failed token pull leaves balances, fee sink and the id sequence untouched."""
    engine, _, ledger, _ = _build()
    ledger.approve(USDC, ALICE, 5 * USDC_UNIT)
    with pytest.raises(InsufficientAllowance):
        _create(engine)
    assert engine.all_wagers() == []
    assert ledger.balance_of(USDC, ALICE) == 1000 * USDC_UNIT
    assert ledger.allowance(USDC, ALICE) == 5 * USDC_UNIT

    ledger.approve(USDC, ALICE, 1000 * USDC_UNIT)
    assert _create(engine) == 0


def test_create_stale_payment_oracle() -> None:
    """No notional check is possible without a fresh payment price."""
    engine, _, _, clock = _build()
    clock.advance(2 * DAY)
    with pytest.raises(OracleUnavailable):
        _create(engine)


def test_create_naming_self_as_counterparty() -> None:
    """A creator cannot reserve the wager for themselves."""
    engine, _, _, _ = _build()
    with pytest.raises(SelfWager):
        _create(engine, user_b=ALICE)


def test_create_on_flagged_asset_allowed_by_default() -> None:
    """Creation on a refund-flagged asset is allowed unless configured otherwise."""
    engine, _, _, _ = _build()
    engine.flag_oracle_malfunction(OWNER, WBTC)
    _create(engine)


def test_create_on_flagged_asset_blocked_when_configured() -> None:
    """block_flagged_creation turns creation on a flagged asset into UnsupportedAsset."""
    engine, _, _, _ = _build(block_flagged_creation=True)
    engine.flag_oracle_malfunction(OWNER, WBTC)
    with pytest.raises(UnsupportedAsset, match="flagged"):
        _create(engine)


def test_create_emits_event() -> None:
    """A creation event carries id, parties, asset and terms."""
    engine, _, _, _ = _build()
    wid = _create(engine, terms=ConditionalTerms(31000 * 10 ** 8, 29000 * 10 ** 8))
    events = engine.events.events_of(EVENT_WAGER_CREATED)
    assert len(events) == 1
    details = events[0]["details"]
    assert events[0]["wager_id"] == wid
    assert details["user_a"] == ALICE
    assert details["wager_asset"] == WBTC
    assert details["terms"] == {"kind": "CONDITIONAL", "price_a": 31000 * 10 ** 8, "price_b": 29000 * 10 ** 8}


def test_registry_change_does_not_reach_existing_wagers() -> None:
    """Rebinding the oracle after creation leaves the wager's binding alone."""
    engine, _, _, _ = _build()
    wid = _create(engine)
    engine.set_wager_assets(OWNER, [WBTC], ["btc-usd-v2"], True)
    assert engine.get_wager(wid).wager_oracle == "btc-usd"


# ── Fill ─────────────────────────────────────────────────────────────────────


def test_fill_open_wager() -> None:
    """Filling sets userB, filled_at and takes amount_b into escrow."""
    engine, _, ledger, clock = _build()
    wid = _create(engine)
    clock.advance(60)
    wager = engine.fill_wager(BOB, wid)

    assert wager.user_b == BOB
    assert wager.is_filled
    assert wager.filled_at == T0 + 60
    assert wager.expires_at == T0 + 60 + DAY
    assert wager.status == STATUS_FILLED
    assert ledger.balance_of(USDC, BOB) == 985 * USDC_UNIT
    assert ledger.escrow_balance(USDC) == 19900000 + 15 * USDC_UNIT


def test_fill_restricted_p2p() -> None:
    """Only the designated counterparty can fill; they still can after a rejection."""
    engine, _, _, _ = _build()
    wid = _create(engine, user_b=BOB)
    with pytest.raises(RestrictedP2P):
        engine.fill_wager(CAROL, wid)
    assert not engine.get_wager(wid).is_filled

    engine.fill_wager(BOB, wid)
    assert engine.get_wager(wid).is_filled


def test_fill_identity_matching_is_normalised() -> None:
    """Identities compare after case and whitespace normalisation."""
    engine, _, _, _ = _build()
    wid = _create(engine, user_b=" 0xB0B ")
    engine.fill_wager("0xb0B", wid)
    assert engine.get_wager(wid).user_b == BOB


def test_fill_self_wager() -> None:
    """The creator cannot take the other side."""
    engine, _, _, _ = _build()
    wid = _create(engine)
    with pytest.raises(SelfWager):
        engine.fill_wager(ALICE, wid)


def test_fill_twice() -> None:
    """A filled wager cannot be filled again."""
    engine, _, _, _ = _build()
    wid = _create(engine)
    engine.fill_wager(BOB, wid)
    with pytest.raises(WagerAlreadyFilled):
        engine.fill_wager(CAROL, wid)


def test_fill_cancelled_wager() -> None:
    """A cancelled wager cannot be filled."""
    engine, _, _, _ = _build()
    wid = _create(engine)
    engine.cancel_wager(ALICE, wid)
    with pytest.raises(WagerAlreadyClosed):
        engine.fill_wager(BOB, wid)


def test_fill_unknown_wager() -> None:
    """Unknown ids raise WagerNotFound."""
    engine, _, _, _ = _build()
    with pytest.raises(WagerNotFound):
        engine.fill_wager(BOB, 42)


def test_fill_insufficient_allowance_leaves_wager_open() -> None:
    """A failed pull leaves the wager unfilled and open."""
    engine, _, ledger, _ = _build()
    wid = _create(engine)
    ledger.approve(USDC, BOB, 0)
    with pytest.raises(InsufficientAllowance):
        engine.fill_wager(BOB, wid)
    wager = engine.get_wager(wid)
    assert not wager.is_filled
    assert wager.user_b == OPEN_COUNTERPARTY


def test_fill_emits_event() -> None:
    """A fill event names the counterparty and the expiry."""
    engine, _, _, _ = _build()
    wid = _create(engine)
    engine.fill_wager(BOB, wid)
    (event,) = engine.events.events_of(EVENT_WAGER_FILLED)
    assert event["details"]["user_b"] == BOB
    assert event["details"]["expires_at"] == T0 + DAY


# ── Cancel ───────────────────────────────────────────────────────────────────


def test_cancel_returns_net_deposit() -> None:
    """Cancel refunds amount_a to the creator; the fee is not refunded."""
    engine, _, ledger, _ = _build()
    wid = _create(engine)
    wager = engine.cancel_wager(ALICE, wid)

    assert wager.is_closed
    assert wager.status == STATUS_CANCELLED
    assert ledger.balance_of(USDC, ALICE) == 1000 * USDC_UNIT - 100000
    assert ledger.escrow_balance(USDC) == 0


def test_cancel_by_designated_counterparty() -> None:
    """The designated userB of a P2P wager may cancel; funds still go to userA."""
    engine, _, ledger, _ = _build()
    wid = _create(engine, user_b=BOB)
    engine.cancel_wager(BOB, wid)
    assert ledger.balance_of(USDC, ALICE) == 1000 * USDC_UNIT - 100000
    assert ledger.balance_of(USDC, BOB) == 1000 * USDC_UNIT


def test_cancel_by_stranger_rejected() -> None:
    """Nobody else may cancel an open wager."""
    engine, _, _, _ = _build()
    wid = _create(engine)
    with pytest.raises(NotWagerParty):
        engine.cancel_wager(BOB, wid)


def test_cancel_twice() -> None:
    """The second cancel fails with WagerAlreadyClosed."""
    engine, _, _, _ = _build()
    wid = _create(engine)
    engine.cancel_wager(ALICE, wid)
    with pytest.raises(WagerAlreadyClosed):
        engine.cancel_wager(ALICE, wid)


def test_cancel_after_fill_rejected() -> None:
    """Cancellation is only reachable before fill."""
    engine, _, _, _ = _build()
    wid = _create(engine)
    engine.fill_wager(BOB, wid)
    with pytest.raises(WagerAlreadyFilled):
        engine.cancel_wager(ALICE, wid)
    assert not engine.get_wager(wid).is_closed


def test_cancel_emits_event() -> None:
    """A cancel event records what was returned."""
    engine, _, _, _ = _build()
    wid = _create(engine)
    engine.cancel_wager(ALICE, wid)
    (event,) = engine.events.events_of(EVENT_WAGER_CANCELLED)
    assert event["details"]["returned"] == 19900000


# ── Lookup ───────────────────────────────────────────────────────────────────


def test_wagers_for_either_party() -> None:
    """wagers_for lists wagers where the identity is userA or userB."""
    engine, _, _, _ = _build()
    w0 = _create(engine)
    w1 = _create(engine, caller=BOB)
    engine.fill_wager(BOB, w0)
    assert [w.wager_id for w in engine.wagers_for(BOB)] == [w0, w1]
    assert [w.wager_id for w in engine.wagers_for(ALICE)] == [w0]
    assert engine.wagers_for(CAROL) == []
