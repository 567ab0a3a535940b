"""Tests for the in-memory custody ledger."""

import pytest

from pricewager.constants import NATIVE_ASSET
from pricewager.custody import Ledger, is_native
from pricewager.errors import (
    CustodyError,
    InsufficientAllowance,
    InsufficientBalance,
    ValueMismatch,
)

USDC = "0xusdc"
ALICE = "0xa11ce"


def _ledger() -> Ledger:
    ledger = Ledger()
    ledger.mint(USDC, ALICE, 1000)
    ledger.mint(NATIVE_ASSET, ALICE, 500)
    return ledger


# ── Token deposits ───────────────────────────────────────────────────────────


def test_token_pull_consumes_allowance() -> None:
    """A token deposit moves funds to escrow and lowers the allowance."""
    ledger = _ledger()
    ledger.approve(USDC, ALICE, 600)
    ledger.take_custody(USDC, ALICE, 400)
    assert ledger.balance_of(USDC, ALICE) == 600
    assert ledger.escrow_balance(USDC) == 400
    assert ledger.allowance(USDC, ALICE) == 200


def test_token_pull_without_allowance() -> None:
    """Pulling beyond the allowance fails."""
    ledger = _ledger()
    ledger.approve(USDC, ALICE, 10)
    with pytest.raises(InsufficientAllowance):
        ledger.take_custody(USDC, ALICE, 11)


def test_token_pull_beyond_balance() -> None:
    """An allowance larger than the balance does not help."""
    ledger = _ledger()
    ledger.approve(USDC, ALICE, 5000)
    with pytest.raises(InsufficientBalance):
        ledger.take_custody(USDC, ALICE, 1001)


def test_token_deposit_rejects_attached_value() -> None:
    """Native value cannot ride along with a token deposit."""
    ledger = _ledger()
    ledger.approve(USDC, ALICE, 100)
    with pytest.raises(ValueMismatch):
        ledger.take_custody(USDC, ALICE, 100, value=100)


def test_identities_normalised() -> None:
    """Mixed-case identities address the same account."""
    ledger = _ledger()
    assert ledger.balance_of("0xUSDC", "0xA11CE") == 1000


# ── Native deposits ──────────────────────────────────────────────────────────


def test_native_value_must_match() -> None:
    """Native deposits need attached value equal to the amount."""
    ledger = _ledger()
    with pytest.raises(ValueMismatch):
        ledger.take_custody(NATIVE_ASSET, ALICE, 100, value=99)
    ledger.take_custody(NATIVE_ASSET, ALICE, 100, value=100)
    assert ledger.escrow_balance(NATIVE_ASSET) == 100


def test_native_approve_rejected() -> None:
    """Allowances are meaningless for the native currency."""
    assert is_native(NATIVE_ASSET.upper())
    with pytest.raises(CustodyError):
        _ledger().approve(NATIVE_ASSET, ALICE, 1)


def test_non_positive_custody_rejected() -> None:
    """Zero and negative deposits are errors."""
    with pytest.raises(CustodyError):
        _ledger().take_custody(USDC, ALICE, 0)


# ── Releases ─────────────────────────────────────────────────────────────────


def test_release_zero_is_noop() -> None:
    """Releasing nothing touches no balance."""
    ledger = _ledger()
    ledger.release(USDC, ALICE, 0)
    assert ledger.balance_of(USDC, ALICE) == 1000


def test_release_beyond_escrow() -> None:
    """Escrow cannot pay out more than it holds."""
    ledger = _ledger()
    with pytest.raises(InsufficientBalance):
        ledger.release(USDC, ALICE, 1)
    with pytest.raises(CustodyError):
        ledger.release(USDC, ALICE, -1)


# ── Atomic scope ─────────────────────────────────────────────────────────────


def test_atomic_restores_on_error() -> None:
    """Balances and allowances revert when the block raises."""
    ledger = _ledger()
    ledger.approve(USDC, ALICE, 500)
    with pytest.raises(RuntimeError):
        with ledger.atomic():
            ledger.take_custody(USDC, ALICE, 300)
            raise RuntimeError("boom")
    assert ledger.balance_of(USDC, ALICE) == 1000
    assert ledger.allowance(USDC, ALICE) == 500
    assert ledger.escrow_balance(USDC) == 0


def test_atomic_keeps_successful_block() -> None:
    """Nothing is undone when the block completes."""
    ledger = _ledger()
    ledger.approve(USDC, ALICE, 500)
    with ledger.atomic():
        ledger.take_custody(USDC, ALICE, 300)
    assert ledger.escrow_balance(USDC) == 300
