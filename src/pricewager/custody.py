"""Custody: asset transfer collaborator.

Implements:
- Custodian: the interface the engine moves funds through
- Ledger: in-memory balances + allowances for native currency and tokens
- Native deposits by attached value (must match exactly)
- Token deposits by pull against a prior allowance
- atomic(): all-or-nothing scope that restores balances on any exception

Transfers fail loudly; nothing is silently truncated.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Dict, Iterator, Tuple

from pricewager.constants import NATIVE_ASSET
from pricewager.errors import (
    CustodyError,
    InsufficientAllowance,
    InsufficientBalance,
    ValueMismatch,
)
from pricewager.registry import normalise_identity

logger = logging.getLogger(__name__)


def is_native(asset: str) -> bool:
    return normalise_identity(asset) == NATIVE_ASSET


class Custodian:
    """Collaborator interface for moving value in and out of escrow."""

    def take_custody(self, asset: str, source: str, amount: int, value: int = 0) -> None:
        raise NotImplementedError

    def release(self, asset: str, to: str, amount: int) -> None:
        raise NotImplementedError

    def atomic(self) -> contextlib.AbstractContextManager:
        return contextlib.nullcontext()


class Ledger(Custodian):
    """In-memory multi-asset ledger with an escrow account."""

    def __init__(self, escrow_account: str = "escrow") -> None:
        self.escrow_account = normalise_identity(escrow_account)
        self._balances = {}  # type: Dict[Tuple[str, str], int]
        self._allowances = {}  # type: Dict[Tuple[str, str, str], int]

    # ── Account helpers ──────────────────────────────────────────────────────

    def balance_of(self, asset: str, account: str) -> int:
        return self._balances.get((normalise_identity(asset), normalise_identity(account)), 0)

    def escrow_balance(self, asset: str) -> int:
        return self.balance_of(asset, self.escrow_account)

    def mint(self, asset: str, account: str, amount: int) -> None:
        """Credit an account (funding for paper runs and tests)."""
        if amount < 0:
            raise ValueError("mint amount must be non-negative")
        key = (normalise_identity(asset), normalise_identity(account))
        self._balances[key] = self._balances.get(key, 0) + amount

    def approve(self, asset: str, owner: str, amount: int) -> None:
        """Set the engine's allowance to pull `amount` of a token from owner."""
        if is_native(asset):
            raise CustodyError("Native currency uses attached value, not allowances")
        if amount < 0:
            raise ValueError("allowance must be non-negative")
        key = (normalise_identity(asset), normalise_identity(owner), self.escrow_account)
        self._allowances[key] = amount

    def allowance(self, asset: str, owner: str) -> int:
        key = (normalise_identity(asset), normalise_identity(owner), self.escrow_account)
        return self._allowances.get(key, 0)

    def _move(self, asset: str, source: str, dest: str, amount: int) -> None:
        src_key = (asset, source)
        have = self._balances.get(src_key, 0)
        if have < amount:
            raise InsufficientBalance(
                "{} holds {} of {}, needs {}".format(source, have, asset, amount)
            )
        self._balances[src_key] = have - amount
        dst_key = (asset, dest)
        self._balances[dst_key] = self._balances.get(dst_key, 0) + amount

    # ── Custodian interface ──────────────────────────────────────────────────

    def take_custody(self, asset: str, source: str, amount: int, value: int = 0) -> None:
        """Pull `amount` of asset from source into escrow.

        Native: attached value must equal amount.  Token: no value may be
        attached and the allowance must cover the pull.
        """
        asset_id = normalise_identity(asset)
        source_id = normalise_identity(source)
        if amount <= 0:
            raise CustodyError("Custody amount must be positive, got {}".format(amount))

        if is_native(asset_id):
            if value != amount:
                raise ValueMismatch(
                    "Attached value {} does not match deposit {}".format(value, amount)
                )
            self._move(asset_id, source_id, self.escrow_account, amount)
        else:
            if value:
                raise ValueMismatch("Native value attached to a token deposit")
            key = (asset_id, source_id, self.escrow_account)
            allowed = self._allowances.get(key, 0)
            if allowed < amount:
                raise InsufficientAllowance(
                    "{} approved {} of {}, pull needs {}".format(source_id, allowed, asset_id, amount)
                )
            self._move(asset_id, source_id, self.escrow_account, amount)
            self._allowances[key] = allowed - amount

        logger.debug("Custody in: asset=%s from=%s amount=%d", asset_id, source_id, amount)

    def release(self, asset: str, to: str, amount: int) -> None:
        """Send `amount` of asset from escrow to `to`.  Zero is a no-op."""
        if amount < 0:
            raise CustodyError("Release amount must be non-negative, got {}".format(amount))
        if amount == 0:
            return
        asset_id = normalise_identity(asset)
        to_id = normalise_identity(to)
        self._move(asset_id, self.escrow_account, to_id, amount)
        logger.debug("Custody out: asset=%s to=%s amount=%d", asset_id, to_id, amount)

    @contextlib.contextmanager
    def atomic(self) -> Iterator[None]:
        """Restore balances and allowances if the block raises."""
        balances = dict(self._balances)
        allowances = dict(self._allowances)
        try:
            yield
        except BaseException:
            self._balances = balances
            self._allowances = allowances
            raise
