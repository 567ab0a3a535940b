"""Engine error hierarchy.

Every failure aborts the whole operation.  Errors fall into four categories:
- ValidationError: bad caller input at create / registry update
- StateError: lifecycle precondition violated
- OracleError: price feed cannot answer for the requested instant
- CustodyError: transfer collaborator refused a movement
plus AccessError for owner-gated operations.
"""

from __future__ import annotations


class WagerError(Exception):
    """Base class for all engine failures."""


# ── Validation ───────────────────────────────────────────────────────────────

class ValidationError(WagerError):
    """Caller input rejected."""


class UnsupportedAsset(ValidationError):
    """Asset is not allow-listed for the requested role."""


class InvalidDuration(ValidationError):
    """Duration is below the minimum floor."""


class InsufficientAmount(ValidationError):
    """Net deposit is below the minimum USD notional (or not positive)."""


class InvalidTerms(ValidationError):
    """Price terms are malformed."""


class LengthMismatch(ValidationError):
    """Registry update arrays differ in length."""


# ── State ────────────────────────────────────────────────────────────────────

class StateError(WagerError):
    """Lifecycle precondition violated."""


class WagerNotFound(StateError):
    """No wager with this id."""


class WagerAlreadyClosed(StateError):
    """Wager was cancelled."""


class WagerAlreadyFilled(StateError):
    """Wager already has a counterparty."""


class WagerNotFilled(StateError):
    """Wager has no counterparty yet."""


class WagerNotExpired(StateError):
    """Wager duration has not elapsed."""


class WagerAlreadyRedeemed(StateError):
    """Wager was already settled."""


class RestrictedP2P(StateError):
    """Wager is reserved for a different counterparty."""


class SelfWager(StateError):
    """Creator attempted to take the other side of their own wager."""


class NotWagerParty(StateError):
    """Caller is not allowed to act on this wager."""


# ── Oracle ───────────────────────────────────────────────────────────────────

class OracleError(WagerError):
    """Price feed failure."""


class OracleUnavailable(OracleError):
    """No oracle round covers the requested timestamp."""


# ── Custody ──────────────────────────────────────────────────────────────────

class CustodyError(WagerError):
    """Transfer collaborator refused a movement."""


class InsufficientBalance(CustodyError):
    """Source account cannot cover the movement."""


class InsufficientAllowance(CustodyError):
    """Token pull exceeds the approved allowance."""


class ValueMismatch(CustodyError):
    """Attached native value does not match the required deposit."""


# ── Access ───────────────────────────────────────────────────────────────────

class AccessError(WagerError):
    """Access control failure."""


class NotOwner(AccessError):
    """Caller is not the engine owner."""
