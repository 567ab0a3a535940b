"""Locked engine defaults.

Every constant here is a named protocol value.  Runtime overrides go through
EngineConfig (config.py), never by mutating this module.
"""

from __future__ import annotations

from decimal import Decimal

# ── Identity sentinels ───────────────────────────────────────────────────────
NATIVE_ASSET = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"
OPEN_COUNTERPARTY = "0x0000000000000000000000000000000000000000"

# ── Fees ─────────────────────────────────────────────────────────────────────
FEE_BPS = 50  # 0.5% of the creator's gross deposit
BPS_DENOMINATOR = 10000

# ── Creation floors ──────────────────────────────────────────────────────────
MIN_DURATION_SEC = 86400
MIN_NOTIONAL_USD = Decimal("9.95")

# ── Oracle ───────────────────────────────────────────────────────────────────
ORACLE_MAX_STALENESS_SEC = 86400
DEFAULT_ASSET_DECIMALS = 18
DEFAULT_ORACLE_DECIMALS = 8

# ── Wager status (derived) ───────────────────────────────────────────────────
STATUS_CREATED = "CREATED"
STATUS_FILLED = "FILLED"
STATUS_CANCELLED = "CANCELLED"
STATUS_REDEEMED = "REDEEMED"

VALID_STATUSES = frozenset({
    STATUS_CREATED,
    STATUS_FILLED,
    STATUS_CANCELLED,
    STATUS_REDEEMED,
})

# ── Wager kinds ──────────────────────────────────────────────────────────────
KIND_CONDITIONAL = "CONDITIONAL"
KIND_FIXED = "FIXED"

# ── Redemption outcomes ──────────────────────────────────────────────────────
OUTCOME_WINNER = "WINNER"
OUTCOME_PUSH = "PUSH"
OUTCOME_REFUND = "REFUND"

# ── Event record types ───────────────────────────────────────────────────────
EVENT_WAGER_CREATED = "WAGER_CREATED"
EVENT_WAGER_FILLED = "WAGER_FILLED"
EVENT_WAGER_CANCELLED = "WAGER_CANCELLED"
EVENT_WAGER_REDEEMED = "WAGER_REDEEMED"
EVENT_ORACLE_MALFUNCTION = "ORACLE_MALFUNCTION"
EVENT_ASSETS_UPDATED = "ASSETS_UPDATED"
EVENT_OWNERSHIP_TRANSFERRED = "OWNERSHIP_TRANSFERRED"

EVENT_TYPES = frozenset({
    EVENT_WAGER_CREATED,
    EVENT_WAGER_FILLED,
    EVENT_WAGER_CANCELLED,
    EVENT_WAGER_REDEEMED,
    EVENT_ORACLE_MALFUNCTION,
    EVENT_ASSETS_UPDATED,
    EVENT_OWNERSHIP_TRANSFERRED,
})
