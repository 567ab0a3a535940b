"""Wager persistence (Postgres via asyncpg).

Implements:
- save_wager / load_wagers: upsert and reload full wager records
- save_refund_flag / load_refund_flags: the per-asset kill-switch markers
- save_engine / restore_engine: bulk helpers used by the CLI

Amounts are NUMERIC(78, 0) so 256-bit base-unit values round-trip exactly.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Dict, List

from pricewager.custody import Ledger
from pricewager.engine import WagerEngine
from pricewager.snapshots import snapshot_from_dict
from pricewager.wager import Wager, terms_from_dict

logger = logging.getLogger(__name__)


async def save_wager(pool: Any, wager: Wager) -> None:
    """Upsert one wager row."""
    await pool.execute(
        """
        INSERT INTO wagers (wager_id, kind, user_a, user_b, is_p2p, wager_asset,
                            payment_asset, terms, amount_a, amount_b, fee, duration,
                            created_at, filled_at, redeemed_at, is_filled, is_closed,
                            is_redeemed, wager_oracle, payment_oracle, create_snapshot)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                $16, $17, $18, $19, $20, $21)
        ON CONFLICT (wager_id) DO UPDATE SET
            user_b = EXCLUDED.user_b,
            filled_at = EXCLUDED.filled_at,
            redeemed_at = EXCLUDED.redeemed_at,
            is_filled = EXCLUDED.is_filled,
            is_closed = EXCLUDED.is_closed,
            is_redeemed = EXCLUDED.is_redeemed
        """,
        wager.wager_id,
        wager.kind,
        wager.user_a,
        wager.user_b,
        wager.is_p2p,
        wager.wager_asset,
        wager.payment_asset,
        json.dumps(wager.terms.to_dict(), sort_keys=True),
        Decimal(wager.amount_a),
        Decimal(wager.amount_b),
        Decimal(wager.fee),
        wager.duration,
        wager.created_at,
        wager.filled_at,
        wager.redeemed_at,
        wager.is_filled,
        wager.is_closed,
        wager.is_redeemed,
        wager.wager_oracle,
        wager.payment_oracle,
        json.dumps(wager.create_snapshot.to_dict(), sort_keys=True) if wager.create_snapshot else None,
    )


def wager_from_row(row: Any) -> Wager:
    """Rebuild a Wager from a wagers table row."""
    snap_raw = row["create_snapshot"]
    wager = Wager(
        wager_id=row["wager_id"],
        user_a=row["user_a"],
        user_b=row["user_b"],
        wager_asset=row["wager_asset"],
        payment_asset=row["payment_asset"],
        terms=terms_from_dict(json.loads(row["terms"])),
        amount_a=int(row["amount_a"]),
        amount_b=int(row["amount_b"]),
        duration=row["duration"],
        created_at=row["created_at"],
        wager_oracle=row["wager_oracle"],
        payment_oracle=row["payment_oracle"],
        fee=int(row["fee"]),
        create_snapshot=snapshot_from_dict(json.loads(snap_raw)) if snap_raw else None,
    )
    # is_p2p was fixed at creation; user_b may since have been filled in
    wager.is_p2p = row["is_p2p"]
    wager.filled_at = row["filled_at"]
    wager.redeemed_at = row["redeemed_at"]
    wager.is_filled = row["is_filled"]
    wager.is_closed = row["is_closed"]
    wager.is_redeemed = row["is_redeemed"]
    return wager


async def load_wagers(pool: Any) -> List[Wager]:
    rows = await pool.fetch("SELECT * FROM wagers ORDER BY wager_id")
    return [wager_from_row(r) for r in rows]


async def save_refund_flag(pool: Any, asset: str, refundable_since: int) -> None:
    """Insert a refund flag.  An existing flag keeps its original timestamp."""
    await pool.execute(
        """
        INSERT INTO refund_flags (asset, refundable_since)
        VALUES ($1, $2)
        ON CONFLICT (asset) DO NOTHING
        """,
        asset,
        refundable_since,
    )


async def load_refund_flags(pool: Any) -> Dict[str, int]:
    rows = await pool.fetch("SELECT asset, refundable_since FROM refund_flags ORDER BY asset")
    return {r["asset"]: r["refundable_since"] for r in rows}


async def save_engine(pool: Any, engine: WagerEngine) -> Dict[str, int]:
    """Persist every wager and refund flag held by the engine."""
    wagers = engine.all_wagers()
    flags = engine.refund_flags.to_dict()
    for wager in wagers:
        await save_wager(pool, wager)
    for asset, since in flags.items():
        await save_refund_flag(pool, asset, since)
    logger.info("Saved %d wager(s) and %d refund flag(s)", len(wagers), len(flags))
    return {"wagers": len(wagers), "refund_flags": len(flags)}


async def restore_engine(pool: Any, engine: WagerEngine) -> Dict[str, Any]:
    """Load persisted wagers and refund flags into a fresh engine.

    Registry entries and ownership are not stored here; they come from the
    signed config the engine was built with.  When the engine holds funds in
    an in-memory Ledger, the escrow account is credited with what the
    restored wagers still hold so they can be redeemed or cancelled.
    """
    wagers = await load_wagers(pool)
    flags = await load_refund_flags(pool)

    escrow = {}  # type: Dict[str, int]
    for wager in wagers:
        if wager.custody_total:
            escrow[wager.payment_asset] = escrow.get(wager.payment_asset, 0) + wager.custody_total

    with engine.transaction():
        for wager in wagers:
            engine.lifecycle.adopt(wager)
        for asset, since in flags.items():
            engine.refund_flags.restore(asset, since)
        if isinstance(engine.custodian, Ledger):
            for asset, amount in sorted(escrow.items()):
                engine.custodian.mint(asset, engine.custodian.escrow_account, amount)

    logger.info(
        "Restored %d wager(s) and %d refund flag(s); escrow %s",
        len(wagers), len(flags), escrow or "-",
    )
    return {"wagers": len(wagers), "refund_flags": len(flags), "escrow": escrow}
