"""Wager Engine: serialised, all-or-nothing façade over the core components.

Implements:
- One lock around every externally triggered operation
- Transaction scope: custody movements and engine state commit together or
  not at all
- A single clock read at the start of each operation, never moving backwards
- Owner gating for registry updates, the oracle kill switch and ownership
  transfer

Callers identify themselves with an identity string; the engine does no
authentication of its own.  Wagers handed back to callers are copies; only
engine operations change the records it holds.
"""

from __future__ import annotations

import contextlib
import copy
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from pricewager.access import Ownable
from pricewager.config import EngineConfig
from pricewager.constants import EVENT_ASSETS_UPDATED, EVENT_OWNERSHIP_TRANSFERRED
from pricewager.custody import Custodian, Ledger
from pricewager.lifecycle import WagerLifecycle
from pricewager.observability import EventLog
from pricewager.oracle import PriceOracle, RoundBook
from pricewager.registry import (
    ROLE_PAYMENT,
    ROLE_WAGER,
    AssetRegistry,
    RefundFlags,
    normalise_identity,
    parse_asset_entry,
)
from pricewager.settlement import SettlementEngine
from pricewager.snapshots import PriceSnapshotAdapter
from pricewager.wager import PriceTerms, Wager

logger = logging.getLogger(__name__)


def system_clock() -> int:
    return int(time.time())


def _detached(wager: Wager) -> Wager:
    """Copy handed to callers; the engine keeps the only live record."""
    return copy.deepcopy(wager)


class WagerEngine:
    """Entry point for every wager operation."""

    def __init__(
        self,
        owner: str,
        oracle: Optional[PriceOracle] = None,
        custodian: Optional[Custodian] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], int]] = None,
        events: Optional[EventLog] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.oracle = oracle if oracle is not None else RoundBook()
        self.custodian = custodian if custodian is not None else Ledger()
        self.events = events if events is not None else EventLog()
        self._clock = clock or system_clock
        self._last_now = 0
        self._lock = threading.RLock()

        self.access = Ownable(owner)
        self.registry = AssetRegistry()
        self.refund_flags = RefundFlags()
        self.adapter = PriceSnapshotAdapter(
            self.oracle,
            max_staleness_sec=self.config.oracle_max_staleness_sec,
            clock=self._observed_time,
        )
        self.lifecycle = WagerLifecycle(
            self.registry, self.adapter, self.custodian, self.config, self.events, self.refund_flags,
        )
        self.settlement = SettlementEngine(
            self.lifecycle, self.adapter, self.custodian, self.events, self.refund_flags,
        )

    # ── Plumbing ─────────────────────────────────────────────────────────────

    def _observed_time(self) -> int:
        return max(int(self._clock()), self._last_now)

    def _now(self) -> int:
        raw = int(self._clock())
        if raw < self._last_now:
            logger.warning("Clock moved backwards (%d < %d); holding", raw, self._last_now)
        self._last_now = max(raw, self._last_now)
        return self._last_now

    @contextlib.contextmanager
    def transaction(self) -> Iterator[int]:
        """Serialise an operation and roll everything back if it raises.

        Yields the operation's timestamp.
        """
        with self._lock:
            owner = self.access.checkpoint()
            tables = self.registry.checkpoint()
            flags = self.refund_flags.checkpoint()
            next_id = self.lifecycle.checkpoint()
            with self.custodian.atomic():
                try:
                    yield self._now()
                except BaseException:
                    self.access.rollback(owner)
                    self.registry.rollback(tables)
                    self.refund_flags.rollback(flags)
                    self.lifecycle.rollback(next_id)
                    raise

    # ── Owner operations ─────────────────────────────────────────────────────

    @property
    def owner(self) -> str:
        return self.access.owner

    def _set_assets(
        self,
        role: str,
        caller: str,
        assets: Sequence[str],
        oracles: Sequence[str],
        enabled: bool,
        decimals: Optional[Sequence[int]],
    ) -> List[str]:
        with self.transaction() as now:
            self.access.require_owner(caller)
            if role == ROLE_PAYMENT:
                updated = self.registry.set_payment_assets(assets, oracles, enabled, decimals)
            else:
                updated = self.registry.set_wager_assets(assets, oracles, enabled, decimals)
            self.events.emit(EVENT_ASSETS_UPDATED, now, None, {
                "role": role,
                "assets": updated,
                "oracles": [normalise_identity(o) for o in oracles],
                "enabled": bool(enabled),
            })
            return updated

    def set_payment_assets(
        self,
        caller: str,
        assets: Sequence[str],
        oracles: Sequence[str],
        enabled: bool,
        decimals: Optional[Sequence[int]] = None,
    ) -> List[str]:
        return self._set_assets(ROLE_PAYMENT, caller, assets, oracles, enabled, decimals)

    def set_wager_assets(
        self,
        caller: str,
        assets: Sequence[str],
        oracles: Sequence[str],
        enabled: bool,
        decimals: Optional[Sequence[int]] = None,
    ) -> List[str]:
        return self._set_assets(ROLE_WAGER, caller, assets, oracles, enabled, decimals)

    def load_assets(self, caller: str, assets: Dict[str, Any]) -> Dict[str, int]:
        """Apply parsed assets.json content through the owner-gated setters.

        Returns the number of entries applied per role.
        """
        applied = {}  # type: Dict[str, int]
        with self.transaction():
            for role in (ROLE_PAYMENT, ROLE_WAGER):
                entries = [e for e in (parse_asset_entry(raw) for raw in assets.get(role, [])) if e is not None]
                for asset, oracle, enabled, decimals in entries:
                    self._set_assets(role, caller, [asset], [oracle], enabled, [decimals])
                applied[role] = len(entries)
        return applied

    def flag_oracle_malfunction(self, caller: str, wager_asset: str) -> int:
        """Owner kill switch: every wager on wager_asset becomes refundable."""
        with self.transaction() as now:
            self.access.require_owner(caller)
            return self.settlement.flag_oracle_malfunction(wager_asset, now)

    def transfer_ownership(self, caller: str, new_owner: str) -> str:
        with self.transaction() as now:
            previous = self.access.transfer_ownership(caller, new_owner)
            self.events.emit(EVENT_OWNERSHIP_TRANSFERRED, now, None, {
                "previous_owner": previous,
                "new_owner": self.access.owner,
            })
            return self.access.owner

    # ── Wager operations ─────────────────────────────────────────────────────

    def create_wager(
        self,
        caller: str,
        user_b: Optional[str],
        wager_asset: str,
        payment_asset: str,
        terms: PriceTerms,
        amount_a: int,
        amount_b: int,
        duration: int,
        value: int = 0,
    ) -> int:
        """Create a wager and return its id."""
        with self.transaction() as now:
            wager = self.lifecycle.create(
                caller, user_b, wager_asset, payment_asset, terms,
                amount_a, amount_b, duration, now, value,
            )
            return wager.wager_id

    def fill_wager(self, caller: str, wager_id: int, value: int = 0) -> Wager:
        with self.transaction() as now:
            return _detached(self.lifecycle.fill(caller, wager_id, now, value))

    def cancel_wager(self, caller: str, wager_id: int) -> Wager:
        with self.transaction() as now:
            return _detached(self.lifecycle.cancel(caller, wager_id, now))

    def check_winner(self, wager_id: int) -> Optional[str]:
        with self._lock:
            return self.settlement.check_winner(wager_id, self._now())

    def redeem(self, caller: str, wager_id: int) -> Dict[str, Any]:
        with self.transaction() as now:
            return self.settlement.redeem(normalise_identity(caller), wager_id, now)

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_wager(self, wager_id: int) -> Wager:
        with self._lock:
            return _detached(self.lifecycle.get_wager(wager_id))

    def all_wagers(self) -> List[Wager]:
        with self._lock:
            return [_detached(w) for w in self.lifecycle.all_wagers()]

    def wagers_for(self, identity: str) -> List[Wager]:
        with self._lock:
            return [_detached(w) for w in self.lifecycle.wagers_for(identity)]

    def refundable_since(self, asset: str) -> int:
        return self.settlement.refundable_since(asset)

    def is_payment_asset(self, asset: str) -> bool:
        return self.registry.is_payment_asset(asset)

    def is_wager_asset(self, asset: str) -> bool:
        return self.registry.is_wager_asset(asset)

    def summary(self) -> Dict[str, Any]:
        """Counts by status plus registry and flag state, for the CLI."""
        with self._lock:
            by_status = {}  # type: Dict[str, int]
            for w in self.lifecycle.all_wagers():
                by_status[w.status] = by_status.get(w.status, 0) + 1
            return {
                "owner": self.owner,
                "wagers": len(self.lifecycle.all_wagers()),
                "by_status": by_status,
                "registry": self.registry.to_dict(),
                "refund_flags": self.refund_flags.to_dict(),
                "events": self.events.stats,
            }
