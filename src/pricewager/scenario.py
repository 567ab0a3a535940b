"""Scenario runner: drive an in-memory engine from a JSON script.

A scenario is a dict:

    {
      "owner": "0xowner",
      "start_time": 1700000000,
      "config": {...EngineConfig fields...},
      "feeds": {"eth-usd": {"decimals": 8, "rounds": [{"price": ..., "updated_at": ...}]}},
      "steps": [{"op": "create", "caller": "0xalice", ...}, ...]
    }

Each step names an op (see OPS).  A step may carry "expect_error" with an
engine error class name; the step then passes only if exactly that error
is raised.  Time moves only through "advance" steps.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pricewager.config import EngineConfig
from pricewager.custody import Ledger
from pricewager.engine import WagerEngine
from pricewager.errors import WagerError
from pricewager.observability import EventLog
from pricewager.oracle import RoundBook, load_rounds
from pricewager.wager import terms_from_dict

logger = logging.getLogger(__name__)

DEFAULT_START_TIME = 1700000000


class ScenarioError(Exception):
    """Raised when a scenario is malformed or a step's expectation fails."""


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: int) -> None:
        self.now = int(start)

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ScenarioError("Clock cannot move backwards")
        self.now += int(seconds)
        return self.now


class ScenarioRunner:
    """Builds an engine from a scenario and executes its steps in order."""

    def __init__(self, scenario: Dict[str, Any], events: Optional[EventLog] = None) -> None:
        if "owner" not in scenario:
            raise ScenarioError("Scenario must name an owner")
        self.scenario = scenario
        self.clock = ManualClock(int(scenario.get("start_time", DEFAULT_START_TIME)))
        self.book = RoundBook()
        self.ledger = Ledger()
        self.engine = WagerEngine(
            owner=scenario["owner"],
            oracle=self.book,
            custodian=self.ledger,
            config=EngineConfig.from_mapping(scenario.get("config", {})),
            clock=self.clock,
            events=events,
        )
        for feed, payload in sorted(scenario.get("feeds", {}).items()):
            load_rounds(self.book, feed, payload)

        self._ops = {
            "advance": self._advance,
            "report": self._report,
            "mint": self._mint,
            "approve": self._approve,
            "set_payment_assets": self._set_payment_assets,
            "set_wager_assets": self._set_wager_assets,
            "create": self._create,
            "fill": self._fill,
            "cancel": self._cancel,
            "check_winner": self._check_winner,
            "redeem": self._redeem,
            "flag": self._flag,
            "transfer_ownership": self._transfer_ownership,
            "balance": self._balance,
        }  # type: Dict[str, Callable[[Dict[str, Any]], Any]]

    # ── Ops ──────────────────────────────────────────────────────────────────

    def _advance(self, step: Dict[str, Any]) -> int:
        return self.clock.advance(int(step["seconds"]))

    def _report(self, step: Dict[str, Any]) -> Dict[str, Any]:
        at = int(step.get("at", self.clock.now))
        return self.book.report(step["feed"], int(step["price"]), at).to_dict()

    def _mint(self, step: Dict[str, Any]) -> int:
        self.ledger.mint(step["asset"], step["account"], int(step["amount"]))
        return self.ledger.balance_of(step["asset"], step["account"])

    def _approve(self, step: Dict[str, Any]) -> int:
        self.ledger.approve(step["asset"], step["owner"], int(step["amount"]))
        return self.ledger.allowance(step["asset"], step["owner"])

    def _set_payment_assets(self, step: Dict[str, Any]) -> List[str]:
        return self.engine.set_payment_assets(
            step["caller"], step["assets"], step["oracles"],
            step.get("enabled", True), step.get("decimals"),
        )

    def _set_wager_assets(self, step: Dict[str, Any]) -> List[str]:
        return self.engine.set_wager_assets(
            step["caller"], step["assets"], step["oracles"],
            step.get("enabled", True), step.get("decimals"),
        )

    def _create(self, step: Dict[str, Any]) -> int:
        return self.engine.create_wager(
            caller=step["caller"],
            user_b=step.get("user_b"),
            wager_asset=step["wager_asset"],
            payment_asset=step["payment_asset"],
            terms=terms_from_dict(step["terms"]),
            amount_a=int(step["amount_a"]),
            amount_b=int(step["amount_b"]),
            duration=int(step["duration"]),
            value=int(step.get("value", 0)),
        )

    def _fill(self, step: Dict[str, Any]) -> Dict[str, Any]:
        wager = self.engine.fill_wager(step["caller"], int(step["wager_id"]), int(step.get("value", 0)))
        return wager.to_dict()

    def _cancel(self, step: Dict[str, Any]) -> Dict[str, Any]:
        return self.engine.cancel_wager(step["caller"], int(step["wager_id"])).to_dict()

    def _check_winner(self, step: Dict[str, Any]) -> Optional[str]:
        return self.engine.check_winner(int(step["wager_id"]))

    def _redeem(self, step: Dict[str, Any]) -> Dict[str, Any]:
        return self.engine.redeem(step.get("caller", ""), int(step["wager_id"]))

    def _flag(self, step: Dict[str, Any]) -> int:
        return self.engine.flag_oracle_malfunction(step["caller"], step["asset"])

    def _transfer_ownership(self, step: Dict[str, Any]) -> str:
        return self.engine.transfer_ownership(step["caller"], step["new_owner"])

    def _balance(self, step: Dict[str, Any]) -> int:
        return self.ledger.balance_of(step["asset"], step["account"])

    # ── Driver ───────────────────────────────────────────────────────────────

    def run_step(self, index: int, step: Dict[str, Any]) -> Dict[str, Any]:
        op = step.get("op")
        handler = self._ops.get(op or "")
        if handler is None:
            raise ScenarioError("Step {}: unknown op {!r}".format(index, op))

        expected = step.get("expect_error")
        try:
            result = handler(step)
        except WagerError as e:
            if expected == type(e).__name__:
                return {"step": index, "op": op, "ok": True, "error": expected}
            raise ScenarioError(
                "Step {} ({}) raised {}: {}".format(index, op, type(e).__name__, e)
            ) from e

        if expected:
            raise ScenarioError(
                "Step {} ({}) expected {} but succeeded".format(index, op, expected)
            )
        if "expect" in step and step["expect"] != result:
            raise ScenarioError(
                "Step {} ({}) returned {!r}, expected {!r}".format(index, op, result, step["expect"])
            )
        return {"step": index, "op": op, "ok": True, "result": result}

    def run(self) -> List[Dict[str, Any]]:
        results = []  # type: List[Dict[str, Any]]
        steps = self.scenario.get("steps", [])
        for i, step in enumerate(steps):
            results.append(self.run_step(i, step))
        logger.info("Scenario complete: %d step(s) at t=%d", len(results), self.clock.now)
        return results


def load_scenario(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ScenarioError("Cannot read scenario {}: {}".format(path, e)) from e
    if not isinstance(data, dict):
        raise ScenarioError("Scenario {} must be a JSON object".format(path))
    return data
