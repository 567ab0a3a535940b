"""Observability: canonical engine event log.

Implements:
- The canonical event record (type, wager_id, ts, details)
- Per-type counters and a bounded recent-events view
- Optional write-through to the append-only WAL for external indexing

Events are emitted only after a transition commits; they never drive
engine control flow.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pricewager.constants import EVENT_TYPES
from pricewager.wal import WALWriter

logger = logging.getLogger(__name__)

RECENT_EVENTS_MAX = 100


class EventLog:
    """In-process event log."""

    def __init__(self, wal: Optional[WALWriter] = None) -> None:
        self._events = []  # type: List[Dict[str, Any]]
        self._counts = {}  # type: Dict[str, int]
        self._wal = wal

    def emit(
        self,
        event_type: str,
        ts: int,
        wager_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Record a committed event and return it."""
        if event_type not in EVENT_TYPES:
            raise ValueError("Invalid event type: {}".format(event_type))

        event = {
            "ts": ts,
            "event_type": event_type,
            "wager_id": wager_id,
            "details": details or {},
        }
        if self._wal is not None:
            self._wal.write(event_type, wager_id, ts, event["details"])

        self._events.append(event)
        self._counts[event_type] = self._counts.get(event_type, 0) + 1

        logger.info("Event: type=%s wager=%s", event_type, "-" if wager_id is None else wager_id)
        return event

    def events_of(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self._events if e["event_type"] == event_type]

    @property
    def all_events(self) -> List[Dict[str, Any]]:
        return list(self._events)

    @property
    def recent_events(self) -> List[Dict[str, Any]]:
        """Last RECENT_EVENTS_MAX events."""
        return self._events[-RECENT_EVENTS_MAX:]

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "total_events": len(self._events),
            "by_type": dict(self._counts),
        }
