"""Write-ahead journal of engine events, one fsynced JSON line per event.

Every line carries the engine event itself, not a generic payload:

    {"seq": 7, "event_id": "...", "event_type": "WAGER_FILLED",
     "wager_id": 3, "engine_ts": 1700000600,
     "recorded_at": "2023-11-14T22:23:20+00:00", "details": {...}}

``seq`` counts up from 1 across sessions: a writer reopening an existing
journal continues after its last line, and the reader refuses a journal
whose sequence skips or repeats.  ``engine_ts`` is the engine clock the
event committed at; ``recorded_at`` is wall-clock UTC.

On fsync failure the writer raises WALSyncError and the engine rolls back
the operation that emitted the event.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from pricewager.constants import (
    EVENT_TYPES,
    EVENT_WAGER_CANCELLED,
    EVENT_WAGER_CREATED,
    EVENT_WAGER_REDEEMED,
)

logger = logging.getLogger(__name__)

ENVELOPE_KEYS = ("seq", "event_id", "event_type", "wager_id", "engine_ts", "recorded_at", "details")


class WALSyncError(Exception):
    """Raised when WAL fsync fails or the journal is unreadable."""


def event_hash(record: Dict[str, Any]) -> bytes:
    """SHA-256 over the event identity, excluding seq and wall-clock time.

    The same event replayed from two copies of a journal hashes the same.
    """
    canonical = json.dumps(
        {k: record.get(k) for k in ("event_id", "event_type", "wager_id", "engine_ts", "details")},
        sort_keys=True,
        ensure_ascii=True,
    )
    return hashlib.sha256(canonical.encode("utf-8")).digest()


class WALWriter:
    """Append-only event journal writer with fsync per record."""

    def __init__(self, wal_path: str) -> None:
        self.path = Path(wal_path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fd = None  # type: Optional[int]
        self._seq = 0

    @property
    def last_seq(self) -> int:
        return self._seq

    def open(self) -> None:
        """Open the journal for appending, resuming its sequence."""
        existing = WALReader(str(self.path)).read_all()
        self._seq = existing[-1]["seq"] if existing else 0
        self._fd = os.open(
            str(self.path),
            os.O_WRONLY | os.O_CREAT | os.O_APPEND,
            0o640,
        )

    def close(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> WALWriter:
        self.open()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def write(
        self,
        event_type: str,
        wager_id: Optional[int],
        engine_ts: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Append one engine event and fsync.

        Returns the record as written.  The sequence only advances once the
        line is durable.
        """
        if event_type not in EVENT_TYPES:
            raise ValueError("Invalid WAL event type: {}".format(event_type))

        if self._fd is None:
            raise WALSyncError("WAL not opened; call open() first")

        record = {
            "seq": self._seq + 1,
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "wager_id": wager_id,
            "engine_ts": engine_ts,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
        }  # type: Dict[str, Any]

        line = json.dumps(record, sort_keys=True, ensure_ascii=True) + "\n"

        try:
            os.write(self._fd, line.encode("utf-8"))
            os.fsync(self._fd)
        except OSError as e:
            raise WALSyncError("WAL fsync failed: {}".format(e)) from e

        self._seq = record["seq"]
        logger.debug("WAL seq=%d type=%s wager=%s", record["seq"], event_type, wager_id)
        return record


class WALReader:
    """Read journal records in sequence order."""

    def __init__(self, wal_path: str) -> None:
        self.path = Path(wal_path)

    def read_all(self) -> List[Dict[str, Any]]:
        """Read every record, checking the envelope and sequence."""
        if not self.path.is_file():
            return []

        records = []  # type: List[Dict[str, Any]]
        with open(self.path, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.error("WAL parse error at line %d: %s", line_num, e)
                    raise WALSyncError(
                        "WAL corrupted at line {}: {}".format(line_num, e)
                    ) from e

                missing = [k for k in ENVELOPE_KEYS if k not in record]
                if missing:
                    raise WALSyncError("WAL line {} missing {}".format(line_num, ", ".join(missing)))
                expected = len(records) + 1
                if record["seq"] != expected:
                    raise WALSyncError("WAL sequence break at line {}: seq {} (expected {})".format(
                        line_num, record["seq"], expected,
                    ))
                records.append(record)

        return records

    def history(self, wager_id: int) -> List[Dict[str, Any]]:
        """Records that belong to one wager, in order."""
        return [r for r in self.read_all() if r["wager_id"] == wager_id]


def open_wager_ids(records: List[Dict[str, Any]]) -> List[int]:
    """Wager ids created in the journal but never cancelled or redeemed."""
    created = []  # type: List[int]
    terminal = set()  # type: Set[int]
    for rec in records:
        wager_id = rec.get("wager_id")
        if wager_id is None:
            continue
        et = rec.get("event_type", "")
        if et == EVENT_WAGER_CREATED:
            created.append(int(wager_id))
        elif et in (EVENT_WAGER_CANCELLED, EVENT_WAGER_REDEEMED):
            terminal.add(int(wager_id))
    return [w for w in created if w not in terminal]


async def replay_wal(
    wal_path: str,
    pool: Any,
) -> Dict[str, int]:
    """Replay journal records into the DB event_log.

    Inserts are idempotent via event_hash.  Returns stats with counts of
    inserted, skipped and open_wagers (created but not yet terminal).
    Raises WALSyncError if any DB insert fails during replay.
    """
    records = WALReader(str(wal_path)).read_all()

    stats = {"inserted": 0, "skipped": 0, "open_wagers": 0}
    if not records:
        logger.info("WAL replay: no records to replay")
        return stats

    for rec in records:
        try:
            result = await pool.execute(
                """
                INSERT INTO event_log
                    (event_id, seq, event_type, wager_id, engine_ts, recorded_at, details, event_hash)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (event_hash) DO NOTHING
                """,
                uuid.UUID(rec["event_id"]),
                rec["seq"],
                rec["event_type"],
                rec["wager_id"],
                rec["engine_ts"],
                datetime.fromisoformat(rec["recorded_at"]),
                json.dumps(rec["details"], sort_keys=True),
                event_hash(rec),
            )
            if "INSERT 0 1" in result:
                stats["inserted"] += 1
            else:
                stats["skipped"] += 1
        except Exception as e:
            raise WALSyncError(
                "WAL replay DB insert failed for seq {}: {}".format(rec["seq"], e)
            ) from e

    open_ids = open_wager_ids(records)
    stats["open_wagers"] = len(open_ids)
    if open_ids:
        logger.info("WAL replay: %d wager(s) still in escrow: %s", len(open_ids), open_ids)

    logger.info(
        "WAL replay complete: inserted=%d skipped=%d open=%d",
        stats["inserted"],
        stats["skipped"],
        stats["open_wagers"],
    )
    return stats
