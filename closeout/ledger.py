"""
Field Closeout — Applied-Steps Ledger

Steps 1-4 of the pipeline have side effects the legacy backend cannot
undo, and the final commit may still fail after them. Instead of
compensating, each side-effecting step is recorded here once it took
effect, together with a fingerprint of the payload it sent. On a re-run
a step whose payload fingerprint is unchanged is skipped; a changed
payload runs again.

The ledger for a work order is cleared once its completion commits.
"""

from __future__ import annotations

import abc
import hashlib
import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger("fieldops.ledger")


def fingerprint(payload: dict[str, Any] | None) -> str:
    data = json.dumps(payload or {}, sort_keys=True, default=str)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


@dataclass
class AppliedStep:
    work_id: str
    step: str
    fingerprint: str
    applied_at: float = field(default_factory=time.time)


class StepLedger(abc.ABC):
    """Abstract applied-steps ledger. One entry per (work order, step)."""

    @abc.abstractmethod
    def record(self, work_id: str, step: str, payload: dict[str, Any] | None) -> AppliedStep:
        ...

    @abc.abstractmethod
    def get(self, work_id: str, step: str) -> AppliedStep | None:
        ...

    @abc.abstractmethod
    def entries(self, work_id: str) -> list[AppliedStep]:
        ...

    @abc.abstractmethod
    def clear(self, work_id: str) -> None:
        ...

    def is_applied(self, work_id: str, step: str, payload: dict[str, Any] | None) -> bool:
        entry = self.get(work_id, step)
        return entry is not None and entry.fingerprint == fingerprint(payload)


# ═══════════════════════════════════════════════════════════════════
# In-Memory
# ═══════════════════════════════════════════════════════════════════

class InMemoryStepLedger(StepLedger):

    def __init__(self):
        self._entries: dict[tuple[str, str], AppliedStep] = {}
        self._lock = threading.RLock()

    def record(self, work_id: str, step: str, payload: dict[str, Any] | None) -> AppliedStep:
        entry = AppliedStep(work_id, step, fingerprint(payload))
        with self._lock:
            self._entries[(work_id, step)] = entry
        return entry

    def get(self, work_id: str, step: str) -> AppliedStep | None:
        with self._lock:
            return self._entries.get((work_id, step))

    def entries(self, work_id: str) -> list[AppliedStep]:
        with self._lock:
            found = [e for (w, _), e in self._entries.items() if w == work_id]
        return sorted(found, key=lambda e: e.applied_at)

    def clear(self, work_id: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == work_id]:
                del self._entries[key]


# ═══════════════════════════════════════════════════════════════════
# SQLite
# ═══════════════════════════════════════════════════════════════════

class SQLiteStepLedger(StepLedger):

    def __init__(self, db_path: str | Path = ":memory:", conn: sqlite3.Connection | None = None):
        self._conn = conn or sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        if conn is None:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_table()

    def _create_table(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS applied_steps (
                work_id TEXT NOT NULL,
                step TEXT NOT NULL,
                fingerprint TEXT NOT NULL,
                applied_at REAL NOT NULL,
                PRIMARY KEY (work_id, step)
            );
        """)
        self._conn.commit()

    def record(self, work_id: str, step: str, payload: dict[str, Any] | None) -> AppliedStep:
        entry = AppliedStep(work_id, step, fingerprint(payload))
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO applied_steps (work_id, step, fingerprint, applied_at) "
                "VALUES (?, ?, ?, ?)",
                (entry.work_id, entry.step, entry.fingerprint, entry.applied_at),
            )
            self._conn.commit()
        logger.debug("Step recorded: work=%s step=%s fp=%s", work_id, step, entry.fingerprint[:12])
        return entry

    def get(self, work_id: str, step: str) -> AppliedStep | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM applied_steps WHERE work_id = ? AND step = ?", (work_id, step),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def entries(self, work_id: str) -> list[AppliedStep]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM applied_steps WHERE work_id = ? ORDER BY applied_at", (work_id,),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def clear(self, work_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM applied_steps WHERE work_id = ?", (work_id,))
            self._conn.commit()

    def close(self):
        self._conn.close()

    @staticmethod
    def _row_to_entry(row) -> AppliedStep:
        return AppliedStep(
            work_id=row["work_id"],
            step=row["step"],
            fingerprint=row["fingerprint"],
            applied_at=row["applied_at"],
        )
