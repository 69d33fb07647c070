"""
Field Closeout — Draft Persistence

Autosave/restore of in-progress completion form fields, keyed by work
order id. The orchestrator talks to the DraftStore port only; the
storage medium is an implementation detail:

  - InMemoryDraftStore: dev/test, same process
  - SQLiteDraftStore:   durable local file, survives restarts

Guarantee: restore() after clear() returns None, and restore() returns
exactly the field set given to the last save().
"""

from __future__ import annotations

import abc
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger("fieldops.drafts")

DRAFT_KEY_PREFIX = "work_complete_draft_"

# Fields the completion form autosaves
DRAFT_FIELDS = (
    "cust_rel",
    "memo",
    "network_type",
    "network_type_name",
    "install_info",
    "cnfm_cust_nm",
    "cnfm_cust_telno",
    "reuse_yn",
)


def draft_key(work_id: str) -> str:
    return f"{DRAFT_KEY_PREFIX}{work_id}"


# ─── Abstract Store Interface ────────────────────────────────────────

class DraftStore(abc.ABC):
    """
    Narrow persistence port: save / restore / clear by work order id.

    save() is called on every field change and must never break the
    caller's flow, so implementations log storage errors instead of
    raising them.
    """

    @abc.abstractmethod
    def save(self, work_id: str, fields: dict[str, Any]) -> bool:
        """Persist the full field set. Returns False if storage failed."""
        ...

    @abc.abstractmethod
    def restore(self, work_id: str) -> dict[str, Any] | None:
        """Return the last saved field set, or None."""
        ...

    @abc.abstractmethod
    def clear(self, work_id: str) -> None:
        ...

    def saved_at(self, work_id: str) -> float | None:
        return None


# ─── In-Memory Implementation ────────────────────────────────────────

class InMemoryDraftStore(DraftStore):
    """In-process draft store for dev/test."""

    def __init__(self):
        self._drafts: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def save(self, work_id: str, fields: dict[str, Any]) -> bool:
        try:
            payload = json.dumps(fields, default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Draft not serializable: work=%s error=%s", work_id, e)
            return False
        with self._lock:
            self._drafts[draft_key(work_id)] = (payload, time.time())
        return True

    def restore(self, work_id: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._drafts.get(draft_key(work_id))
        if entry is None:
            return None
        return json.loads(entry[0])

    def clear(self, work_id: str) -> None:
        with self._lock:
            self._drafts.pop(draft_key(work_id), None)

    def saved_at(self, work_id: str) -> float | None:
        entry = self._drafts.get(draft_key(work_id))
        return entry[1] if entry else None


# ─── SQLite Implementation ───────────────────────────────────────────

class SQLiteDraftStore(DraftStore):
    """SQLite-backed draft store. One row per work order."""

    def __init__(self, db_path: str | Path = "fieldops_drafts.db", conn: sqlite3.Connection | None = None):
        self.db_path = str(db_path)
        if conn is None:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
        self.conn = conn
        self._lock = threading.Lock()
        self._create_table()

    def _create_table(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS work_drafts (
                draft_key TEXT PRIMARY KEY,
                work_id TEXT NOT NULL,
                fields TEXT NOT NULL DEFAULT '{}',
                saved_at REAL NOT NULL
            );
        """)
        self.conn.commit()

    def save(self, work_id: str, fields: dict[str, Any]) -> bool:
        try:
            payload = json.dumps(fields, default=str)
            with self._lock:
                self.conn.execute(
                    "INSERT OR REPLACE INTO work_drafts (draft_key, work_id, fields, saved_at) "
                    "VALUES (?, ?, ?, ?)",
                    (draft_key(work_id), work_id, payload, time.time()),
                )
                self.conn.commit()
            return True
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning("Draft save failed: work=%s error=%s", work_id, e)
            return False

    def restore(self, work_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT fields FROM work_drafts WHERE draft_key = ?",
                (draft_key(work_id),),
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            logger.warning("Draft unreadable, ignoring: work=%s error=%s", work_id, e)
            return None

    def clear(self, work_id: str) -> None:
        with self._lock:
            self.conn.execute(
                "DELETE FROM work_drafts WHERE draft_key = ?", (draft_key(work_id),)
            )
            self.conn.commit()
        logger.debug("Draft cleared: work=%s", work_id)

    def saved_at(self, work_id: str) -> float | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT saved_at FROM work_drafts WHERE draft_key = ?",
                (draft_key(work_id),),
            ).fetchone()
        return row[0] if row else None

    def list_work_ids(self) -> list[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT work_id FROM work_drafts ORDER BY saved_at DESC"
            ).fetchall()
        return [r[0] for r in rows]

    def close(self):
        self.conn.close()


def create_draft_store(config: Any) -> DraftStore:
    """Pick the draft backend from config (drafts.backend / drafts.db_path)."""
    backend = config.get("drafts.backend", "sqlite")
    if backend == "memory":
        return InMemoryDraftStore()
    if backend == "sqlite":
        return SQLiteDraftStore(config.get("drafts.db_path", "fieldops_drafts.db"))
    raise ValueError(f"Unknown draft backend '{backend}'. Valid: memory, sqlite")
