"""
A2W Runtime: Log and Report Store

Read interfaces behind GET /logs and GET /report. The runtime appends
one ledger entry per observable action (transition, need, insight,
delegation, error) and saves a report when a task finishes.

Two backends:
  - InMemoryStore: dev/test, same process
  - SQLiteStore:   single-file SQLite (WAL), survives restarts

Cursors are ledger sequence numbers: read_logs(cursor) returns entries
with seq > cursor and the cursor to pass next time.
"""

from __future__ import annotations

import abc
import copy
import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

DEFAULT_LOG_LIMIT = 100
MAX_LOG_LIMIT = 500


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LOG_LIMIT
    return max(1, min(int(limit), MAX_LOG_LIMIT))


class RuntimeStore(abc.ABC):
    """Abstract persistence for the action ledger and task reports."""

    @abc.abstractmethod
    def append_log(self, task_id: str, action: str, details: dict[str, Any]) -> int:
        """Append a ledger entry. Returns its sequence number."""
        ...

    @abc.abstractmethod
    def read_logs(
        self,
        cursor: int = 0,
        limit: int | None = None,
        task_id: str | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """Entries after cursor, oldest first, and the next cursor."""
        ...

    @abc.abstractmethod
    def save_report(self, task_id: str, report: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    def get_report(self, task_id: str) -> dict[str, Any] | None:
        ...

    def close(self) -> None:
        pass


# ─── In-Memory Implementation ────────────────────────────────────────

class InMemoryStore(RuntimeStore):
    """In-process store for dev/test."""

    def __init__(self):
        self._logs: list[dict[str, Any]] = []
        self._reports: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._seq = 0

    def append_log(self, task_id: str, action: str, details: dict[str, Any]) -> int:
        with self._lock:
            self._seq += 1
            self._logs.append({
                "seq": self._seq,
                "task_id": task_id,
                "action": action,
                "details": copy.deepcopy(details),
                "created_at": time.time(),
            })
            return self._seq

    def read_logs(self, cursor=0, limit=None, task_id=None):
        limit = clamp_limit(limit)
        with self._lock:
            # seq is 1-based and dense, so the slice starts at the cursor.
            candidates = self._logs[max(int(cursor), 0):]
            if task_id:
                candidates = [e for e in candidates if e["task_id"] == task_id]
            page = [copy.deepcopy(e) for e in candidates[:limit]]
        next_cursor = page[-1]["seq"] if page else max(int(cursor), 0)
        return page, next_cursor

    def save_report(self, task_id: str, report: dict[str, Any]) -> None:
        with self._lock:
            self._reports[task_id] = copy.deepcopy(report)

    def get_report(self, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            report = self._reports.get(task_id)
            return copy.deepcopy(report) if report is not None else None


# ─── SQLite Implementation ───────────────────────────────────────────

class SQLiteStore(RuntimeStore):
    """SQLite-backed store. One connection shared across threads under a lock."""

    def __init__(self, db_path: str | Path = "a2w_runtime.db"):
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()

    def _create_tables(self):
        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS action_ledger (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    details TEXT NOT NULL,
                    created_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS reports (
                    task_id TEXT PRIMARY KEY,
                    report TEXT NOT NULL,
                    saved_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_ledger_task ON action_ledger(task_id);
            """)
            self.conn.commit()

    def append_log(self, task_id: str, action: str, details: dict[str, Any]) -> int:
        with self._lock:
            cur = self.conn.execute(
                "INSERT INTO action_ledger (task_id, action, details, created_at) "
                "VALUES (?, ?, ?, ?)",
                (task_id, action, json.dumps(details, default=str), time.time()),
            )
            self.conn.commit()
            return int(cur.lastrowid)

    def read_logs(self, cursor=0, limit=None, task_id=None):
        limit = clamp_limit(limit)
        query = "SELECT * FROM action_ledger WHERE seq > ?"
        params: list[Any] = [max(int(cursor), 0)]
        if task_id:
            query += " AND task_id = ?"
            params.append(task_id)
        query += " ORDER BY seq ASC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        page = [
            {
                "seq": row["seq"],
                "task_id": row["task_id"],
                "action": row["action"],
                "details": json.loads(row["details"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
        next_cursor = page[-1]["seq"] if page else max(int(cursor), 0)
        return page, next_cursor

    def save_report(self, task_id: str, report: dict[str, Any]) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO reports (task_id, report, saved_at) VALUES (?, ?, ?)",
                (task_id, json.dumps(report, default=str), time.time()),
            )
            self.conn.commit()

    def get_report(self, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT report FROM reports WHERE task_id = ?", (task_id,)
            ).fetchone()
        return json.loads(row["report"]) if row else None

    def close(self) -> None:
        with self._lock:
            self.conn.close()


def create_store(backend: str = "memory", path: str = "") -> RuntimeStore:
    """Build the configured store backend."""
    if backend == "sqlite":
        return SQLiteStore(path or "a2w_runtime.db")
    if backend == "memory":
        return InMemoryStore()
    raise ValueError(f"Unknown store backend: {backend!r}")
