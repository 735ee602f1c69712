"""
Sync History Store — append-only log of bulk sync pass reports.

Every bulk pass produces one SyncReport. Reports are never modified or
deleted; they answer what the pass saw, what it changed and which keys it
could not converge.
"""

import sqlite3
import threading
from datetime import datetime
from typing import List, Optional

from ldap_operator.models.sync import SyncReport


class SyncHistoryStore:
    """
    Append-only sync pass history.
    SQLite-backed; ":memory:" keeps it for the lifetime of the process.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the history table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_passes (
                id TEXT PRIMARY KEY,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                directory_count INTEGER NOT NULL,
                tracked_count INTEGER NOT NULL,
                created_count INTEGER NOT NULL,
                deleted_count INTEGER NOT NULL,
                failure_count INTEGER NOT NULL,
                report_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_passes_started_at ON sync_passes(started_at)
        """)
        self._conn.commit()

    def append(self, report: SyncReport) -> SyncReport:
        """Store a finished pass report."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sync_passes (
                    id, started_at, finished_at, directory_count, tracked_count,
                    created_count, deleted_count, failure_count, report_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    report.id,
                    report.started_at.isoformat(),
                    report.finished_at.isoformat() if report.finished_at else None,
                    report.directory_count,
                    report.tracked_count,
                    len(report.created),
                    len(report.deleted),
                    len(report.failures),
                    report.model_dump_json(),
                ),
            )
            self._conn.commit()
        return report

    def _deserialize(self, row: sqlite3.Row) -> SyncReport:
        return SyncReport.model_validate_json(row["report_json"])

    def get_by_id(self, report_id: str) -> Optional[SyncReport]:
        with self._lock:
            row = self._conn.execute(
                "SELECT report_json FROM sync_passes WHERE id = ?", (report_id,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def query_recent(self, limit: int = 20) -> List[SyncReport]:
        """The most recent passes, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT report_json FROM sync_passes ORDER BY rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def query_failed(self, since: Optional[datetime] = None) -> List[SyncReport]:
        """Passes that left at least one key unconverged."""
        sql = "SELECT report_json FROM sync_passes WHERE failure_count > 0"
        params: tuple = ()
        if since:
            sql += " AND started_at >= ?"
            params = (since.isoformat(),)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY rowid", params).fetchall()
        return [self._deserialize(r) for r in rows]

    def latest(self) -> Optional[SyncReport]:
        recent = self.query_recent(limit=1)
        return recent[0] if recent else None

    def count(self) -> int:
        """Total number of recorded passes."""
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) as cnt FROM sync_passes").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
