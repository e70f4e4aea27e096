"""
SQLite database layer for FrameUploader.
Holds the catalogue of past extractions.
Thread-safe via check_same_thread=False + explicit locking.
"""

import sqlite3
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from app.core.constants import DB_PATH
from app.core.models import ExtractionRecord

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS extractions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_extractions_created_at ON extractions(created_at DESC);
"""


class Database:
    """SQLite database wrapper for FrameUploader."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._lock = threading.Lock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ExtractionRecord:
        return ExtractionRecord(id=row['id'], path=Path(row['path']),
                                created_at=row['created_at'])

    # ── Extraction CRUD ───────────────────────────────────────────────

    def add_extraction(self, path: Path, created_at: str | None = None) -> ExtractionRecord:
        created_at = created_at or self._now()
        with self._lock:
            cur = self.conn.execute(
                "INSERT INTO extractions (path, created_at) VALUES (?, ?)",
                (str(path), created_at),
            )
            self.conn.commit()
        return ExtractionRecord(id=cur.lastrowid, path=Path(path), created_at=created_at)

    def get_extractions(self) -> list[ExtractionRecord]:
        """All records, newest first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM extractions ORDER BY created_at DESC, id DESC"
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def delete_extraction(self, record_id: int):
        with self._lock:
            self.conn.execute("DELETE FROM extractions WHERE id = ?", (record_id,))
            self.conn.commit()
