"""
Fleet Coordinator — Registry Snapshot Store
SQLite-backed durable key-value slot for the Worker Registry snapshot.
Written on every registry mutation, read once at startup.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Optional

from fleetcoord.config import STORE_PATH

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS registry_snapshot (
    id INTEGER PRIMARY KEY CHECK(id = 1),
    blob TEXT NOT NULL,
    worker_count INTEGER DEFAULT 0,
    saved_at TEXT NOT NULL
);
"""


class SnapshotStore:
    """Single-row snapshot table with WAL mode for concurrent readers."""

    def __init__(self, db_path=None):
        self.db_path = str(db_path or STORE_PATH)
        self._lock = threading.Lock()
        self._init_db()
        logger.info(f"Snapshot store initialized: {self.db_path}")

    def _conn(self):
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    def _init_db(self):
        with self._lock:
            conn = self._conn()
            try:
                conn.executescript(SCHEMA_SQL)
                conn.commit()
            finally:
                conn.close()

    def save(self, blob: str) -> bool:
        """Persist the registry snapshot. Returns False if the write failed."""
        try:
            worker_count = len(json.loads(blob).get("workers", []))
        except (json.JSONDecodeError, AttributeError, TypeError):
            worker_count = 0
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            try:
                conn = self._conn()
            except sqlite3.Error as e:
                logger.error(f"Snapshot save failed, cannot open {self.db_path}: {e}")
                return False
            try:
                conn.execute(
                    "INSERT INTO registry_snapshot (id, blob, worker_count, saved_at) "
                    "VALUES (1, ?, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET blob=excluded.blob, "
                    "worker_count=excluded.worker_count, saved_at=excluded.saved_at",
                    (blob, worker_count, now),
                )
                conn.commit()
                return True
            except sqlite3.Error as e:
                logger.error(f"Snapshot save failed: {e}")
                return False
            finally:
                conn.close()

    def load(self) -> Optional[str]:
        """Return the last saved snapshot blob, or None if nothing was saved."""
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT blob, worker_count, saved_at FROM registry_snapshot WHERE id = 1"
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        logger.info(f"Snapshot loaded: {row['worker_count']} workers saved at {row['saved_at']}")
        return row["blob"]
