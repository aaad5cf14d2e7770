"""
Database module for storing medication detection sessions.

One session per image identifier: saving a new result for an image replaces
the previous session. Items cascade-delete with their session.
Schema versioning ensures automatic migration when schema changes.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from typing import Dict, List, Optional, Sequence

from models.detection import BoundingBox, DetectionResult, Detections
from models.session import DetectedItem, DetectionSession

# Schema version - increment when schema changes
EXPECTED_SCHEMA_VERSION = 1


class DetectionStore:
    """
    SQLite store for detection results.

    Tables:
    - schema_meta: tracks schema version
    - detection_sessions: one row per detected image
    - detected_items: one row per box, ON DELETE CASCADE with its session

    The connection is shared between threads and guarded by a lock, since
    detections complete on background workers.
    """

    def __init__(self, local_database_path: str):
        """
        Initialize the store.

        Args:
            local_database_path: Path to the SQLite database file, or ":memory:".
        """
        self.local_database_path = local_database_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

        db_dir = os.path.dirname(local_database_path)
        if db_dir and local_database_path != ":memory:":
            os.makedirs(db_dir, exist_ok=True)

        logging.info(f"Detection store at {local_database_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self.conn is None:
            self.conn = sqlite3.connect(self.local_database_path, check_same_thread=False)
            self.conn.execute("PRAGMA foreign_keys = ON")
        return self.conn

    def _get_schema_version(self) -> Optional[int]:
        try:
            cursor = self._get_connection().cursor()
            cursor.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_meta'"
            )
            if cursor.fetchone() is None:
                return None

            cursor.execute("SELECT schema_version FROM schema_meta LIMIT 1")
            row = cursor.fetchone()
            return row[0] if row else None
        except sqlite3.Error:
            return None

    def _drop_old_tables(self) -> None:
        cursor = self._get_connection().cursor()
        for table in ("detected_items", "detection_sessions", "schema_meta"):
            try:
                cursor.execute(f"DROP TABLE IF EXISTS {table}")
                logging.debug(f"Dropped table: {table}")
            except sqlite3.Error as e:
                logging.warning(f"Could not drop table {table}: {e}")
        self._get_connection().commit()

    def _create_schema(self) -> None:
        cursor = self._get_connection().cursor()

        cursor.execute("""
            CREATE TABLE schema_meta (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                schema_version INTEGER NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)

        cursor.execute("""
            CREATE TABLE detection_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                image_id TEXT NOT NULL,
                ts INTEGER NOT NULL,
                total_items INTEGER NOT NULL,
                processing_time_ms INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE detected_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                class_index INTEGER,
                class_name TEXT NOT NULL,
                confidence REAL NOT NULL,
                x1 REAL NOT NULL,
                y1 REAL NOT NULL,
                x2 REAL NOT NULL,
                y2 REAL NOT NULL,
                FOREIGN KEY (session_id) REFERENCES detection_sessions(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("CREATE INDEX idx_sessions_image_id ON detection_sessions(image_id)")
        cursor.execute("CREATE INDEX idx_items_session_id ON detected_items(session_id)")

        cursor.execute(
            "INSERT INTO schema_meta (id, schema_version) VALUES (1, ?)",
            (EXPECTED_SCHEMA_VERSION,)
        )
        self._get_connection().commit()
        logging.info(f"Created schema version {EXPECTED_SCHEMA_VERSION}")

    def initialize(self) -> None:
        """
        Initialize the database schema.

        If schema_meta is missing or version doesn't match EXPECTED_SCHEMA_VERSION,
        drops all old tables and creates fresh schema.
        """
        with self._lock:
            try:
                current_version = self._get_schema_version()

                if current_version != EXPECTED_SCHEMA_VERSION:
                    if current_version is not None:
                        logging.warning(
                            f"Schema version mismatch: found {current_version}, "
                            f"expected {EXPECTED_SCHEMA_VERSION}. Dropping old tables."
                        )
                    else:
                        logging.info("No schema found, creating fresh database.")
                    self._drop_old_tables()
                    self._create_schema()
                else:
                    logging.info(f"Schema version {current_version} is current")
            except sqlite3.Error as e:
                logging.error(f"Database initialization error: {e}")
                raise

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def save_detection_session(
        self,
        image_id: str,
        boxes: Sequence[BoundingBox],
        processing_time_ms: Optional[int] = None,
    ) -> Optional[int]:
        """
        Save a session with its items, replacing any session for the same image.

        Returns:
            ID of the new session, or None on error.
        """
        logging.debug(f"Saving detection session with {len(boxes)} items for {image_id}")
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    cursor = conn.cursor()
                    cursor.execute("DELETE FROM detection_sessions WHERE image_id = ?", (image_id,))
                    if cursor.rowcount > 0:
                        logging.debug(f"Replaced existing detection for {image_id}")

                    cursor.execute(
                        """
                        INSERT INTO detection_sessions (image_id, ts, total_items, processing_time_ms)
                        VALUES (?, ?, ?, ?)
                        """,
                        (image_id, int(time.time() * 1000), len(boxes), processing_time_ms),
                    )
                    session_id = cursor.lastrowid

                    cursor.executemany(
                        """
                        INSERT INTO detected_items (
                            session_id, class_index, class_name, confidence, x1, y1, x2, y2
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                session_id,
                                box.class_index,
                                box.class_name,
                                box.confidence,
                                box.x1,
                                box.y1,
                                box.x2,
                                box.y2,
                            )
                            for box in boxes
                        ],
                    )
                return session_id
            except sqlite3.Error as e:
                logging.error(f"Error saving detection session: {e}")
                return None

    def record_result(
        self,
        image_id: str,
        result: DetectionResult,
        processing_time_ms: Optional[int] = None,
    ) -> Optional[int]:
        """Persist a detect() outcome; empty results become zero-item sessions."""
        if isinstance(result, Detections):
            elapsed = processing_time_ms if processing_time_ms is not None else result.elapsed_ms
            return self.save_detection_session(image_id, list(result.boxes), elapsed)
        return self.save_detection_session(image_id, [], processing_time_ms)

    def delete_session(self, session_id: int) -> int:
        """Delete a session and its items. Returns the number of sessions deleted."""
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    cursor = conn.execute("DELETE FROM detection_sessions WHERE id = ?", (session_id,))
                return cursor.rowcount
            except sqlite3.Error as e:
                logging.error(f"Error deleting session {session_id}: {e}")
                return 0

    def clear_all(self) -> int:
        """Delete every session and item. Returns the number of sessions deleted."""
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute("DELETE FROM detected_items")
                    cursor = conn.execute("DELETE FROM detection_sessions")
                deleted = cursor.rowcount
                logging.info(f"Cleared {deleted} detection sessions")
                return deleted
            except sqlite3.Error as e:
                logging.error(f"Error clearing detections: {e}")
                return 0

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    @staticmethod
    def _session_from_row(row) -> DetectionSession:
        return DetectionSession(
            id=row[0],
            image_id=row[1],
            timestamp_ms=row[2],
            total_items=row[3],
            processing_time_ms=row[4],
        )

    def get_all_sessions(self) -> List[DetectionSession]:
        """All sessions, newest first."""
        with self._lock:
            try:
                cursor = self._get_connection().execute(
                    """
                    SELECT id, image_id, ts, total_items, processing_time_ms
                    FROM detection_sessions
                    ORDER BY ts DESC, id DESC
                    """
                )
                return [self._session_from_row(row) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                logging.error(f"Error reading sessions: {e}")
                return []

    def find_session_by_image(self, image_id: str) -> Optional[DetectionSession]:
        with self._lock:
            try:
                cursor = self._get_connection().execute(
                    """
                    SELECT id, image_id, ts, total_items, processing_time_ms
                    FROM detection_sessions
                    WHERE image_id = ?
                    ORDER BY ts DESC, id DESC
                    LIMIT 1
                    """,
                    (image_id,),
                )
                row = cursor.fetchone()
                return self._session_from_row(row) if row else None
            except sqlite3.Error as e:
                logging.error(f"Error finding session for {image_id}: {e}")
                return None

    def get_detection_items(self, session_id: int) -> List[DetectedItem]:
        with self._lock:
            try:
                cursor = self._get_connection().execute(
                    """
                    SELECT id, session_id, class_index, class_name, confidence, x1, y1, x2, y2
                    FROM detected_items
                    WHERE session_id = ?
                    ORDER BY id
                    """,
                    (session_id,),
                )
                return [
                    DetectedItem(
                        id=row[0],
                        session_id=row[1],
                        class_index=row[2],
                        class_name=row[3],
                        confidence=row[4],
                        x1=row[5],
                        y1=row[6],
                        x2=row[7],
                        y2=row[8],
                    )
                    for row in cursor.fetchall()
                ]
            except sqlite3.Error as e:
                logging.error(f"Error reading items for session {session_id}: {e}")
                return []

    def get_detection_summary(self, session_id: int) -> Dict[str, int]:
        """Class name -> count for one session, most frequent first."""
        with self._lock:
            try:
                cursor = self._get_connection().execute(
                    """
                    SELECT class_name, COUNT(*) AS count
                    FROM detected_items
                    WHERE session_id = ?
                    GROUP BY class_name
                    ORDER BY count DESC, class_name
                    """,
                    (session_id,),
                )
                return {row[0]: row[1] for row in cursor.fetchall()}
            except sqlite3.Error as e:
                logging.error(f"Error summarizing session {session_id}: {e}")
                return {}

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
                logging.info("Database connection closed")
