from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional
import json
import logging
import sqlite3
import uuid

from .config import CONFIG, DB_DEFAULT

log = logging.getLogger("capture-analysis")

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"


class PersistenceError(Exception):
    pass


class CorruptRecordError(PersistenceError):
    """A stored row cannot be decoded (e.g. malformed JSON column)."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def has_vision_result(result: Any) -> bool:
    """A stored result counts only when it is a non-empty document."""
    if result is None:
        return False
    if isinstance(result, str):
        return bool(result.strip())
    if isinstance(result, (dict, list)):
        return bool(result)
    return True


@dataclass
class CaptureRecord:
    id: str
    image_url: str
    created_at: Optional[datetime] = None
    user_id: Optional[str] = None
    author_name: Optional[str] = None
    device_local_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    image_size: Optional[int] = None
    storage_type: str = "s3"
    vision_result: Optional[Dict[str, Any]] = None
    category: Optional[str] = None
    confidence: Optional[float] = None
    difficulty: Optional[str] = None
    verified: Optional[bool] = None
    tags: Optional[List[str]] = None
    location: Optional[Dict[str, Any]] = None
    location_info: Optional[Dict[str, Any]] = None
    orientation: Optional[Dict[str, Any]] = None
    is_public: bool = False
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, r: sqlite3.Row) -> "CaptureRecord":
        return cls(
            id=r["id"],
            image_url=r["image_url"],
            created_at=_parse_ts(r["created_at"]),
            user_id=r["user_id"],
            author_name=r["author_name"],
            device_local_id=r["device_local_id"],
            thumbnail_url=r["thumbnail_url"],
            image_size=r["image_size"],
            storage_type=r["storage_type"],
            vision_result=_loads(r["vision_result"]),
            category=r["category"],
            confidence=r["confidence"],
            difficulty=r["difficulty"],
            verified=None if r["verified"] is None else bool(r["verified"]),
            tags=_loads(r["tags"]),
            location=_loads(r["location"]),
            location_info=_loads(r["location_info"]),
            orientation=_loads(r["orientation"]),
            is_public=bool(r["is_public"]),
            updated_at=_parse_ts(r["updated_at"]),
        )


@dataclass
class QueueEntry:
    id: str
    capture_id: str
    status: str
    attempts: int
    created_at: Optional[datetime] = None
    last_attempt: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, r: sqlite3.Row) -> "QueueEntry":
        return cls(
            id=r["id"],
            capture_id=r["capture_id"],
            status=r["status"],
            attempts=r["attempts"] or 0,
            created_at=_parse_ts(r["created_at"]),
            last_attempt=_parse_ts(r["last_attempt"]),
            error_message=r["error_message"],
        )


SCHEMA = """
CREATE TABLE IF NOT EXISTS captures (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    author_name TEXT,
    device_local_id TEXT,
    image_url TEXT NOT NULL,
    thumbnail_url TEXT,
    image_size INTEGER,
    storage_type TEXT NOT NULL DEFAULT 's3',
    vision_result TEXT,
    category TEXT,
    confidence REAL,
    difficulty TEXT,
    verified INTEGER,
    tags TEXT,
    location TEXT,
    location_info TEXT,
    orientation TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    is_public INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS analysis_queue (
    id TEXT PRIMARY KEY,
    capture_id TEXT NOT NULL UNIQUE REFERENCES captures(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER DEFAULT 0,
    error_message TEXT,
    created_at TEXT NOT NULL,
    last_attempt TEXT
);
CREATE INDEX IF NOT EXISTS idx_analysis_queue_status ON analysis_queue(status);
CREATE INDEX IF NOT EXISTS idx_analysis_queue_created_at ON analysis_queue(created_at);
CREATE TABLE IF NOT EXISTS tags (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS capture_tags (
    capture_id TEXT NOT NULL REFERENCES captures(id) ON DELETE CASCADE,
    tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (capture_id, tag_id)
);
"""

_CAPTURE_COLUMNS = (
    "id, user_id, author_name, device_local_id, image_url, thumbnail_url, image_size, "
    "storage_type, vision_result, category, confidence, difficulty, verified, tags, "
    "location, location_info, orientation, is_public, created_at, updated_at"
)


def ensure_schema(db_path: str = DB_DEFAULT):
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


class CaptureStore:
    """Captures, the analysis queue and tags in one SQLite database.

    Every call opens its own short-lived connection, so a store can be shared
    freely between the worker and other callers.
    """

    def __init__(self, db_path: str = DB_DEFAULT, max_attempts: int = CONFIG["ANALYSIS_MAX_ATTEMPTS"]):
        self.db_path = db_path
        self.max_attempts = max_attempts

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    # --- captures ---

    def create_capture(
        self,
        image_url: str,
        user_id: Optional[str] = None,
        author_name: Optional[str] = None,
        device_local_id: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
        image_size: Optional[int] = None,
        vision_result: Optional[Dict[str, Any]] = None,
        category: Optional[str] = None,
        confidence: Optional[float] = None,
        tags: Optional[List[str]] = None,
        location: Optional[Dict[str, Any]] = None,
        location_info: Optional[Dict[str, Any]] = None,
        orientation: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> CaptureRecord:
        """Insert a capture and queue it for analysis unless it already has a result."""
        capture_id = str(uuid.uuid4())
        created = (created_at or datetime.now(timezone.utc)).isoformat()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO captures(id, user_id, author_name, device_local_id, image_url, "
                "thumbnail_url, image_size, vision_result, category, confidence, tags, "
                "location, location_info, orientation, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    capture_id,
                    user_id,
                    author_name,
                    device_local_id,
                    image_url,
                    thumbnail_url,
                    image_size,
                    _dumps(vision_result),
                    category,
                    confidence,
                    _dumps(tags),
                    _dumps(location),
                    _dumps(location_info),
                    _dumps(orientation),
                    created,
                    created,
                ),
            )
            if not has_vision_result(vision_result):
                self._enqueue(conn, capture_id)
            row = conn.execute(
                f"SELECT {_CAPTURE_COLUMNS} FROM captures WHERE id = ?", (capture_id,)
            ).fetchone()
        return CaptureRecord.from_row(row)

    def get_capture(self, capture_id: str) -> Optional[CaptureRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_CAPTURE_COLUMNS} FROM captures WHERE id = ? AND is_deleted = 0",
                (capture_id,),
            ).fetchone()
        if row is None:
            return None
        try:
            return CaptureRecord.from_row(row)
        except (ValueError, TypeError) as e:
            raise CorruptRecordError(f"capture {capture_id} has an undecodable column: {e}") from e

    def _update_analysis(
        self,
        conn: sqlite3.Connection,
        capture_id: str,
        vision_result: Dict[str, Any],
        category: str,
        confidence: float,
        difficulty: str,
        verified: bool,
        tags: Optional[List[str]],
    ) -> None:
        cur = conn.execute(
            "UPDATE captures SET vision_result=?, category=?, confidence=?, difficulty=?, "
            "verified=?, tags=?, updated_at=? WHERE id=?",
            (
                json.dumps(vision_result),
                category,
                float(confidence),
                difficulty,
                1 if verified else 0,
                _dumps(tags),
                _now(),
                capture_id,
            ),
        )
        if cur.rowcount == 0:
            log.warning("No rows updated for capture %s", capture_id)

    def update_capture_analysis(
        self,
        capture_id: str,
        vision_result: Dict[str, Any],
        category: str,
        confidence: float,
        difficulty: str,
        verified: bool,
        tags: Optional[List[str]],
    ) -> None:
        with self._connect() as conn:
            self._update_analysis(
                conn, capture_id, vision_result, category, confidence, difficulty, verified, tags
            )

    def save_analysis(
        self,
        capture_id: str,
        vision_result: Dict[str, Any],
        category: str,
        confidence: float,
        difficulty: str,
        verified: bool,
        tags: List[str],
    ) -> None:
        """Store the result, relink tags and complete the queue entry in one transaction."""
        with self._connect() as conn:
            self._update_analysis(
                conn, capture_id, vision_result, category, confidence, difficulty, verified, tags
            )
            self._replace_tags(conn, capture_id, tags)
            self._mark_completed(conn, capture_id)

    def set_thumbnail(self, capture_id: str, url: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE captures SET thumbnail_url=?, updated_at=? WHERE id=?",
                (url, _now(), capture_id),
            )

    # --- analysis queue ---

    def _enqueue(self, conn: sqlite3.Connection, capture_id: str) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO analysis_queue(id, capture_id, status, attempts, created_at) "
            "VALUES (?, ?, ?, 0, ?)",
            (str(uuid.uuid4()), capture_id, STATUS_PENDING, _now()),
        )

    def enqueue_analysis(self, capture_id: str) -> None:
        with self._connect() as conn:
            self._enqueue(conn, capture_id)

    def enqueue_unanalyzed(self) -> int:
        """Queue every live capture with an empty result that has no queue entry."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT c.id, c.vision_result FROM captures c "
                "LEFT JOIN analysis_queue q ON q.capture_id = c.id "
                "WHERE c.is_deleted = 0 AND q.id IS NULL"
            ).fetchall()
            count = 0
            for r in rows:
                try:
                    result = _loads(r["vision_result"])
                except ValueError:
                    log.warning("Capture %s has an undecodable vision result; queueing it", r["id"])
                    result = None
                if not has_vision_result(result):
                    self._enqueue(conn, r["id"])
                    count += 1
        return count

    def fetch_pending(self, limit: int = CONFIG["ANALYSIS_BATCH_SIZE"]) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT capture_id FROM analysis_queue
                WHERE status = ? AND (attempts < ? OR attempts IS NULL)
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (STATUS_PENDING, self.max_attempts, limit),
            ).fetchall()
        return [r["capture_id"] for r in rows]

    def get_queue_entry(self, capture_id: str) -> Optional[QueueEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, capture_id, status, attempts, error_message, created_at, last_attempt "
                "FROM analysis_queue WHERE capture_id = ?",
                (capture_id,),
            ).fetchone()
        return QueueEntry.from_row(row) if row else None

    def _mark_completed(self, conn: sqlite3.Connection, capture_id: str) -> None:
        conn.execute(
            "UPDATE analysis_queue SET status=?, last_attempt=? WHERE capture_id=?",
            (STATUS_COMPLETED, _now(), capture_id),
        )

    def mark_completed(self, capture_id: str) -> None:
        with self._connect() as conn:
            self._mark_completed(conn, capture_id)

    def increment_attempts(self, capture_id: str, error: Optional[str] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE analysis_queue SET attempts = COALESCE(attempts, 0) + 1, "
                "last_attempt=?, error_message=? WHERE capture_id=?",
                (_now(), error, capture_id),
            )

    # --- tags ---

    def _replace_tags(self, conn: sqlite3.Connection, capture_id: str, tag_names: List[str]) -> None:
        conn.execute("DELETE FROM capture_tags WHERE capture_id = ?", (capture_id,))
        for name in tag_names:
            conn.execute(
                "INSERT OR IGNORE INTO tags(id, name, created_at) VALUES (?, ?, ?)",
                (str(uuid.uuid4()), name, _now()),
            )
            tag_id = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()["id"]
            conn.execute(
                "INSERT OR IGNORE INTO capture_tags(capture_id, tag_id) VALUES (?, ?)",
                (capture_id, tag_id),
            )

    def replace_tags(self, capture_id: str, tag_names: List[str]) -> None:
        """Replace the capture's tag links with `tag_names` in one transaction."""
        with self._connect() as conn:
            self._replace_tags(conn, capture_id, tag_names)

    def get_tags_for_capture(self, capture_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT t.name FROM tags t JOIN capture_tags ct ON t.id = ct.tag_id "
                "WHERE ct.capture_id = ? ORDER BY t.name",
                (capture_id,),
            ).fetchall()
        return [r["name"] for r in rows]

    def get_all_tags(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name FROM tags ORDER BY name").fetchall()
        return [r["name"] for r in rows]

    def count_capture_tag_links(self, capture_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM capture_tags WHERE capture_id = ?", (capture_id,)
            ).fetchone()
        return int(row["n"])
