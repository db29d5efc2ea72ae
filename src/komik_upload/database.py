"""
SQLite database for persistent job storage.

Jobs, their planned units, unit-scoped errors and resume tokens survive
server restarts, which is what lets an interrupted job be resumed by a
different process than the one that planned it.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import ChapterUnit, JobStatus, UnitError

# Default database path
DEFAULT_DB_PATH = Path("data/jobs.db")

# Columns update_job may touch
_UPDATABLE = {
    "status",
    "total_units",
    "processed_units",
    "checkpoint",
    "current_unit",
    "current_file",
    "total_files",
    "total_size_bytes",
    "cancel_requested",
    "message",
    "staging_dir",
    "report",
    "mangas",
}
_JSON_COLUMNS = {"report", "mangas", "options"}
_UPSERT_ASSIGNMENTS = ", ".join(
    ["processed_units = MAX(jobs.processed_units, excluded.processed_units)"]
    + [
        f"{column} = excluded.{column}"
        for column in (
            "status", "dry_run", "options", "updated_at", "total_units", "checkpoint",
            "current_unit", "current_file", "total_files", "total_size_bytes",
            "cancel_requested", "staging_dir", "report", "mangas", "message", "events",
        )
    ]
)


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobDatabase:
    """
    SQLite database for job persistence.

    Thread-safe: every call opens its own connection and SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    dry_run INTEGER NOT NULL DEFAULT 0,
                    options TEXT,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    total_units INTEGER NOT NULL DEFAULT 0,
                    processed_units INTEGER NOT NULL DEFAULT 0,
                    checkpoint INTEGER NOT NULL DEFAULT 0,
                    current_unit INTEGER,
                    current_file TEXT,
                    total_files INTEGER NOT NULL DEFAULT 0,
                    total_size_bytes INTEGER NOT NULL DEFAULT 0,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    staging_dir TEXT,
                    report TEXT,
                    mangas TEXT,
                    message TEXT,
                    events TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status
                ON jobs(status)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_units (
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    unit_index INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    outcome TEXT,
                    chapter_id INTEGER,
                    error TEXT,
                    PRIMARY KEY (job_id, unit_index)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_errors (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    unit_index INTEGER NOT NULL,
                    folder_name TEXT,
                    error_type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS resume_tokens (
                    token TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    consumed_at TEXT,
                    revoked INTEGER NOT NULL DEFAULT 0
                )
            """)

    def save_job(self, job_data: Dict[str, Any]) -> None:
        """
        Save or update a job record.

        Upserts in place so the job's unit, error and token rows are kept.

        Args:
            job_data: Dictionary with job fields
        """
        with self._get_connection() as conn:
            conn.execute(f"""
                INSERT INTO jobs (
                    id, kind, status, dry_run, options, created_by,
                    created_at, updated_at, total_units, processed_units,
                    checkpoint, current_unit, current_file, total_files,
                    total_size_bytes, cancel_requested, staging_dir,
                    report, mangas, message, events
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET {_UPSERT_ASSIGNMENTS}
            """, (
                job_data["id"],
                job_data["kind"],
                job_data["status"],
                int(job_data.get("dry_run", False)),
                json.dumps(job_data.get("options", {})),
                job_data.get("created_by"),
                _serialize_datetime(job_data["created_at"]),
                _serialize_datetime(job_data["updated_at"]),
                job_data.get("total_units", 0),
                job_data.get("processed_units", 0),
                job_data.get("checkpoint", 0),
                job_data.get("current_unit"),
                job_data.get("current_file"),
                job_data.get("total_files", 0),
                job_data.get("total_size_bytes", 0),
                int(job_data.get("cancel_requested", False)),
                str(job_data["staging_dir"]) if job_data.get("staging_dir") else None,
                json.dumps(job_data.get("report", {})),
                json.dumps(job_data.get("mangas", [])),
                job_data.get("message"),
                json.dumps([
                    {"timestamp": _serialize_datetime(e["timestamp"]), "message": e["message"]}
                    for e in job_data.get("events", [])
                ]),
            ))

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a job by ID.

        Returns:
            Job data dictionary or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_dict(row)

    def list_jobs_by_status(self, status: JobStatus) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = ? ORDER BY created_at", (status.value,)
            ).fetchall()
            return [self._row_to_dict(row) for row in rows]

    def update_job(self, job_id: str, **fields: Any) -> None:
        """
        Update selected job columns and refresh updated_at.

        Raises:
            ValueError: If a field is not an updatable column
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")

        updates = ["updated_at = ?"]
        values: List[Any] = [_serialize_datetime(_utcnow())]
        for name, value in fields.items():
            updates.append(f"{name} = ?")
            if isinstance(value, JobStatus):
                value = value.value
            elif name in _JSON_COLUMNS:
                value = json.dumps(value)
            elif isinstance(value, bool):
                value = int(value)
            elif isinstance(value, Path):
                value = str(value)
            values.append(value)
        values.append(job_id)

        with self._get_connection() as conn:
            conn.execute(f"UPDATE jobs SET {', '.join(updates)} WHERE id = ?", values)

    def add_job_event(self, job_id: str, message: str, timestamp: Optional[datetime] = None) -> None:
        """
        Add an event to a job's event log.

        Args:
            job_id: The job ID
            message: Event message
            timestamp: Event time, defaults to now
        """
        timestamp = timestamp or _utcnow()
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT events FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()

            if not row:
                return

            events = json.loads(row["events"] or "[]")
            events.append({
                "timestamp": _serialize_datetime(timestamp),
                "message": message,
            })

            conn.execute(
                "UPDATE jobs SET events = ?, updated_at = ? WHERE id = ?",
                (json.dumps(events), _serialize_datetime(timestamp), job_id)
            )

    def save_units(self, job_id: str, units: List[ChapterUnit]) -> None:
        """Persist the planned units of a job, replacing any earlier plan."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM job_units WHERE job_id = ?", (job_id,))
            conn.executemany("""
                INSERT INTO job_units (job_id, unit_index, payload, outcome, chapter_id, error)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (
                    job_id,
                    unit.index,
                    unit.model_dump_json(),
                    unit.outcome.value if unit.outcome else None,
                    unit.chapter_id,
                    unit.error,
                )
                for unit in units
            ])

    def get_units(self, job_id: str) -> List[ChapterUnit]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM job_units WHERE job_id = ? ORDER BY unit_index", (job_id,)
            ).fetchall()

        return [
            ChapterUnit.model_validate({
                **json.loads(row["payload"]),
                "outcome": row["outcome"],
                "chapter_id": row["chapter_id"],
                "error": row["error"],
            })
            for row in rows
        ]

    def record_unit_outcome(self, job_id: str, unit: ChapterUnit, checkpoint: int, processed_units: int) -> None:
        """
        Store a unit's outcome together with the job's checkpoint and counters.

        Both writes share one transaction so the checkpoint can never point
        past a unit whose outcome is not durable.
        """
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE job_units SET outcome = ?, chapter_id = ?, error = ?
                WHERE job_id = ? AND unit_index = ?
            """, (
                unit.outcome.value if unit.outcome else None,
                unit.chapter_id,
                unit.error,
                job_id,
                unit.index,
            ))
            conn.execute("""
                UPDATE jobs SET checkpoint = ?, processed_units = MAX(processed_units, ?), updated_at = ?
                WHERE id = ?
            """, (checkpoint, processed_units, _serialize_datetime(_utcnow()), job_id))

    def update_unit_error(self, job_id: str, unit_index: int, message: Optional[str]) -> None:
        """Store a unit's last error without touching its outcome."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE job_units SET error = ? WHERE job_id = ? AND unit_index = ?",
                (message, job_id, unit_index),
            )

    def add_error(self, job_id: str, error: UnitError) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO job_errors (job_id, unit_index, folder_name, error_type, message, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                job_id,
                error.unit_index,
                error.folder_name,
                error.error_type,
                error.message,
                _serialize_datetime(error.timestamp),
            ))

    def get_errors(self, job_id: str) -> List[UnitError]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM job_errors WHERE job_id = ? ORDER BY id", (job_id,)
            ).fetchall()
        return [
            UnitError(
                unit_index=row["unit_index"],
                folder_name=row["folder_name"] or "",
                error_type=row["error_type"],
                message=row["message"],
                timestamp=_deserialize_datetime(row["timestamp"]),
            )
            for row in rows
        ]

    def create_resume_token(self, job_id: str, token: str, expires_at: datetime) -> None:
        """Store a new token and revoke every earlier live token of the job."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE resume_tokens SET revoked = 1 WHERE job_id = ? AND consumed_at IS NULL",
                (job_id,),
            )
            conn.execute("""
                INSERT INTO resume_tokens (token, job_id, created_at, expires_at)
                VALUES (?, ?, ?, ?)
            """, (token, job_id, _serialize_datetime(_utcnow()), _serialize_datetime(expires_at)))

    def get_resume_token(self, token: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM resume_tokens WHERE token = ?", (token,)).fetchone()
        if not row:
            return None
        return {
            "token": row["token"],
            "job_id": row["job_id"],
            "created_at": _deserialize_datetime(row["created_at"]),
            "expires_at": _deserialize_datetime(row["expires_at"]),
            "consumed_at": _deserialize_datetime(row["consumed_at"]),
            "revoked": bool(row["revoked"]),
        }

    def get_live_token(self, job_id: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT token FROM resume_tokens
                WHERE job_id = ? AND consumed_at IS NULL AND revoked = 0
                ORDER BY created_at DESC LIMIT 1
            """, (job_id,)).fetchone()
        return row["token"] if row else None

    def consume_resume_token(self, token: str) -> bool:
        """
        Mark a token consumed.

        Returns:
            True if this call consumed it, False if it was already consumed or revoked
        """
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE resume_tokens SET consumed_at = ?
                WHERE token = ? AND consumed_at IS NULL AND revoked = 0
            """, (_serialize_datetime(_utcnow()), token))
            return cursor.rowcount == 1

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a job data dictionary."""
        events = [
            {
                "timestamp": _deserialize_datetime(e["timestamp"]),
                "message": e["message"],
            }
            for e in json.loads(row["events"] or "[]")
        ]

        return {
            "id": row["id"],
            "kind": row["kind"],
            "status": row["status"],
            "dry_run": bool(row["dry_run"]),
            "options": json.loads(row["options"] or "{}"),
            "created_by": row["created_by"],
            "created_at": _deserialize_datetime(row["created_at"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
            "total_units": row["total_units"],
            "processed_units": row["processed_units"],
            "checkpoint": row["checkpoint"],
            "current_unit": row["current_unit"],
            "current_file": row["current_file"],
            "total_files": row["total_files"],
            "total_size_bytes": row["total_size_bytes"],
            "cancel_requested": bool(row["cancel_requested"]),
            "staging_dir": Path(row["staging_dir"]) if row["staging_dir"] else None,
            "report": json.loads(row["report"] or "{}"),
            "mangas": json.loads(row["mangas"] or "[]"),
            "message": row["message"],
            "events": events,
        }
