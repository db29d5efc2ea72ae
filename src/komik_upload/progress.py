"""Live progress counters, written by one thread per job and read by anyone."""

from __future__ import annotations

from threading import Lock
from typing import Any, Dict, Optional

from .models import JobStatus, ProgressSnapshot


def percent(processed: int, total: int, status: JobStatus) -> float:
    if total <= 0:
        return 100.0 if status == JobStatus.COMPLETED else 0.0
    return round(min(processed, total) * 100.0 / total, 2)


class ProgressTracker:
    """
    In-memory progress snapshots keyed by job id.

    Only the coordinator thread that owns a job's execution publishes for
    it. ``processed_units`` and ``processed_files`` never move backwards,
    even if a stale value is published.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._snapshots: Dict[str, ProgressSnapshot] = {}

    def start(
        self,
        job_id: str,
        status: JobStatus,
        total_units: int,
        total_files: int,
        processed_units: int = 0,
        processed_files: int = 0,
    ) -> ProgressSnapshot:
        with self._lock:
            previous = self._snapshots.get(job_id)
            snapshot = ProgressSnapshot(
                upload_id=job_id,
                status=status,
                total_units=total_units,
                total_files=total_files,
                processed_units=max(processed_units, previous.processed_units if previous else 0),
                processed_files=max(processed_files, previous.processed_files if previous else 0),
                errors=list(previous.errors) if previous else [],
            )
            snapshot.progress = percent(snapshot.processed_units, total_units, status)
            self._snapshots[job_id] = snapshot
            return snapshot.model_copy(deep=True)

    def publish(self, job_id: str, error: Optional[str] = None, **fields: Any) -> ProgressSnapshot:
        with self._lock:
            current = self._snapshots.get(job_id)
            if current is None:
                current = ProgressSnapshot(upload_id=job_id, status=fields.get("status", JobStatus.PENDING))
            update = dict(fields)
            for counter in ("processed_units", "processed_files"):
                if counter in update:
                    update[counter] = max(update[counter], getattr(current, counter))
            snapshot = current.model_copy(update=update)
            if error:
                snapshot.errors = [*current.errors, error]
            snapshot.progress = percent(snapshot.processed_units, snapshot.total_units, snapshot.status)
            self._snapshots[job_id] = snapshot
            return snapshot.model_copy(deep=True)

    def snapshot(self, job_id: str) -> Optional[ProgressSnapshot]:
        with self._lock:
            snapshot = self._snapshots.get(job_id)
            return snapshot.model_copy(deep=True) if snapshot else None

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._snapshots.pop(job_id, None)
