"""
Tests for progress snapshots, the execution watermark and resume tokens.
"""

from datetime import datetime, timedelta, timezone

import pytest

from komik_upload.errors import InvalidResumeToken
from komik_upload.models import JobStatus
from komik_upload.progress import ProgressTracker, percent
from komik_upload.resume import ResumeManager, Watermark


class TestPercent:
    def test_ratio(self):
        assert percent(1, 3, JobStatus.EXECUTING) == 33.33

    def test_clamped(self):
        assert percent(5, 4, JobStatus.EXECUTING) == 100.0

    def test_empty_job(self):
        assert percent(0, 0, JobStatus.COMPLETED) == 100.0
        assert percent(0, 0, JobStatus.EXECUTING) == 0.0


class TestProgressTracker:
    def test_counters_never_move_backwards(self):
        tracker = ProgressTracker()
        tracker.start("job", JobStatus.EXECUTING, total_units=4, total_files=8)

        tracker.publish("job", processed_units=3, processed_files=6)
        snapshot = tracker.publish("job", processed_units=2, processed_files=4)

        assert snapshot.processed_units == 3
        assert snapshot.processed_files == 6
        assert snapshot.progress == 75.0

    def test_restart_keeps_counters(self):
        """A resumed job starts from what was already processed."""
        tracker = ProgressTracker()
        tracker.start("job", JobStatus.EXECUTING, total_units=4, total_files=8)
        tracker.publish("job", processed_units=2, error="unit 1 failed")

        snapshot = tracker.start("job", JobStatus.EXECUTING, total_units=4, total_files=8)

        assert snapshot.processed_units == 2
        assert snapshot.errors == ["unit 1 failed"]

    def test_snapshots_are_copies(self):
        tracker = ProgressTracker()
        tracker.start("job", JobStatus.EXECUTING, total_units=1, total_files=1)

        tracker.snapshot("job").errors.append("mutated")

        assert tracker.snapshot("job").errors == []

    def test_discard(self):
        tracker = ProgressTracker()
        tracker.start("job", JobStatus.PENDING, total_units=0, total_files=0)
        tracker.discard("job")

        assert tracker.snapshot("job") is None


class TestWatermark:
    def test_advances_only_over_contiguous_runs(self):
        watermark = Watermark()

        assert watermark.mark(1) == 0
        assert watermark.mark(2) == 0
        assert watermark.mark(0) == 3

    def test_resumes_from_previous_state(self):
        watermark = Watermark(start=2, done=[0, 3])

        assert watermark.value == 2
        assert watermark.mark(2) == 4

    def test_ignores_indices_below_value(self):
        watermark = Watermark(start=5)

        assert watermark.mark(1) == 5


class TestResumeManager:
    @pytest.fixture
    def interrupted(self, database):
        database.save_job({
            "id": "job-1",
            "kind": "bulk_json",
            "status": JobStatus.INTERRUPTED.value,
            "created_at": datetime.now(timezone.utc),
            "updated_at": datetime.now(timezone.utc),
        })
        return "job-1"

    def test_token_is_single_use(self, database, interrupted):
        manager = ResumeManager(database)
        token = manager.issue(interrupted)

        assert manager.redeem(token) == interrupted
        with pytest.raises(InvalidResumeToken, match="already been used"):
            manager.redeem(token)

    def test_new_token_supersedes_old(self, database, interrupted):
        manager = ResumeManager(database)
        first = manager.issue(interrupted)
        second = manager.issue(interrupted)

        with pytest.raises(InvalidResumeToken, match="superseded"):
            manager.redeem(first)
        assert manager.redeem(second) == interrupted

    def test_expired_token(self, database, interrupted):
        database.create_resume_token(interrupted, "old-token", datetime.now(timezone.utc) - timedelta(hours=1))

        with pytest.raises(InvalidResumeToken, match="expired"):
            ResumeManager(database).redeem("old-token")

    def test_unknown_token(self, database):
        with pytest.raises(InvalidResumeToken) as info:
            ResumeManager(database).redeem("nope")

        assert info.value.status_code == 410

    def test_job_must_be_interrupted(self, database, interrupted):
        manager = ResumeManager(database)
        token = manager.issue(interrupted)
        database.update_job(interrupted, status=JobStatus.COMPLETED.value)

        with pytest.raises(InvalidResumeToken, match="not awaiting resume"):
            manager.redeem(token)
