"""
Resume tokens and the execution watermark.

A token is issued every time a job is interrupted and is good for exactly
one resume. Issuing a new token revokes any earlier live one for the job.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Iterable, Set

from .database import JobDatabase
from .errors import InvalidResumeToken
from .models import JobStatus

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


class Watermark:
    """
    Lowest unit index below which every unit is committed.

    Parallel execution finishes units out of order; the watermark only
    advances across a contiguous run of finished indices.
    """

    def __init__(self, start: int = 0, done: Iterable[int] = ()) -> None:
        self._lock = Lock()
        self._done: Set[int] = {index for index in done if index >= start}
        self.value = start
        self._advance()

    def mark(self, index: int) -> int:
        with self._lock:
            if index >= self.value:
                self._done.add(index)
                self._advance()
            return self.value

    def _advance(self) -> None:
        while self.value in self._done:
            self._done.discard(self.value)
            self.value += 1


class ResumeManager:
    def __init__(self, database: JobDatabase, token_ttl_hours: float = 48) -> None:
        self.database = database
        self.token_ttl = timedelta(hours=token_ttl_hours)

    def issue(self, job_id: str) -> str:
        token = secrets.token_urlsafe(TOKEN_BYTES)
        self.database.create_resume_token(job_id, token, datetime.now(timezone.utc) + self.token_ttl)
        logger.info(f"Issued resume token for job {job_id}")
        return token

    def redeem(self, token: str) -> str:
        """
        Consume ``token`` and return the job id it resumes.

        Raises:
            InvalidResumeToken: Unknown, expired, superseded or consumed token,
                or a job that is not interrupted.
        """
        record = self.database.get_resume_token(token)
        if record is None:
            raise InvalidResumeToken("Unknown resume token")
        if record["consumed_at"] is not None:
            raise InvalidResumeToken("Resume token has already been used")
        if record["revoked"]:
            raise InvalidResumeToken("Resume token was superseded by a newer one")
        if record["expires_at"] <= datetime.now(timezone.utc):
            raise InvalidResumeToken("Resume token has expired")

        job = self.database.get_job(record["job_id"])
        if job is None or job["status"] != JobStatus.INTERRUPTED.value:
            raise InvalidResumeToken("Job is not awaiting resume")

        # Conditional update; loses to any concurrent redeem of the same token
        if not self.database.consume_resume_token(token):
            raise InvalidResumeToken("Resume token has already been used")
        logger.info(f"Redeemed resume token for job {record['job_id']}")
        return record["job_id"]
