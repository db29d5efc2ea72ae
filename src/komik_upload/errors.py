"""Error types for the upload orchestration service.

Every error carries the HTTP status it maps to and a short machine-readable
code so the API layer can translate it without inspecting messages.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class UploadError(Exception):
    """Base exception for all upload errors."""

    status_code = 500
    code = "upload_error"

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": str(self), "error_type": self.code}


class SchemaError(UploadError):
    """Malformed or incomplete submission document."""

    status_code = 400
    code = "schema_error"


class ConflictError(UploadError):
    """Existing catalog entity conflicts under an ``error`` policy."""

    status_code = 409
    code = "conflict"

    def __init__(self, message: str, conflicts: Optional[List[Any]] = None) -> None:
        super().__init__(message)
        self.conflicts = conflicts or []

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["conflicts"] = [conflict.model_dump(mode="json") for conflict in self.conflicts]
        return payload


class ArchiveMappingError(UploadError):
    """Declared chapters cannot be resolved to archive entries unambiguously."""

    status_code = 422
    code = "archive_mapping_error"


class TransferError(UploadError):
    """Storage I/O failed for a unit after the retry budget was spent."""

    status_code = 503
    code = "transfer_error"


class UnitError(UploadError):
    """Unit-scoped fault that does not involve the storage backend.

    Raised for problems such as a staged page going missing between planning
    and execution. Tolerated when the job allows partial failure.
    """

    status_code = 500
    code = "unit_error"


class CatalogIntegrityError(UploadError):
    """The catalog no longer matches what the plan assumed. Never resumable."""

    status_code = 500
    code = "catalog_integrity_error"


class Forbidden(UploadError):
    """Missing or invalid operator credential."""

    status_code = 403
    code = "forbidden"


class InvalidResumeToken(UploadError):
    """Resume token is unknown, expired, superseded or already consumed."""

    status_code = 410
    code = "invalid_resume_token"


class JobNotFound(UploadError):
    status_code = 404
    code = "job_not_found"
