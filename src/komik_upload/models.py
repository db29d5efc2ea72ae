from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class SubmissionKind(str, Enum):
    CHAPTER = "chapter"
    BULK_CHAPTERS = "bulk_chapters"
    BULK_JSON = "bulk_json"
    MULTIPLE_MANGA = "multiple_manga"
    SMART_IMPORT = "smart_import"


class UnitAction(str, Enum):
    CREATE = "create"
    REPLACE = "replace"
    SKIP = "skip"


class UnitOutcome(str, Enum):
    CREATED = "created"
    REPLACED = "replaced"
    SKIPPED = "skipped"
    ERRORED = "errored"


class MangaConflictPolicy(str, Enum):
    # Overwriting a whole title has no meaning, only chapters can be replaced.
    SKIP = "skip"
    ERROR = "error"


class ChapterConflictPolicy(str, Enum):
    SKIP = "skip"
    OVERWRITE = "overwrite"
    ERROR = "error"


class ConflictKind(str, Enum):
    MANGA_EXISTS = "manga_exists"
    CHAPTER_EXISTS = "chapter_exists"


class MangaStatus(str, Enum):
    ONGOING = "ongoing"
    COMPLETED = "completed"
    HIATUS = "hiatus"
    CANCELLED = "cancelled"


class JobEvent(BaseModel):
    timestamp: datetime
    message: str


class AltTitle(BaseModel):
    title: str
    lang: str = "en"


class ChapterDescriptor(BaseModel):
    """One chapter entry of a metadata document."""

    chapter_main: int = Field(ge=1)
    chapter_sub: int = Field(default=0, ge=0)
    chapter_label: Optional[str] = None
    chapter_folder_name: str = Field(min_length=1)
    volume_number: Optional[int] = Field(default=None, ge=1)

    @property
    def label(self) -> str:
        return self.chapter_label or default_chapter_label(self.chapter_main, self.chapter_sub)


class PageFile(BaseModel):
    ordinal: int = Field(ge=1)
    filename: str
    archive_path: str
    byte_size: int = 0
    content_checksum: Optional[str] = None
    staged_path: Optional[str] = None


class ChapterUnit(BaseModel):
    index: int = 0
    manga_slug: str
    chapter_main: int = Field(ge=1)
    chapter_sub: int = Field(default=0, ge=0)
    label: str
    folder_name: str
    volume_number: Optional[int] = None
    pages: List[PageFile] = Field(default_factory=list)
    preview: Optional[PageFile] = None
    action: UnitAction = UnitAction.CREATE
    outcome: Optional[UnitOutcome] = None
    chapter_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def byte_size(self) -> int:
        return sum(page.byte_size for page in self.pages)


class MangaTarget(BaseModel):
    """Manga a submission writes into, plus the metadata needed to create it."""

    slug: str
    title: Optional[str] = None
    type_slug: Optional[str] = None
    status: Optional[str] = None
    description: Optional[str] = None
    genres: List[str] = Field(default_factory=list)
    alt_titles: List[AltTitle] = Field(default_factory=list)
    storage_target: Optional[str] = None
    cover: Optional[PageFile] = None
    create_if_missing: bool = False
    manga_id: Optional[int] = None
    exists: bool = False
    skipped: bool = False

    @property
    def display_title(self) -> str:
        return self.title or self.slug.replace("-", " ").title()


class Conflict(BaseModel):
    kind: ConflictKind
    manga_slug: str
    chapter_main: Optional[int] = None
    chapter_sub: Optional[int] = None
    existing_id: Optional[int] = None
    policy: str


class ValidationSummary(BaseModel):
    total_manga: int = 0
    total_chapters: int = 0


class ValidationReport(BaseModel):
    valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    conflicts: List[Conflict] = Field(default_factory=list)
    summary: ValidationSummary = Field(default_factory=ValidationSummary)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False


class UnitError(BaseModel):
    unit_index: int
    folder_name: str
    error_type: str
    message: str
    timestamp: datetime


class UnitResult(BaseModel):
    index: int
    manga_slug: str
    chapter_main: int
    chapter_sub: int
    label: str
    folder_name: str
    page_count: int
    action: UnitAction
    outcome: Optional[UnitOutcome] = None
    chapter_id: Optional[int] = None
    error: Optional[str] = None


class UploadResponse(BaseModel):
    """Result of a submission, a dry run, a resume or a job lookup.

    Dry runs and real runs share this shape so the two can be diffed.
    """

    upload_id: str
    kind: SubmissionKind
    status: JobStatus
    dry_run: bool = False
    report: ValidationReport = Field(default_factory=ValidationReport)
    units: List[UnitResult] = Field(default_factory=list)
    total_units: int = 0
    processed_units: int = 0
    checkpoint: int = 0
    total_files: int = 0
    total_size_bytes: int = 0
    created: int = 0
    replaced: int = 0
    skipped: int = 0
    errored: int = 0
    partial_failure: bool = False
    errors: List[UnitError] = Field(default_factory=list)
    resume_token: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ProgressSnapshot(BaseModel):
    upload_id: str
    status: JobStatus
    progress: float = 0.0
    current_unit: Optional[int] = None
    current_file: Optional[str] = None
    processed_units: int = 0
    total_units: int = 0
    processed_files: int = 0
    total_files: int = 0
    errors: List[str] = Field(default_factory=list)


class HealthReport(BaseModel):
    status: str
    primary_remote: str
    backup_remotes: List[str]
    mirror_enabled: bool
    temp_dir: str
    max_file_size_mb: int
    allowed_extensions: List[str]
    active_storage_group: Dict[str, Any]
    thumbnail: Dict[str, Any]
    features: Dict[str, bool]


def default_chapter_label(chapter_main: int, chapter_sub: int = 0) -> str:
    if chapter_sub > 0:
        return f"Chapter {chapter_main}.{chapter_sub}"
    return f"Chapter {chapter_main}"
