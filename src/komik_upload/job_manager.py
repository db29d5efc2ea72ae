"""
Upload job orchestration and lifecycle management.

This module drives every submission through the same state machine:

    pending -> validating -> planning -> executing -> completed | failed | interrupted

and back from ``interrupted`` to ``executing`` only through a resume token.

- Validating parses the submission and checks attach targets
- Planning maps archive entries to chapter units and resolves conflicts;
  a dry run stops here
- Executing stages pages, then uploads and commits one unit at a time
  (or through a bounded worker pool) and advances the checkpoint

The UploadCoordinator class is the only writer of job state and progress.
Workers in the unit pool return through futures and never touch counters.
"""

from __future__ import annotations

import logging
import shutil
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from omegaconf import DictConfig

from .archive import ArchiveDecoder, build_unit_from_files, stage_files, validate_page_ordinals
from .catalog import CatalogStore
from .configuration import build_health_report
from .conflicts import resolve_conflicts
from .database import JobDatabase
from .errors import (
    ArchiveMappingError,
    CatalogIntegrityError,
    JobNotFound,
    SchemaError,
    TransferError,
    UnitError,
    UploadError,
)
from .key_manager import OperatorCredential, require_operator
from .models import (
    ChapterConflictPolicy,
    ChapterDescriptor,
    ChapterUnit,
    HealthReport,
    JobEvent,
    JobStatus,
    MangaConflictPolicy,
    MangaStatus,
    MangaTarget,
    ProgressSnapshot,
    SubmissionKind,
    UnitAction,
    UnitOutcome,
    UnitResult,
    UploadResponse,
    ValidationReport,
)
from .models import UnitError as UnitErrorRecord
from .progress import ProgressTracker, percent
from .rate_limit import StorageGate
from .resume import ResumeManager, Watermark
from .storage import (
    StorageBackend,
    build_storage,
    chapter_prefix,
    cover_key,
    page_key,
    replacement_prefix,
    thumbnail_key,
)
from .utils import compute_sha256, ensure_directory, is_safe_token, is_valid_slug, normalize_extensions
from .validator import ConfigValidator, Document, document_policies, load_document

logger = logging.getLogger(__name__)

_TRANSITIONS: Dict[JobStatus, set] = {
    JobStatus.PENDING: {JobStatus.VALIDATING, JobStatus.FAILED},
    JobStatus.VALIDATING: {JobStatus.PLANNING, JobStatus.FAILED},
    JobStatus.PLANNING: {JobStatus.EXECUTING, JobStatus.FAILED},
    JobStatus.EXECUTING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.INTERRUPTED},
    JobStatus.INTERRUPTED: {JobStatus.EXECUTING},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

Stager = Callable[[Sequence[ChapterUnit], Sequence[MangaTarget], Path], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobOptions:
    parallel: bool = False
    allow_partial: bool = True
    preserve_filenames: bool = False
    manga_policy: Optional[MangaConflictPolicy] = None
    chapter_policy: ChapterConflictPolicy = ChapterConflictPolicy.SKIP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parallel": self.parallel,
            "allow_partial": self.allow_partial,
            "preserve_filenames": self.preserve_filenames,
            "manga_policy": self.manga_policy.value if self.manga_policy else None,
            "chapter_policy": self.chapter_policy.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobOptions":
        return cls(
            parallel=bool(data.get("parallel", False)),
            allow_partial=bool(data.get("allow_partial", True)),
            preserve_filenames=bool(data.get("preserve_filenames", False)),
            manga_policy=MangaConflictPolicy(data["manga_policy"]) if data.get("manga_policy") else None,
            chapter_policy=ChapterConflictPolicy(data.get("chapter_policy") or ChapterConflictPolicy.SKIP.value),
        )


@dataclass
class JobRecord:
    """
    Internal representation of an upload job with full state.

    Attributes:
        id: Unique job identifier (hex UUID)
        kind: Which submission shape created the job
        status: Current lifecycle state
        dry_run: Planning only, nothing is written
        options: Execution flags and conflict policies
        created_by: Credential id of the submitting operator
        report: Validation report, including detected conflicts
        mangas: Manga targets touched by the plan
        units: Planned chapter units in plan order
        staging_dir: Where staged pages live until the job completes
        checkpoint: Every unit below this index is durably committed
        resume_token: Live token while interrupted
        errors: Unit-scoped errors in the order they happened
        events: Chronological list of job lifecycle events
    """

    id: str
    kind: SubmissionKind
    status: JobStatus
    dry_run: bool
    options: JobOptions
    created_at: datetime
    updated_at: datetime
    created_by: Optional[str] = None
    report: ValidationReport = field(default_factory=ValidationReport)
    mangas: List[MangaTarget] = field(default_factory=list)
    units: List[ChapterUnit] = field(default_factory=list)
    staging_dir: Optional[Path] = None
    processed_units: int = 0
    checkpoint: int = 0
    current_unit: Optional[int] = None
    current_file: Optional[str] = None
    total_files: int = 0
    total_size_bytes: int = 0
    cancel_requested: bool = False
    resume_token: Optional[str] = None
    message: Optional[str] = None
    errors: List[UnitErrorRecord] = field(default_factory=list)
    events: List[JobEvent] = field(default_factory=list)

    def manga(self, slug: str) -> MangaTarget:
        return next(target for target in self.mangas if target.slug == slug)

    def to_response(self) -> UploadResponse:
        counts = Counter(unit.outcome for unit in self.units if unit.outcome)
        return UploadResponse(
            upload_id=self.id,
            kind=self.kind,
            status=self.status,
            dry_run=self.dry_run,
            report=self.report.model_copy(deep=True),
            units=[
                UnitResult(
                    index=unit.index,
                    manga_slug=unit.manga_slug,
                    chapter_main=unit.chapter_main,
                    chapter_sub=unit.chapter_sub,
                    label=unit.label,
                    folder_name=unit.folder_name,
                    page_count=unit.page_count,
                    action=unit.action,
                    outcome=unit.outcome,
                    chapter_id=unit.chapter_id,
                    error=unit.error,
                )
                for unit in self.units
            ],
            total_units=len(self.units),
            processed_units=self.processed_units,
            checkpoint=self.checkpoint,
            total_files=self.total_files,
            total_size_bytes=self.total_size_bytes,
            created=counts[UnitOutcome.CREATED],
            replaced=counts[UnitOutcome.REPLACED],
            skipped=counts[UnitOutcome.SKIPPED],
            errored=counts[UnitOutcome.ERRORED],
            partial_failure=self.status == JobStatus.COMPLETED and counts[UnitOutcome.ERRORED] > 0,
            errors=list(self.errors),
            resume_token=self.resume_token if self.status == JobStatus.INTERRUPTED else None,
            message=self.message,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_progress(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            upload_id=self.id,
            status=self.status,
            progress=percent(self.processed_units, len(self.units), self.status),
            current_unit=self.current_unit,
            current_file=self.current_file,
            processed_units=self.processed_units,
            total_units=len(self.units),
            processed_files=sum(unit.page_count for unit in self.units if unit.outcome),
            total_files=self.total_files,
            errors=[error.message for error in self.errors],
        )

    def to_db(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "options": self.options.to_dict(),
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "total_units": len(self.units),
            "processed_units": self.processed_units,
            "checkpoint": self.checkpoint,
            "current_unit": self.current_unit,
            "current_file": self.current_file,
            "total_files": self.total_files,
            "total_size_bytes": self.total_size_bytes,
            "cancel_requested": self.cancel_requested,
            "staging_dir": self.staging_dir,
            "report": self.report.model_dump(mode="json"),
            "mangas": [target.model_dump(mode="json") for target in self.mangas],
            "message": self.message,
            "events": [event.model_dump() for event in self.events],
        }

    @classmethod
    def from_db(cls, data: Dict[str, Any], units: List[ChapterUnit], errors: List[UnitErrorRecord]) -> "JobRecord":
        return cls(
            id=data["id"],
            kind=SubmissionKind(data["kind"]),
            status=JobStatus(data["status"]),
            dry_run=data["dry_run"],
            options=JobOptions.from_dict(data["options"]),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            created_by=data["created_by"],
            report=ValidationReport.model_validate(data["report"] or {}),
            mangas=[MangaTarget.model_validate(item) for item in data["mangas"]],
            units=units,
            staging_dir=data["staging_dir"],
            processed_units=data["processed_units"],
            checkpoint=data["checkpoint"],
            current_unit=data["current_unit"],
            current_file=data["current_file"],
            total_files=data["total_files"],
            total_size_bytes=data["total_size_bytes"],
            cancel_requested=data["cancel_requested"],
            message=data["message"],
            errors=errors,
            events=[JobEvent(**event) for event in data["events"]],
        )


class UploadCoordinator:
    """
    Central coordinator for upload job lifecycle management.

    Thread Safety:
        ``self._lock`` guards the job registry and flags that other threads
        read (status, cancel_requested). Manga creation is serialised with
        ``self._manga_lock`` so parallel units of one title never race to
        create it.
    """

    def __init__(
        self,
        config: DictConfig,
        storage: StorageBackend,
        catalog: CatalogStore,
        database: JobDatabase,
    ) -> None:
        self.config = config
        self.storage = storage
        self.catalog = catalog
        self.database = database
        self.progress = ProgressTracker()
        self.resumer = ResumeManager(database, float(config.resume.token_ttl_hours))
        self.validator = ConfigValidator(catalog)
        self.staging_root = ensure_directory(Path(str(config.paths.staging_dir)))
        self.allowed_extensions = normalize_extensions(config.upload.allowed_extensions)
        self.max_entry_bytes = int(config.upload.max_file_size_mb) * 1024 * 1024
        self.key_prefix = str(config.storage.key_prefix)
        self.unit_workers = max(1, int(config.execution.max_unit_workers))
        self.default_allow_partial = bool(config.execution.allow_partial)
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = Lock()
        self._manga_lock = Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(config.execution.max_job_workers)),
            thread_name_prefix="upload-job",
        )
        self.recover_orphans()

    @classmethod
    def from_config(
        cls,
        config: DictConfig,
        storage: Optional[StorageBackend] = None,
        catalog: Optional[CatalogStore] = None,
        database: Optional[JobDatabase] = None,
    ) -> "UploadCoordinator":
        if storage is None:
            gate = StorageGate(int(config.storage.max_connections), float(config.storage.requests_per_second))
            storage = build_storage(config, gate)
        return cls(
            config,
            storage=storage,
            catalog=catalog or CatalogStore(Path(str(config.paths.catalog_db))),
            database=database or JobDatabase(Path(str(config.paths.job_db))),
        )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def submit_chapter(
        self,
        credential: Optional[OperatorCredential],
        manga_slug: str,
        descriptor: ChapterDescriptor,
        files: Sequence[Tuple[str, Path]],
        preserve_filenames: bool = False,
        chapter_policy: ChapterConflictPolicy = ChapterConflictPolicy.ERROR,
        dry_run: bool = False,
        wait: bool = True,
    ) -> UploadResponse:
        """Upload one chapter from individually attached page files."""
        require_operator(credential)
        options = self._options(preserve_filenames=preserve_filenames, chapter_policy=chapter_policy)
        record = self._open_job(SubmissionKind.CHAPTER, credential, options, dry_run)
        with self._fail_on_error(record):
            report = ValidationReport()
            target = self._attach_target(manga_slug, report)
            if not is_safe_token(descriptor.chapter_folder_name):
                report.add_error(f"Unsafe chapter_folder_name '{descriptor.chapter_folder_name}'")
            report.summary.total_manga = 1
            report.summary.total_chapters = 1
            if not self._finish_validation(record, report):
                return record.to_response()

            unit = build_unit_from_files(manga_slug, descriptor, files, self.allowed_extensions)
            return self._plan_and_run(record, [target], [unit], lambda units, _, path: stage_files(units, path), wait)

    def submit_bulk_chapters(
        self,
        credential: Optional[OperatorCredential],
        manga_slug: str,
        archive_path: Path,
        start_chapter: Optional[int] = None,
        end_chapter: Optional[int] = None,
        naming_pattern: Optional[str] = None,
        chapter_policy: ChapterConflictPolicy = ChapterConflictPolicy.SKIP,
        dry_run: bool = False,
        parallel: bool = False,
        preserve_filenames: bool = False,
        wait: bool = True,
    ) -> UploadResponse:
        """Upload every chapter folder of an archive into an existing manga."""
        require_operator(credential)
        options = self._options(parallel=parallel, preserve_filenames=preserve_filenames, chapter_policy=chapter_policy)
        record = self._open_job(SubmissionKind.BULK_CHAPTERS, credential, options, dry_run)
        with self._fail_on_error(record):
            report = ValidationReport()
            target = self._attach_target(manga_slug, report)
            if start_chapter is not None and end_chapter is not None and start_chapter > end_chapter:
                report.add_error(f"start_chapter {start_chapter} is after end_chapter {end_chapter}")
            report.summary.total_manga = 1
            if not self._finish_validation(record, report):
                return record.to_response()

            pattern = naming_pattern or str(self.config.upload.default_naming_pattern) or None
            with self._open_archive(archive_path) as decoder:
                units, warnings = decoder.plan_inferred(manga_slug, pattern, start_chapter, end_chapter)
                if not units:
                    raise ArchiveMappingError("No chapter folders found in archive")
                record.report.warnings.extend(warnings)
                record.report.summary.total_chapters = len(units)
                return self._plan_and_run(record, [target], units, decoder.stage, wait)

    def submit_bulk_json(
        self,
        credential: Optional[OperatorCredential],
        metadata: Document,
        archive_path: Path,
        manga_policy: Optional[MangaConflictPolicy] = None,
        chapter_policy: ChapterConflictPolicy = ChapterConflictPolicy.SKIP,
        dry_run: bool = False,
        parallel: bool = False,
        wait: bool = True,
    ) -> UploadResponse:
        """Upload the chapters a metadata document declares, creating the manga when missing."""
        require_operator(credential)
        options = self._options(parallel=parallel, manga_policy=manga_policy, chapter_policy=chapter_policy)
        record = self._open_job(SubmissionKind.BULK_JSON, credential, options, dry_run)
        return self._submit_document(record, metadata, archive_path, wait)

    def submit_multiple_manga(
        self,
        credential: Optional[OperatorCredential],
        config_document: Document,
        archive_path: Path,
        dry_run: bool = False,
        parallel: bool = False,
        wait: bool = True,
    ) -> UploadResponse:
        """
        Upload several titles from one ``manga_list`` config and one archive.

        Policies come from the document's optional ``conflict_strategy``
        block; without one existing titles are attached to and existing
        chapters skipped.
        """
        require_operator(credential)
        data = load_document(config_document)
        if "manga_list" not in data:
            raise SchemaError("Config needs a 'manga_list'")
        manga_policy, chapter_policy = document_policies(data)
        options = self._options(
            parallel=parallel,
            manga_policy=manga_policy,
            chapter_policy=chapter_policy or ChapterConflictPolicy.SKIP,
        )
        record = self._open_job(SubmissionKind.MULTIPLE_MANGA, credential, options, dry_run)
        return self._submit_document(record, data, archive_path, wait)

    def submit_smart_import(
        self,
        credential: Optional[OperatorCredential],
        archive_path: Path,
        storage_target: Optional[str] = None,
        type_slug: Optional[str] = None,
        default_status: Optional[str] = None,
        dry_run: bool = False,
        parallel: bool = False,
        wait: bool = False,
    ) -> UploadResponse:
        """Import an archive whose manga and chapters are inferred from its layout."""
        require_operator(credential)
        options = self._options(parallel=parallel)
        record = self._open_job(SubmissionKind.SMART_IMPORT, credential, options, dry_run)
        with self._fail_on_error(record):
            report = ValidationReport()
            status = default_status or str(self.config.upload.default_status)
            if status not in {item.value for item in MangaStatus}:
                report.add_error(f"Unknown default_status '{status}'")
            if type_slug and not is_valid_slug(type_slug):
                report.add_error(f"Invalid type_slug '{type_slug}'")
            if not self._finish_validation(record, report):
                return record.to_response()

            with self._open_archive(archive_path) as decoder:
                plan = decoder.plan_smart(type_slug, status, storage_target or str(self.config.storage.primary_target))
                record.report.warnings.extend(plan.warnings)
                record.report.summary.total_manga = len(plan.mangas)
                record.report.summary.total_chapters = len(plan.units)
                return self._plan_and_run(record, plan.mangas, plan.units, decoder.stage, wait)

    def validate(
        self,
        credential: Optional[OperatorCredential],
        document: Document,
        check_existing: bool = False,
        manga_policy: Optional[MangaConflictPolicy] = None,
        chapter_policy: ChapterConflictPolicy = ChapterConflictPolicy.SKIP,
    ) -> ValidationReport:
        require_operator(credential)
        return self.validator.validate_document(document, check_existing, manga_policy, chapter_policy)

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    def get_job(self, credential: Optional[OperatorCredential], job_id: str) -> UploadResponse:
        require_operator(credential)
        with self._lock:
            record = self._jobs.get(job_id)
            if record is not None:
                return record.to_response()
        return self._load_record(job_id).to_response()

    def get_progress(self, credential: Optional[OperatorCredential], job_id: str) -> ProgressSnapshot:
        require_operator(credential)
        snapshot = self.progress.snapshot(job_id)
        if snapshot is not None:
            return snapshot
        with self._lock:
            record = self._jobs.get(job_id)
        if record is None:
            record = self._load_record(job_id)
        return record.to_progress()

    def cancel(self, credential: Optional[OperatorCredential], job_id: str) -> bool:
        """
        Ask a running job to stop at the next unit boundary.

        Returns:
            True if the request was registered, False if the job is not executing
        """
        require_operator(credential)
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                if self.database.get_job(job_id) is None:
                    raise JobNotFound(f"Job {job_id} not found")
                return False
            if record.status != JobStatus.EXECUTING:
                return False
            record.cancel_requested = True
        self.database.update_job(job_id, cancel_requested=True)
        self._append_event(record, "Cancellation requested.")
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def resume(self, credential: Optional[OperatorCredential], token: str, wait: bool = True) -> UploadResponse:
        """
        Continue an interrupted job from its checkpoint.

        Raises:
            InvalidResumeToken: See ResumeManager.redeem
        """
        require_operator(credential)
        job_id = self.resumer.redeem(token)
        with self._lock:
            record = self._jobs.get(job_id)
        if record is None:
            record = self._load_record(job_id)
            with self._lock:
                self._jobs[job_id] = record

        record.resume_token = None
        record.cancel_requested = False
        self._transition(record, JobStatus.EXECUTING, f"Resumed from checkpoint {record.checkpoint}.")
        return self._start_execution(record, wait)

    def health(self) -> HealthReport:
        return build_health_report(self.config, self.storage.is_ready())

    def recover_orphans(self) -> None:
        """
        Settle jobs a previous process left mid-flight.

        Executing jobs become interrupted with a fresh resume token; jobs that
        never reached execution are failed.
        """
        for data in self.database.list_jobs_by_status(JobStatus.EXECUTING):
            record = self._load_record(data["id"])
            record.cancel_requested = False
            self._transition(record, JobStatus.INTERRUPTED, "Process stopped during execution; resumable.")
            record.resume_token = self.resumer.issue(record.id)
            self._release(record)
            logger.warning(f"Recovered orphaned job {record.id} as interrupted")

        for status in (JobStatus.PENDING, JobStatus.VALIDATING, JobStatus.PLANNING):
            for data in self.database.list_jobs_by_status(status):
                if data["dry_run"] and status == JobStatus.PLANNING:
                    continue
                record = self._load_record(data["id"])
                self._transition(record, JobStatus.FAILED, "Process stopped before execution.")
                self._cleanup_staging(record)
                self._release(record)
                logger.warning(f"Recovered orphaned job {record.id} as failed")

    # ------------------------------------------------------------------
    # Validation and planning
    # ------------------------------------------------------------------

    def _options(self, **kwargs: Any) -> JobOptions:
        return JobOptions(allow_partial=self.default_allow_partial, **kwargs)

    def _open_job(
        self,
        kind: SubmissionKind,
        credential: Optional[OperatorCredential],
        options: JobOptions,
        dry_run: bool,
    ) -> JobRecord:
        credential = require_operator(credential)
        now = _utcnow()
        record = JobRecord(
            id=uuid4().hex,
            kind=kind,
            status=JobStatus.PENDING,
            dry_run=dry_run,
            options=options,
            created_at=now,
            updated_at=now,
            created_by=credential.id,
        )
        record.events.append(JobEvent(timestamp=now, message="Job registered."))
        with self._lock:
            self._jobs[record.id] = record
        self.database.save_job(record.to_db())
        logger.info(f"Job {record.id} ({kind.value}) registered by {credential.owner}")
        self._transition(record, JobStatus.VALIDATING)
        return record

    @contextmanager
    def _fail_on_error(self, record: JobRecord) -> Iterator[None]:
        """Fail the job on any error raised before execution starts, then re-raise."""
        try:
            yield
        except UploadError as exc:
            if record.status in (JobStatus.PENDING, JobStatus.VALIDATING, JobStatus.PLANNING):
                if isinstance(exc, SchemaError):
                    record.report.add_error(str(exc))
                self._fail(record, f"{exc.code}: {exc}")
            raise
        except Exception as exc:
            if record.status in (JobStatus.PENDING, JobStatus.VALIDATING, JobStatus.PLANNING):
                self._fail(record, f"Unexpected error: {exc}")
            raise

    def _attach_target(self, manga_slug: str, report: ValidationReport) -> MangaTarget:
        target = MangaTarget(slug=manga_slug)
        if not is_valid_slug(manga_slug):
            report.add_error(f"Invalid manga slug '{manga_slug}'")
            return target
        row = self.catalog.get_manga(manga_slug)
        if row is None:
            report.add_error(f"Manga '{manga_slug}' does not exist")
        else:
            target.exists = True
            target.manga_id = row["id"]
        return target

    def _finish_validation(self, record: JobRecord, report: ValidationReport) -> bool:
        record.report = report
        if report.errors:
            self._fail(record, f"Validation failed with {len(report.errors)} error(s).")
            return False
        self._transition(record, JobStatus.PLANNING)
        return True

    def _open_archive(self, archive_path: Path) -> ArchiveDecoder:
        return ArchiveDecoder(archive_path, self.allowed_extensions, max_entry_bytes=self.max_entry_bytes)

    def _submit_document(self, record: JobRecord, document: Document, archive_path: Path, wait: bool) -> UploadResponse:
        with self._fail_on_error(record):
            parsed = self.validator.parse(document)
            for target in parsed.mangas:
                target.create_if_missing = True
            if not self._finish_validation(record, parsed.report):
                return record.to_response()

            with self._open_archive(archive_path) as decoder:
                top_dirs = set(decoder.top_level_dirs())
                units: List[ChapterUnit] = []
                problems: List[str] = []
                for target in parsed.mangas:
                    scope = target.slug if parsed.multi and target.slug in top_dirs else None
                    try:
                        units.extend(decoder.plan_explicit(target.slug, parsed.chapters[target.slug], scope))
                    except ArchiveMappingError as exc:
                        problems.append(str(exc))
                if problems:
                    raise ArchiveMappingError("; ".join(problems))
                return self._plan_and_run(record, parsed.mangas, units, decoder.stage, wait)

    def _plan_and_run(
        self,
        record: JobRecord,
        mangas: List[MangaTarget],
        units: List[ChapterUnit],
        stager: Stager,
        wait: bool,
    ) -> UploadResponse:
        for index, unit in enumerate(units):
            unit.index = index
        record.mangas = mangas
        record.units = units
        record.total_files = sum(unit.page_count for unit in units)
        record.total_size_bytes = sum(unit.byte_size for unit in units)

        try:
            record.report.conflicts = resolve_conflicts(
                mangas, units, self.catalog, record.options.manga_policy, record.options.chapter_policy
            )
        except UploadError as exc:
            record.report.conflicts = list(getattr(exc, "conflicts", []))
            raise

        if record.dry_run:
            record.message = "Dry run: plan computed, nothing written."
            self.database.save_units(record.id, units)
            self._append_event(record, record.message)
            self._save(record)
            self._cleanup_staging(record)
            self._release(record)
            return record.to_response()

        record.staging_dir = ensure_directory(self.staging_root / record.id)
        stager(units, mangas, record.staging_dir)
        record.total_size_bytes = sum(unit.byte_size for unit in units)
        self.database.save_units(record.id, units)
        self._transition(record, JobStatus.EXECUTING, f"Planned {len(units)} unit(s).")
        return self._start_execution(record, wait)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _start_execution(self, record: JobRecord, wait: bool) -> UploadResponse:
        self.progress.start(
            record.id,
            record.status,
            total_units=len(record.units),
            total_files=record.total_files,
            processed_units=record.processed_units,
        )
        if wait:
            self._execute(record.id)
        else:
            self._executor.submit(self._execute, record.id)
        with self._lock:
            return record.to_response()

    def _execute(self, job_id: str) -> None:
        """
        Run the remaining units of a job (runs in the caller or a job thread).

        Errors end up as job state, never as exceptions to the caller.
        """
        with self._lock:
            record = self._jobs[job_id]
        try:
            finished = self._execute_units(record)
        except TransferError as exc:
            self._interrupt(record, f"Storage transfer failed: {exc}")
        except CatalogIntegrityError as exc:
            self._fail(record, f"Catalog integrity error: {exc}")
        except UnitError as exc:
            self._fail(record, f"Unit failed: {exc}")
        except Exception as exc:
            logger.exception(f"Job {job_id} crashed")
            self._fail(record, f"Unexpected error: {exc}")
        else:
            if finished:
                self._complete(record)
            else:
                self._interrupt(record, "Cancelled by operator.")

    def _execute_units(self, record: JobRecord) -> bool:
        committed = [unit.index for unit in record.units if unit.outcome is not None]
        watermark = Watermark(record.checkpoint, committed)
        pending = [unit for unit in record.units if unit.index >= record.checkpoint and unit.outcome is None]
        logger.info(f"Job {record.id} executing {len(pending)} unit(s) from checkpoint {record.checkpoint}")

        if record.options.parallel and len(pending) > 1:
            self._run_parallel(record, pending, watermark)
        else:
            self._run_sequential(record, pending, watermark)
        return all(unit.outcome is not None for unit in record.units)

    def _run_sequential(self, record: JobRecord, pending: List[ChapterUnit], watermark: Watermark) -> None:
        for unit in pending:
            if self._cancel_requested(record):
                return
            self._publish(record, current_unit=unit.index, current_file=unit.folder_name)
            try:
                self._execute_unit(record, unit)
            except (UnitError, TransferError) as exc:
                self._record_error(record, unit, exc)
                if isinstance(exc, TransferError) or not record.options.allow_partial:
                    raise
            self._commit_outcome(record, unit, watermark)

    def _run_parallel(self, record: JobRecord, pending: List[ChapterUnit], watermark: Watermark) -> None:
        remaining = iter(pending)
        in_flight: Dict[Future, ChapterUnit] = {}
        failure: Optional[BaseException] = None

        with ThreadPoolExecutor(max_workers=self.unit_workers, thread_name_prefix=f"unit-{record.id[:8]}") as pool:

            def launch() -> None:
                # Lazy submission so a cancel stops new units from starting
                while len(in_flight) < self.unit_workers and not self._cancel_requested(record):
                    unit = next(remaining, None)
                    if unit is None:
                        return
                    in_flight[pool.submit(self._execute_unit, record, unit)] = unit

            launch()
            while in_flight:
                done, _ = wait_for(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    unit = in_flight.pop(future)
                    try:
                        future.result()
                    except (UnitError, TransferError, CatalogIntegrityError) as exc:
                        if not isinstance(exc, CatalogIntegrityError):
                            self._record_error(record, unit, exc)
                        fatal = not isinstance(exc, UnitError) or not record.options.allow_partial
                        if fatal and failure is None:
                            failure = exc
                    if unit.outcome is not None:
                        self._commit_outcome(record, unit, watermark)
                    self._publish(record, current_unit=unit.index, current_file=unit.folder_name)
                if failure is None:
                    launch()

        if failure is not None:
            raise failure

    def _execute_unit(self, record: JobRecord, unit: ChapterUnit) -> None:
        """
        Upload, commit and clean up one chapter. Runs on a worker thread in parallel mode.

        Order: pages go to storage first, then the catalog swaps the page rows
        in one transaction, then objects the chapter no longer references are
        deleted. Repeating this for the same unit converges to the same state.
        A replacement writes under its own job-scoped prefix so the keys the
        catalog still points at are never overwritten before the swap.
        """
        if unit.action == UnitAction.SKIP:
            unit.outcome = UnitOutcome.SKIPPED
            return

        where = f"{unit.manga_slug}/{unit.folder_name}"
        try:
            validate_page_ordinals(unit.pages, where)
        except ArchiveMappingError as exc:
            raise UnitError(str(exc)) from exc
        for page in unit.pages:
            staged = Path(page.staged_path) if page.staged_path else None
            if staged is None or not staged.is_file():
                raise UnitError(f"{where}: staged page {page.filename} is missing")
            if page.content_checksum and compute_sha256(staged) != page.content_checksum:
                raise UnitError(f"{where}: staged page {page.filename} failed its checksum")

        manga_id = self._ensure_manga(record, unit.manga_slug)
        prefix = chapter_prefix(self.key_prefix, unit.manga_slug, unit.chapter_main, unit.chapter_sub)
        target = replacement_prefix(prefix, record.id) if unit.action == UnitAction.REPLACE else prefix
        rows = []
        for page in unit.pages:
            key = page_key(target, page.ordinal, page.filename, record.options.preserve_filenames)
            self.storage.put_file(Path(page.staged_path), key)
            rows.append({
                "ordinal": page.ordinal,
                "storage_key": key,
                "filename": page.filename,
                "byte_size": page.byte_size,
                "checksum": page.content_checksum,
            })

        thumb = None
        if unit.preview is not None and unit.preview.staged_path:
            thumb = thumbnail_key(target, unit.preview.filename)
            self.storage.put_file(Path(unit.preview.staged_path), thumb)

        chapter_id, old_keys = self.catalog.commit_chapter(
            manga_id,
            unit,
            rows,
            job_id=record.id,
            replace=unit.action == UnitAction.REPLACE,
            thumbnail_key=thumb,
        )
        current = {row["storage_key"] for row in rows} | ({thumb} if thumb else set())
        stale = (set(old_keys) | set(self.storage.list_keys(prefix))) - current
        self.storage.delete_keys(stale)

        unit.chapter_id = chapter_id
        unit.error = None
        unit.outcome = UnitOutcome.REPLACED if unit.action == UnitAction.REPLACE else UnitOutcome.CREATED
        logger.info(f"Job {record.id}: {where} {unit.outcome.value} ({unit.page_count} pages, {len(stale)} stale removed)")

    def _ensure_manga(self, record: JobRecord, slug: str) -> int:
        with self._manga_lock:
            target = record.manga(slug)
            if target.manga_id is not None:
                return target.manga_id
            if not target.create_if_missing:
                raise CatalogIntegrityError(f"Manga '{slug}' is not in the catalog")

            manga_id = self.catalog.create_manga(target, record.id, attach_existing=record.options.manga_policy is None)
            if target.cover is not None and target.cover.staged_path:
                key = cover_key(self.key_prefix, slug, target.cover.filename)
                self.storage.put_file(Path(target.cover.staged_path), key)
                self.catalog.set_manga_cover(manga_id, key)
            target.manga_id = manga_id
            self.database.update_job(record.id, mangas=[item.model_dump(mode="json") for item in record.mangas])
            return manga_id

    def _commit_outcome(self, record: JobRecord, unit: ChapterUnit, watermark: Watermark) -> None:
        checkpoint = watermark.mark(unit.index)
        with self._lock:
            record.checkpoint = checkpoint
            record.processed_units += 1
            record.updated_at = _utcnow()
        self.database.record_unit_outcome(record.id, unit, checkpoint, record.processed_units)
        self._publish(record)

    def _record_error(self, record: JobRecord, unit: ChapterUnit, exc: UploadError) -> None:
        error = UnitErrorRecord(
            unit_index=unit.index,
            folder_name=unit.folder_name,
            error_type=exc.code,
            message=str(exc),
            timestamp=_utcnow(),
        )
        unit.error = str(exc)
        if isinstance(exc, UnitError):
            unit.outcome = UnitOutcome.ERRORED
        with self._lock:
            record.errors.append(error)
        self.database.add_error(record.id, error)
        self.database.update_unit_error(record.id, unit.index, unit.error)
        self.progress.publish(record.id, error=error.message)
        logger.warning(f"Job {record.id} unit {unit.index} ({unit.folder_name}) {exc.code}: {exc}")

    def _cancel_requested(self, record: JobRecord) -> bool:
        with self._lock:
            return record.cancel_requested

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _publish(self, record: JobRecord, **fields: Any) -> None:
        with self._lock:
            for name, value in fields.items():
                setattr(record, name, value)
            snapshot = record.to_progress()
        self.progress.publish(
            record.id,
            status=snapshot.status,
            current_unit=snapshot.current_unit,
            current_file=snapshot.current_file,
            processed_units=snapshot.processed_units,
            total_units=snapshot.total_units,
            processed_files=snapshot.processed_files,
            total_files=snapshot.total_files,
        )

    def _transition(self, record: JobRecord, status: JobStatus, message: Optional[str] = None) -> None:
        with self._lock:
            if status not in _TRANSITIONS[record.status]:
                raise RuntimeError(f"Job {record.id}: illegal transition {record.status.value} -> {status.value}")
            previous = record.status
            record.status = status
            record.updated_at = _utcnow()
            if message:
                record.message = message
            record.events.append(JobEvent(timestamp=record.updated_at, message=message or f"Status changed to {status.value}."))
        self._save(record)
        self._publish(record)
        logger.info(f"Job {record.id}: {previous.value} -> {status.value}{f' ({message})' if message else ''}")

    def _interrupt(self, record: JobRecord, reason: str) -> None:
        self._transition(record, JobStatus.INTERRUPTED, f"{reason} Resume from unit {record.checkpoint}.")
        token = self.resumer.issue(record.id)
        with self._lock:
            record.resume_token = token
        self._release(record)

    def _fail(self, record: JobRecord, reason: str) -> None:
        self._transition(record, JobStatus.FAILED, reason)
        self._cleanup_staging(record)
        self._release(record)

    def _complete(self, record: JobRecord) -> None:
        errored = sum(1 for unit in record.units if unit.outcome == UnitOutcome.ERRORED)
        message = f"Completed with {errored} errored unit(s)." if errored else "Completed."
        self._transition(record, JobStatus.COMPLETED, message)
        self._cleanup_staging(record)
        self._release(record)

    def _release(self, record: JobRecord) -> None:
        """Drop a settled job from memory; queries fall back to the database."""
        with self._lock:
            self._jobs.pop(record.id, None)
        self.progress.discard(record.id)

    def _append_event(self, record: JobRecord, message: str) -> None:
        event = JobEvent(timestamp=_utcnow(), message=message)
        with self._lock:
            record.events.append(event)
            record.updated_at = event.timestamp
        self.database.add_job_event(record.id, message, event.timestamp)

    def _save(self, record: JobRecord) -> None:
        with self._lock:
            data = record.to_db()
        self.database.save_job(data)

    def _cleanup_staging(self, record: JobRecord) -> None:
        if record.staging_dir and Path(record.staging_dir).exists():
            shutil.rmtree(record.staging_dir, ignore_errors=True)
            logger.debug(f"Removed staging for job {record.id}")

    def _load_record(self, job_id: str) -> JobRecord:
        data = self.database.get_job(job_id)
        if data is None:
            raise JobNotFound(f"Job {job_id} not found")
        record = JobRecord.from_db(data, self.database.get_units(job_id), self.database.get_errors(job_id))
        if record.status == JobStatus.INTERRUPTED:
            record.resume_token = self.database.get_live_token(job_id)
        return record
