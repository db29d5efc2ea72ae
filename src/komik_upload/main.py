from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .configuration import make_runtime_config
from .errors import SchemaError, UploadError
from .job_manager import UploadCoordinator
from .key_manager import KeyManager, OperatorCredential, require_operator
from .models import (
    ChapterConflictPolicy,
    ChapterDescriptor,
    HealthReport,
    JobStatus,
    MangaConflictPolicy,
    ProgressSnapshot,
    UploadResponse,
    ValidationReport,
)
from .utils import ensure_directory, sanitize_label, split_extension
from .validator import document_policies, load_document

logger = logging.getLogger(__name__)

E = TypeVar("E", ChapterConflictPolicy, MangaConflictPolicy)

CHUNK = 8 * 1024 * 1024

config = make_runtime_config()
key_manager = KeyManager(str(config.paths.key_db), master_key=str(config.auth.master_key))
coordinator = UploadCoordinator.from_config(config)
upload_root = ensure_directory(Path(str(config.paths.upload_dir)))

app = FastAPI(title="Komik Upload API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

router = APIRouter(prefix="/api/v1/upload")


def get_coordinator() -> UploadCoordinator:
    return coordinator


def get_key_manager() -> KeyManager:
    return key_manager


def get_credential(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
    keys: KeyManager = Depends(get_key_manager),
) -> Optional[OperatorCredential]:
    """Resolve the caller's key; the coordinator decides whether it may act."""
    raw = x_api_key
    if authorization and authorization.lower().startswith("bearer "):
        raw = authorization[7:].strip()
    return keys.validate_key(raw)


def require_credential(credential: Optional[OperatorCredential] = Depends(get_credential)) -> OperatorCredential:
    """Reject the request before any form field or upload is looked at."""
    return require_operator(credential)


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


def _respond(response: UploadResponse) -> JSONResponse:
    if response.status == JobStatus.FAILED:
        status_code = 400 if not response.report.valid else 500
    elif response.status in (JobStatus.EXECUTING, JobStatus.INTERRUPTED):
        status_code = 202
    else:
        status_code = 200
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


def _parse_policy(enum_cls: Type[E], value: Optional[str], field: str) -> Optional[E]:
    if not value or value == "attach":
        return None
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in enum_cls)
        raise SchemaError(f"Invalid {field} '{value}' (allowed: {allowed})") from exc


def _safe_filename(filename: str, fallback: str) -> str:
    stem, extension = split_extension(Path(filename or "").name)
    return f"{sanitize_label(stem, fallback)}{extension}"


async def _store_upload(file: UploadFile, directory: Path, filename: str, limit_bytes: Optional[int] = None) -> Path:
    destination = directory / filename
    written = 0
    with destination.open("wb") as buffer:
        while chunk := await file.read(CHUNK):
            written += len(chunk)
            if limit_bytes is not None and written > limit_bytes:
                raise HTTPException(status_code=413, detail=f"{file.filename} exceeds the maximum file size")
            buffer.write(chunk)
    await file.close()
    return destination


def _request_dir() -> Path:
    return ensure_directory(upload_root / uuid4().hex)


async def _store_archive(zip_file: UploadFile, directory: Path) -> Path:
    if not (zip_file.filename or "").lower().endswith(".zip"):
        raise SchemaError("zip_file must be a .zip archive")
    return await _store_upload(zip_file, directory, "archive.zip")


@router.post("/chapter")
async def upload_chapter(
    manga_slug: str = Form(...),
    chapter_main: int = Form(...),
    chapter_sub: int = Form(0),
    chapter_label: Optional[str] = Form(None),
    chapter_folder_name: Optional[str] = Form(None),
    volume_number: Optional[int] = Form(None),
    preserve_filenames: bool = Form(False),
    conflict_strategy: str = Form(ChapterConflictPolicy.ERROR.value),
    dry_run: bool = Form(False),
    files: List[UploadFile] = File(...),
    credential: OperatorCredential = Depends(require_credential),
    manager: UploadCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    policy = _parse_policy(ChapterConflictPolicy, conflict_strategy, "conflict_strategy") or ChapterConflictPolicy.ERROR
    try:
        descriptor = ChapterDescriptor(
            chapter_main=chapter_main,
            chapter_sub=chapter_sub,
            chapter_label=chapter_label or None,
            chapter_folder_name=chapter_folder_name or f"chapter-{chapter_main}" + (f"-{chapter_sub}" if chapter_sub else ""),
            volume_number=volume_number,
        )
    except ValidationError as exc:
        raise SchemaError(f"Invalid chapter fields: {exc.errors()[0]['msg']}") from exc

    directory = _request_dir()
    try:
        limit = int(manager.config.upload.max_file_size_mb) * 1024 * 1024
        stored = []
        for position, upload in enumerate(files):
            name = Path(upload.filename or "").name
            path = await _store_upload(upload, directory, f"{position:04d}-{_safe_filename(name, 'page')}", limit)
            stored.append((name, path))
        response = await run_in_threadpool(
            manager.submit_chapter,
            credential,
            manga_slug,
            descriptor,
            stored,
            preserve_filenames=preserve_filenames,
            chapter_policy=policy,
            dry_run=dry_run,
        )
    finally:
        shutil.rmtree(directory, ignore_errors=True)
    return _respond(response)


@router.post("/bulk-chapters")
async def upload_bulk_chapters(
    manga_slug: str = Form(...),
    zip_file: UploadFile = File(...),
    start_chapter: Optional[int] = Form(None),
    end_chapter: Optional[int] = Form(None),
    naming_pattern: Optional[str] = Form(None),
    conflict_strategy: str = Form(ChapterConflictPolicy.SKIP.value),
    dry_run: bool = Form(False),
    parallel: bool = Form(False),
    preserve_filenames: bool = Form(False),
    wait: bool = Form(True),
    credential: OperatorCredential = Depends(require_credential),
    manager: UploadCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    policy = _parse_policy(ChapterConflictPolicy, conflict_strategy, "conflict_strategy") or ChapterConflictPolicy.SKIP
    directory = _request_dir()
    try:
        archive = await _store_archive(zip_file, directory)
        response = await run_in_threadpool(
            manager.submit_bulk_chapters,
            credential,
            manga_slug,
            archive,
            start_chapter=start_chapter,
            end_chapter=end_chapter,
            naming_pattern=naming_pattern or None,
            chapter_policy=policy,
            dry_run=dry_run,
            parallel=parallel,
            preserve_filenames=preserve_filenames,
            wait=wait,
        )
    finally:
        shutil.rmtree(directory, ignore_errors=True)
    return _respond(response)


@router.post("/bulk-json")
async def upload_bulk_json(
    metadata: str = Form(...),
    zip_file: UploadFile = File(...),
    conflict_strategy_manga: Optional[str] = Form(None),
    conflict_strategy_chapter: str = Form(ChapterConflictPolicy.SKIP.value),
    dry_run: bool = Form(False),
    parallel: bool = Form(False),
    wait: bool = Form(True),
    credential: OperatorCredential = Depends(require_credential),
    manager: UploadCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    manga_policy = _parse_policy(MangaConflictPolicy, conflict_strategy_manga, "conflict_strategy_manga")
    chapter_policy = _parse_policy(ChapterConflictPolicy, conflict_strategy_chapter, "conflict_strategy_chapter")
    directory = _request_dir()
    try:
        archive = await _store_archive(zip_file, directory)
        response = await run_in_threadpool(
            manager.submit_bulk_json,
            credential,
            metadata,
            archive,
            manga_policy=manga_policy,
            chapter_policy=chapter_policy or ChapterConflictPolicy.SKIP,
            dry_run=dry_run,
            parallel=parallel,
            wait=wait,
        )
    finally:
        shutil.rmtree(directory, ignore_errors=True)
    return _respond(response)


@router.post("/multiple-manga")
async def upload_multiple_manga(
    config: str = Form(...),
    zip_file: UploadFile = File(...),
    dry_run: bool = Form(False),
    parallel: bool = Form(False),
    wait: bool = Form(True),
    credential: OperatorCredential = Depends(require_credential),
    manager: UploadCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    directory = _request_dir()
    try:
        archive = await _store_archive(zip_file, directory)
        response = await run_in_threadpool(
            manager.submit_multiple_manga,
            credential,
            config,
            archive,
            dry_run=dry_run,
            parallel=parallel,
            wait=wait,
        )
    finally:
        shutil.rmtree(directory, ignore_errors=True)
    return _respond(response)


@router.post("/smart-import")
async def smart_import(
    zip_file: UploadFile = File(...),
    storage_id: Optional[str] = Form(None),
    type_slug: Optional[str] = Form(None),
    default_status: Optional[str] = Form(None),
    dry_run: bool = Form(False),
    parallel: bool = Form(False),
    wait: bool = Form(False),
    credential: OperatorCredential = Depends(require_credential),
    manager: UploadCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    directory = _request_dir()
    try:
        archive = await _store_archive(zip_file, directory)
        response = await run_in_threadpool(
            manager.submit_smart_import,
            credential,
            archive,
            storage_target=storage_id or None,
            type_slug=type_slug or None,
            default_status=default_status or None,
            dry_run=dry_run,
            parallel=parallel,
            wait=wait,
        )
    finally:
        shutil.rmtree(directory, ignore_errors=True)
    return _respond(response)


@router.get("/smart-import/example", dependencies=[Depends(require_credential)])
def smart_import_example() -> Dict[str, Any]:
    return {
        "layout": [
            "archive.zip",
            "  one-piece/",
            "    manga.json            optional: title, slug, status, type_slug, description, genres, alt_titles",
            "    description.txt       optional, used when manga.json has no description",
            "    genres.txt            optional, comma or newline separated",
            "    alt_titles.txt        optional, one 'title|lang' per line",
            "    status.txt            optional: ongoing, completed, hiatus, cancelled",
            "    type.txt              optional type slug",
            "    cover.jpg             optional cover image",
            "    Chapter 1/",
            "      001.jpg",
            "      002.jpg",
            "      preview.jpg         optional chapter thumbnail",
            "    Chapter 1.5/",
            "      001.jpg",
        ],
        "manga_json": {
            "title": "One Piece",
            "slug": "one-piece",
            "status": "ongoing",
            "type_slug": "manga",
            "description": "Pirates searching for the One Piece.",
            "genres": ["action", "adventure"],
            "alt_titles": [{"title": "ワンピース", "lang": "ja"}],
        },
        "notes": [
            "Chapter numbers come from folder names such as 'Chapter 12' or 'Chapter_12.5'.",
            "Pages are ordered naturally by filename and numbered from 1.",
            "Existing manga are attached to; existing chapters are skipped.",
        ],
    }


@router.post("/validate-json", response_model=ValidationReport)
async def validate_json(
    config: str = Form(...),
    check_existing: bool = Form(False),
    credential: OperatorCredential = Depends(require_credential),
    manager: UploadCoordinator = Depends(get_coordinator),
) -> ValidationReport:
    document = load_document(config)
    manga_policy, chapter_policy = document_policies(document)
    return await run_in_threadpool(
        manager.validate,
        credential,
        document,
        check_existing=check_existing,
        manga_policy=manga_policy,
        chapter_policy=chapter_policy or ChapterConflictPolicy.SKIP,
    )


@router.get("/progress/{upload_id}", response_model=ProgressSnapshot)
def get_progress(
    upload_id: str,
    credential: OperatorCredential = Depends(require_credential),
    manager: UploadCoordinator = Depends(get_coordinator),
) -> ProgressSnapshot:
    return manager.get_progress(credential, upload_id)


@router.get("/jobs/{job_id}", response_model=UploadResponse)
def get_job(
    job_id: str,
    credential: OperatorCredential = Depends(require_credential),
    manager: UploadCoordinator = Depends(get_coordinator),
) -> UploadResponse:
    return manager.get_job(credential, job_id)


@router.post("/jobs/{job_id}/cancel")
def cancel_job(
    job_id: str,
    credential: OperatorCredential = Depends(require_credential),
    manager: UploadCoordinator = Depends(get_coordinator),
) -> Dict[str, bool]:
    return {"cancel_requested": manager.cancel(credential, job_id)}


@router.post("/resume/{resume_token}")
async def resume_upload(
    resume_token: str,
    wait: bool = True,
    credential: OperatorCredential = Depends(require_credential),
    manager: UploadCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    response = await run_in_threadpool(manager.resume, credential, resume_token, wait)
    return _respond(response)


@router.get("/health", response_model=HealthReport)
def health(manager: UploadCoordinator = Depends(get_coordinator)) -> HealthReport:
    return manager.health()


app.include_router(router)
