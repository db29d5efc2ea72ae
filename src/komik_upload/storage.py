"""
Object storage for chapter pages, covers and thumbnails.

Two backends share one interface:
- LocalStorage writes under a filesystem root (development and tests)
- S3Storage writes to a bucket through boto3

Every call goes through the process-wide StorageGate and a bounded retry
budget. Transient failures are retried with exponential backoff; anything
else, or a spent budget, surfaces as TransferError.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from omegaconf import DictConfig

from .errors import TransferError
from .rate_limit import StorageGate
from .utils import ensure_directory, sanitize_label, split_extension

logger = logging.getLogger(__name__)

T = TypeVar("T")

# S3 DeleteObjects accepts at most this many keys per request
DELETE_BATCH_SIZE = 1000

_TRANSIENT_S3_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout", "InternalError", "ServiceUnavailable"}


def with_retries(
    operation: Callable[[], T],
    *,
    is_transient: Callable[[BaseException], bool],
    attempts: int = 3,
    backoff: float = 0.5,
    max_backoff: float = 8.0,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``operation`` with up to ``attempts`` tries on transient errors.

    Non-transient errors are not retried. Either way the caller sees a
    TransferError carrying the last underlying error.
    """
    delay = backoff
    last_exception: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransferError:
            raise
        except Exception as exc:
            if not is_transient(exc):
                logger.error(f"Storage {description} failed: {exc}")
                raise TransferError(f"{description} failed: {exc}") from exc
            last_exception = exc

        if attempt < attempts:
            logger.warning(
                f"Storage {description} failed (attempt {attempt}/{attempts}): "
                f"{last_exception}. Retrying in {delay:.1f}s..."
            )
            sleep(delay)
            delay = min(delay * 2, max_backoff)

    logger.error(f"Storage {description} failed after {attempts} attempts")
    raise TransferError(f"{description} failed after {attempts} attempts: {last_exception}") from last_exception


def chapter_prefix(key_prefix: str, manga_slug: str, chapter_main: int, chapter_sub: int = 0) -> str:
    """Storage prefix shared by every object of one chapter, ending in a slash."""
    chapter = f"chapter-{chapter_main}" if chapter_sub == 0 else f"chapter-{chapter_main}-{chapter_sub}"
    return f"{key_prefix.strip('/')}/{manga_slug}/{chapter}/"


def replacement_prefix(prefix: str, job_id: str) -> str:
    """
    Prefix for the objects a job writes when it replaces a live chapter.

    The chapter's current keys keep serving the old pages until the catalog
    swap, after which the old objects are swept from under ``prefix``.
    """
    return f"{prefix}r-{job_id[:12]}/"


def page_key(prefix: str, ordinal: int, filename: str, preserve_filenames: bool = False) -> str:
    stem, ext = split_extension(filename)
    if preserve_filenames:
        return f"{prefix}{ordinal:03d}-{sanitize_label(stem, 'page')}{ext}"
    return f"{prefix}{ordinal:03d}{ext}"


def thumbnail_key(prefix: str, filename: str) -> str:
    return f"{prefix}thumbnail{split_extension(filename)[1]}"


def cover_key(key_prefix: str, manga_slug: str, filename: str) -> str:
    return f"{key_prefix.strip('/')}/{manga_slug}/cover{split_extension(filename)[1]}"


class StorageBackend:
    """Common gate and retry handling. Subclasses implement the ``_`` methods."""

    name = "storage"

    def __init__(
        self,
        gate: StorageGate,
        *,
        target: str = "primary",
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        retry_max_backoff_seconds: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gate = gate
        self.target = target
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_max_backoff_seconds = retry_max_backoff_seconds
        self._sleep = sleep

    def is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, (ConnectionError, TimeoutError))

    def _call(self, description: str, operation: Callable[[], T]) -> T:
        def gated() -> T:
            with self.gate.slot(self.target):
                return operation()

        return with_retries(
            gated,
            is_transient=self.is_transient,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff_seconds,
            max_backoff=self.retry_max_backoff_seconds,
            description=description,
            sleep=self._sleep,
        )

    def put_file(self, local_path: Path, key: str) -> None:
        self._call(f"put {key}", lambda: self._put(Path(local_path), key))

    def delete_keys(self, keys: Iterable[str]) -> None:
        pending = sorted(set(keys))
        if pending:
            self._call(f"delete {len(pending)} keys", lambda: self._delete(pending))

    def list_keys(self, prefix: str) -> List[str]:
        return self._call(f"list {prefix}", lambda: sorted(self._list(prefix)))

    def exists(self, key: str) -> bool:
        return self._call(f"head {key}", lambda: self._exists(key))

    def is_ready(self) -> bool:
        raise NotImplementedError

    def describe(self) -> Dict[str, Any]:
        return {"backend": self.name, "target": self.target}

    def _put(self, local_path: Path, key: str) -> None:
        raise NotImplementedError

    def _delete(self, keys: List[str]) -> None:
        raise NotImplementedError

    def _list(self, prefix: str) -> List[str]:
        raise NotImplementedError

    def _exists(self, key: str) -> bool:
        raise NotImplementedError


class LocalStorage(StorageBackend):
    name = "local"

    def __init__(self, root: Path, gate: StorageGate, **kwargs: Any) -> None:
        super().__init__(gate, **kwargs)
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise TransferError(f"Key escapes storage root: {key}")
        return path

    def _put(self, local_path: Path, key: str) -> None:
        destination = self.path_for(key)
        ensure_directory(destination.parent)
        # Write beside the destination and swap so readers never see a partial page
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, suffix=".part")
        try:
            with os.fdopen(fd, "wb") as handle, local_path.open("rb") as source:
                shutil.copyfileobj(source, handle)
            os.replace(tmp_name, destination)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _delete(self, keys: List[str]) -> None:
        for key in keys:
            self.path_for(key).unlink(missing_ok=True)

    def _list(self, prefix: str) -> List[str]:
        base = self.root / prefix
        if not base.exists():
            return []
        return [
            path.relative_to(self.root).as_posix()
            for path in base.rglob("*")
            if path.is_file() and not path.name.endswith(".part")
        ]

    def _exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def is_ready(self) -> bool:
        try:
            ensure_directory(self.root)
        except OSError as exc:
            logger.warning(f"Local storage root {self.root} unavailable: {exc}")
            return False
        return os.access(self.root, os.W_OK)

    def describe(self) -> Dict[str, Any]:
        return {**super().describe(), "root": str(self.root)}


class S3Storage(StorageBackend):
    name = "s3"

    def __init__(self, bucket: str, gate: StorageGate, *, timeout_seconds: float = 60, **kwargs: Any) -> None:
        super().__init__(gate, **kwargs)
        self.bucket = bucket
        self.timeout_seconds = timeout_seconds
        self._client = None

    def _get_client(self):
        """
        Get or create the S3 client.

        botocore's own retries are disabled so the service retry budget is
        the only one that applies.
        """
        if self._client is None:
            self._client = boto3.client(
                "s3",
                config=Config(
                    connect_timeout=self.timeout_seconds,
                    read_timeout=self.timeout_seconds,
                    retries={"total_max_attempts": 1},
                ),
            )
        return self._client

    def is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)):
            return True
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            return error.get("Code") in _TRANSIENT_S3_CODES or status >= 500
        return super().is_transient(exc)

    def _put(self, local_path: Path, key: str) -> None:
        content_type = mimetypes.guess_type(local_path.name)[0] or "application/octet-stream"
        with local_path.open("rb") as body:
            self._get_client().put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)
        logger.debug(f"Uploaded s3://{self.bucket}/{key}")

    def _delete(self, keys: List[str]) -> None:
        client = self._get_client()
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            response = client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
            failures = response.get("Errors") or []
            if failures:
                raise TransferError(f"Failed to delete {len(failures)} objects, first: {failures[0].get('Key')}")

    def _list(self, prefix: str) -> List[str]:
        paginator = self._get_client().get_paginator("list_objects_v2")
        keys: List[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(item["Key"] for item in page.get("Contents", []))
        return keys

    def _exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def is_ready(self) -> bool:
        """
        Check that a bucket is configured and a client can be built.

        Credentials are not probed with list_buckets(); that needs
        s3:ListAllMyBuckets, and credential errors surface on first transfer.
        """
        if not self.bucket:
            logger.warning("S3 bucket not configured")
            return False
        try:
            self._get_client()
        except (BotoCoreError, NoCredentialsError) as exc:
            logger.warning(f"Failed to create S3 client: {exc}")
            return False
        return True

    def describe(self) -> Dict[str, Any]:
        return {**super().describe(), "bucket": self.bucket}


def build_storage(config: DictConfig, gate: StorageGate) -> StorageBackend:
    storage = config.storage
    common = {
        "target": str(storage.primary_target),
        "retry_attempts": int(storage.retry_attempts),
        "retry_backoff_seconds": float(storage.retry_backoff_seconds),
        "retry_max_backoff_seconds": float(storage.retry_max_backoff_seconds),
    }
    backend = str(storage.backend).lower()
    if backend == "s3":
        logger.info(f"Using S3 storage bucket={storage.bucket}")
        return S3Storage(str(storage.bucket), gate, timeout_seconds=float(storage.transfer_timeout_seconds), **common)
    if backend == "local":
        logger.info(f"Using local storage root={storage.local_root}")
        return LocalStorage(Path(str(storage.local_root)), gate, **common)
    raise ValueError(f"Unknown storage backend: {storage.backend}")
