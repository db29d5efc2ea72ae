"""
SQLite catalog of manga, chapters and pages.

Chapter commits are the only multi-row writes. They run in one
``BEGIN IMMEDIATE`` transaction that swaps the chapter's page rows, so a
re-executed unit replaces its own rows instead of duplicating them.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import CatalogIntegrityError
from .models import ChapterUnit, MangaTarget

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data/catalog.db")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def chapter_slug(manga_slug: str, chapter_main: int, chapter_sub: int = 0) -> str:
    """
    Example:
        >>> chapter_slug("one-piece", 12, 5)
        "one-piece-chapter-12-5"
    """
    base = f"{manga_slug}-chapter-{chapter_main}"
    return f"{base}-{chapter_sub}" if chapter_sub > 0 else base


class CatalogStore:
    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self):
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
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS manga (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    slug TEXT UNIQUE NOT NULL,
                    title TEXT NOT NULL,
                    type_slug TEXT,
                    status TEXT,
                    description TEXT,
                    genres TEXT,
                    alt_titles TEXT,
                    storage_target TEXT,
                    cover_key TEXT,
                    ingest_job_id TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chapters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    manga_id INTEGER NOT NULL REFERENCES manga(id) ON DELETE CASCADE,
                    chapter_main INTEGER NOT NULL,
                    chapter_sub INTEGER NOT NULL DEFAULT 0,
                    label TEXT NOT NULL,
                    slug TEXT UNIQUE NOT NULL,
                    folder_name TEXT,
                    volume_number INTEGER,
                    page_count INTEGER NOT NULL DEFAULT 0,
                    thumbnail_key TEXT,
                    ingest_job_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (manga_id, chapter_main, chapter_sub)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chapter_id INTEGER NOT NULL REFERENCES chapters(id) ON DELETE CASCADE,
                    ordinal INTEGER NOT NULL,
                    storage_key TEXT NOT NULL,
                    filename TEXT,
                    byte_size INTEGER,
                    checksum TEXT,
                    UNIQUE (chapter_id, ordinal)
                )
            """)

    def get_manga(self, slug: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM manga WHERE slug = ?", (slug,)).fetchone()
            return self._manga_to_dict(row) if row else None

    def create_manga(self, target: MangaTarget, job_id: str, attach_existing: bool = True) -> int:
        """
        Create the manga row for ``target`` and return its id.

        An existing row created by the same job is returned as is, which keeps
        the call safe to repeat on resume. A row created by anyone else is
        returned only when ``attach_existing`` is set.
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT id, ingest_job_id FROM manga WHERE slug = ?", (target.slug,)).fetchone()
            if row:
                if row["ingest_job_id"] == job_id or attach_existing:
                    return row["id"]
                raise CatalogIntegrityError(f"Manga '{target.slug}' was created outside this job after planning")

            cursor = conn.execute("""
                INSERT INTO manga (
                    slug, title, type_slug, status, description, genres,
                    alt_titles, storage_target, ingest_job_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                target.slug,
                target.display_title,
                target.type_slug,
                target.status,
                target.description,
                json.dumps(target.genres),
                json.dumps([alt.model_dump() for alt in target.alt_titles]),
                target.storage_target,
                job_id,
                _now(),
            ))
            logger.info(f"Created manga {target.slug} (id={cursor.lastrowid})")
            return cursor.lastrowid

    def set_manga_cover(self, manga_id: int, cover_key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("UPDATE manga SET cover_key = ? WHERE id = ?", (cover_key, manga_id))

    def get_chapter(self, manga_id: int, chapter_main: int, chapter_sub: int = 0) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM chapters WHERE manga_id = ? AND chapter_main = ? AND chapter_sub = ?",
                (manga_id, chapter_main, chapter_sub),
            ).fetchone()
            return dict(row) if row else None

    def list_chapters(self, manga_id: int) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM chapters WHERE manga_id = ? ORDER BY chapter_main, chapter_sub",
                (manga_id,),
            ).fetchall()
            return [dict(row) for row in rows]

    def list_pages(self, chapter_id: int) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM pages WHERE chapter_id = ? ORDER BY ordinal", (chapter_id,)
            ).fetchall()
            return [dict(row) for row in rows]

    def chapter_page_keys(self, chapter_id: int) -> List[str]:
        return [page["storage_key"] for page in self.list_pages(chapter_id)]

    def commit_chapter(
        self,
        manga_id: int,
        unit: ChapterUnit,
        page_rows: Sequence[Dict[str, Any]],
        job_id: str,
        replace: bool,
        thumbnail_key: Optional[str] = None,
    ) -> Tuple[int, List[str]]:
        """
        Write a chapter and its pages in one transaction.

        Args:
            manga_id: Owning manga row
            unit: The chapter being committed
            page_rows: Dicts with ordinal, storage_key, filename, byte_size, checksum
            job_id: Ingesting job, recorded so re-execution by the same job is recognised
            replace: True when the plan expected an existing chapter
            thumbnail_key: Storage key of a custom preview, if any

        Returns:
            (chapter_id, storage keys the chapter referenced before this commit)

        Raises:
            CatalogIntegrityError: The catalog diverged from the plan.
        """
        now = _now()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            if conn.execute("SELECT 1 FROM manga WHERE id = ?", (manga_id,)).fetchone() is None:
                raise CatalogIntegrityError(f"Manga {unit.manga_slug} disappeared before chapter {unit.label} was committed")

            existing = conn.execute(
                "SELECT * FROM chapters WHERE manga_id = ? AND chapter_main = ? AND chapter_sub = ?",
                (manga_id, unit.chapter_main, unit.chapter_sub),
            ).fetchone()

            if existing is None and replace:
                raise CatalogIntegrityError(f"Chapter {unit.label} of {unit.manga_slug} was removed after planning")
            if existing is not None and not replace and existing["ingest_job_id"] != job_id:
                raise CatalogIntegrityError(f"Chapter {unit.label} of {unit.manga_slug} was created outside this job")

            old_keys: List[str] = []
            if existing is None:
                cursor = conn.execute("""
                    INSERT INTO chapters (
                        manga_id, chapter_main, chapter_sub, label, slug, folder_name,
                        volume_number, page_count, thumbnail_key, ingest_job_id,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    manga_id,
                    unit.chapter_main,
                    unit.chapter_sub,
                    unit.label,
                    self._unique_slug(conn, unit),
                    unit.folder_name,
                    unit.volume_number,
                    len(page_rows),
                    thumbnail_key,
                    job_id,
                    now,
                    now,
                ))
                chapter_id = cursor.lastrowid
            else:
                chapter_id = existing["id"]
                old_keys = [
                    row["storage_key"]
                    for row in conn.execute("SELECT storage_key FROM pages WHERE chapter_id = ?", (chapter_id,))
                ]
                if existing["thumbnail_key"]:
                    old_keys.append(existing["thumbnail_key"])
                conn.execute("""
                    UPDATE chapters SET label = ?, folder_name = ?, volume_number = ?,
                        page_count = ?, thumbnail_key = ?, ingest_job_id = ?, updated_at = ?
                    WHERE id = ?
                """, (
                    unit.label,
                    unit.folder_name,
                    unit.volume_number,
                    len(page_rows),
                    thumbnail_key,
                    job_id,
                    now,
                    chapter_id,
                ))
                conn.execute("DELETE FROM pages WHERE chapter_id = ?", (chapter_id,))

            conn.executemany("""
                INSERT INTO pages (chapter_id, ordinal, storage_key, filename, byte_size, checksum)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (chapter_id, row["ordinal"], row["storage_key"], row.get("filename"), row.get("byte_size"), row.get("checksum"))
                for row in page_rows
            ])
            return chapter_id, old_keys

    def _unique_slug(self, conn: sqlite3.Connection, unit: ChapterUnit) -> str:
        base = chapter_slug(unit.manga_slug, unit.chapter_main, unit.chapter_sub)
        slug, version = base, 1
        while conn.execute("SELECT 1 FROM chapters WHERE slug = ?", (slug,)).fetchone():
            version += 1
            slug = f"{base}-v{version}"
        return slug

    def _manga_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["genres"] = json.loads(row["genres"] or "[]")
        data["alt_titles"] = json.loads(row["alt_titles"] or "[]")
        return data
