"""
Parsing and validation of upload metadata documents.

Two document shapes are accepted:

    {"manga_slug": "one-piece", "title": ..., "chapters": [...]}
    {"manga_list": [{"slug": "one-piece", "title": ..., "chapters": [...]}, ...]}

Problems with individual entries are collected into the report so the
caller sees all of them at once. Only a document that cannot be read as
either shape raises SchemaError.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from .catalog import CatalogStore
from .conflicts import find_conflicts
from .errors import SchemaError
from .models import (
    AltTitle,
    ChapterConflictPolicy,
    ChapterDescriptor,
    MangaConflictPolicy,
    MangaStatus,
    MangaTarget,
    ValidationReport,
    ValidationSummary,
)
from .utils import is_safe_token, is_valid_slug

Document = Union[str, bytes, Mapping[str, Any]]


@dataclass
class ParsedDocument:
    mangas: List[MangaTarget]
    chapters: Dict[str, List[ChapterDescriptor]]
    report: ValidationReport
    multi: bool = False


def load_document(document: Document) -> Dict[str, Any]:
    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except json.JSONDecodeError as exc:
            raise SchemaError(f"Invalid JSON: {exc}") from exc
    if not isinstance(document, Mapping):
        raise SchemaError("Metadata document must be a JSON object")
    return dict(document)


def document_policies(document: Mapping[str, Any]) -> Tuple[Optional[MangaConflictPolicy], Optional[ChapterConflictPolicy]]:
    """
    Read an optional ``conflict_strategy`` block: {"manga": ..., "chapter": ...}.

    Raises:
        SchemaError: Unknown policy names
    """
    block = document.get("conflict_strategy") or {}
    if not isinstance(block, Mapping):
        raise SchemaError("conflict_strategy must be an object")
    try:
        manga = MangaConflictPolicy(block["manga"]) if block.get("manga") else None
        chapter = ChapterConflictPolicy(block["chapter"]) if block.get("chapter") else None
    except ValueError as exc:
        raise SchemaError(f"Unknown conflict strategy: {exc}") from exc
    return manga, chapter


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, list):
        return [str(part).strip() for part in value if str(part).strip()]
    return []


def _alt_titles(value: Any) -> List[AltTitle]:
    titles = []
    for item in value or []:
        if isinstance(item, str):
            titles.append(AltTitle(title=item))
        elif isinstance(item, Mapping) and item.get("title"):
            titles.append(AltTitle(title=str(item["title"]), lang=str(item.get("lang") or "en")))
    return titles


def _format_validation_error(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'entry'}: {error['msg']}"
        for error in exc.errors()
    )


class ConfigValidator:
    def __init__(self, catalog: Optional[CatalogStore] = None):
        self.catalog = catalog

    def validate_document(
        self,
        document: Document,
        check_existing: bool = False,
        manga_policy: Optional[MangaConflictPolicy] = None,
        chapter_policy: ChapterConflictPolicy = ChapterConflictPolicy.SKIP,
    ) -> ValidationReport:
        """Validate without side effects and return the report."""
        return self.parse(document, check_existing, manga_policy, chapter_policy).report

    def parse(
        self,
        document: Document,
        check_existing: bool = False,
        manga_policy: Optional[MangaConflictPolicy] = None,
        chapter_policy: ChapterConflictPolicy = ChapterConflictPolicy.SKIP,
    ) -> ParsedDocument:
        data = load_document(document)
        report = ValidationReport()

        if "manga_list" in data:
            entries = data["manga_list"]
            if not isinstance(entries, list):
                raise SchemaError("manga_list must be a list")
            multi = True
        elif "manga_slug" in data:
            entries = [{**data, "slug": data["manga_slug"]}]
            multi = False
        else:
            raise SchemaError("Document needs either 'manga_slug' or 'manga_list'")

        mangas: List[MangaTarget] = []
        chapters: Dict[str, List[ChapterDescriptor]] = {}
        for position, entry in enumerate(entries):
            parsed = self._parse_entry(entry, position, multi, report)
            if parsed is None:
                continue
            target, descriptors = parsed
            if target.slug in chapters:
                report.add_error(f"Duplicate manga slug '{target.slug}'")
                continue
            mangas.append(target)
            chapters[target.slug] = descriptors

        report.summary = ValidationSummary(
            total_manga=len(mangas),
            total_chapters=sum(len(items) for items in chapters.values()),
        )

        if check_existing and mangas:
            if self.catalog is None:
                raise RuntimeError("check_existing requires a catalog")
            keys = {slug: [(c.chapter_main, c.chapter_sub) for c in items] for slug, items in chapters.items()}
            report.conflicts = find_conflicts(self.catalog, mangas, keys, manga_policy, chapter_policy)
            for target in mangas:
                if target.exists:
                    report.warnings.append(f"Manga '{target.slug}' already exists (id={target.manga_id})")

        return ParsedDocument(mangas=mangas, chapters=chapters, report=report, multi=multi)

    def _parse_entry(
        self,
        entry: Any,
        position: int,
        multi: bool,
        report: ValidationReport,
    ) -> Optional[Tuple[MangaTarget, List[ChapterDescriptor]]]:
        where = f"manga_list[{position}]" if multi else "document"
        if not isinstance(entry, Mapping):
            report.add_error(f"{where}: entry must be an object")
            return None

        slug = entry.get("slug")
        if not slug or not isinstance(slug, str):
            report.add_error(f"{where}: slug is required")
            return None
        if not is_valid_slug(slug):
            report.add_error(f"{where}: invalid slug '{slug}' (lowercase letters, digits and single hyphens)")
            return None
        if multi and not entry.get("title"):
            report.add_error(f"{slug}: title is required")

        status = entry.get("status")
        if status and status not in {item.value for item in MangaStatus}:
            report.add_error(f"{slug}: unknown status '{status}'")

        if "chapters" not in entry:
            report.add_error(f"{slug}: chapters is required")
            raw_chapters: List[Any] = []
        elif not isinstance(entry["chapters"], list):
            raise SchemaError(f"{slug}: chapters must be a list")
        else:
            raw_chapters = entry["chapters"]
        if "chapters" in entry and not raw_chapters:
            report.warnings.append(f"{slug}: no chapters declared")

        storage = entry.get("storage_target", entry.get("storage_id"))
        target = MangaTarget(
            slug=slug,
            title=entry.get("title") or None,
            type_slug=entry.get("type_slug") or None,
            status=status or None,
            description=entry.get("description") or None,
            genres=_string_list(entry.get("genre_slugs", entry.get("genres"))),
            alt_titles=_alt_titles(entry.get("alt_titles")),
            storage_target=str(storage) if storage is not None else None,
        )
        return target, self._parse_chapters(slug, raw_chapters, report)

    def _parse_chapters(self, slug: str, raw_chapters: List[Any], report: ValidationReport) -> List[ChapterDescriptor]:
        descriptors: List[ChapterDescriptor] = []
        seen_keys: Dict[Tuple[int, int], str] = {}
        seen_folders: Dict[str, str] = {}
        for index, raw in enumerate(raw_chapters):
            where = f"{slug}: chapters[{index}]"
            if not isinstance(raw, Mapping):
                report.add_error(f"{where}: must be an object")
                continue
            try:
                descriptor = ChapterDescriptor.model_validate(raw)
            except ValidationError as exc:
                report.add_error(f"{where}: {_format_validation_error(exc)}")
                continue

            folder = descriptor.chapter_folder_name
            if not is_safe_token(folder):
                report.add_error(f"{where}: unsafe chapter_folder_name '{folder}'")
                continue

            key = (descriptor.chapter_main, descriptor.chapter_sub)
            if key in seen_keys:
                report.add_error(f"{where}: duplicate chapter {descriptor.label} (also {seen_keys[key]})")
                continue
            if folder in seen_folders:
                report.add_error(f"{where}: folder '{folder}' already used by {seen_folders[folder]}")
                continue
            seen_keys[key] = f"chapters[{index}]"
            seen_folders[folder] = f"chapters[{index}]"
            descriptors.append(descriptor)
        return descriptors
