"""
Zip archive decoding: map archive entries to ordered chapter pages.

Three planning modes:
- explicit: chapters and their folder names come from a metadata document
- inferred: every directory holding images is a chapter, numbered from its name
- smart: like inferred, plus manga identity and metadata read from sidecar files

Planning never writes anywhere. ``stage`` extracts the planned pages once
into a job's staging directory so execution and later resumes can read them
without the archive.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import IO, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ArchiveMappingError, SchemaError
from .models import (
    AltTitle,
    ChapterDescriptor,
    ChapterUnit,
    MangaStatus,
    MangaTarget,
    PageFile,
    UnitAction,
    default_chapter_label,
)
from .utils import CHUNK_SIZE, ensure_directory, is_valid_slug, natural_sort_key, slugify, split_extension

logger = logging.getLogger(__name__)

CHAPTER_NUMBER_PATTERN = re.compile(r"[Cc]hapter[_\s-]?(\d+(?:[._]\d+)?)")
FIRST_NUMBER_PATTERN = re.compile(r"(\d+(?:[._]\d+)?)")
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")

MANGA_SIDECAR = "manga.json"
TEXT_SIDECARS = ("description.txt", "genres.txt", "alt_titles.txt", "status.txt", "type.txt")


@dataclass(frozen=True)
class ArchiveEntry:
    path: str
    size: int
    raw_name: str = ""

    @property
    def parts(self) -> Tuple[str, ...]:
        return PurePosixPath(self.path).parts

    @property
    def name(self) -> str:
        return self.parts[-1]

    @property
    def parent(self) -> str:
        """Full directory path of the entry, '' at the archive root."""
        return "/".join(self.parts[:-1])

    @property
    def folder(self) -> str:
        """Name of the directory directly holding the entry."""
        return self.parts[-2] if len(self.parts) > 1 else ""


@dataclass
class ArchivePlan:
    mangas: List[MangaTarget]
    units: List[ChapterUnit]
    warnings: List[str] = field(default_factory=list)


def parse_chapter_number(name: str, pattern: Optional[re.Pattern] = None) -> Optional[Tuple[int, int]]:
    """
    Derive (chapter_main, chapter_sub) from a folder name.

    Example:
        >>> parse_chapter_number("Chapter_12.5")
        (12, 5)
        >>> parse_chapter_number("extras")
        None
    """
    token = None
    if pattern is not None:
        match = pattern.search(name)
        if match:
            token = match.group(1) if match.groups() else match.group(0)
            number = FIRST_NUMBER_PATTERN.search(token or "")
            token = number.group(1) if number else None
    else:
        match = CHAPTER_NUMBER_PATTERN.search(name) or FIRST_NUMBER_PATTERN.search(name)
        token = match.group(1) if match else None

    if not token:
        return None
    main, _, sub = token.replace("_", ".").partition(".")
    return int(main), int(sub or 0)


def compile_naming_pattern(naming_pattern: Optional[str]) -> Optional[re.Pattern]:
    if not naming_pattern:
        return None
    try:
        return re.compile(naming_pattern)
    except re.error as exc:
        raise SchemaError(f"Invalid naming_pattern '{naming_pattern}': {exc}") from exc


def assign_ordinals(named: Sequence[Tuple[str, str, int]], where: str) -> List[PageFile]:
    """
    Order pages naturally and number them 1..N.

    Args:
        named: (filename, archive_path, byte_size) per page
        where: Chapter description used in error messages

    Raises:
        ArchiveMappingError: Two names sort to the same position, or purely
            numeric names that are not a contiguous run from 0 or 1.
    """
    ordered = sorted(named, key=lambda item: natural_sort_key(item[0]))
    for previous, current in zip(ordered, ordered[1:]):
        if natural_sort_key(previous[0]) == natural_sort_key(current[0]):
            raise ArchiveMappingError(f"{where}: ambiguous page order between '{previous[0]}' and '{current[0]}'")

    stems = [split_extension(name)[0] for name, _, _ in ordered]
    if stems and all(stem.isdigit() for stem in stems):
        numbers = [int(stem) for stem in stems]
        first = numbers[0]
        expected = list(range(first, first + len(numbers)))
        if first not in (0, 1) or numbers != expected:
            missing = sorted(set(range(1 if first else 0, numbers[-1] + 1)) - set(numbers))
            detail = f"missing {missing}" if missing else f"starts at {first}"
            raise ArchiveMappingError(f"{where}: page numbers are not contiguous ({detail})")

    return [
        PageFile(ordinal=position, filename=PurePosixPath(name).name, archive_path=path, byte_size=size)
        for position, (name, path, size) in enumerate(ordered, start=1)
    ]


def _is_preview(entry: ArchiveEntry) -> bool:
    return split_extension(entry.name)[0].lower() == "preview"


def validate_page_ordinals(pages: Sequence[PageFile], where: str) -> None:
    ordinals = sorted(page.ordinal for page in pages)
    if ordinals != list(range(1, len(ordinals) + 1)):
        raise ArchiveMappingError(f"{where}: page ordinals must be 1..{len(ordinals)}, got {ordinals}")


def _copy_with_checksum(source: IO[bytes], destination: Path) -> Tuple[int, str]:
    digest = hashlib.sha256()
    size = 0
    part = destination.with_suffix(destination.suffix + ".part")
    with part.open("wb") as handle:
        while chunk := source.read(CHUNK_SIZE):
            digest.update(chunk)
            handle.write(chunk)
            size += len(chunk)
    part.replace(destination)
    return size, digest.hexdigest()


def build_unit_from_files(
    manga_slug: str,
    descriptor: ChapterDescriptor,
    files: Sequence[Tuple[str, Path]],
    allowed_extensions: Iterable[str],
) -> ChapterUnit:
    """
    Plan a single chapter from individually uploaded files.

    Args:
        files: (original filename, stored path) per uploaded page
    """
    allowed = set(allowed_extensions)
    if not files:
        raise SchemaError("At least one page file is required")
    rejected = [name for name, _ in files if split_extension(name)[1] not in allowed]
    if rejected:
        raise SchemaError(f"Unsupported file types: {', '.join(rejected)}")

    pages = assign_ordinals(
        [(name, str(path), path.stat().st_size) for name, path in files],
        descriptor.label,
    )
    return ChapterUnit(
        manga_slug=manga_slug,
        chapter_main=descriptor.chapter_main,
        chapter_sub=descriptor.chapter_sub,
        label=descriptor.label,
        folder_name=descriptor.chapter_folder_name,
        volume_number=descriptor.volume_number,
        pages=pages,
    )


def stage_files(units: Sequence[ChapterUnit], staging_dir: Path) -> None:
    """Copy pages that already sit on disk (archive_path is a file path) into staging."""
    for unit in units:
        if unit.action == UnitAction.SKIP:
            continue
        unit_dir = ensure_directory(staging_dir / f"unit-{unit.index:04d}")
        for page in unit.pages:
            destination = unit_dir / f"{page.ordinal:04d}{split_extension(page.filename)[1]}"
            with open(page.archive_path, "rb") as source:
                page.byte_size, page.content_checksum = _copy_with_checksum(source, destination)
            page.staged_path = str(destination)


class ArchiveDecoder:
    """
    Read-only view over an uploaded zip archive.

    Use as a context manager so the underlying file is closed.
    """

    def __init__(self, archive_path: Path, allowed_extensions: Iterable[str], max_entry_bytes: Optional[int] = None):
        self.archive_path = Path(archive_path)
        self.allowed_extensions = frozenset(allowed_extensions)
        try:
            self._zip = zipfile.ZipFile(self.archive_path)
        except (zipfile.BadZipFile, OSError) as exc:
            raise ArchiveMappingError(f"Cannot read archive {self.archive_path.name}: {exc}") from exc

        self.files: List[ArchiveEntry] = []
        for info in self._zip.infolist():
            name = info.filename.replace("\\", "/")
            if info.is_dir():
                continue
            path = PurePosixPath(name)
            if name.startswith("/") or _DRIVE_PREFIX.match(name) or ".." in path.parts:
                self.close()
                raise ArchiveMappingError(f"Unsafe archive entry: {info.filename}")
            if any(part.startswith(".") or part == "__MACOSX" for part in path.parts):
                continue
            if max_entry_bytes is not None and info.file_size > max_entry_bytes:
                self.close()
                raise ArchiveMappingError(f"Archive entry {name} exceeds the maximum file size")
            self.files.append(ArchiveEntry(path=str(path), size=info.file_size, raw_name=info.filename))
        self._by_path = {entry.path: entry for entry in self.files}

    def __enter__(self) -> "ArchiveDecoder":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._zip.close()

    @property
    def images(self) -> List[ArchiveEntry]:
        return [entry for entry in self.files if split_extension(entry.name)[1] in self.allowed_extensions]

    def top_level_dirs(self) -> List[str]:
        return sorted({entry.parts[0] for entry in self.files if len(entry.parts) > 1})

    def read_text(self, path: str) -> str:
        with self._open(path) as handle:
            return handle.read().decode("utf-8-sig").strip()

    def _open(self, path: str) -> IO[bytes]:
        entry = self._by_path.get(path)
        return self._zip.open(entry.raw_name if entry else path)

    def plan_explicit(
        self,
        manga_slug: str,
        descriptors: Sequence[ChapterDescriptor],
        scope: Optional[str] = None,
    ) -> List[ChapterUnit]:
        """
        Resolve declared chapter folders to pages.

        All folders are resolved before anything is returned; a single
        unresolvable folder fails the whole mapping.
        """
        candidates = [entry for entry in self.images if scope is None or entry.parts[0] == scope]
        problems: List[str] = []
        units: List[ChapterUnit] = []
        for descriptor in descriptors:
            folder = descriptor.chapter_folder_name
            matches = [entry for entry in candidates if entry.folder == folder]
            if not matches:
                problems.append(f"{manga_slug}: folder '{folder}' not found in archive")
                continue
            parents = sorted({entry.parent for entry in matches})
            if len(parents) > 1:
                problems.append(f"{manga_slug}: folder '{folder}' found in several places: {', '.join(parents)}")
                continue
            try:
                pages = assign_ordinals([(e.name, e.path, e.size) for e in matches], f"{manga_slug}/{folder}")
            except ArchiveMappingError as exc:
                problems.append(str(exc))
                continue
            units.append(ChapterUnit(
                manga_slug=manga_slug,
                chapter_main=descriptor.chapter_main,
                chapter_sub=descriptor.chapter_sub,
                label=descriptor.label,
                folder_name=folder,
                volume_number=descriptor.volume_number,
                pages=pages,
            ))

        if problems:
            raise ArchiveMappingError("; ".join(problems))
        return units

    def plan_inferred(
        self,
        manga_slug: str,
        naming_pattern: Optional[str] = None,
        start_chapter: Optional[int] = None,
        end_chapter: Optional[int] = None,
    ) -> Tuple[List[ChapterUnit], List[str]]:
        """
        Treat every directory holding images as one chapter.

        Returns:
            (units sorted by chapter number, warnings for skipped folders)
        """
        pattern = compile_naming_pattern(naming_pattern)
        groups = self._group_by_parent(self.images)
        return self._units_from_groups(manga_slug, groups, pattern, start_chapter, end_chapter)

    def plan_smart(
        self,
        type_hint: Optional[str] = None,
        default_status: str = MangaStatus.ONGOING.value,
        storage_target: Optional[str] = None,
    ) -> ArchivePlan:
        """
        Infer manga and chapters from the archive layout.

        Layout::

            <manga>/manga.json          optional metadata
            <manga>/cover.jpg           optional cover
            <manga>/*.txt               optional description, genres, alt_titles, status, type
            <manga>/<chapter>/001.jpg   pages
            <manga>/<chapter>/preview.jpg  optional chapter thumbnail

        A single manga may also sit at the archive root when a manga.json
        there names it.
        """
        root_chapters = [entry for entry in self.images if len(entry.parts) == 2]
        if self._has(MANGA_SIDECAR) or (root_chapters and not any(len(e.parts) == 3 for e in self.images)):
            roots = [""]
        else:
            roots = self.top_level_dirs()

        plan = ArchivePlan(mangas=[], units=[])
        problems: List[str] = []
        seen_slugs: Dict[str, str] = {}
        for root in roots:
            try:
                target = self._read_manga_target(root, type_hint, default_status, storage_target, plan.warnings)
            except ArchiveMappingError as exc:
                problems.append(str(exc))
                continue
            if target.slug in seen_slugs:
                problems.append(f"Manga slug '{target.slug}' derived from both '{seen_slugs[target.slug]}' and '{root}'")
                continue
            seen_slugs[target.slug] = root

            depth = len(PurePosixPath(root).parts) if root else 0
            chapter_entries = [
                entry for entry in self.images
                if len(entry.parts) == depth + 2 and (not root or entry.parts[0] == root)
            ]
            previews = {entry.parent: entry for entry in chapter_entries if _is_preview(entry)}
            pages = [entry for entry in chapter_entries if not _is_preview(entry)]

            try:
                units, warnings = self._units_from_groups(target.slug, self._group_by_parent(pages), None, None, None)
            except ArchiveMappingError as exc:
                problems.append(str(exc))
                continue
            plan.warnings.extend(warnings)
            for unit in units:
                preview = previews.get(f"{root}/{unit.folder_name}" if root else unit.folder_name)
                if preview is not None:
                    unit.preview = PageFile(ordinal=1, filename=preview.name, archive_path=preview.path, byte_size=preview.size)
            if not units:
                plan.warnings.append(f"{target.slug}: no chapters found")
            plan.mangas.append(target)
            plan.units.extend(units)

        if problems:
            raise ArchiveMappingError("; ".join(problems))
        if not plan.mangas:
            raise ArchiveMappingError("Archive contains no manga directories")
        return plan

    def stage(self, units: Sequence[ChapterUnit], mangas: Sequence[MangaTarget], staging_dir: Path) -> None:
        """
        Extract planned pages, previews and covers into ``staging_dir``.

        Fills in byte_size, content_checksum and staged_path. Skipped units
        are not extracted.
        """
        for unit in units:
            if unit.action == UnitAction.SKIP:
                continue
            unit_dir = ensure_directory(staging_dir / f"unit-{unit.index:04d}")
            for page in unit.pages:
                self._stage_one(page, unit_dir / f"{page.ordinal:04d}{split_extension(page.filename)[1]}")
            if unit.preview is not None:
                self._stage_one(unit.preview, unit_dir / f"preview{split_extension(unit.preview.filename)[1]}")

        for target in mangas:
            if target.cover is not None and not target.skipped:
                covers = ensure_directory(staging_dir / "covers")
                self._stage_one(target.cover, covers / f"{target.slug}{split_extension(target.cover.filename)[1]}")
        logger.info(f"Staged archive {self.archive_path.name} into {staging_dir}")

    def _stage_one(self, page: PageFile, destination: Path) -> None:
        with self._open(page.archive_path) as source:
            page.byte_size, page.content_checksum = _copy_with_checksum(source, destination)
        page.staged_path = str(destination)

    def _has(self, path: str) -> bool:
        return path in self._by_path

    def _group_by_parent(self, entries: Iterable[ArchiveEntry]) -> Dict[str, List[ArchiveEntry]]:
        groups: Dict[str, List[ArchiveEntry]] = {}
        for entry in entries:
            groups.setdefault(entry.parent, []).append(entry)
        return groups

    def _units_from_groups(
        self,
        manga_slug: str,
        groups: Dict[str, List[ArchiveEntry]],
        pattern: Optional[re.Pattern],
        start_chapter: Optional[int],
        end_chapter: Optional[int],
    ) -> Tuple[List[ChapterUnit], List[str]]:
        warnings: List[str] = []
        problems: List[str] = []
        by_key: Dict[Tuple[int, int], ChapterUnit] = {}
        for parent, entries in sorted(groups.items(), key=lambda item: natural_sort_key(item[0])):
            if not parent:
                warnings.append(f"{len(entries)} page(s) at the archive root ignored")
                continue
            folder = PurePosixPath(parent).name
            number = parse_chapter_number(folder, pattern)
            if number is None or number[0] < 1:
                warnings.append(f"Folder '{parent}' has no chapter number, skipped")
                continue
            chapter_main, chapter_sub = number
            if (start_chapter is not None and chapter_main < start_chapter) or (end_chapter is not None and chapter_main > end_chapter):
                continue
            if number in by_key:
                problems.append(f"{manga_slug}: folders '{by_key[number].folder_name}' and '{folder}' are both chapter {chapter_main}.{chapter_sub}")
                continue
            try:
                pages = assign_ordinals([(e.name, e.path, e.size) for e in entries], f"{manga_slug}/{parent}")
            except ArchiveMappingError as exc:
                problems.append(str(exc))
                continue
            by_key[number] = ChapterUnit(
                manga_slug=manga_slug,
                chapter_main=chapter_main,
                chapter_sub=chapter_sub,
                label=default_chapter_label(chapter_main, chapter_sub),
                folder_name=folder,
                pages=pages,
            )

        if problems:
            raise ArchiveMappingError("; ".join(problems))
        return [by_key[key] for key in sorted(by_key)], warnings

    def _read_manga_target(
        self,
        root: str,
        type_hint: Optional[str],
        default_status: str,
        storage_target: Optional[str],
        warnings: List[str],
    ) -> MangaTarget:
        def sidecar(name: str) -> str:
            return f"{root}/{name}" if root else name

        meta: Dict[str, object] = {}
        if self._has(sidecar(MANGA_SIDECAR)):
            try:
                loaded = json.loads(self.read_text(sidecar(MANGA_SIDECAR)))
            except json.JSONDecodeError as exc:
                raise ArchiveMappingError(f"{sidecar(MANGA_SIDECAR)} is not valid JSON: {exc}") from exc
            if not isinstance(loaded, dict):
                raise ArchiveMappingError(f"{sidecar(MANGA_SIDECAR)} must be a JSON object")
            meta = loaded

        text = {name: self.read_text(sidecar(name)) for name in TEXT_SIDECARS if self._has(sidecar(name))}

        title = str(meta.get("title") or root or "").strip()
        slug = str(meta.get("slug") or slugify(title))
        if not title or not slug:
            raise ArchiveMappingError("Cannot determine manga identity; add a manga.json with a title")
        if not is_valid_slug(slug):
            raise ArchiveMappingError(f"Invalid manga slug '{slug}' in {sidecar(MANGA_SIDECAR)}")

        status = str(meta.get("status") or text.get("status.txt") or default_status).strip().lower()
        if status not in {item.value for item in MangaStatus}:
            warnings.append(f"{slug}: unknown status '{status}', using '{default_status}'")
            status = default_status

        genres = meta.get("genres")
        if not isinstance(genres, list):
            genres = re.split(r"[,\n]", text.get("genres.txt", ""))

        alt_titles = [
            AltTitle(title=item["title"], lang=item.get("lang") or "en")
            for item in meta.get("alt_titles") or []
            if isinstance(item, dict) and item.get("title")
        ]
        if not alt_titles and "alt_titles.txt" in text:
            for line in text["alt_titles.txt"].splitlines():
                alt_title, _, lang = line.partition("|")
                if alt_title.strip():
                    alt_titles.append(AltTitle(title=alt_title.strip(), lang=lang.strip() or "en"))

        cover = None
        covers = [
            entry for entry in self.images
            if entry.parent == root and split_extension(entry.name)[0].lower() == "cover"
        ]
        if covers:
            entry = sorted(covers, key=lambda item: item.name)[0]
            cover = PageFile(ordinal=1, filename=entry.name, archive_path=entry.path, byte_size=entry.size)

        return MangaTarget(
            slug=slug,
            title=title,
            type_slug=str(meta.get("type_slug") or meta.get("type") or text.get("type.txt") or type_hint or "") or None,
            status=status,
            description=str(meta.get("description") or text.get("description.txt") or "") or None,
            genres=[slugify(str(genre)) for genre in genres if str(genre).strip()],
            alt_titles=alt_titles,
            storage_target=storage_target,
            cover=cover,
            create_if_missing=True,
        )
