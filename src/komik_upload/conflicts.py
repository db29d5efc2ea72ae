"""
Conflict detection and resolution against the live catalog.

``find_conflicts`` only reports. ``resolve_conflicts`` also assigns each
unit its action and raises when an ``error`` policy is hit, before any
write has happened.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .catalog import CatalogStore
from .errors import ConflictError
from .models import (
    ChapterConflictPolicy,
    ChapterUnit,
    Conflict,
    ConflictKind,
    MangaConflictPolicy,
    MangaTarget,
    UnitAction,
)

logger = logging.getLogger(__name__)

ATTACH = "attach"


def _policy_name(policy: Optional[MangaConflictPolicy]) -> str:
    return policy.value if policy else ATTACH


def find_conflicts(
    catalog: CatalogStore,
    mangas: Iterable[MangaTarget],
    chapter_keys: Dict[str, Sequence[Tuple[int, int]]],
    manga_policy: Optional[MangaConflictPolicy],
    chapter_policy: ChapterConflictPolicy,
) -> List[Conflict]:
    """
    Look up every manga and chapter key in the catalog.

    Marks each target with ``exists`` and ``manga_id`` as a side effect on
    the in-memory targets only.
    """
    conflicts: List[Conflict] = []
    for target in mangas:
        row = catalog.get_manga(target.slug)
        target.exists = row is not None
        target.manga_id = row["id"] if row else None
        if row is None:
            continue

        conflicts.append(Conflict(
            kind=ConflictKind.MANGA_EXISTS,
            manga_slug=target.slug,
            existing_id=row["id"],
            policy=_policy_name(manga_policy),
        ))
        for chapter_main, chapter_sub in chapter_keys.get(target.slug, ()):
            chapter = catalog.get_chapter(row["id"], chapter_main, chapter_sub)
            if chapter:
                conflicts.append(Conflict(
                    kind=ConflictKind.CHAPTER_EXISTS,
                    manga_slug=target.slug,
                    chapter_main=chapter_main,
                    chapter_sub=chapter_sub,
                    existing_id=chapter["id"],
                    policy=chapter_policy.value,
                ))
    return conflicts


def resolve_conflicts(
    mangas: Sequence[MangaTarget],
    units: Sequence[ChapterUnit],
    catalog: CatalogStore,
    manga_policy: Optional[MangaConflictPolicy],
    chapter_policy: ChapterConflictPolicy,
) -> List[Conflict]:
    """
    Annotate ``units`` with create / replace / skip.

    Raises:
        ConflictError: An existing manga or chapter meets an ``error`` policy.
            Every such conflict is listed, not only the first.
    """
    keys: Dict[str, List[Tuple[int, int]]] = {}
    for unit in units:
        keys.setdefault(unit.manga_slug, []).append((unit.chapter_main, unit.chapter_sub))

    conflicts = find_conflicts(catalog, mangas, keys, manga_policy, chapter_policy)
    by_slug = {target.slug: target for target in mangas}
    existing_chapters = {
        (c.manga_slug, c.chapter_main, c.chapter_sub)
        for c in conflicts
        if c.kind == ConflictKind.CHAPTER_EXISTS
    }

    for target in mangas:
        target.skipped = target.exists and manga_policy == MangaConflictPolicy.SKIP

    # A skipped manga drops all its chapters, so their conflicts cannot block
    blocking = [
        c for c in conflicts
        if (c.kind == ConflictKind.MANGA_EXISTS and manga_policy == MangaConflictPolicy.ERROR)
        or (
            c.kind == ConflictKind.CHAPTER_EXISTS
            and chapter_policy == ChapterConflictPolicy.ERROR
            and not by_slug[c.manga_slug].skipped
        )
    ]
    if blocking:
        raise ConflictError(f"{len(blocking)} conflict(s) with existing catalog entries", conflicts=blocking)

    for target in mangas:
        if target.skipped:
            logger.info(f"Manga {target.slug} exists, skipping its chapters")

    for unit in units:
        target = by_slug.get(unit.manga_slug)
        if target is not None and target.skipped:
            unit.action = UnitAction.SKIP
        elif (unit.manga_slug, unit.chapter_main, unit.chapter_sub) in existing_chapters:
            unit.action = UnitAction.REPLACE if chapter_policy == ChapterConflictPolicy.OVERWRITE else UnitAction.SKIP
        else:
            unit.action = UnitAction.CREATE
    return conflicts
