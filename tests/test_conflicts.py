"""
Tests for conflict detection and unit actions.
"""

import pytest

from komik_upload.errors import ConflictError
from komik_upload.models import (
    ChapterConflictPolicy,
    ChapterUnit,
    ConflictKind,
    MangaConflictPolicy,
    MangaTarget,
    UnitAction,
)
from komik_upload.conflicts import find_conflicts, resolve_conflicts


def unit(slug, main, sub=0):
    return ChapterUnit(manga_slug=slug, chapter_main=main, chapter_sub=sub, label=f"Chapter {main}", folder_name=f"ch{main}")


@pytest.fixture
def seeded(catalog):
    """Catalog holding one-piece with chapter 1."""
    manga_id = catalog.create_manga(MangaTarget(slug="one-piece", title="One Piece"), job_id="seed")
    catalog.commit_chapter(
        manga_id,
        unit("one-piece", 1),
        [{"ordinal": 1, "storage_key": "manga/one-piece/chapter-1/001.jpg"}],
        job_id="seed",
        replace=False,
    )
    return catalog


def targets():
    return [MangaTarget(slug="one-piece", title="One Piece"), MangaTarget(slug="naruto", title="Naruto")]


class TestFindConflicts:
    def test_marks_existing_targets(self, seeded):
        mangas = targets()

        conflicts = find_conflicts(seeded, mangas, {"one-piece": [(1, 0), (2, 0)]}, None, ChapterConflictPolicy.SKIP)

        assert [c.kind for c in conflicts] == [ConflictKind.MANGA_EXISTS, ConflictKind.CHAPTER_EXISTS]
        assert mangas[0].exists is True and mangas[0].manga_id is not None
        assert mangas[1].exists is False
        assert conflicts[1].policy == "skip"

    def test_empty_catalog(self, catalog):
        assert find_conflicts(catalog, targets(), {}, MangaConflictPolicy.ERROR, ChapterConflictPolicy.ERROR) == []


class TestResolveConflicts:
    """Each policy combination assigns create / replace / skip before any write."""

    def test_attach_and_skip_existing_chapter(self, seeded):
        units = [unit("one-piece", 1), unit("one-piece", 2), unit("naruto", 1)]

        resolve_conflicts(targets(), units, seeded, None, ChapterConflictPolicy.SKIP)

        assert [u.action for u in units] == [UnitAction.SKIP, UnitAction.CREATE, UnitAction.CREATE]

    def test_overwrite_replaces(self, seeded):
        units = [unit("one-piece", 1), unit("one-piece", 2)]

        resolve_conflicts(targets(), units, seeded, None, ChapterConflictPolicy.OVERWRITE)

        assert [u.action for u in units] == [UnitAction.REPLACE, UnitAction.CREATE]

    def test_sub_chapter_is_a_different_key(self, seeded):
        units = [unit("one-piece", 1, 5)]

        resolve_conflicts(targets(), units, seeded, None, ChapterConflictPolicy.ERROR)

        assert units[0].action == UnitAction.CREATE

    def test_chapter_error_lists_every_conflict(self, seeded):
        seeded.commit_chapter(
            seeded.get_manga("one-piece")["id"],
            unit("one-piece", 2),
            [{"ordinal": 1, "storage_key": "manga/one-piece/chapter-2/001.jpg"}],
            job_id="seed",
            replace=False,
        )
        units = [unit("one-piece", 1), unit("one-piece", 2), unit("one-piece", 3)]

        with pytest.raises(ConflictError) as info:
            resolve_conflicts(targets(), units, seeded, None, ChapterConflictPolicy.ERROR)

        assert [(c.chapter_main, c.kind) for c in info.value.conflicts] == [
            (1, ConflictKind.CHAPTER_EXISTS),
            (2, ConflictKind.CHAPTER_EXISTS),
        ]
        assert info.value.status_code == 409

    def test_manga_error(self, seeded):
        with pytest.raises(ConflictError) as info:
            resolve_conflicts(targets(), [unit("naruto", 1)], seeded, MangaConflictPolicy.ERROR, ChapterConflictPolicy.SKIP)

        assert info.value.conflicts[0].manga_slug == "one-piece"

    def test_manga_skip_skips_all_its_units(self, seeded):
        mangas = targets()
        units = [unit("one-piece", 1), unit("one-piece", 7), unit("naruto", 1)]

        resolve_conflicts(mangas, units, seeded, MangaConflictPolicy.SKIP, ChapterConflictPolicy.OVERWRITE)

        assert mangas[0].skipped is True
        assert [u.action for u in units] == [UnitAction.SKIP, UnitAction.SKIP, UnitAction.CREATE]

    def test_skipped_manga_does_not_raise_for_its_chapters(self, seeded):
        """Existing chapters of a skipped title are dropped, not conflicts to stop on."""
        mangas = targets()
        units = [unit("one-piece", 1), unit("one-piece", 2), unit("naruto", 1)]

        conflicts = resolve_conflicts(mangas, units, seeded, MangaConflictPolicy.SKIP, ChapterConflictPolicy.ERROR)

        assert [c.kind for c in conflicts] == [ConflictKind.MANGA_EXISTS, ConflictKind.CHAPTER_EXISTS]
        assert [u.action for u in units] == [UnitAction.SKIP, UnitAction.SKIP, UnitAction.CREATE]
