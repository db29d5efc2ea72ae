"""
Tests for archive decoding, chapter numbering and page ordering.
"""

import re

import pytest

from conftest import chapter_pages, page_bytes

from komik_upload.archive import (
    ArchiveDecoder,
    assign_ordinals,
    compile_naming_pattern,
    parse_chapter_number,
    validate_page_ordinals,
)
from komik_upload.errors import ArchiveMappingError, SchemaError
from komik_upload.models import ChapterDescriptor, PageFile
from komik_upload.utils import compute_sha256

IMAGES = {".jpg", ".jpeg", ".png", ".webp", ".gif"}


def named(*names):
    return [(name, f"chapter/{name}", 10) for name in names]


class TestChapterNumbers:
    @pytest.mark.parametrize("name, expected", [
        ("Chapter 12", (12, 0)),
        ("Chapter_12.5", (12, 5)),
        ("chapter-3", (3, 0)),
        ("Vol 2 Chapter 7", (7, 0)),
        ("ch 7", (7, 0)),
        ("extras", None),
    ])
    def test_default_parsing(self, name, expected):
        assert parse_chapter_number(name) == expected

    def test_custom_pattern(self):
        assert parse_chapter_number("Ep03", re.compile(r"Ep(\d+)")) == (3, 0)
        assert parse_chapter_number("Chapter 3", re.compile(r"Ep(\d+)")) is None

    def test_invalid_pattern(self):
        with pytest.raises(SchemaError):
            compile_naming_pattern("(unclosed")


class TestPageOrdering:
    def test_natural_order(self):
        pages = assign_ordinals(named("page10.jpg", "page2.jpg", "page1.jpg"), "ch1")

        assert [(page.ordinal, page.filename) for page in pages] == [
            (1, "page1.jpg"),
            (2, "page2.jpg"),
            (3, "page10.jpg"),
        ]

    def test_numeric_names_may_start_at_zero(self):
        pages = assign_ordinals(named("0.jpg", "1.jpg", "2.jpg"), "ch1")

        assert [page.ordinal for page in pages] == [1, 2, 3]

    def test_gap_is_rejected(self):
        with pytest.raises(ArchiveMappingError, match=r"missing \[3\]"):
            assign_ordinals(named("1.jpg", "2.jpg", "4.jpg"), "ch1")

    def test_late_start_is_rejected(self):
        with pytest.raises(ArchiveMappingError, match="not contiguous"):
            assign_ordinals(named("5.jpg", "6.jpg"), "ch1")

    def test_collision_is_rejected(self):
        with pytest.raises(ArchiveMappingError, match="ambiguous"):
            assign_ordinals(named("01.jpg", "1.jpg", "2.jpg"), "ch1")

    def test_validate_page_ordinals(self):
        pages = [PageFile(ordinal=number, filename=f"{number}.jpg", archive_path="x") for number in (1, 2, 4)]

        with pytest.raises(ArchiveMappingError):
            validate_page_ordinals(pages, "ch1")


class TestArchiveDecoder:
    """Reading and mapping zip archives."""

    def test_skips_hidden_and_resource_fork_entries(self, make_zip):
        archive = make_zip({
            **chapter_pages("ch1", 2),
            "ch1/.DS_Store": b"junk",
            "__MACOSX/ch1/._001.jpg": b"junk",
        })

        with ArchiveDecoder(archive, IMAGES) as decoder:
            assert sorted(entry.path for entry in decoder.images) == ["ch1/001.jpg", "ch1/002.jpg"]

    def test_unsafe_entry_is_rejected(self, make_zip):
        archive = make_zip({"../evil.jpg": page_bytes("evil")})

        with pytest.raises(ArchiveMappingError, match="Unsafe"):
            ArchiveDecoder(archive, IMAGES)

    def test_not_a_zip(self, tmp_path):
        path = tmp_path / "broken.zip"
        path.write_bytes(b"definitely not a zip")

        with pytest.raises(ArchiveMappingError):
            ArchiveDecoder(path, IMAGES)

    def test_oversized_entry(self, make_zip):
        archive = make_zip({"ch1/001.jpg": b"x" * 2048})

        with pytest.raises(ArchiveMappingError, match="maximum file size"):
            ArchiveDecoder(archive, IMAGES, max_entry_bytes=1024)

    def test_explicit_folder_found_in_several_places(self, make_zip):
        archive = make_zip({**chapter_pages("a/ch1", 1), **chapter_pages("b/ch1", 1)})
        descriptor = ChapterDescriptor(chapter_main=1, chapter_folder_name="ch1")

        with ArchiveDecoder(archive, IMAGES) as decoder:
            with pytest.raises(ArchiveMappingError, match="several places"):
                decoder.plan_explicit("one-piece", [descriptor])
            units = decoder.plan_explicit("one-piece", [descriptor], scope="b")

        assert [page.archive_path for page in units[0].pages] == ["b/ch1/001.jpg"]

    def test_explicit_reports_all_problems_together(self, make_zip):
        archive = make_zip(chapter_pages("ch1", 1))
        descriptors = [
            ChapterDescriptor(chapter_main=2, chapter_folder_name="ch2"),
            ChapterDescriptor(chapter_main=3, chapter_folder_name="ch3"),
        ]

        with ArchiveDecoder(archive, IMAGES) as decoder:
            with pytest.raises(ArchiveMappingError) as info:
                decoder.plan_explicit("one-piece", descriptors)

        assert "ch2" in str(info.value) and "ch3" in str(info.value)

    def test_inferred_duplicate_chapter_numbers(self, make_zip):
        archive = make_zip({**chapter_pages("Chapter 1", 1), **chapter_pages("ch1", 1)})

        with ArchiveDecoder(archive, IMAGES) as decoder:
            with pytest.raises(ArchiveMappingError, match="both chapter 1.0"):
                decoder.plan_inferred("one-piece")

    def test_inferred_warns_about_root_pages(self, make_zip):
        archive = make_zip({"cover.jpg": page_bytes("cover"), **chapter_pages("Chapter 1", 1)})

        with ArchiveDecoder(archive, IMAGES) as decoder:
            units, warnings = decoder.plan_inferred("one-piece")

        assert len(units) == 1
        assert any("archive root" in warning for warning in warnings)

    def test_stage_writes_checksummed_copies(self, make_zip, tmp_path):
        archive = make_zip(chapter_pages("Chapter 1", 2))
        staging = tmp_path / "staging"

        with ArchiveDecoder(archive, IMAGES) as decoder:
            units, _ = decoder.plan_inferred("one-piece")
            decoder.stage(units, [], staging)

        page = units[0].pages[1]
        assert page.staged_path.endswith("unit-0000/0002.jpg")
        assert page.byte_size == len(page_bytes("Chapter 1/2"))
        assert page.content_checksum == compute_sha256(staging / "unit-0000" / "0002.jpg")

    def test_smart_manga_at_archive_root(self, make_zip):
        archive = make_zip({
            "manga.json": b'{"title": "Solo Leveling", "alt_titles": [{"title": "Na Honjaman Level Up", "lang": "ko"}]}',
            "description.txt": b"Hunters and gates.",
            "status.txt": b"completed",
            **chapter_pages("Chapter 1", 1),
        })

        with ArchiveDecoder(archive, IMAGES) as decoder:
            plan = decoder.plan_smart(type_hint="manhwa")

        target = plan.mangas[0]
        assert target.slug == "solo-leveling"
        assert target.description == "Hunters and gates."
        assert target.status == "completed"
        assert target.type_slug == "manhwa"
        assert target.alt_titles[0].lang == "ko"
        assert [unit.manga_slug for unit in plan.units] == ["solo-leveling"]

    def test_smart_manga_json_wins_over_text_sidecars(self, make_zip):
        archive = make_zip({
            "tower/manga.json": b'{"title": "Tower of God", "status": "hiatus", "genres": ["fantasy"]}',
            "tower/status.txt": b"ongoing",
            "tower/genres.txt": b"action",
            **chapter_pages("tower/Chapter 1", 1),
        })

        with ArchiveDecoder(archive, IMAGES) as decoder:
            plan = decoder.plan_smart()

        target = plan.mangas[0]
        assert target.slug == "tower-of-god"
        assert target.status == "hiatus"
        assert target.genres == ["fantasy"]

    def test_smart_unknown_status_falls_back(self, make_zip):
        archive = make_zip({"tower/status.txt": b"paused", **chapter_pages("tower/Chapter 1", 1)})

        with ArchiveDecoder(archive, IMAGES) as decoder:
            plan = decoder.plan_smart(default_status="ongoing")

        assert plan.mangas[0].status == "ongoing"
        assert any("unknown status" in warning for warning in plan.warnings)

    def test_smart_duplicate_slugs(self, make_zip):
        archive = make_zip({
            "One Piece/Chapter 1/001.jpg": page_bytes("a"),
            "one-piece/Chapter 1/001.jpg": page_bytes("b"),
        })

        with ArchiveDecoder(archive, IMAGES) as decoder:
            with pytest.raises(ArchiveMappingError, match="derived from both"):
                decoder.plan_smart()
